from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass

from openpyxl import load_workbook

from app.opsdesk.constants import is_valid_phone_number

ALLOWED_EXTENSIONS = (".xlsx", ".csv")
MAX_UPLOAD_BYTES = 10 * 1024 * 1024

_NON_DIGITS = re.compile(r"\D+")


@dataclass(frozen=True)
class RowError:
    row_number: int
    message: str

    def __str__(self) -> str:
        return f"第 {self.row_number} 行: {self.message}"


def normalize_number(raw: object) -> str:
    """Digits only; Excel float cells like 13800138000.0 lose their fraction first."""
    if raw is None:
        return ""
    if isinstance(raw, float) and raw.is_integer():
        raw = int(raw)
    text = str(raw).strip()
    if text.startswith("+86"):
        text = text[3:]
    return _NON_DIGITS.sub("", text)


def _first_column_xlsx(file_bytes: bytes) -> list[tuple[int, object]]:
    wb = load_workbook(io.BytesIO(file_bytes), read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0] if wb.worksheets else None
        if ws is None:
            raise ValueError("Excel文件中没有找到工作表")
        out = []
        for idx, row in enumerate(ws.iter_rows(min_col=1, max_col=1, values_only=True), start=1):
            if row and row[0] not in (None, ""):
                out.append((idx, row[0]))
        return out
    finally:
        wb.close()


def _first_column_csv(file_bytes: bytes) -> list[tuple[int, object]]:
    text = file_bytes.decode("utf-8-sig", errors="replace")
    out = []
    for idx, row in enumerate(csv.reader(io.StringIO(text)), start=1):
        if row and row[0].strip():
            out.append((idx, row[0]))
    return out


def parse_phone_upload(filename: str, file_bytes: bytes) -> tuple[list[str], list[RowError]]:
    """
    Read candidate numbers from the first column of an .xlsx or .csv upload.

    Returns (numbers, errors): numbers are valid and de-duplicated in file
    order; errors name the rows whose value is not a mobile number. A header
    row simply shows up as one row error.
    """
    name = (filename or "").lower()
    if name.endswith(".xlsx"):
        cells = _first_column_xlsx(file_bytes)
    elif name.endswith(".csv"):
        cells = _first_column_csv(file_bytes)
    else:
        raise ValueError("仅支持 .xlsx 或 .csv 格式的文件")

    numbers: dict[str, None] = {}
    errors: list[RowError] = []
    for row_number, raw in cells:
        number = normalize_number(raw)
        if not is_valid_phone_number(number):
            errors.append(RowError(row_number, f"手机号码格式无效: {str(raw).strip()}"))
            continue
        numbers.setdefault(number, None)
    return list(numbers), errors
