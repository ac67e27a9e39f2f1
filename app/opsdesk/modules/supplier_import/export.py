from __future__ import annotations

import csv
import io
from typing import Any

from openpyxl import Workbook
from openpyxl.styles import Font

# (row key, column header)
EXPORT_COLUMNS = [
    ("company_id", "公司ID"),
    ("company_no", "公司编号"),
    ("name", "公司名称"),
    ("name_en", "公司名称(英文)"),
    ("country", "国家"),
    ("province", "省份"),
    ("province_en", "省份(英文)"),
    ("city", "城市"),
    ("city_en", "城市(英文)"),
    ("county", "县区"),
    ("county_en", "县区(英文)"),
    ("address", "地址"),
    ("address_en", "地址(英文)"),
    ("business_scope", "经营范围"),
    ("business_scope_en", "经营范围(英文)"),
    ("contact_person", "联系人"),
    ("contact_person_en", "联系人(英文)"),
    ("contact_person_title", "联系人职位"),
    ("contact_person_title_en", "联系人职位(英文)"),
    ("mobile", "手机"),
    ("phone", "电话"),
    ("email", "邮箱"),
    ("intro", "公司简介"),
    ("intro_en", "公司简介(英文)"),
    ("whats_app", "WhatsApp"),
    ("fax", "传真"),
    ("postal_code", "邮编"),
    ("company_birth", "成立年份"),
    ("is_verified", "是否认证"),
    ("homepage", "主页"),
]


def _values(row: dict[str, Any]) -> list:
    out = []
    for key, _ in EXPORT_COLUMNS:
        value = row.get(key)
        if key == "is_verified":
            value = "是" if value else "否"
        out.append("" if value is None else value)
    return out


def build_companies_workbook(rows: list[dict[str, Any]]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "供应商数据"
    ws.append([header for _, header in EXPORT_COLUMNS])
    for cell in ws[1]:
        cell.font = Font(bold=True)
    for row in rows:
        ws.append(_values(row))
    for idx in range(1, len(EXPORT_COLUMNS) + 1):
        ws.column_dimensions[ws.cell(row=1, column=idx).column_letter].width = 18
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def build_companies_csv(rows: list[dict[str, Any]]) -> bytes:
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow([header for _, header in EXPORT_COLUMNS])
    writer.writerows(_values(row) for row in rows)
    return ("\ufeff" + buf.getvalue()).encode("utf-8")
