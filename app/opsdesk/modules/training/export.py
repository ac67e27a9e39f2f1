from __future__ import annotations

import csv
import io
import json
from typing import TYPE_CHECKING

from openpyxl import Workbook
from openpyxl.styles import Font

if TYPE_CHECKING:
    from app.opsdesk.modules.training.models import TrainingRecord


EXPORT_HEADERS = [
    "序号",
    "员工姓名",
    "试卷名称",
    "试卷ID",
    "得分",
    "正确题数",
    "错误题数",
    "正确率",
    "是否通过",
    "答题用时",
    "开始时间",
    "完成时间",
    "IP地址",
]
COLUMN_WIDTHS = [6, 14, 28, 8, 8, 10, 10, 10, 10, 12, 20, 20, 16]


def _format_duration(seconds: int | None) -> str:
    if seconds is None:
        return "未知"
    return f"{seconds // 60}分{seconds % 60}秒"


def _correct_count(raw_answers: str) -> int:
    try:
        details = json.loads(raw_answers or "[]")
    except ValueError:
        return 0
    return sum(1 for d in details if isinstance(d, dict) and d.get("isCorrect"))


def export_rows(records: list["TrainingRecord"], pass_score: int) -> list[list]:
    rows = []
    for idx, r in enumerate(records, start=1):
        correct = _correct_count(r.answers)
        total = r.total_questions or 0
        rows.append(
            [
                idx,
                r.employee_name,
                r.question_set.name if r.question_set else "未知试卷",
                r.set_id,
                r.score,
                correct,
                max(0, total - correct),
                f"{round(correct / total * 100) if total else 0}%",
                "是" if r.score >= pass_score else "否",
                _format_duration(r.session_duration),
                r.started_at.strftime("%Y-%m-%d %H:%M:%S") if r.started_at else "未知",
                r.completed_at.strftime("%Y-%m-%d %H:%M:%S") if r.completed_at else "未知",
                r.ip_address or "未知",
            ]
        )
    return rows


def build_records_workbook(records: list["TrainingRecord"], pass_score: int, statistics: dict) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "培训记录"
    ws.append(EXPORT_HEADERS)
    for cell in ws[1]:
        cell.font = Font(bold=True)
    for row in export_rows(records, pass_score):
        ws.append(row)
    for idx, width in enumerate(COLUMN_WIDTHS, start=1):
        ws.column_dimensions[ws.cell(row=1, column=idx).column_letter].width = width

    summary = wb.create_sheet("统计汇总")
    summary.append(["统计项", "数值"])
    summary.append(["总记录数", statistics.get("totalRecords", 0)])
    summary.append(["平均分", statistics.get("averageScore", 0)])
    summary.append(["合格分数线", pass_score])
    summary.append(["通过人次", statistics.get("passedCount", 0)])
    summary.append(["通过率", f"{statistics.get('passRate', 0)}%"])
    for label, count in (statistics.get("scoreDistribution") or {}).items():
        summary.append([f"分数段 {label}", count])

    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def build_records_csv(records: list["TrainingRecord"], pass_score: int) -> bytes:
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(EXPORT_HEADERS)
    writer.writerows(export_rows(records, pass_score))
    # BOM so Excel opens the file as UTF-8
    return ("\ufeff" + buf.getvalue()).encode("utf-8")
