from __future__ import annotations

from datetime import datetime

from flask import Blueprint, Response, current_app, request

from app.opsdesk.db import db_session
from app.opsdesk.modules.supplier_import.export import build_companies_csv, build_companies_workbook
from app.opsdesk.modules.supplier_import.service import (
    bulk_update,
    bulk_update_counts,
    delete_failed_company,
    delete_import_record,
    export_companies,
    failed_company_to_dict,
    import_companies,
    import_progress,
    list_failed_companies,
    list_import_history,
    retry_failed_companies,
)
from app.opsdesk.utils import fail, iso, json_body, offset_pagination, ok, parse_datetime, parse_int

# Registered at /api: the pipeline's routes do not share a common prefix.
bp = Blueprint("supplier_import", __name__)

MAX_HISTORY_LIMIT = 100
MAX_FAILED_LIMIT = 200


def _limit_offset(default_limit: int, max_limit: int) -> tuple[int, int]:
    limit = parse_int(request.args.get("limit"), default_limit, field="limit") or default_limit
    offset = parse_int(request.args.get("offset"), 0, field="offset") or 0
    return min(max(1, limit), max_limit), max(0, offset)


@bp.get("/supplier-import")
def supplier_import_info():
    return ok(
        message="供应商导入API",
        usage="POST {companies: [...], notes?} 导入公司数据，失败记录可通过 /api/retry-failed-companies 重试",
    )


@bp.post("/supplier-import")
def supplier_import():
    s = db_session()
    payload = json_body()
    companies = payload.get("companies")
    if not isinstance(companies, list):
        return fail("无效的数据格式", 400)
    notes = (payload.get("notes") or "").strip() or None
    result = import_companies(s, companies, notes=notes)
    s.commit()
    current_app.logger.info(
        "Supplier import %s: %s ok, %s failed",
        result["importRecordId"],
        result["successCount"],
        result["errorCount"],
    )
    return ok(**result)


@bp.get("/supplier-import/progress")
@bp.get("/supplier-import-progress")
def supplier_import_progress():
    s = db_session()
    record_id = parse_int(request.args.get("importRecordId"), field="importRecordId")
    if not record_id:
        return fail("缺少导入记录ID", 400)
    return ok(import_progress(s, record_id))


@bp.get("/supplier-export")
def supplier_export():
    s = db_session()
    fmt = (request.args.get("format") or "xlsx").strip().lower()
    if fmt not in ("xlsx", "csv"):
        return fail("不支持的导出格式", 400)
    rows = export_companies(s, (request.args.get("q") or "").strip() or None)
    if not rows:
        return fail("没有找到可导出的数据", 404)

    stamp = datetime.utcnow().strftime("%Y%m%d_%H%M%S")
    if fmt == "csv":
        body = build_companies_csv(rows)
        mimetype = "text/csv; charset=utf-8"
    else:
        body = build_companies_workbook(rows)
        mimetype = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    return Response(
        body,
        mimetype=mimetype,
        headers={"Content-Disposition": f'attachment; filename="companies_export_{stamp}.{fmt}"'},
    )


# ---------- History ----------
@bp.get("/import-history")
def import_history():
    s = db_session()
    limit, offset = _limit_offset(20, MAX_HISTORY_LIMIT)
    rows, total = list_import_history(s, limit=limit, offset=offset)
    return ok(rows, **offset_pagination(total, limit, offset))


@bp.delete("/import-history")
def import_history_delete():
    s = db_session()
    record_id = parse_int(request.args.get("id"))
    if not record_id:
        return fail("缺少导入记录ID", 400)
    delete_import_record(s, record_id)
    s.commit()
    return ok(message="导入记录已删除")


@bp.get("/failed-companies")
def failed_companies():
    s = db_session()
    limit, offset = _limit_offset(50, MAX_FAILED_LIMIT)
    record_id = parse_int(request.args.get("import_record_id"), field="import_record_id")
    rows, total = list_failed_companies(s, import_record_id=record_id, limit=limit, offset=offset)
    return ok([failed_company_to_dict(fc) for fc in rows], **offset_pagination(total, limit, offset))


@bp.delete("/failed-companies")
def failed_companies_delete():
    s = db_session()
    failed_id = parse_int(request.args.get("id"))
    if not failed_id:
        return fail("缺少公司记录ID", 400)
    delete_failed_company(s, failed_id)
    s.commit()
    return ok(message="失败公司记录已删除")


@bp.post("/retry-failed-companies")
def retry_failed():
    s = db_session()
    payload = json_body()
    record_id = parse_int(payload.get("importRecordId"))
    if not record_id:
        return fail("缺少导入记录ID", 400)
    raw_ids = payload.get("companyIds")
    if raw_ids is not None and not isinstance(raw_ids, list):
        return fail("companyIds 必须是数组", 400)
    company_ids = [i for i in (parse_int(x) for x in raw_ids or []) if i]
    result = retry_failed_companies(s, record_id, company_ids or None)
    s.commit()
    return ok(
        message=f"重试完成：成功 {result['successCount']} 条，失败 {result['errorCount']} 条",
        result=result,
    )


# ---------- Full refresh ----------
@bp.get("/bulk-update")
def bulk_update_preview():
    s = db_session()
    raw = (request.args.get("update_time") or request.args.get("updateTime") or "").strip()
    if not raw:
        return fail("缺少更新时间参数", 400)
    update_time = parse_datetime(raw)
    if update_time is None:
        return fail("更新时间格式无效", 400)
    return ok(preview={"updateTime": iso(update_time), **bulk_update_counts(s, update_time)})


@bp.post("/bulk-update")
def bulk_update_post():
    s = db_session()
    payload = json_body()
    raw = payload.get("updateTime")
    if not raw:
        return fail("缺少更新时间参数", 400)
    if not payload.get("confirm"):
        return fail("请确认执行全量更新操作", 400)
    update_time = parse_datetime(raw)
    if update_time is None:
        return fail("更新时间格式无效", 400)
    result = bulk_update(s, update_time)
    s.commit()
    current_app.logger.info(
        "Bulk update: removed %s companies, %s translations",
        result["deletedCompanyCount"],
        result["deletedLangCount"],
    )
    return ok(result=result)
