from __future__ import annotations

from flask import Blueprint, current_app, request

from app.opsdesk.db import db_session
from app.opsdesk.modules.sms.gateway_client import SmsGatewayClient, SmsGatewayError
from app.opsdesk.modules.sms.service import (
    SmsFilters,
    batch_status,
    create_record,
    delete_record,
    get_by_out_id,
    list_records,
    list_resendable,
    resend_eligibility,
    resend_sms,
    send_sms,
    sms_analytics,
    sms_to_dict,
    update_record,
    validate_send_payload,
    validate_sms_payload,
)
from app.opsdesk.utils import fail, json_body, offset_pagination, ok, parse_int

# Registered at /api alongside /sms-status, /sms and /analytics.
bp = Blueprint("sms", __name__)

MAX_LIST_LIMIT = 200
MAX_BATCH_STATUS = 50


def sms_gateway() -> SmsGatewayClient:
    return current_app.extensions["sms_gateway"]


def _limit_offset(default_limit: int, max_limit: int) -> tuple[int, int]:
    limit = parse_int(request.args.get("limit"), default_limit, field="limit") or default_limit
    offset = parse_int(request.args.get("offset"), 0, field="offset") or 0
    return min(max(1, limit), max_limit), max(0, offset)


def _arg(*names: str) -> str | None:
    for name in names:
        value = (request.args.get(name) or "").strip()
        if value:
            return value
    return None


@bp.get("/sms-records")
def sms_records_list():
    s = db_session()
    out_id = _arg("out_id")
    if out_id:
        return ok(sms_to_dict(get_by_out_id(s, out_id)))

    filters = SmsFilters(
        phone_number=_arg("phoneNumber"),
        status=_arg("status", "statusFilter"),
        search_term=_arg("searchTerm"),
        carrier=_arg("carrier", "carrierFilter"),
        template_name=_arg("templateName", "templateFilter"),
        date_range=_arg("dateRange", "dateFilter"),
    )
    limit, offset = _limit_offset(100, MAX_LIST_LIMIT)
    rows, total = list_records(s, filters, limit=limit, offset=offset)
    return ok([sms_to_dict(r) for r in rows], **offset_pagination(total, limit, offset))


@bp.post("/sms-records")
def sms_records_create():
    s = db_session()
    payload = json_body()
    errors = validate_sms_payload(payload)
    if errors:
        return fail(errors[0], 400)
    r = create_record(s, payload)
    s.commit()
    return ok(sms_to_dict(r), status=201, id=r.id)


@bp.put("/sms-records")
def sms_records_update():
    s = db_session()
    payload = json_body()
    out_id = str(payload.get("out_id") or "").strip()
    if not out_id:
        return fail("缺少必需参数: out_id", 400)
    r = update_record(s, out_id, payload)
    s.commit()
    return ok(sms_to_dict(r), message="记录更新成功")


@bp.delete("/sms-records")
def sms_records_delete():
    s = db_session()
    record_id = parse_int(request.args.get("id"))
    out_id = _arg("out_id")
    if not record_id and not out_id:
        return fail("缺少必需参数: id 或 out_id", 400)
    delete_record(s, record_id=record_id, out_id=out_id)
    s.commit()
    return ok(message="记录删除成功")


@bp.post("/sms-status/batch")
def sms_status_batch():
    s = db_session()
    payload = json_body()
    out_ids = payload.get("outIds")
    if not isinstance(out_ids, list) or not out_ids:
        return fail("请提供有效的outIds数组", 400)
    if len(out_ids) > MAX_BATCH_STATUS:
        return fail(f"单次查询SMS数量不能超过{MAX_BATCH_STATUS}个", 400)
    ids = [str(x).strip() for x in out_ids if str(x or "").strip()]
    if not ids:
        return fail("请提供有效的outIds数组", 400)
    results = batch_status(s, ids)
    return ok(results, message=f"查询完成，共 {len(results)} 条")


@bp.post("/sms/send")
def sms_send():
    s = db_session()
    payload = json_body()
    errors = validate_send_payload(payload)
    if errors:
        return fail(errors[0], 400)
    try:
        r = send_sms(s, sms_gateway(), current_app.extensions.get("phone_lookup"), payload)
    except SmsGatewayError as e:
        current_app.logger.warning("SMS gateway error for %s: %s", payload.get("phoneNumber"), e)
        return fail(str(e), 502)
    s.commit()
    return ok(sms_to_dict(r), message=f"发送成功，OutId: {r.out_id}", outId=r.out_id)


@bp.get("/sms-records/resend")
def sms_resendable():
    s = db_session()
    limit, offset = _limit_offset(20, MAX_LIST_LIMIT)
    rows, total = list_resendable(s, limit=limit, offset=offset)
    data = []
    for r in rows:
        allowed, reason = resend_eligibility(r)
        data.append({**sms_to_dict(r), "can_resend": allowed, "resend_reason": reason})
    return ok(data, **offset_pagination(total, limit, offset))


@bp.post("/sms-records/resend")
def sms_resend():
    s = db_session()
    payload = json_body()
    out_id = str(payload.get("out_id") or "").strip()
    if not out_id:
        return fail("缺少必需参数: out_id", 400)
    admin_token = str(payload.get("admin_token") or "").strip()
    if not admin_token:
        return fail("缺少管理后台令牌", 400)
    try:
        original, fresh = resend_sms(s, sms_gateway(), out_id, admin_token)
    except SmsGatewayError as e:
        current_app.logger.warning("SMS resend failed for %s: %s", out_id, e)
        return fail(str(e), 502)
    s.commit()
    return ok(
        {
            "original_record": sms_to_dict(original),
            "new_record": sms_to_dict(fresh),
            "new_out_id": fresh.out_id,
            "retry_count": original.retry_count,
        },
        message=f"重发成功，新OutId: {fresh.out_id}",
    )


@bp.get("/analytics")
def analytics():
    s = db_session()
    range_key = (request.args.get("range") or "week").strip().lower()
    if range_key not in ("today", "week", "month", "all"):
        return fail("range 参数无效，可选: today/week/month/all", 400)
    return ok(sms_analytics(s, range_key))
