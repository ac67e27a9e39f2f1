from __future__ import annotations

from flask import Blueprint, current_app, request

from app.opsdesk.constants import is_valid_phone_number
from app.opsdesk.db import db_session
from app.opsdesk.modules.phone_numbers.lookup import PhoneLookupService
from app.opsdesk.modules.phone_numbers.models import PhoneNumber
from app.opsdesk.modules.phone_numbers.parsers import ALLOWED_EXTENSIONS, MAX_UPLOAD_BYTES, parse_phone_upload
from app.opsdesk.modules.phone_numbers.service import (
    create_phone_number,
    delete_phone_number,
    ensure_importable,
    get_by_number,
    import_message,
    import_phone_numbers,
    list_carriers,
    list_phone_numbers,
    phone_to_dict,
    search_phone_numbers,
    update_phone_number,
    validate_phone_payload,
)
from app.opsdesk.utils import fail, json_body, offset_pagination, ok, parse_int

bp = Blueprint("phone_numbers", __name__)

MAX_LIST_LIMIT = 100
MAX_SEARCH_LIMIT = 50
MAX_BATCH_LOOKUP = 50


def lookup_service() -> PhoneLookupService:
    return current_app.extensions["phone_lookup"]


def _limit_offset(default_limit: int, max_limit: int) -> tuple[int, int]:
    limit = parse_int(request.args.get("limit"), default_limit, field="limit") or default_limit
    offset = parse_int(request.args.get("offset"), 0, field="offset") or 0
    return min(max(1, limit), max_limit), max(0, offset)


@bp.get("")
def phone_list():
    s = db_session()
    number = (request.args.get("number") or "").strip()
    if number:
        return ok(phone_to_dict(get_by_number(s, number)))

    limit, offset = _limit_offset(MAX_LIST_LIMIT, MAX_LIST_LIMIT)
    rows, total = list_phone_numbers(s, limit=limit, offset=offset)
    return ok([phone_to_dict(p) for p in rows], **offset_pagination(total, limit, offset))


@bp.post("")
def phone_create():
    s = db_session()
    payload = json_body()
    errors = validate_phone_payload(payload)
    if errors:
        return fail(errors[0], 400)
    p = create_phone_number(s, payload)
    s.commit()
    return ok(phone_to_dict(p), message="添加成功", status=201)


@bp.put("")
def phone_update():
    s = db_session()
    payload = json_body()
    phone_id = parse_int(payload.get("id"))
    if not phone_id:
        return fail("ID不能为空", 400)
    errors = validate_phone_payload(payload, partial=True)
    if errors:
        return fail(errors[0], 400)
    p = s.get(PhoneNumber, phone_id)
    if p is None:
        return fail("手机号码不存在", 404)
    update_phone_number(s, p, payload)
    s.commit()
    return ok(phone_to_dict(p), message="更新成功")


@bp.delete("")
def phone_delete():
    s = db_session()
    phone_id = parse_int(request.args.get("id"))
    if not phone_id:
        return fail("ID不能为空", 400)
    delete_phone_number(s, phone_id)
    s.commit()
    return ok(message="删除成功")


@bp.get("/search")
def phone_search():
    s = db_session()
    q = (request.args.get("q") or "").strip() or None
    carrier = (request.args.get("carrier") or "").strip() or None
    limit, offset = _limit_offset(20, MAX_SEARCH_LIMIT)
    rows, total = search_phone_numbers(s, q=q, carrier=carrier, limit=limit, offset=offset)
    return ok([phone_to_dict(p) for p in rows], **offset_pagination(total, limit, offset))


@bp.get("/carriers")
def phone_carriers():
    return ok(list_carriers(db_session()))


# ---------- Lookup ----------
@bp.post("/lookup")
def phone_lookup():
    payload = json_body()
    number = str(payload.get("phoneNumber") or "").strip()
    if not number:
        return fail("手机号码不能为空", 400)
    if not is_valid_phone_number(number):
        return fail("请输入有效的手机号码格式", 400)

    result = lookup_service().lookup(number)
    if not result.success or result.data is None:
        current_app.logger.warning("Carrier lookup failed for %s: %s", number, result.error)
        return fail(result.error or "查询运营商信息失败", 502)
    data = result.data.to_dict()
    data["provider"] = result.provider
    return ok(data)


@bp.post("/lookup/batch")
def phone_lookup_batch():
    payload = json_body()
    numbers = payload.get("phoneNumbers")
    if not isinstance(numbers, list) or not numbers:
        return fail("手机号码列表不能为空", 400)
    if len(numbers) > MAX_BATCH_LOOKUP:
        return fail(f"一次最多只能查询{MAX_BATCH_LOOKUP}个手机号码", 400)
    invalid = [str(n) for n in numbers if not isinstance(n, str) or not is_valid_phone_number(n.strip())]
    if invalid:
        suffix = "..." if len(invalid) > 5 else ""
        return fail(f"以下手机号码格式无效: {', '.join(invalid[:5])}{suffix}", 400)

    batch = lookup_service().batch_lookup([n.strip() for n in numbers])
    return ok(
        {
            "results": {n: r.to_dict() for n, r in batch.results.items()},
            "totalCount": batch.total_count,
            "successCount": batch.success_count,
            "failureCount": batch.failure_count,
            "provider": batch.provider,
        }
    )


@bp.get("/lookup/status")
def lookup_status():
    return ok(lookup_service().status())


@bp.post("/lookup/status")
def lookup_set_tokens():
    payload = json_body()
    tokens = payload.get("tokens")
    if tokens is not None and not isinstance(tokens, dict):
        return fail("tokens 必须是对象", 400)
    updated = lookup_service().set_tokens(tokens or {})
    return ok(message="配置更新成功", updated=updated)


@bp.delete("/lookup/status")
def lookup_clear_cache():
    lookup_service().clear_cache()
    return ok(message="缓存清空成功")


# ---------- Import ----------
@bp.post("/import")
def phone_import():
    s = db_session()
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        return fail("请选择要导入的Excel文件", 400)
    if not upload.filename.lower().endswith(ALLOWED_EXTENSIONS):
        return fail("仅支持 .xlsx 或 .csv 格式的文件", 400)
    file_bytes = upload.read()
    if len(file_bytes) > MAX_UPLOAD_BYTES:
        return fail("文件大小不能超过10MB", 400)

    try:
        numbers, row_errors = parse_phone_upload(upload.filename, file_bytes)
    except ValueError as e:
        return fail(str(e), 400)
    except Exception as e:
        current_app.logger.warning("Unreadable phone upload %s: %s", upload.filename, e)
        return fail("文件解析失败，请检查文件格式", 400)

    ensure_importable(numbers)
    current_app.logger.info("Importing %s numbers from %s", len(numbers), upload.filename)
    progress = import_phone_numbers(s, numbers, lookup_service(), row_errors=[str(e) for e in row_errors])
    s.commit()
    return ok(progress, message=import_message(progress))
