from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_

from app.opsdesk.audit import record_event
from app.opsdesk.constants import is_valid_phone_number
from app.opsdesk.errors import ConflictError, NotFoundError, ValidationError
from app.opsdesk.modules.phone_numbers.models import PhoneNumber
from app.opsdesk.modules.sms.models import (
    MAX_RESEND_ATTEMPTS,
    PENDING_STATUSES,
    STATUS_DELIVERED,
    STATUS_FAILED,
    STATUS_SENDING,
    SmsRecord,
)
from app.opsdesk.utils import clean_str, date_range_start, iso, parse_datetime

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.opsdesk.modules.phone_numbers.lookup import PhoneLookupService
    from app.opsdesk.modules.sms.gateway_client import SmsGatewayClient

logger = logging.getLogger(__name__)

NOT_FOUND_STATUS = "未找到"
UNKNOWN_CARRIER = "未知运营商"
UNKNOWN_TEMPLATE = "未知模板"

SMS_ERROR_MESSAGES = {
    "IS_CLOSE": "短信通道被关停，阿里云会自动剔除被关停通道，建议稍后重试",
    "PARAMS_ILLEGAL": "参数错误，请检查短信签名、短信文案或手机号码等参数是否传入正确",
    "MOBILE_NOT_ON_SERVICE": "手机号停机、空号、暂停服务、关机或不在服务区，请核实接收手机号码状态是否正常",
    "MOBILE_SEND_LIMIT": "单个号码日、月发送上限或频繁发送超限，为防止恶意调用已进行流控限制",
    "MOBILE_ACCOUNT_ABNORMAL": "用户账户异常、携号转网或欠费等，建议检查号码状态确保正常后重试",
    "MOBILE_IN_BLACK": "手机号在黑名单中，通常是用户已退订此签名或命中运营商平台黑名单规则",
    "MOBLLE_TERMINAL_ERROR": "手机终端问题，如内存满、SIM卡满、非法设备等，建议检查终端设备状况",
    "CONTENT_KEYWORD": "内容关键字拦截，运营商自动拦截潜在风险或高投诉的内容关键字",
    "INVALID_NUMBER": "号码状态异常，如关机、停机、空号、暂停服务、不在服务区或号码格式错误",
    "CONTENT_ERROR": "推广短信内容中必须带退订信息，请在短信结尾添加\"拒收请回复R\"",
    "REQUEST_SUCCESS": "请求成功但未收到运营商回执，大概率是接收用户状态异常导致",
    "SP_NOT_BY_INTER_SMS": "收件人未开通国际短信功能，请联系运营商开通后再发送",
    "SP_UNKNOWN_ERROR": "运营商未知错误，阿里云平台接收到的运营商回执报告为未知错误",
    "USER_REJECT": "接收用户已退订此业务或产品未开通，建议将此类用户剔除出发送清单",
    "NO_ROUTE": "当前短信内容无可用通道发送，发送的业务场景属于暂时无法支持的场景",
    "isv.UNSUPPORTED_CONTENT": "不支持的短信内容，包含繁体字、emoji表情符号或其他非常用字符",
    "isv.SMS_CONTENT_MISMATCH_TEMPLATE_TYPE": "短信内容和模板属性不匹配，通知模板无法发送推广营销文案",
    "isv.ONE_CODE_MULTIPLE_SIGN": "一码多签，当前传入的扩展码和签名与历史记录不一致",
    "isv.CODE_EXCEED_LIMIT": "自拓扩展码个数已超过上限，无法分配新的扩展码发送新签名",
    "isv.CODE_ERROR": "传入扩展码不可用，自拓扩展位数超限",
    "PORT_NOT_REGISTERED": "当前使用端口号尚未完成企业实名制报备流程，需要完成实名制报备",
    "isv.SIGN_SOURCE_ILLEGAL": "签名来源不支持，创建和修改签名时使用了不支持的签名来源",
    "DELIVERED": "已送达",
}


def describe_sms_error(code: str | None) -> str:
    if not code:
        return "无错误代码"
    return SMS_ERROR_MESSAGES.get(code, f"未知错误代码: {code}")


def _params_json(value: Any) -> str | None:
    if value in (None, "", {}, []):
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _parse_params(raw: str | None) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def sms_to_dict(r: SmsRecord) -> dict[str, Any]:
    return {
        "id": r.id,
        "out_id": r.out_id,
        "phone_number": r.phone_number,
        "carrier": r.carrier,
        "phone_note": r.phone_note,
        "template_code": r.template_code,
        "template_name": r.template_name,
        "template_params": _parse_params(r.template_params),
        "content": r.content,
        "send_date": r.send_date,
        "receive_date": r.receive_date,
        "status": r.status,
        "error_code": r.error_code,
        "error_message": describe_sms_error(r.error_code) if r.error_code else None,
        "retry_count": r.retry_count,
        "last_retry_at": iso(r.last_retry_at),
        "created_at": iso(r.created_at),
        "updated_at": iso(r.updated_at),
    }


@dataclass(frozen=True)
class SmsFilters:
    phone_number: str | None = None
    status: str | None = None
    search_term: str | None = None
    carrier: str | None = None
    template_name: str | None = None
    date_range: str | None = None


def filtered_query(s: "Session", f: SmsFilters, *, now: datetime | None = None):
    q = s.query(SmsRecord)
    if f.phone_number:
        q = q.filter(SmsRecord.phone_number == f.phone_number)
    if f.status and f.status != "all":
        q = q.filter(SmsRecord.status == f.status)
    if f.carrier and f.carrier != "all":
        q = q.filter(SmsRecord.carrier == f.carrier)
    if f.template_name and f.template_name != "all":
        q = q.filter(SmsRecord.template_name == f.template_name)
    if f.search_term:
        like = f"%{f.search_term}%"
        q = q.filter(
            or_(
                SmsRecord.phone_number.like(like),
                SmsRecord.content.ilike(like),
                SmsRecord.template_name.ilike(like),
                SmsRecord.out_id.like(like),
            )
        )
    start = date_range_start(f.date_range, now)
    if start is not None:
        q = q.filter(SmsRecord.created_at >= start)
    return q


def list_records(s: "Session", f: SmsFilters, *, limit: int, offset: int) -> tuple[list[SmsRecord], int]:
    q = filtered_query(s, f)
    total = q.count()
    rows = q.order_by(SmsRecord.created_at.desc(), SmsRecord.id.desc()).offset(offset).limit(limit).all()
    return rows, total


def get_by_out_id(s: "Session", out_id: str) -> SmsRecord:
    r = s.query(SmsRecord).filter(SmsRecord.out_id == out_id).one_or_none()
    if r is None:
        raise NotFoundError(f"未找到OutId为 {out_id} 的记录")
    return r


def validate_sms_payload(payload: dict) -> list[str]:
    errors = []
    if not clean_str(payload.get("out_id")) or not clean_str(payload.get("phone_number")):
        errors.append("缺少必需参数: out_id 和 phone_number")
    elif not is_valid_phone_number(str(payload["phone_number"]).strip()):
        errors.append("无效的手机号码格式")
    return errors


def _now_text(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")


def create_record(s: "Session", payload: dict) -> SmsRecord:
    out_id = str(payload["out_id"]).strip()
    if s.query(SmsRecord.id).filter(SmsRecord.out_id == out_id).first() is not None:
        raise ConflictError(f"OutId {out_id} 的记录已存在")
    now = datetime.utcnow()
    r = SmsRecord(
        out_id=out_id,
        phone_number=str(payload["phone_number"]).strip(),
        carrier=clean_str(payload.get("carrier")),
        phone_note=clean_str(payload.get("phone_note")),
        template_code=clean_str(payload.get("template_code")),
        template_name=clean_str(payload.get("template_name")),
        template_params=_params_json(payload.get("template_params")),
        content=clean_str(payload.get("content")),
        send_date=clean_str(payload.get("send_date")) or _now_text(),
        status=clean_str(payload.get("status")) or STATUS_SENDING,
        error_code=clean_str(payload.get("error_code")),
        retry_count=0,
        created_at=now,
        updated_at=now,
    )
    s.add(r)
    s.flush()
    record_event(s, action="sms.record.create", entity_type="SmsRecord", entity_id=out_id)
    return r


def update_record(s: "Session", out_id: str, payload: dict) -> SmsRecord:
    r = get_by_out_id(s, out_id)
    if payload.get("status"):
        r.status = str(payload["status"]).strip()
    if "error_code" in payload:
        r.error_code = clean_str(payload.get("error_code"))
    if payload.get("receive_date"):
        r.receive_date = str(payload["receive_date"]).strip()
    if payload.get("retry_count") is not None:
        try:
            r.retry_count = max(0, int(payload["retry_count"]))
        except (TypeError, ValueError):
            raise ValidationError("retry_count 必须是整数")
    if payload.get("last_retry_at"):
        r.last_retry_at = parse_datetime(payload["last_retry_at"])
    r.updated_at = datetime.utcnow()
    return r


def delete_record(s: "Session", *, record_id: int | None = None, out_id: str | None = None) -> None:
    if record_id:
        r = s.get(SmsRecord, record_id)
        if r is None:
            raise NotFoundError("记录不存在")
    else:
        r = get_by_out_id(s, out_id or "")
    s.delete(r)
    record_event(s, action="sms.record.delete", entity_type="SmsRecord", entity_id=r.out_id)


def batch_status(s: "Session", out_ids: list[str]) -> list[dict[str, Any]]:
    found = {r.out_id: r for r in s.query(SmsRecord).filter(SmsRecord.out_id.in_(out_ids)).all()}
    out = []
    for out_id in out_ids:
        r = found.get(out_id)
        if r is None:
            out.append({"outId": out_id, "status": NOT_FOUND_STATUS, "phoneNumber": ""})
            continue
        out.append(
            {
                "outId": r.out_id,
                "status": r.status,
                "errorCode": r.error_code,
                "receiveDate": r.receive_date,
                "sendDate": r.send_date,
                "phoneNumber": r.phone_number,
                "retryCount": r.retry_count,
                "lastRetryAt": iso(r.last_retry_at),
                "createdAt": iso(r.created_at),
            }
        )
    return out


# ---------- Sending ----------
def resolve_carrier(s: "Session", lookup: "PhoneLookupService | None", phone_number: str) -> tuple[str | None, str | None]:
    """Carrier and note for a number: stored directory first, then the lookup service."""
    stored = s.query(PhoneNumber).filter(PhoneNumber.number == phone_number).one_or_none()
    if stored is not None:
        return stored.carrier, stored.note
    if lookup is None:
        return None, None
    result = lookup.lookup(phone_number)
    if result.success and result.data is not None:
        return result.data.carrier, result.data.note
    logger.info("Carrier unresolved for %s: %s", phone_number, result.error)
    return None, None


def validate_send_payload(payload: dict) -> list[str]:
    errors = []
    number = str(payload.get("phoneNumber") or "").strip()
    if not number:
        errors.append("手机号码不能为空")
    elif not is_valid_phone_number(number):
        errors.append("请输入有效的手机号码格式")
    if not clean_str(payload.get("templateCode")):
        errors.append("模板代码不能为空")
    if not clean_str(payload.get("adminToken")):
        errors.append("缺少管理后台令牌")
    params = payload.get("templateParams")
    if params is not None and not isinstance(params, dict):
        errors.append("templateParams 必须是对象")
    return errors


def _gateway_payload(phone_number: str, template_code: str, params: Any, content: str | None) -> dict[str, Any]:
    return {
        "content": content or "",
        "params": params or {},
        "mobile": phone_number,
        "templateCode": template_code,
        "templateParams": params or {},
    }


def send_sms(
    s: "Session",
    gateway: "SmsGatewayClient",
    lookup: "PhoneLookupService | None",
    payload: dict,
) -> SmsRecord:
    """Send through the gateway and record the message; gateway errors propagate."""
    number = str(payload["phoneNumber"]).strip()
    template_code = str(payload["templateCode"]).strip()
    params = payload.get("templateParams") or {}
    content = clean_str(payload.get("content"))

    out_id = gateway.send(str(payload["adminToken"]).strip(), _gateway_payload(number, template_code, params, content))
    carrier, note = resolve_carrier(s, lookup, number)
    r = create_record(
        s,
        {
            "out_id": out_id,
            "phone_number": number,
            "carrier": carrier,
            "phone_note": note,
            "template_code": template_code,
            "template_name": payload.get("templateName"),
            "template_params": params,
            "content": content,
        },
    )
    logger.info("SMS sent to %s via template %s (out_id=%s)", number, template_code, out_id)
    return r


def resend_eligibility(r: SmsRecord) -> tuple[bool, str | None]:
    if r.status != STATUS_FAILED:
        return False, "只有发送失败的记录才能重发"
    if (r.retry_count or 0) >= MAX_RESEND_ATTEMPTS:
        return False, f"已达到最大重发次数({MAX_RESEND_ATTEMPTS}次)"
    return True, None


def list_resendable(s: "Session", *, limit: int, offset: int) -> tuple[list[SmsRecord], int]:
    q = s.query(SmsRecord).filter(SmsRecord.status == STATUS_FAILED, SmsRecord.retry_count < MAX_RESEND_ATTEMPTS)
    total = q.count()
    rows = q.order_by(SmsRecord.created_at.desc(), SmsRecord.id.desc()).offset(offset).limit(limit).all()
    return rows, total


def resend_sms(s: "Session", gateway: "SmsGatewayClient", out_id: str, admin_token: str) -> tuple[SmsRecord, SmsRecord]:
    original = get_by_out_id(s, out_id)
    allowed, reason = resend_eligibility(original)
    if not allowed:
        raise ValidationError(reason or "无法重发此记录")

    params = _parse_params(original.template_params)
    new_out_id = gateway.send(
        admin_token,
        _gateway_payload(original.phone_number, original.template_code or "", params, original.content),
    )
    now = datetime.utcnow()
    original.retry_count = (original.retry_count or 0) + 1
    original.last_retry_at = now
    original.updated_at = now
    fresh = create_record(
        s,
        {
            "out_id": new_out_id,
            "phone_number": original.phone_number,
            "carrier": original.carrier,
            "phone_note": original.phone_note,
            "template_code": original.template_code,
            "template_name": original.template_name,
            "template_params": original.template_params,
            "content": original.content,
        },
    )
    fresh.retry_count = original.retry_count
    record_event(
        s,
        action="sms.resend",
        entity_type="SmsRecord",
        entity_id=original.out_id,
        metadata={"new_out_id": new_out_id, "retry_count": original.retry_count},
    )
    return original, fresh


# ---------- Analytics ----------
def _pct(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _grouped(records: list[SmsRecord], key) -> list[dict[str, Any]]:
    groups: dict[str, list[int]] = {}
    for r in records:
        stats = groups.setdefault(key(r), [0, 0])
        stats[0] += 1
        if r.status == STATUS_DELIVERED:
            stats[1] += 1
    rows = [(name, count, ok_) for name, (count, ok_) in groups.items()]
    rows.sort(key=lambda x: -x[1])
    return [{"name": name, "count": count, "successRate": _pct(ok_, count)} for name, count, ok_ in rows]


def sms_analytics(s: "Session", range_key: str | None, *, now: datetime | None = None) -> dict[str, Any]:
    records = filtered_query(s, SmsFilters(date_range=range_key), now=now).all()
    total = len(records)
    delivered = sum(1 for r in records if r.status == STATUS_DELIVERED)
    failed = sum(1 for r in records if r.status == STATUS_FAILED)
    pending = sum(1 for r in records if r.status in PENDING_STATUSES)

    carrier_stats = [
        {"carrier": g.pop("name"), **g} for g in _grouped(records, lambda r: r.carrier or UNKNOWN_CARRIER)
    ]
    template_stats = [
        {"template": g.pop("name"), **g} for g in _grouped(records, lambda r: r.template_name or UNKNOWN_TEMPLATE)
    ]

    status_counts: dict[str, int] = {}
    hourly = [0] * 24
    daily: dict[str, dict[str, int]] = {}
    error_counts: dict[str, int] = {}
    for r in records:
        status_counts[r.status] = status_counts.get(r.status, 0) + 1
        if r.created_at is not None:
            hourly[r.created_at.hour] += 1
            day = daily.setdefault(r.created_at.date().isoformat(), {"sent": 0, "success": 0, "failed": 0})
            day["sent"] += 1
            if r.status == STATUS_DELIVERED:
                day["success"] += 1
            elif r.status == STATUS_FAILED:
                day["failed"] += 1
        if r.status == STATUS_FAILED and r.error_code:
            error_counts[r.error_code] = error_counts.get(r.error_code, 0) + 1

    return {
        "totalSms": total,
        "successCount": delivered,
        "failedCount": failed,
        "pendingCount": pending,
        "successRate": _pct(delivered, total),
        "failureRate": _pct(failed, total),
        "carrierStats": carrier_stats,
        "templateStats": template_stats,
        "statusBreakdown": [
            {"status": status, "count": count, "percentage": _pct(count, total)}
            for status, count in sorted(status_counts.items(), key=lambda x: -x[1])
        ],
        "hourlyStats": [{"hour": h, "count": c} for h, c in enumerate(hourly)],
        "dailyStats": [{"date": d, **v} for d, v in sorted(daily.items())],
        "failureReasons": [
            {
                "errorCode": code,
                "count": count,
                "percentage": _pct(count, failed),
                "description": describe_sms_error(code),
            }
            for code, count in sorted(error_counts.items(), key=lambda x: -x[1])
        ],
    }
