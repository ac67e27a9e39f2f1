from __future__ import annotations

import logging
import re
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable

from sqlalchemy import String, func, or_, select
from sqlalchemy.exc import DataError, IntegrityError

from app.opsdesk.audit import record_event
from app.opsdesk.errors import NotFoundError, ValidationError
from app.opsdesk.modules.supplier_import.models import (
    DEFAULT_LANGUAGE,
    FailedCompany,
    ImportRecord,
    SellerCompany,
    SellerCompanyLang,
)
from app.opsdesk.utils import iso

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

COMPANY_FIELDS = (
    "company_no",
    "name",
    "country",
    "province",
    "city",
    "county",
    "address",
    "business_scope",
    "contact_person",
    "contact_person_title",
    "mobile",
    "phone",
    "email",
    "intro",
    "whats_app",
    "fax",
    "postal_code",
    "homepage",
)
LANG_FIELDS = (
    "name",
    "province",
    "city",
    "county",
    "address",
    "business_scope",
    "contact_person",
    "contact_person_title",
    "intro",
)
FAILED_FIELDS = (
    "company_id",
    *COMPANY_FIELDS,
    *(f"{f}_en" for f in LANG_FIELDS),
    "company_birth",
    "is_verified",
)
FIELD_LABELS = {
    "name": "公司名称",
    "province": "省份",
    "city": "城市",
    "county": "县区",
    "address": "地址",
    "business_scope": "经营范围",
    "contact_person": "联系人",
    "contact_person_title": "联系人职位",
    "intro": "公司简介",
}


def _column_limits(model) -> dict[str, int]:
    return {
        c.name: c.type.length
        for c in model.__table__.columns
        if isinstance(c.type, String) and c.type.length
    }


COMPANY_LIMITS = _column_limits(SellerCompany)
LANG_LIMITS = _column_limits(SellerCompanyLang)


def _label(field: str) -> str:
    base = field[:-3] if field.endswith("_en") else field
    label = FIELD_LABELS.get(base, base)
    return f"{label}(英文)" if field.endswith("_en") else label


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _int_or_none(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def friendly_db_error(exc: Exception) -> str:
    """Translate a driver error into a message an operator can act on."""
    if isinstance(exc, IntegrityError):
        return "数据重复，该记录已存在"
    raw = str(getattr(exc, "orig", None) or exc)
    if isinstance(exc, DataError) and "too long" in raw.lower():
        m = re.search(r"column ['\"]?(\w+)['\"]?", raw)
        field = _label(m.group(1)) if m else "某个字段"
        return f"{field}信息过长，请检查数据长度或联系管理员调整数据库字段限制"
    return f"数据库操作失败：{raw}" if raw else "数据库操作失败"


def company_errors(data: Any) -> list[str]:
    if not isinstance(data, dict):
        return ["无效的公司数据"]
    errors = []
    if _int_or_none(data.get("company_id")) is None:
        errors.append("缺少有效的公司ID")
    if not _text(data.get("name")):
        errors.append("公司名称不能为空")
    for field, limit in COMPANY_LIMITS.items():
        value = _text(data.get(field))
        if value and len(value) > limit:
            errors.append(f"{_label(field)}信息过长（最多{limit}个字符）")
    for field, limit in LANG_LIMITS.items():
        value = _text(data.get(f"{field}_en"))
        if value and len(value) > limit:
            errors.append(f"{_label(field + '_en')}信息过长（最多{limit}个字符）")
    return errors


def upsert_company(s: "Session", data: dict) -> SellerCompany:
    """Insert or update the company row and its en-US translation."""
    company_id = int(str(data["company_id"]).strip())
    now = datetime.utcnow()
    company = s.query(SellerCompany).filter(SellerCompany.company_id == company_id).one_or_none()
    if company is None:
        company = SellerCompany(company_id=company_id)
        s.add(company)
    for field in COMPANY_FIELDS:
        setattr(company, field, _text(data.get(field)))
    company.company_birth = _int_or_none(data.get("company_birth"))
    company.is_verified = 1 if _int_or_none(data.get("is_verified")) else 0
    company.updated_at = now

    lang = (
        s.query(SellerCompanyLang)
        .filter(SellerCompanyLang.company_id == company_id, SellerCompanyLang.language_code == DEFAULT_LANGUAGE)
        .one_or_none()
    )
    if lang is None:
        lang = SellerCompanyLang(company_id=company_id, language_code=DEFAULT_LANGUAGE)
        s.add(lang)
    for field in LANG_FIELDS:
        setattr(lang, field, _text(data.get(f"{field}_en")))
    lang.updated_at = now
    return company


def _try_upsert(s: "Session", data: Any) -> str | None:
    """Write one company inside a SAVEPOINT; returns the error message or None."""
    errors = company_errors(data)
    if errors:
        return "；".join(errors)
    try:
        with s.begin_nested():
            upsert_company(s, data)
    except (IntegrityError, DataError) as e:
        return friendly_db_error(e)
    return None


def _failed_from_payload(import_record_id: int, data: Any, message: str) -> FailedCompany:
    data = data if isinstance(data, dict) else {}
    fc = FailedCompany(import_record_id=import_record_id, error_message=message, retry_count=0, created_at=datetime.utcnow())
    for field in FAILED_FIELDS:
        value = data.get(field)
        if field in ("company_id", "is_verified"):
            setattr(fc, field, _int_or_none(value))
        else:
            setattr(fc, field, _text(value))
    return fc


def failed_to_payload(fc: FailedCompany) -> dict[str, Any]:
    return {field: getattr(fc, field) for field in FAILED_FIELDS}


def _describe(data: Any) -> str:
    if isinstance(data, dict) and data.get("company_id") not in (None, ""):
        return f"公司ID {data['company_id']}"
    return "未知公司"


def import_companies(
    s: "Session",
    companies: list,
    *,
    notes: str | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> dict[str, Any]:
    started = clock()
    record = ImportRecord(
        import_date=datetime.utcnow(),
        total_processed=len(companies),
        status="processing",
        notes=notes or f"开始导入 {len(companies)} 条公司记录",
        created_at=datetime.utcnow(),
    )
    s.add(record)
    s.flush()

    success, errors = 0, []
    for data in companies:
        message = _try_upsert(s, data)
        if message is None:
            success += 1
            continue
        errors.append(f"{_describe(data)}: {message}")
        s.add(_failed_from_payload(record.id, data, message))

    total = len(companies)
    record.success_count = success
    record.error_count = total - success
    record.success_rate = round(success / total * 100, 2) if total else 0.0
    record.duration_seconds = round(clock() - started, 3)
    record.status = "completed"
    if not notes:
        record.notes = f"导入完成：成功 {success} 条，失败 {total - success} 条"
    record_event(
        s,
        action="supplier.import",
        entity_type="ImportRecord",
        entity_id=str(record.id),
        metadata={"total": total, "success": success, "failed": total - success},
    )
    logger.info("Supplier import %s finished: %s/%s ok", record.id, success, total)
    return {
        "totalProcessed": total,
        "successCount": success,
        "errorCount": total - success,
        "errors": errors,
        "importRecordId": record.id,
    }


def import_record_to_dict(r: ImportRecord, failed_count: int | None = None) -> dict[str, Any]:
    d = {
        "id": r.id,
        "import_date": iso(r.import_date),
        "total_processed": r.total_processed,
        "success_count": r.success_count,
        "error_count": r.error_count,
        "success_rate": r.success_rate,
        "duration_seconds": r.duration_seconds,
        "status": r.status,
        "notes": r.notes,
        "created_at": iso(r.created_at),
    }
    if failed_count is not None:
        d["failed_count"] = failed_count
    return d


def failed_company_to_dict(fc: FailedCompany) -> dict[str, Any]:
    d = {"id": fc.id, "import_record_id": fc.import_record_id, **failed_to_payload(fc)}
    d.update(
        {
            "error_message": fc.error_message,
            "retry_count": fc.retry_count,
            "last_retry_at": iso(fc.last_retry_at),
            "created_at": iso(fc.created_at),
        }
    )
    return d


def get_import_record(s: "Session", record_id: int) -> ImportRecord:
    r = s.get(ImportRecord, record_id)
    if r is None:
        raise NotFoundError("导入记录不存在")
    return r


def import_progress(s: "Session", record_id: int) -> dict[str, Any]:
    r = get_import_record(s, record_id)
    failed = s.query(func.count(FailedCompany.id)).filter(FailedCompany.import_record_id == r.id).scalar() or 0
    return {
        **import_record_to_dict(r, failed),
        "completed": r.status != "processing",
        "progress": 100 if r.status != "processing" else 0,
    }


def list_import_history(s: "Session", *, limit: int, offset: int) -> tuple[list[dict[str, Any]], int]:
    total = s.query(func.count(ImportRecord.id)).scalar() or 0
    failed_counts = (
        s.query(FailedCompany.import_record_id, func.count(FailedCompany.id).label("failed_count"))
        .group_by(FailedCompany.import_record_id)
        .subquery()
    )
    rows = (
        s.query(ImportRecord, failed_counts.c.failed_count)
        .outerjoin(failed_counts, failed_counts.c.import_record_id == ImportRecord.id)
        .order_by(ImportRecord.import_date.desc(), ImportRecord.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return [import_record_to_dict(r, count or 0) for r, count in rows], total


def delete_import_record(s: "Session", record_id: int) -> None:
    r = get_import_record(s, record_id)
    s.delete(r)
    record_event(s, action="supplier.import.delete", entity_type="ImportRecord", entity_id=str(record_id))


def list_failed_companies(
    s: "Session", *, import_record_id: int | None, limit: int, offset: int
) -> tuple[list[FailedCompany], int]:
    q = s.query(FailedCompany)
    if import_record_id:
        q = q.filter(FailedCompany.import_record_id == import_record_id)
    total = q.count()
    rows = q.order_by(FailedCompany.created_at.desc(), FailedCompany.id.desc()).offset(offset).limit(limit).all()
    return rows, total


def delete_failed_company(s: "Session", failed_id: int) -> None:
    fc = s.get(FailedCompany, failed_id)
    if fc is None:
        raise NotFoundError("失败公司记录不存在")
    s.delete(fc)
    record_event(s, action="supplier.failed.delete", entity_type="FailedCompany", entity_id=str(failed_id))


def refresh_record_counters(s: "Session", record: ImportRecord) -> None:
    s.flush()
    remaining = s.query(func.count(FailedCompany.id)).filter(FailedCompany.import_record_id == record.id).scalar() or 0
    total = record.total_processed or 0
    record.error_count = remaining
    record.success_count = max(0, total - remaining)
    record.success_rate = round(record.success_count / total * 100, 2) if total else 0.0
    record.status = "completed"


def retry_failed_companies(s: "Session", import_record_id: int, company_ids: list[int] | None = None) -> dict[str, Any]:
    """
    Replay stored failures. Successful rows are removed from the failure list;
    the rest keep their data with a fresh error and a bumped retry_count.
    """
    record = get_import_record(s, import_record_id)
    q = s.query(FailedCompany).filter(FailedCompany.import_record_id == record.id)
    if company_ids:
        q = q.filter(FailedCompany.id.in_(company_ids))
    failed = q.order_by(FailedCompany.id.asc()).all()
    if not failed:
        raise ValidationError("没有需要重试的失败记录")

    success, errors, still_failed = 0, [], []
    now = datetime.utcnow()
    for fc in failed:
        data = failed_to_payload(fc)
        message = _try_upsert(s, data)
        if message is None:
            success += 1
            s.delete(fc)
            continue
        fc.retry_count = (fc.retry_count or 0) + 1
        fc.last_retry_at = now
        fc.error_message = message
        errors.append(f"{_describe(data)}: {message}")
        still_failed.append(fc.id)

    refresh_record_counters(s, record)
    record_event(
        s,
        action="supplier.import.retry",
        entity_type="ImportRecord",
        entity_id=str(record.id),
        metadata={"retried": len(failed), "success": success},
    )
    return {
        "totalProcessed": len(failed),
        "successCount": success,
        "errorCount": len(failed) - success,
        "errors": errors,
        "stillFailedIds": still_failed,
    }


def export_companies(s: "Session", q: str | None = None) -> list[dict[str, Any]]:
    query = s.query(SellerCompany)
    if q:
        like = f"%{q}%"
        query = query.filter(
            or_(
                SellerCompany.name.ilike(like),
                SellerCompany.company_no.ilike(like),
                SellerCompany.contact_person.ilike(like),
                SellerCompany.mobile.like(like),
            )
        )
    companies = query.order_by(SellerCompany.company_id.asc()).all()
    if not companies:
        return []
    langs = {
        l.company_id: l
        for l in s.query(SellerCompanyLang)
        .filter(
            SellerCompanyLang.company_id.in_([c.company_id for c in companies]),
            SellerCompanyLang.language_code == DEFAULT_LANGUAGE,
        )
        .all()
    }
    rows = []
    for c in companies:
        lang = langs.get(c.company_id)
        row = {"company_id": c.company_id}
        for field in COMPANY_FIELDS:
            row[field] = getattr(c, field)
        for field in LANG_FIELDS:
            row[f"{field}_en"] = getattr(lang, field) if lang else None
        row["company_birth"] = c.company_birth
        row["is_verified"] = c.is_verified
        rows.append(row)
    return rows


# ---------- Full refresh ----------
def _stale_clause(update_time: datetime):
    return or_(SellerCompany.updated_at < update_time, SellerCompany.updated_at.is_(None))


def bulk_update_counts(s: "Session", update_time: datetime) -> dict[str, int]:
    stale_ids = select(SellerCompany.company_id).where(_stale_clause(update_time))
    company_count = s.query(func.count(SellerCompany.id)).filter(_stale_clause(update_time)).scalar() or 0
    lang_count = (
        s.query(func.count(SellerCompanyLang.id))
        .filter(SellerCompanyLang.company_id.in_(stale_ids))
        .scalar()
        or 0
    )
    total_companies = s.query(func.count(SellerCompany.id)).scalar() or 0
    total_langs = s.query(func.count(SellerCompanyLang.id)).scalar() or 0
    return {
        "toDeleteCompanyCount": company_count,
        "toDeleteLangCount": lang_count,
        "toKeepCompanyCount": total_companies - company_count,
        "toKeepLangCount": total_langs - lang_count,
        "totalCompanyCount": total_companies,
        "totalLangCount": total_langs,
        "deletePercentage": round(company_count / total_companies * 100) if total_companies else 0,
    }


def bulk_update(s: "Session", update_time: datetime) -> dict[str, Any]:
    """
    Full refresh: drop every company (and its translations) not touched since update_time.
    Runs in the caller's transaction.
    """
    counts = bulk_update_counts(s, update_time)
    stale_ids = select(SellerCompany.company_id).where(_stale_clause(update_time))
    s.query(SellerCompanyLang).filter(SellerCompanyLang.company_id.in_(stale_ids)).delete(synchronize_session=False)
    s.query(SellerCompany).filter(_stale_clause(update_time)).delete(synchronize_session=False)
    s.flush()

    deleted_companies = counts["toDeleteCompanyCount"]
    deleted_langs = counts["toDeleteLangCount"]
    record_event(
        s,
        action="supplier.bulk_update",
        entity_type="SellerCompany",
        metadata={"update_time": iso(update_time), "companies": deleted_companies, "langs": deleted_langs},
    )
    logger.info("Bulk update before %s removed %s companies, %s translations", update_time, deleted_companies, deleted_langs)
    return {
        "deletedCompanyCount": deleted_companies,
        "deletedLangCount": deleted_langs,
        "remainingCompanyCount": s.query(func.count(SellerCompany.id)).scalar() or 0,
        "remainingLangCount": s.query(func.count(SellerCompanyLang.id)).scalar() or 0,
        "updateTime": iso(update_time),
        "message": f"全量更新完成，删除了 {deleted_companies} 条公司记录和 {deleted_langs} 条多语言记录",
    }
