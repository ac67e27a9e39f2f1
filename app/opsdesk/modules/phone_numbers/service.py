from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError

from app.opsdesk.audit import record_event
from app.opsdesk.constants import CARRIER_OTHER, VALID_CARRIERS, is_valid_phone_number
from app.opsdesk.errors import ConflictError, NotFoundError, ValidationError
from app.opsdesk.modules.phone_numbers.lookup.base import UNKNOWN
from app.opsdesk.modules.phone_numbers.models import PhoneNumber
from app.opsdesk.utils import clean_str, iso

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.opsdesk.modules.phone_numbers.lookup import PhoneLookupService

logger = logging.getLogger(__name__)

IMPORT_BATCH_SIZE = 5
IMPORT_BATCH_DELAY = 1.0


def phone_to_dict(p: PhoneNumber) -> dict[str, Any]:
    return {
        "id": p.id,
        "number": p.number,
        "carrier": p.carrier,
        "province": p.province,
        "city": p.city,
        "note": p.note,
        "created_at": iso(p.created_at),
        "updated_at": iso(p.updated_at),
    }


def validate_phone_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    number = payload.get("number")
    carrier = payload.get("carrier")
    if not partial or number is not None:
        if not number:
            errors.append("手机号码不能为空")
        elif not is_valid_phone_number(str(number).strip()):
            errors.append("无效的手机号码格式")
    if not partial or carrier is not None:
        if not carrier:
            errors.append("运营商不能为空")
        elif carrier not in VALID_CARRIERS:
            errors.append(f"无效的运营商类型，可选: {'/'.join(VALID_CARRIERS)}")
    return errors


def _number_taken(s: "Session", number: str, exclude_id: int | None = None) -> bool:
    q = s.query(PhoneNumber.id).filter(PhoneNumber.number == number)
    if exclude_id is not None:
        q = q.filter(PhoneNumber.id != exclude_id)
    return q.first() is not None


def list_phone_numbers(s: "Session", *, limit: int, offset: int) -> tuple[list[PhoneNumber], int]:
    q = s.query(PhoneNumber)
    total = q.count()
    rows = q.order_by(PhoneNumber.created_at.desc(), PhoneNumber.id.desc()).offset(offset).limit(limit).all()
    return rows, total


def get_by_number(s: "Session", number: str) -> PhoneNumber:
    p = s.query(PhoneNumber).filter(PhoneNumber.number == number).one_or_none()
    if p is None:
        raise NotFoundError("手机号码不存在")
    return p


def create_phone_number(s: "Session", payload: dict) -> PhoneNumber:
    number = str(payload["number"]).strip()
    if _number_taken(s, number):
        raise ConflictError("号码已存在")
    now = datetime.utcnow()
    p = PhoneNumber(
        number=number,
        carrier=payload["carrier"],
        province=clean_str(payload.get("province")),
        city=clean_str(payload.get("city")),
        note=clean_str(payload.get("note")),
        created_at=now,
        updated_at=now,
    )
    s.add(p)
    s.flush()
    record_event(s, action="phone.create", entity_type="PhoneNumber", entity_id=str(p.id), metadata={"number": number})
    return p


def update_phone_number(s: "Session", p: PhoneNumber, payload: dict) -> PhoneNumber:
    changes = {}
    if payload.get("number") is not None:
        number = str(payload["number"]).strip()
        if number != p.number:
            if _number_taken(s, number, exclude_id=p.id):
                raise ConflictError("号码已存在")
            changes["number"] = {"old": p.number, "new": number}
            p.number = number
    if payload.get("carrier") is not None and payload["carrier"] != p.carrier:
        changes["carrier"] = {"old": p.carrier, "new": payload["carrier"]}
        p.carrier = payload["carrier"]
    for name in ("province", "city", "note"):
        if name in payload:
            setattr(p, name, clean_str(payload.get(name)))
    p.updated_at = datetime.utcnow()
    record_event(s, action="phone.edit", entity_type="PhoneNumber", entity_id=str(p.id), metadata={"changes": changes})
    return p


def delete_phone_number(s: "Session", phone_id: int) -> None:
    p = s.get(PhoneNumber, phone_id)
    if p is None:
        raise NotFoundError("手机号码不存在")
    s.delete(p)
    record_event(s, action="phone.delete", entity_type="PhoneNumber", entity_id=str(phone_id), metadata={"number": p.number})


def search_phone_numbers(
    s: "Session", *, q: str | None, carrier: str | None, limit: int, offset: int
) -> tuple[list[PhoneNumber], int]:
    query = s.query(PhoneNumber)
    if q:
        like = f"%{q}%"
        query = query.filter(
            or_(
                PhoneNumber.number.like(like),
                PhoneNumber.province.ilike(like),
                PhoneNumber.city.ilike(like),
                PhoneNumber.note.ilike(like),
            )
        )
    if carrier:
        query = query.filter(PhoneNumber.carrier == carrier)
    total = query.count()
    rows = query.order_by(PhoneNumber.created_at.desc(), PhoneNumber.id.desc()).offset(offset).limit(limit).all()
    return rows, total


def list_carriers(s: "Session") -> list[str]:
    rows = (
        s.query(PhoneNumber.carrier)
        .filter(PhoneNumber.carrier.is_not(None), func.trim(PhoneNumber.carrier) != "")
        .distinct()
        .all()
    )
    return sorted(r[0] for r in rows)


def _known(value: str | None) -> str:
    return value if value and value != UNKNOWN else ""


def import_phone_numbers(
    s: "Session",
    numbers: list[str],
    lookup: "PhoneLookupService",
    *,
    row_errors: list[str] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Any]:
    """
    Insert numbers not already stored, looking up their carrier in small batches.

    Numbers are expected valid and de-duplicated. Lookup failures still insert
    the number with carrier 其他; only DB failures count as failed.
    """
    errors = list(row_errors or [])
    existing = {
        r[0] for r in s.query(PhoneNumber.number).filter(PhoneNumber.number.in_(numbers)).all()
    } if numbers else set()
    new_numbers = [n for n in numbers if n not in existing]
    progress = {
        "processed": 0,
        "total": len(new_numbers),
        "success": 0,
        "failed": 0,
        "skipped": len(existing),
        "errors": errors,
    }
    if not new_numbers:
        return progress

    for start in range(0, len(new_numbers), IMPORT_BATCH_SIZE):
        batch = new_numbers[start : start + IMPORT_BATCH_SIZE]
        results = lookup.batch_lookup(batch).results
        for number in batch:
            result = results.get(number)
            carrier, province, city = CARRIER_OTHER, "", ""
            if result is not None and result.success and result.data is not None:
                carrier = result.data.carrier or CARRIER_OTHER
                province = _known(result.data.province)
                city = _known(result.data.city)
            elif result is not None:
                logger.warning("Carrier lookup failed for %s: %s", number, result.error)

            now = datetime.utcnow()
            try:
                with s.begin_nested():
                    s.add(
                        PhoneNumber(
                            number=number,
                            carrier=carrier,
                            province=province or None,
                            city=city or None,
                            note=f"{province} {city}" if province and city else None,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                progress["success"] += 1
            except IntegrityError as e:
                progress["failed"] += 1
                errors.append(f"{number}: {e.orig}")
            progress["processed"] += 1

        if start + IMPORT_BATCH_SIZE < len(new_numbers) and not lookup.offline_only:
            sleep(IMPORT_BATCH_DELAY)

    record_event(
        s,
        action="phone.import",
        entity_type="PhoneNumber",
        metadata={k: progress[k] for k in ("total", "success", "failed", "skipped")},
    )
    logger.info("Phone import finished: %s ok, %s failed, %s skipped", progress["success"], progress["failed"], progress["skipped"])
    return progress


def import_message(progress: dict[str, Any]) -> str:
    message = f"导入完成！成功导入 {progress['success']} 个手机号码"
    if progress["failed"]:
        message += f"，失败 {progress['failed']} 个"
    if progress["skipped"]:
        message += f"，跳过已存在的 {progress['skipped']} 个"
    return message


def ensure_importable(numbers: list[str]) -> None:
    if not numbers:
        raise ValidationError("没有找到有效的手机号码")
