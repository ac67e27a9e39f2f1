from __future__ import annotations

import math
from datetime import date, datetime, timedelta, timezone
from typing import Any

from flask import jsonify, request

from app.opsdesk.errors import ValidationError


def ok(data: Any = None, *, message: str | None = None, status: int = 200, **extra: Any):
    """Success envelope: {"success": true, "data": ..., "message": ...}."""
    body: dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    body.update(extra)
    return jsonify(body), status


def fail(error: str, status: int = 400, **extra: Any):
    body: dict[str, Any] = {"success": False, "error": error}
    body.update(extra)
    return jsonify(body), status


def json_body() -> dict:
    """Request JSON as a dict; malformed or non-object bodies become a 400."""
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("请求体必须是JSON对象")
    return payload


def parse_int(raw: Any, default: int | None = None, *, field: str | None = None) -> int | None:
    """Lenient int parsing for query params; raises ValidationError only when `field` is named."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    try:
        return int(str(raw).strip())
    except ValueError:
        if field:
            raise ValidationError(f"参数 {field} 必须是整数")
        return default


def parse_date(s: Any) -> date | None:
    """Parse YYYY-MM-DD (or an ISO datetime prefix)."""
    if not s:
        return None
    s = str(s).strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s[:10])
    except ValueError:
        raise ValidationError(f"日期格式无效: {s}")


def parse_datetime(s: Any) -> datetime | None:
    if not s:
        return None
    s = str(s).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_bool(raw: Any, default: bool = False) -> bool:
    """JSON booleans pass through; strings such as "false" or "0" count as False."""
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return raw != 0
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


def iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def clean_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def client_ip() -> str:
    forwarded = (request.headers.get("X-Forwarded-For") or "").strip()
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = (request.headers.get("X-Real-IP") or "").strip()
    if real_ip:
        return real_ip
    return request.remote_addr or "unknown"


def date_range_start(range_key: str | None, now: datetime | None = None) -> datetime | None:
    """Lower bound for today/week/month filters; None means no bound."""
    now = now or datetime.utcnow()
    key = (range_key or "all").strip().lower()
    if key == "today":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if key == "week":
        return now - timedelta(days=7)
    if key == "month":
        return now - timedelta(days=30)
    return None


def offset_pagination(total: int, limit: int, offset: int) -> dict[str, Any]:
    """
    Pagination block for offset/limit listings.
    hasMore is true only while rows remain past offset+limit.
    """
    limit = max(1, limit)
    offset = max(0, offset)
    total_pages = math.ceil(total / limit) if total else 0
    current_page = offset // limit + 1
    return {
        "total": total,
        "totalPages": total_pages,
        "currentPage": current_page,
        "page": current_page,
        "pageSize": limit,
        "hasNext": current_page < total_pages,
        "hasPrev": current_page > 1,
        "hasMore": offset + limit < total,
    }


def page_pagination(total: int, page: int, page_size: int) -> dict[str, Any]:
    page_size = max(1, page_size)
    page = max(1, page)
    total_pages = math.ceil(total / page_size) if total else 0
    return {
        "page": page,
        "pageSize": page_size,
        "total": total,
        "totalPages": total_pages,
        "hasMore": page * page_size < total,
    }
