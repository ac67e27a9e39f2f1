import json
from typing import Any

from flask import g, has_request_context
from sqlalchemy.orm import Session

from app.opsdesk.models import AuditEvent
from app.opsdesk.utils import client_ip


def _request_origin() -> tuple[str | None, str | None]:
    if not has_request_context():
        return None, None
    return getattr(g, "request_id", None), client_ip()


def _encode(metadata: dict[str, Any] | None) -> str | None:
    if not metadata:
        return None
    # default=str covers dates and Decimals from ORM rows
    return json.dumps(metadata, sort_keys=True, ensure_ascii=False, default=str)


def record_event(
    s: Session,
    *,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append an audit event to the caller's transaction; it commits or rolls back with the change it describes.
    Outside a request (scripts) the request id and client IP stay empty.
    """
    rid, ip = _request_origin()
    ev = AuditEvent(
        request_id=request_id or rid,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=_encode(metadata),
        client_ip=ip,
    )
    s.add(ev)
    return ev
