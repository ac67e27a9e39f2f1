from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from app.opsdesk.audit import record_event
from app.opsdesk.constants import CONFIG_TRAINING_PASS_SCORE, DEFAULT_PASS_SCORE
from app.opsdesk.models import SystemConfig

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


def get_config(s: "Session", key: str, default: str | None = None) -> str | None:
    row = s.get(SystemConfig, key)
    return row.value if row is not None else default


def all_configs(s: "Session") -> list[dict]:
    rows = s.query(SystemConfig).order_by(SystemConfig.key.asc()).all()
    return [config_to_dict(r) for r in rows]


def config_to_dict(row: SystemConfig) -> dict:
    return {
        "key": row.key,
        "value": row.value,
        "description": row.description,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


def validate_config_payload(payload: dict) -> list[str]:
    errors = []
    key = (payload.get("key") or "").strip() if isinstance(payload.get("key"), str) else ""
    if not key or payload.get("value") is None:
        errors.append("缺少必要参数：key 和 value")
        return errors
    if key == CONFIG_TRAINING_PASS_SCORE:
        try:
            score = int(str(payload.get("value")).strip())
        except ValueError:
            score = -1
        if score < 0 or score > 100:
            errors.append("合格分数必须是0-100之间的数字")
    return errors


def set_config(s: "Session", key: str, value: str, description: str | None = None) -> SystemConfig:
    row = s.get(SystemConfig, key)
    old_value = row.value if row is not None else None
    if row is None:
        row = SystemConfig(key=key, value=value, description=description)
        s.add(row)
    else:
        row.value = value
        if description is not None:
            row.description = description
    row.updated_at = datetime.utcnow()
    record_event(
        s,
        action="config.set",
        entity_type="SystemConfig",
        entity_id=key,
        metadata={"old": old_value, "new": value},
    )
    return row


def delete_config(s: "Session", key: str) -> bool:
    row = s.get(SystemConfig, key)
    if row is None:
        return False
    s.delete(row)
    record_event(s, action="config.delete", entity_type="SystemConfig", entity_id=key, metadata={"value": row.value})
    return True


def get_training_pass_score(s: "Session") -> int:
    raw = get_config(s, CONFIG_TRAINING_PASS_SCORE)
    try:
        score = int(raw) if raw is not None else DEFAULT_PASS_SCORE
    except ValueError:
        return DEFAULT_PASS_SCORE
    return min(100, max(0, score))
