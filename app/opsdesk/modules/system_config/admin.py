from __future__ import annotations

from flask import Blueprint, current_app, request

from app.opsdesk.constants import CONFIG_TRAINING_PASS_SCORE, PROTECTED_CONFIG_KEYS, PUBLIC_CONFIG_DEFAULTS
from app.opsdesk.db import db_session
from app.opsdesk.modules.system_config.service import (
    all_configs,
    delete_config,
    get_config,
    set_config,
    validate_config_payload,
)
from app.opsdesk.utils import fail, json_body, ok

bp = Blueprint("system_config", __name__)


@bp.get("/config")
def config_get():
    s = db_session()
    key = (request.args.get("key") or "").strip()
    if key:
        value = get_config(s, key)
        if value is None:
            return fail("配置项不存在", 404)
        return ok({"key": key, "value": value})
    return ok(all_configs(s))


@bp.post("/config")
def config_set():
    s = db_session()
    payload = json_body()
    errors = validate_config_payload(payload)
    if errors:
        return fail(errors[0], 400)

    key = payload["key"].strip()
    value = str(payload["value"]).strip()
    if key == CONFIG_TRAINING_PASS_SCORE:
        value = str(int(value))
    set_config(s, key, value, payload.get("description"))
    s.commit()
    current_app.logger.info("System config updated: %s = %s", key, value)
    return ok({"key": key, "value": value}, message="配置更新成功")


@bp.delete("/config")
def config_delete():
    s = db_session()
    key = (request.args.get("key") or "").strip()
    if not key:
        return fail("缺少必要参数：key", 400)
    if key in PROTECTED_CONFIG_KEYS:
        return fail("此配置项不允许删除", 403)
    if not delete_config(s, key):
        return fail("配置项不存在", 404)
    s.commit()
    current_app.logger.info("System config deleted: %s", key)
    return ok(message="配置删除成功")


@bp.get("/public-config")
def public_config_get():
    key = (request.args.get("key") or "").strip()
    if not key:
        return fail("缺少配置项key参数", 400)
    if key not in PUBLIC_CONFIG_DEFAULTS:
        return fail("该配置项不允许公开访问", 403)

    value = get_config(db_session(), key)
    if value is None:
        return ok({"key": key, "value": PUBLIC_CONFIG_DEFAULTS[key], "isDefault": True})
    return ok({"key": key, "value": value, "isDefault": False})
