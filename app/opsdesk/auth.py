from __future__ import annotations

import hmac
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone

from flask import Blueprint, current_app, g, jsonify, request

from app.opsdesk.mailer import MailError, mail_configured, send_email
from app.opsdesk.utils import client_ip, fail, json_body, ok
from app.opsdesk.verification import (
    VerificationStore,
    code_key,
    generate_code,
    send_limit_key,
)

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds

PUBLIC_API_PATHS = frozenset(
    {
        "/api/auth/login",
        "/api/auth/logout",
        "/api/auth/status",
        "/api/auth/send-verification",
        "/api/auth/verify-code",
        "/api/training/start",
        "/api/training/submit",
        "/api/public-config",
    }
)


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def _verification_store() -> VerificationStore:
    return current_app.extensions["verification_store"]


def _password_matches(candidate: str | None) -> bool:
    expected = current_app.config.get("PLATFORM_PASSWORD") or ""
    if not candidate or not expected:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


def is_authenticated() -> bool:
    return _password_matches(request.cookies.get(current_app.config["AUTH_COOKIE_NAME"]))


def assign_request_id() -> None:
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex


def enforce_platform_auth():
    """
    Gate every /api/* route behind the shared-password cookie, except the public set.
    """
    path = request.path.rstrip("/") or "/"
    if not path.startswith("/api/"):
        return None
    if path in PUBLIC_API_PATHS or request.method == "OPTIONS":
        return None
    if is_authenticated():
        return None
    current_app.logger.info("Rejected unauthenticated API call path=%s request_id=%s", path, getattr(g, "request_id", None))
    return jsonify({"success": False, "message": "需要管理员认证"}), 401


def _epoch_to_iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


# ---------- Shared password ----------
@bp.post("/login")
def login_post():
    payload = json_body()
    password = payload.get("password")
    ip = request.remote_addr or "unknown"

    if not password:
        return fail("请输入密码", 400)

    if _check_rate_limit(ip):
        return fail("尝试次数过多，请5分钟后再试", 429)

    _record_attempt(ip)

    if not _password_matches(str(password)):
        current_app.logger.warning("Platform login failed ip=%s request_id=%s", ip, getattr(g, "request_id", None))
        return fail("密码错误", 401)

    _login_attempts[ip].clear()
    resp, status = ok(message="登录成功")
    resp.set_cookie(
        current_app.config["AUTH_COOKIE_NAME"],
        str(password),
        max_age=12 * 60 * 60,
        httponly=True,
        samesite="Lax",
        secure=bool(current_app.config.get("AUTH_COOKIE_SECURE")),
    )
    return resp, status


@bp.post("/logout")
def logout():
    resp, status = ok(message="已退出登录")
    resp.delete_cookie(current_app.config["AUTH_COOKIE_NAME"])
    return resp, status


@bp.get("/status")
def auth_status():
    return ok({"authenticated": is_authenticated()})


# ---------- Verification codes ----------
@bp.post("/send-verification")
def send_verification():
    payload = json_body()
    session_id = (payload.get("sessionId") or "").strip()
    page_url = (payload.get("pageUrl") or "").strip()
    if not session_id or not page_url:
        return fail("缺少必要参数: sessionId 和 pageUrl", 400)

    store = _verification_store()
    limit_key = send_limit_key(client_ip(), session_id)
    retry_after = store.send_retry_after(limit_key)
    if retry_after > 0:
        return fail(f"请等待{retry_after}秒后再试", 429, retryAfter=retry_after)

    key = code_key(session_id, page_url)
    code = generate_code()
    store.set_code(key, code)

    cfg = current_app.config
    recipient = (cfg.get("VERIFICATION_NOTIFY_EMAIL") or cfg.get("MAIL_USERNAME") or "").strip()
    if mail_configured(cfg) and recipient:
        try:
            send_email(
                cfg,
                recipient,
                "管理后台访问验证码",
                f"您的验证码是：{code}\n\n访问页面：{page_url}\n验证码5分钟内有效，请勿泄露给他人。",
            )
        except MailError as e:
            store.delete_code(key)
            current_app.logger.error("Verification mail failed: %s (request_id=%s)", e, getattr(g, "request_id", None))
            return fail("验证码发送失败，请稍后再试", 500)
    else:
        current_app.logger.warning("Mail not configured; verification code for %s is %s", key, code)

    store.set_send_limit(limit_key)
    return ok(message="验证码已发送", expiresIn=store.code_ttl)


@bp.post("/verify-code")
def verify_code():
    payload = json_body()
    session_id = (payload.get("sessionId") or "").strip()
    page_url = (payload.get("pageUrl") or "").strip()
    code = str(payload.get("code") or "").strip()
    if not session_id or not page_url or not code:
        return fail("缺少必要参数", 400)

    store = _verification_store()
    key = code_key(session_id, page_url)
    entry = store.get_code(key)
    if entry is None:
        return fail("验证码不存在或已过期，请重新获取", 404)

    if store.code_expired(entry):
        store.delete_code(key)
        return fail("验证码已过期，请重新获取", 410)

    if entry.attempts >= store.max_attempts:
        store.delete_code(key)
        return fail("验证失败次数过多，请重新获取验证码", 429)

    if not hmac.compare_digest(entry.code, code):
        attempts = store.increment_attempts(key)
        remaining = max(0, store.max_attempts - attempts)
        return fail(f"验证码错误，还剩{remaining}次机会", 401, remainingAttempts=remaining)

    store.delete_code(key)
    token, expires_at = store.issue_token(session_id, page_url)
    return ok(
        {"authToken": token, "expiresAt": _epoch_to_iso(expires_at)},
        message="验证成功",
        authToken=token,
        expiresAt=_epoch_to_iso(expires_at),
    )


@bp.get("/verify-code")
def verify_token():
    token = (request.args.get("token") or "").strip()
    session_id = (request.args.get("sessionId") or "").strip()
    page_url = (request.args.get("pageUrl") or "").strip()
    if not token or not session_id or not page_url:
        return fail("缺少必要参数", 400)

    store = _verification_store()
    entry = store.get_token(token)
    if entry is None:
        return fail("令牌无效", 404)

    if store.token_expired(entry):
        store.delete_token(token)
        return fail("令牌已过期", 410)

    if entry.session_id != session_id or entry.page_url != page_url:
        return fail("令牌与当前会话不匹配", 403)

    return ok(valid=True, expiresAt=_epoch_to_iso(store.token_expires_at(entry)))
