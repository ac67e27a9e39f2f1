"""
In-process store for verification codes, admin tokens and send rate limits.

One instance lives in ``app.extensions["verification_store"]``; ``create_app`` owns
its lifetime (``start()`` on boot, ``stop()`` is safe to call at any time).
Entries are only ever removed by explicit deletes or by ``sweep()``.
"""
from __future__ import annotations

import logging
import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

CODE_TTL_SECONDS = 5 * 60
TOKEN_TTL_SECONDS = 12 * 60 * 60
SEND_LIMIT_SECONDS = 60
MAX_CODE_ATTEMPTS = 5
DEFAULT_SWEEP_SECONDS = 5 * 60


@dataclass
class CodeEntry:
    code: str
    created_at: float
    attempts: int = 0


@dataclass(frozen=True)
class TokenEntry:
    created_at: float
    session_id: str
    page_url: str


def code_key(session_id: str, page_url: str) -> str:
    return f"{session_id}-{page_url}"


def send_limit_key(ip: str, session_id: str) -> str:
    return f"{ip}-{session_id}"


def generate_code() -> str:
    return f"{secrets.randbelow(900000) + 100000}"


class VerificationStore:
    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        code_ttl: int = CODE_TTL_SECONDS,
        token_ttl: int = TOKEN_TTL_SECONDS,
        send_limit_window: int = SEND_LIMIT_SECONDS,
        max_attempts: int = MAX_CODE_ATTEMPTS,
        sweep_interval: int = DEFAULT_SWEEP_SECONDS,
    ) -> None:
        self.clock = clock
        self.code_ttl = code_ttl
        self.token_ttl = token_ttl
        self.send_limit_window = send_limit_window
        self.max_attempts = max_attempts
        self.sweep_interval = sweep_interval

        self._codes: dict[str, CodeEntry] = {}
        self._tokens: dict[str, TokenEntry] = {}
        self._send_limits: dict[str, float] = {}
        self._lock = threading.RLock()
        self._timer: threading.Timer | None = None
        self._running = False

    # ---------- codes ----------
    def set_code(self, key: str, code: str) -> CodeEntry:
        entry = CodeEntry(code=code, created_at=self.clock())
        with self._lock:
            self._codes[key] = entry
        return entry

    def get_code(self, key: str) -> CodeEntry | None:
        with self._lock:
            return self._codes.get(key)

    def delete_code(self, key: str) -> None:
        with self._lock:
            self._codes.pop(key, None)

    def increment_attempts(self, key: str) -> int:
        with self._lock:
            entry = self._codes.get(key)
            if entry is None:
                return 0
            entry.attempts += 1
            return entry.attempts

    def code_expired(self, entry: CodeEntry) -> bool:
        return self.clock() - entry.created_at > self.code_ttl

    # ---------- tokens ----------
    def issue_token(self, session_id: str, page_url: str) -> tuple[str, float]:
        """Create an admin token; returns (token, expires_at epoch seconds)."""
        now = self.clock()
        token = f"admin_{int(now * 1000)}_{secrets.token_hex(6)}"
        with self._lock:
            self._tokens[token] = TokenEntry(created_at=now, session_id=session_id, page_url=page_url)
        return token, now + self.token_ttl

    def get_token(self, token: str) -> TokenEntry | None:
        with self._lock:
            return self._tokens.get(token)

    def delete_token(self, token: str) -> None:
        with self._lock:
            self._tokens.pop(token, None)

    def token_expired(self, entry: TokenEntry) -> bool:
        return self.clock() - entry.created_at > self.token_ttl

    def token_expires_at(self, entry: TokenEntry) -> float:
        return entry.created_at + self.token_ttl

    # ---------- send limits ----------
    def set_send_limit(self, key: str) -> None:
        with self._lock:
            self._send_limits[key] = self.clock()

    def get_send_limit(self, key: str) -> float | None:
        with self._lock:
            return self._send_limits.get(key)

    def clear_send_limit(self, key: str) -> None:
        with self._lock:
            self._send_limits.pop(key, None)

    def send_retry_after(self, key: str) -> int:
        """Seconds until another code may be sent for key; 0 when allowed now."""
        last = self.get_send_limit(key)
        if last is None:
            return 0
        remaining = self.send_limit_window - (self.clock() - last)
        return max(0, int(remaining + 0.999))

    # ---------- lifecycle ----------
    def sweep(self) -> dict[str, int]:
        now = self.clock()
        with self._lock:
            codes = [k for k, v in self._codes.items() if now - v.created_at > self.code_ttl]
            tokens = [k for k, v in self._tokens.items() if now - v.created_at > self.token_ttl]
            limits = [k for k, ts in self._send_limits.items() if now - ts > self.send_limit_window]
            for k in codes:
                del self._codes[k]
            for k in tokens:
                del self._tokens[k]
            for k in limits:
                del self._send_limits[k]
        removed = {"codes": len(codes), "tokens": len(tokens), "sendLimits": len(limits)}
        if any(removed.values()):
            logger.info("Verification sweep removed %s", removed)
        return removed

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "codes": len(self._codes),
                "tokens": len(self._tokens),
                "sendLimits": len(self._send_limits),
            }

    def _schedule(self) -> None:
        self._timer = threading.Timer(self.sweep_interval, self._tick)
        self._timer.daemon = True
        self._timer.start()

    def _tick(self) -> None:
        try:
            self.sweep()
        except Exception:
            logger.exception("Verification sweep failed")
        with self._lock:
            if self._running:
                self._schedule()

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._schedule()
        logger.info("Verification sweep started (every %ss)", self.sweep_interval)

    def stop(self) -> None:
        with self._lock:
            self._running = False
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
