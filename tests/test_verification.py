"""Verification codes, admin tokens and the in-process store behind them."""
import pytest

from app.opsdesk import create_app
from app.opsdesk.models import Base
from app.opsdesk.verification import VerificationStore, code_key


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def client(tmp_path, monkeypatch, clock):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("PLATFORM_PASSWORD", "pw")
    monkeypatch.setenv("VERIFICATION_SWEEP_ENABLED", "0")
    monkeypatch.setenv("PHONE_LOOKUP_ONLINE", "0")
    for k in ("MAIL_HOST", "MAIL_USERNAME", "MAIL_PASSWORD", "MAIL_FROM", "VERIFICATION_NOTIFY_EMAIL"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    app.extensions["verification_store"] = VerificationStore(clock=clock)
    return app.test_client()


SESSION = {"sessionId": "sess-1", "pageUrl": "/admin/sms"}


def _store(client) -> VerificationStore:
    return client.application.extensions["verification_store"]


def _issued_code(client) -> str:
    entry = _store(client).get_code(code_key(SESSION["sessionId"], SESSION["pageUrl"]))
    assert entry is not None
    return entry.code


def test_send_requires_session_and_page(client):
    r = client.post("/api/auth/send-verification", json={"sessionId": "x"})
    assert r.status_code == 400


def test_send_is_rate_limited_per_session(client, clock):
    r = client.post("/api/auth/send-verification", json=SESSION)
    assert r.status_code == 200
    assert r.json["expiresIn"] == 300
    assert len(_issued_code(client)) == 6

    r = client.post("/api/auth/send-verification", json=SESSION)
    assert r.status_code == 429
    assert 0 < r.json["retryAfter"] <= 60

    clock.advance(61)
    r = client.post("/api/auth/send-verification", json=SESSION)
    assert r.status_code == 200


def test_verify_code_issues_token_and_token_checks(client):
    client.post("/api/auth/send-verification", json=SESSION)
    code = _issued_code(client)

    r = client.post("/api/auth/verify-code", json={**SESSION, "code": code})
    assert r.status_code == 200
    token = r.json["authToken"]
    assert token.startswith("admin_")
    assert r.json["data"]["expiresAt"].endswith("Z")

    # single use
    r = client.post("/api/auth/verify-code", json={**SESSION, "code": code})
    assert r.status_code == 404

    r = client.get("/api/auth/verify-code", query_string={"token": token, **SESSION})
    assert r.status_code == 200
    assert r.json["valid"] is True

    r = client.get("/api/auth/verify-code", query_string={"token": token, "sessionId": "other", "pageUrl": SESSION["pageUrl"]})
    assert r.status_code == 403

    r = client.get("/api/auth/verify-code", query_string={"token": "admin_0_bogus", **SESSION})
    assert r.status_code == 404


def test_wrong_code_counts_attempts_then_locks(client):
    client.post("/api/auth/send-verification", json=SESSION)
    code = _issued_code(client)
    wrong = "000000" if code != "000000" else "111111"

    r = client.post("/api/auth/verify-code", json={**SESSION, "code": wrong})
    assert r.status_code == 401
    assert r.json["remainingAttempts"] == 4
    assert "还剩4次机会" in r.json["error"]

    for _ in range(4):
        client.post("/api/auth/verify-code", json={**SESSION, "code": wrong})

    r = client.post("/api/auth/verify-code", json={**SESSION, "code": code})
    assert r.status_code == 429
    assert _store(client).get_code(code_key(SESSION["sessionId"], SESSION["pageUrl"])) is None


def test_expired_code_and_token(client, clock):
    client.post("/api/auth/send-verification", json=SESSION)
    code = _issued_code(client)
    clock.advance(301)
    r = client.post("/api/auth/verify-code", json={**SESSION, "code": code})
    assert r.status_code == 410

    token, _ = _store(client).issue_token(SESSION["sessionId"], SESSION["pageUrl"])
    clock.advance(12 * 60 * 60 + 1)
    r = client.get("/api/auth/verify-code", query_string={"token": token, **SESSION})
    assert r.status_code == 410
    assert _store(client).get_token(token) is None


def test_sweep_removes_only_expired_entries(clock):
    store = VerificationStore(clock=clock)
    store.set_code("old", "123456")
    store.issue_token("s", "/p")
    store.set_send_limit("ip-s")

    clock.advance(120)
    store.set_code("fresh", "654321")

    removed = store.sweep()
    assert removed == {"codes": 0, "tokens": 0, "sendLimits": 1}

    clock.advance(300)
    removed = store.sweep()
    assert removed == {"codes": 1, "tokens": 0, "sendLimits": 0}
    assert store.get_code("fresh") is not None
    assert store.stats() == {"codes": 1, "tokens": 1, "sendLimits": 0}


def test_start_and_stop_are_idempotent(clock):
    store = VerificationStore(clock=clock, sweep_interval=3600)
    store.start()
    store.start()
    store.stop()
    store.stop()
