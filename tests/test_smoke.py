from collections import defaultdict

import pytest

from app.opsdesk import auth, create_app
from app.opsdesk.db import session_scope
from app.opsdesk.models import AuditEvent, Base, SystemConfig


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("PLATFORM_PASSWORD", "pw")
    monkeypatch.setenv("VERIFICATION_SWEEP_ENABLED", "0")
    monkeypatch.setenv("PHONE_LOOKUP_ONLINE", "0")
    monkeypatch.delenv("SMS_SEND_API_URL", raising=False)
    monkeypatch.setattr(auth, "_login_attempts", defaultdict(list))

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    return app.test_client()


def _login(client):
    r = client.post("/api/auth/login", json={"password": "pw"})
    assert r.status_code == 200


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200


def test_api_requires_platform_cookie(client):
    r = client.get("/api/config")
    assert r.status_code == 401
    assert r.json == {"success": False, "message": "需要管理员认证"}

    r = client.get("/api/auth/status")
    assert r.status_code == 200
    assert r.json["data"]["authenticated"] is False


def test_login_logout_roundtrip(client):
    r = client.post("/api/auth/login", json={})
    assert r.status_code == 400
    assert r.json["error"] == "请输入密码"

    r = client.post("/api/auth/login", json={"password": "nope"})
    assert r.status_code == 401

    _login(client)
    assert client.get("/api/auth/status").json["data"]["authenticated"] is True
    assert client.get("/api/config").status_code == 200

    r = client.post("/api/auth/logout")
    assert r.status_code == 200
    assert client.get("/api/config").status_code == 401


def test_login_rate_limited_after_five_failures(client):
    for _ in range(5):
        assert client.post("/api/auth/login", json={"password": "wrong"}).status_code == 401
    r = client.post("/api/auth/login", json={"password": "pw"})
    assert r.status_code == 429


def test_unknown_api_route_is_json_404(client):
    _login(client)
    r = client.get("/api/does-not-exist")
    assert r.status_code == 404
    assert r.json["success"] is False


def test_public_config_defaults_and_allowlist(client):
    r = client.get("/api/public-config?key=exam_time_limit")
    assert r.status_code == 200
    assert r.json["data"] == {"key": "exam_time_limit", "value": "35", "isDefault": True}

    r = client.get("/api/public-config?key=secret_thing")
    assert r.status_code == 403

    r = client.get("/api/public-config")
    assert r.status_code == 400


def test_config_pass_score_validation_and_protection(client):
    _login(client)

    r = client.post("/api/config", json={"key": "training_pass_score", "value": "150"})
    assert r.status_code == 400

    r = client.post("/api/config", json={"key": "training_pass_score", "value": "80"})
    assert r.status_code == 200
    assert r.json["data"]["value"] == "80"

    r = client.get("/api/public-config?key=training_pass_score")
    assert r.json["data"] == {"key": "training_pass_score", "value": "80", "isDefault": False}

    r = client.delete("/api/config?key=training_pass_score")
    assert r.status_code == 403

    client.post("/api/config", json={"key": "banner", "value": "hello"})
    r = client.delete("/api/config?key=banner")
    assert r.status_code == 200
    assert client.get("/api/config?key=banner").status_code == 404

    app = client.application
    with session_scope(app) as s:
        assert s.get(SystemConfig, "training_pass_score").value == "80"
        actions = [e.action for e in s.query(AuditEvent).order_by(AuditEvent.id.asc()).all()]
    assert actions == ["config.set", "config.set", "config.delete"]
