from collections import defaultdict
from datetime import datetime, timedelta

import pytest

from app.opsdesk import auth, create_app
from app.opsdesk.db import session_scope
from app.opsdesk.models import Base
from app.opsdesk.modules.sms.gateway_client import SmsGatewayClient, SmsGatewayError
from app.opsdesk.modules.sms.models import SmsRecord
from app.opsdesk.modules.sms.service import describe_sms_error, sms_analytics


class FakeGateway:
    configured = True

    def __init__(self, out_ids=("OUT-1", "OUT-2", "OUT-3"), error=None):
        self._out_ids = list(out_ids)
        self.error = error
        self.calls = []

    def send(self, admin_token, payload):
        self.calls.append((admin_token, payload))
        if self.error:
            raise SmsGatewayError(self.error)
        return self._out_ids.pop(0)


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
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    c = app.test_client()
    assert c.post("/api/auth/login", json={"password": "pw"}).status_code == 200
    return c


def _gateway(client, gateway):
    client.application.extensions["sms_gateway"] = gateway
    return gateway


def _record(client, out_id, *, status="发送中", error_code=None, carrier="中国移动", template="验证码"):
    r = client.post(
        "/api/sms-records",
        json={
            "out_id": out_id,
            "phone_number": "13800138000",
            "carrier": carrier,
            "template_code": "SMS_1",
            "template_name": template,
            "template_params": {"code": "1234"},
            "content": "您的验证码是1234",
            "status": status,
            "error_code": error_code,
        },
    )
    assert r.status_code == 201
    return r.json["data"]


def test_record_crud(client):
    rec = _record(client, "A1")
    assert rec["template_params"] == {"code": "1234"}
    assert rec["retry_count"] == 0

    assert client.post("/api/sms-records", json={"out_id": "A1", "phone_number": "13800138000"}).status_code == 409
    assert client.post("/api/sms-records", json={"out_id": "A2"}).status_code == 400

    r = client.put("/api/sms-records", json={"out_id": "A1", "status": "发送失败", "error_code": "MOBILE_IN_BLACK"})
    assert r.status_code == 200
    assert r.json["data"]["error_message"].startswith("手机号在黑名单中")

    assert client.get("/api/sms-records?out_id=A1").json["data"]["status"] == "发送失败"
    assert client.get("/api/sms-records?out_id=nope").status_code == 404

    r = client.get("/api/sms-records", query_string={"status": "发送失败"})
    assert [x["out_id"] for x in r.json["data"]] == ["A1"]
    assert r.json["total"] == 1

    assert client.delete("/api/sms-records?out_id=A1").status_code == 200
    assert client.delete("/api/sms-records").status_code == 400


def test_batch_status_marks_unknown(client):
    _record(client, "B1", status="已送达")
    r = client.post("/api/sms-status/batch", json={"outIds": ["B1", "missing"]})
    assert r.status_code == 200
    rows = r.json["data"]
    assert rows[0]["status"] == "已送达"
    assert rows[1] == {"outId": "missing", "status": "未找到", "phoneNumber": ""}

    r = client.post("/api/sms-status/batch", json={"outIds": [str(i) for i in range(51)]})
    assert r.status_code == 400


def test_send_uses_stored_carrier(client):
    gateway = _gateway(client, FakeGateway())
    client.post("/api/phone-numbers", json={"number": "13900139000", "carrier": "其他", "note": "测试机"})

    r = client.post(
        "/api/sms/send",
        json={"phoneNumber": "13900139000", "templateCode": "SMS_9", "adminToken": "tok", "templateParams": {"code": "8888"}},
    )
    assert r.status_code == 200
    assert r.json["outId"] == "OUT-1"
    assert r.json["data"]["carrier"] == "其他"
    assert r.json["data"]["phone_note"] == "测试机"
    assert r.json["data"]["status"] == "发送中"

    token, payload = gateway.calls[0]
    assert token == "tok"
    assert payload["mobile"] == "13900139000"
    assert payload["templateParams"] == {"code": "8888"}


def test_send_falls_back_to_lookup_and_reports_gateway_errors(client):
    _gateway(client, FakeGateway())
    r = client.post("/api/sms/send", json={"phoneNumber": "18900189000", "templateCode": "SMS_9", "adminToken": "tok"})
    assert r.json["data"]["carrier"] == "中国电信"

    _gateway(client, FakeGateway(error="短信发送失败: 余额不足"))
    r = client.post("/api/sms/send", json={"phoneNumber": "18900189000", "templateCode": "SMS_9", "adminToken": "tok"})
    assert r.status_code == 502
    assert r.json["error"] == "短信发送失败: 余额不足"

    r = client.post("/api/sms/send", json={"phoneNumber": "18900189000", "templateCode": "SMS_9"})
    assert r.status_code == 400


def test_unconfigured_gateway_is_502(client):
    assert client.application.extensions["sms_gateway"].configured is False
    r = client.post("/api/sms/send", json={"phoneNumber": "13800138000", "templateCode": "SMS_1", "adminToken": "tok"})
    assert r.status_code == 502
    with pytest.raises(SmsGatewayError):
        SmsGatewayClient("").send("tok", {})


def test_resend_rules(client):
    _gateway(client, FakeGateway(out_ids=["R1", "R2", "R3"]))
    _record(client, "F1", status="发送失败", error_code="MOBILE_SEND_LIMIT")
    _record(client, "OK1", status="已送达")

    listing = client.get("/api/sms-records/resend").json
    assert [x["out_id"] for x in listing["data"]] == ["F1"]
    assert listing["data"][0]["can_resend"] is True

    r = client.post("/api/sms-records/resend", json={"out_id": "OK1", "admin_token": "tok"})
    assert r.status_code == 400

    r = client.post("/api/sms-records/resend", json={"out_id": "F1", "admin_token": "tok"})
    assert r.status_code == 200
    data = r.json["data"]
    assert data["new_out_id"] == "R1"
    assert data["retry_count"] == 1
    assert data["original_record"]["retry_count"] == 1
    assert data["new_record"]["retry_count"] == 1
    assert data["new_record"]["template_params"] == {"code": "1234"}

    for _ in range(2):
        client.post("/api/sms-records/resend", json={"out_id": "F1", "admin_token": "tok"})
    r = client.post("/api/sms-records/resend", json={"out_id": "F1", "admin_token": "tok"})
    assert r.status_code == 400
    assert "最大重发次数" in r.json["error"]
    assert client.get("/api/sms-records/resend").json["data"] == []


def test_analytics_endpoint(client):
    _record(client, "C1", status="已送达")
    _record(client, "C2", status="发送失败", error_code="MOBILE_IN_BLACK", carrier="中国联通")
    _record(client, "C3")

    r = client.get("/api/analytics")
    data = r.json["data"]
    assert data["totalSms"] == 3
    assert data["successCount"] == 1
    assert data["failedCount"] == 1
    assert data["pendingCount"] == 1
    assert data["successRate"] == 33.33
    assert len(data["hourlyStats"]) == 24
    assert data["failureReasons"][0]["errorCode"] == "MOBILE_IN_BLACK"
    assert {c["carrier"]: c["count"] for c in data["carrierStats"]} == {"中国移动": 2, "中国联通": 1}

    assert client.get("/api/analytics?range=year").status_code == 400


def test_analytics_range_excludes_old_records(client):
    now = datetime(2025, 3, 10, 12, 0, 0)
    with session_scope(client.application) as s:
        for out_id, age in (("old", timedelta(days=40)), ("recent", timedelta(hours=2))):
            s.add(
                SmsRecord(
                    out_id=out_id,
                    phone_number="13800138000",
                    status="已送达",
                    retry_count=0,
                    created_at=now - age,
                    updated_at=now - age,
                )
            )

    with session_scope(client.application) as s:
        assert sms_analytics(s, "month", now=now)["totalSms"] == 1
        assert sms_analytics(s, "all", now=now)["totalSms"] == 2
        hourly = sms_analytics(s, "today", now=now)["hourlyStats"]
        assert hourly[10]["count"] == 1


def test_describe_sms_error():
    assert describe_sms_error(None) == "无错误代码"
    assert describe_sms_error("WHATEVER") == "未知错误代码: WHATEVER"
