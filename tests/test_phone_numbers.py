import io
from collections import defaultdict

import pytest
from openpyxl import Workbook

from app.opsdesk import auth, create_app
from app.opsdesk.db import session_scope
from app.opsdesk.models import Base
from app.opsdesk.modules.phone_numbers.lookup.base import LookupResult, PhoneInfo, PhoneLookupError
from app.opsdesk.modules.phone_numbers.lookup.providers import OfflineProvider, PhoneProvider
from app.opsdesk.modules.phone_numbers.lookup.service import PhoneLookupService
from app.opsdesk.modules.phone_numbers.models import PhoneNumber
from app.opsdesk.modules.phone_numbers.parsers import normalize_number, parse_phone_upload


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("PLATFORM_PASSWORD", "pw")
    monkeypatch.setenv("VERIFICATION_SWEEP_ENABLED", "0")
    monkeypatch.setenv("PHONE_LOOKUP_ONLINE", "0")
    monkeypatch.setattr(auth, "_login_attempts", defaultdict(list))

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    c = app.test_client()
    assert c.post("/api/auth/login", json={"password": "pw"}).status_code == 200
    return c


def test_crud_and_duplicate_number(client):
    r = client.post("/api/phone-numbers", json={"number": "13800138000", "carrier": "中国移动", "note": "测试号"})
    assert r.status_code == 201
    phone_id = r.json["data"]["id"]

    r = client.post("/api/phone-numbers", json={"number": "13800138000", "carrier": "中国移动"})
    assert r.status_code == 409

    r = client.post("/api/phone-numbers", json={"number": "123", "carrier": "中国移动"})
    assert r.status_code == 400
    r = client.post("/api/phone-numbers", json={"number": "13900139000", "carrier": "小灵通"})
    assert r.status_code == 400

    r = client.put("/api/phone-numbers", json={"id": phone_id, "carrier": "其他"})
    assert r.status_code == 200
    assert r.json["data"]["carrier"] == "其他"
    assert r.json["data"]["number"] == "13800138000"

    r = client.get("/api/phone-numbers?number=13800138000")
    assert r.json["data"]["id"] == phone_id

    r = client.get("/api/phone-numbers")
    assert r.json["total"] == 1
    assert r.json["hasMore"] is False

    assert client.get("/api/phone-numbers/carriers").json["data"] == ["其他"]

    r = client.delete(f"/api/phone-numbers?id={phone_id}")
    assert r.status_code == 200
    assert client.delete(f"/api/phone-numbers?id={phone_id}").status_code == 404


def test_search_by_fragment_and_carrier(client):
    for number, carrier in (("13800138000", "中国移动"), ("18900189000", "中国电信"), ("13000130000", "中国联通")):
        client.post("/api/phone-numbers", json={"number": number, "carrier": carrier})

    r = client.get("/api/phone-numbers/search?q=0013")
    assert sorted(p["number"] for p in r.json["data"]) == ["13000130000", "13800138000"]

    r = client.get("/api/phone-numbers/search", query_string={"carrier": "中国电信"})
    assert [p["number"] for p in r.json["data"]] == ["18900189000"]


def test_offline_lookup(client):
    r = client.post("/api/phone-numbers/lookup", json={"phoneNumber": "13800138000"})
    assert r.status_code == 200
    data = r.json["data"]
    assert data["carrier"] == "中国移动"
    assert data["province"] == "未知"
    assert data["note"] == "中国移动（离线识别）"
    assert data["provider"] == "offline"

    r = client.post("/api/phone-numbers/lookup", json={"phoneNumber": "12345"})
    assert r.status_code == 400


def test_batch_lookup_limits(client):
    r = client.post("/api/phone-numbers/lookup/batch", json={"phoneNumbers": ["18900189000", "13000130000"]})
    assert r.status_code == 200
    data = r.json["data"]
    assert data["totalCount"] == 2
    assert data["successCount"] == 2
    assert data["results"]["18900189000"]["data"]["carrier"] == "中国电信"

    r = client.post("/api/phone-numbers/lookup/batch", json={"phoneNumbers": ["13800138000"] * 51})
    assert r.status_code == 400

    r = client.post("/api/phone-numbers/lookup/batch", json={"phoneNumbers": ["13800138000", "bad"]})
    assert r.status_code == 400
    assert "bad" in r.json["error"]


def test_lookup_status_and_cache_clear(client):
    client.post("/api/phone-numbers/lookup", json={"phoneNumber": "13800138000"})
    status = client.get("/api/phone-numbers/lookup/status").json["data"]
    assert [p["name"] for p in status["providers"]] == ["offline"]
    assert status["cache"]["size"] == 1

    assert client.delete("/api/phone-numbers/lookup/status").status_code == 200
    assert client.get("/api/phone-numbers/lookup/status").json["data"]["cache"]["size"] == 0


def test_csv_import_skips_existing_and_reports_bad_rows(client):
    client.post("/api/phone-numbers", json={"number": "13800138000", "carrier": "中国移动"})
    body = "手机号\n13800138000\n13900139000\n13900139000\n".encode("utf-8")

    r = client.post(
        "/api/phone-numbers/import",
        data={"file": (io.BytesIO(body), "numbers.csv")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 200
    progress = r.json["data"]
    assert progress["total"] == 1
    assert progress["success"] == 1
    assert progress["skipped"] == 1
    assert progress["errors"] == ["第 1 行: 手机号码格式无效: 手机号"]

    with session_scope(client.application) as s:
        p = s.query(PhoneNumber).filter(PhoneNumber.number == "13900139000").one()
        assert p.carrier == "中国移动"
        assert p.province is None


def test_import_rejects_unsupported_and_empty_files(client):
    r = client.post(
        "/api/phone-numbers/import",
        data={"file": (io.BytesIO(b"x"), "numbers.xls")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 400

    r = client.post(
        "/api/phone-numbers/import",
        data={"file": (io.BytesIO("标题\n".encode("utf-8")), "numbers.csv")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 400


def test_parse_xlsx_first_column():
    wb = Workbook()
    ws = wb.active
    ws.append(["号码", "备注"])
    ws.append([13800138000, "a"])
    ws.append(["+86 139-0013-9000", "b"])
    buf = io.BytesIO()
    wb.save(buf)

    numbers, errors = parse_phone_upload("list.xlsx", buf.getvalue())
    assert numbers == ["13800138000", "13900139000"]
    assert len(errors) == 1 and errors[0].row_number == 1

    assert normalize_number(13800138000.0) == "13800138000"


class _FlakyProvider(PhoneProvider):
    name = "flaky"
    priority = 1
    can_batch = False
    requires_token = False

    def __init__(self):
        self.calls = 0

    def is_available(self) -> bool:
        return True

    def lookup(self, phone_number):
        self.calls += 1
        return LookupResult(success=True, data=PhoneInfo(phone_number, "中国联通", "广东", "深圳"), provider=self.name)


def test_service_prefers_priority_and_caches():
    flaky = _FlakyProvider()
    service = PhoneLookupService([OfflineProvider(), flaky], sleep=lambda _s: None)
    first = service.lookup("13800138000")
    second = service.lookup("13800138000")
    assert first.provider == "flaky"
    assert first.data.to_dict()["note"] == "中国联通 - 广东深圳"
    assert second.data.carrier == "中国联通"
    assert flaky.calls == 1


class _DownProvider(PhoneProvider):
    name = "down"
    priority = 1
    requires_token = False

    def __init__(self, can_batch):
        self.can_batch = can_batch
        self.calls = 0

    def is_available(self) -> bool:
        return True

    def lookup(self, phone_number):
        self.calls += 1
        raise PhoneLookupError("upstream unavailable")


@pytest.mark.parametrize("can_batch, expected_calls", [(False, 1), (True, 2)])
def test_only_batch_providers_are_retried(can_batch, expected_calls):
    down = _DownProvider(can_batch)
    sleeps = []
    service = PhoneLookupService([down, OfflineProvider()], sleep=sleeps.append)

    result = service.lookup("13800138000")

    assert down.calls == expected_calls
    assert len(sleeps) == expected_calls - 1
    assert result.success is True
    assert result.provider == "offline"
