from collections import defaultdict
from datetime import datetime, timedelta

import pytest

from app.opsdesk import auth, create_app
from app.opsdesk.db import session_scope
from app.opsdesk.models import AuditEvent, Base
from app.opsdesk.modules.supplier_import.models import FailedCompany, ImportRecord, SellerCompany, SellerCompanyLang
from app.opsdesk.modules.supplier_import.service import company_errors


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


GOOD = {
    "company_id": 1001,
    "company_no": "SUP-1001",
    "name": "宁波恒远五金",
    "province": "浙江",
    "city": "宁波",
    "mobile": "13800138000",
    "name_en": "Ningbo Hengyuan Hardware",
    "city_en": "Ningbo",
    "is_verified": 1,
}
TOO_LONG = {"company_id": 1002, "name": "温州远航鞋业", "county": "县" * 65}


def _import(client, companies, notes=None):
    r = client.post("/api/supplier-import", json={"companies": companies, "notes": notes})
    assert r.status_code == 200
    return r.json


def test_import_reports_row_failures(client):
    body = _import(client, [GOOD, TOO_LONG, {"name": "无ID"}])
    assert body["totalProcessed"] == 3
    assert body["successCount"] == 1
    assert body["errorCount"] == 2
    assert body["errors"][0].startswith("公司ID 1002: 县区信息过长")
    assert body["errors"][1].startswith("未知公司: 缺少有效的公司ID")

    with session_scope(client.application) as s:
        company = s.query(SellerCompany).one()
        assert company.company_id == 1001
        assert company.is_verified == 1
        lang = s.query(SellerCompanyLang).one()
        assert lang.language_code == "en-US"
        assert lang.name == "Ningbo Hengyuan Hardware"

        record = s.get(ImportRecord, body["importRecordId"])
        assert record.status == "completed"
        assert record.success_rate == pytest.approx(33.33)

    r = client.get("/api/supplier-import/progress", query_string={"importRecordId": body["importRecordId"]})
    assert r.json["data"]["completed"] is True
    assert r.json["data"]["failed_count"] == 2


def test_import_upserts_by_company_id(client):
    _import(client, [GOOD])
    _import(client, [{**GOOD, "name": "宁波恒远五金有限公司", "city_en": None}])

    with session_scope(client.application) as s:
        assert s.query(SellerCompany).count() == 1
        assert s.query(SellerCompany).one().name == "宁波恒远五金有限公司"
        assert s.query(SellerCompanyLang).one().city is None


def test_import_requires_company_list(client):
    r = client.post("/api/supplier-import", json={"companies": "nope"})
    assert r.status_code == 400


def test_history_pagination(client):
    for n in range(3):
        _import(client, [{**GOOD, "company_id": 2000 + n}])

    r = client.get("/api/import-history?limit=2")
    assert len(r.json["data"]) == 2
    assert r.json["total"] == 3
    assert r.json["hasMore"] is True
    assert r.json["data"][0]["failed_count"] == 0

    r = client.get("/api/import-history?limit=2&offset=2")
    assert len(r.json["data"]) == 1
    assert r.json["hasMore"] is False


def test_retry_after_fixing_failed_row(client):
    body = _import(client, [GOOD, TOO_LONG])
    record_id = body["importRecordId"]

    failed = client.get("/api/failed-companies", query_string={"import_record_id": record_id}).json["data"]
    assert len(failed) == 1
    failed_id = failed[0]["id"]
    assert failed[0]["company_id"] == 1002

    r = client.post("/api/retry-failed-companies", json={"importRecordId": record_id})
    result = r.json["result"]
    assert result["successCount"] == 0
    assert result["stillFailedIds"] == [failed_id]
    with session_scope(client.application) as s:
        fc = s.get(FailedCompany, failed_id)
        assert fc.retry_count == 1
        fc.county = "瓯海区"

    r = client.post("/api/retry-failed-companies", json={"importRecordId": record_id, "companyIds": [failed_id]})
    assert r.status_code == 200
    assert r.json["result"]["successCount"] == 1
    assert r.json["result"]["stillFailedIds"] == []

    with session_scope(client.application) as s:
        record = s.get(ImportRecord, record_id)
        assert record.success_count == 2
        assert record.error_count == 0
        assert s.query(FailedCompany).count() == 0
        assert s.query(SellerCompany).filter(SellerCompany.company_id == 1002).one().county == "瓯海区"

    r = client.post("/api/retry-failed-companies", json={"importRecordId": record_id})
    assert r.status_code == 400


def test_delete_history_removes_failed_rows(client):
    body = _import(client, [TOO_LONG])
    r = client.delete(f"/api/import-history?id={body['importRecordId']}")
    assert r.status_code == 200
    with session_scope(client.application) as s:
        assert s.query(FailedCompany).count() == 0
        assert s.query(ImportRecord).count() == 0

    assert client.delete(f"/api/import-history?id={body['importRecordId']}").status_code == 404


def test_export_csv(client):
    assert client.get("/api/supplier-export?format=csv").status_code == 404

    _import(client, [GOOD])
    r = client.get("/api/supplier-export?format=csv")
    assert r.status_code == 200
    text = r.data.decode("utf-8")
    assert text.startswith("\ufeff公司ID,公司编号,公司名称")
    assert "Ningbo Hengyuan Hardware" in text

    r = client.get("/api/supplier-export?format=xlsx&q=恒远")
    assert r.status_code == 200
    assert r.data[:2] == b"PK"


def test_company_errors_checks_limits():
    assert company_errors({"company_id": "x", "name": ""}) == ["缺少有效的公司ID", "公司名称不能为空"]
    assert company_errors({"company_id": 1, "name": "A", "name_en": "N" * 256}) == ["公司名称(英文)信息过长（最多255个字符）"]
    assert company_errors("bad") == ["无效的公司数据"]


def test_bulk_update_drops_stale_companies(client):
    fresh = {"company_id": 2001, "name": "杭州新源电子", "name_en": "Hangzhou Xinyuan"}
    _import(client, [GOOD, fresh])
    with session_scope(client.application) as s:
        stale = s.query(SellerCompany).filter(SellerCompany.company_id == 1001).one()
        stale.updated_at = datetime.utcnow() - timedelta(days=3)

    cutoff = (datetime.utcnow() - timedelta(days=1)).isoformat()
    assert client.post("/api/bulk-update", json={"confirm": True}).status_code == 400
    r = client.post("/api/bulk-update", json={"updateTime": cutoff})
    assert r.status_code == 400
    assert r.json["error"] == "请确认执行全量更新操作"

    r = client.get("/api/bulk-update", query_string={"update_time": cutoff})
    assert r.status_code == 200
    preview = r.json["preview"]
    assert preview["toDeleteCompanyCount"] == 1
    assert preview["toDeleteLangCount"] == 1
    assert preview["toKeepCompanyCount"] == 1
    assert preview["deletePercentage"] == 50

    r = client.post("/api/bulk-update", json={"updateTime": cutoff, "confirm": True})
    assert r.status_code == 200
    result = r.json["result"]
    assert result["deletedCompanyCount"] == 1
    assert result["deletedLangCount"] == 1
    assert result["remainingCompanyCount"] == 1
    assert result["remainingLangCount"] == 1

    with session_scope(client.application) as s:
        assert [c.company_id for c in s.query(SellerCompany).all()] == [2001]
        assert [l.company_id for l in s.query(SellerCompanyLang).all()] == [2001]
        assert s.query(AuditEvent).filter(AuditEvent.action == "supplier.bulk_update").count() == 1


def test_progress_available_on_flat_path(client):
    body = _import(client, [GOOD])
    r = client.get("/api/supplier-import-progress", query_string={"importRecordId": body["importRecordId"]})
    assert r.status_code == 200
    assert r.json["data"]["completed"] is True
