from collections import defaultdict

import pytest

from app.opsdesk import auth, create_app
from app.opsdesk.db import session_scope
from app.opsdesk.models import Base
from app.opsdesk.modules.project_progress.models import FeatureItem, FeatureModule, ProgressRecord, ProjectPhase
from app.opsdesk.modules.project_progress.service import phase_sort_key


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


BASE = "/api/project-progress"


def _post(client, path, payload):
    r = client.post(f"{BASE}{path}", json=payload)
    assert r.status_code == 201, r.json
    return r.json["data"]


def _seed_project(client, platform_id=None):
    project = _post(client, "/projects", {"name": "运营后台", "platform_id": platform_id})
    phase = _post(client, "/phases", {"project_id": project["id"], "name": "第一期", "phase_order": 1})
    module = _post(client, "/modules", {"project_id": project["id"], "name": "登录", "phase_id": phase["id"]})
    item = _post(client, "/feature-items", {"module_id": module["id"], "name": "短信登录", "progress_percentage": 20})
    return project, phase, module, item


def test_item_completion_and_history(client):
    _project, _phase, _module, item = _seed_project(client)
    assert item["status"] == "pending"
    assert item["progress_percentage"] == 20

    r = client.put(f"{BASE}/feature-items", json={"id": item["id"], "status": "completed"})
    assert r.status_code == 200
    assert r.json["message"] == "进度更新成功"
    updated = r.json["data"]
    assert updated["progress_percentage"] == 100
    assert updated["actual_completion_date"] is not None

    r = client.put(f"{BASE}/feature-items", json={"id": item["id"], "name": "短信验证码登录", "assignee": "李雷"})
    assert r.json["message"] == "功能点更新成功"
    assert r.json["data"]["name"] == "短信验证码登录"

    history = client.get(f"{BASE}/feature-items/{item['id']}/history").json["data"]
    assert [h["notes"] for h in history] == ["进度更新", "功能点创建"]
    assert history[0]["old_status"] == "pending"
    assert history[0]["new_progress"] == 100

    assert client.get(f"{BASE}/feature-items/abc/history").status_code == 400


def test_item_validation(client):
    _project, _phase, module, item = _seed_project(client)
    r = client.post(f"{BASE}/feature-items", json={"module_id": module["id"], "name": "x", "status": "done"})
    assert r.status_code == 400
    r = client.put(f"{BASE}/feature-items", json={"id": item["id"], "priority": "urgent"})
    assert r.status_code == 400
    r = client.put(f"{BASE}/feature-items", json={"id": 9999, "status": "paused"})
    assert r.status_code == 404


def test_created_completed_item_is_full_progress(client):
    _project, _phase, module, _item = _seed_project(client)
    item = _post(client, "/feature-items", {"module_id": module["id"], "name": "退出登录", "status": "deployed"})
    assert item["progress_percentage"] == 100


def test_overview_and_project_stats(client):
    project, _phase, module, _item = _seed_project(client)
    _post(client, "/feature-items", {"module_id": module["id"], "name": "注销", "status": "completed"})

    summary = client.get(BASE).json["data"]
    assert summary["totalStats"]["totalProjects"] == 1
    assert summary["totalStats"]["totalItems"] == 2
    assert summary["totalStats"]["completionRate"] == 50

    detail = client.get(f"{BASE}?projectId={project['id']}").json["data"]
    assert detail["project"]["name"] == "运营后台"
    assert detail["stats"]["completedItems"] == 1
    assert detail["stats"]["phases"][0]["totalItems"] == 2


def test_tree_groups_by_platform(client):
    platform = _post(client, "/platforms", {"name": "小程序", "color": "#10b981"})
    _seed_project(client, platform_id=platform["id"])
    loose = _post(client, "/projects", {"name": "内部工具"})
    _post(client, "/modules", {"project_id": loose["id"], "name": "杂项"})

    tree = client.get(f"{BASE}/tree").json["data"]
    names = [node["platform"]["name"] for node in tree["platformTree"]]
    assert names == ["小程序", "未分配平台"]
    assert tree["stats"]["totalPlatforms"] == 2
    assert tree["stats"]["totalModules"] == 2
    unassigned = tree["platformTree"][1]["projects"][0]
    assert [m["module"]["name"] for m in unassigned["unassignedModules"]] == ["杂项"]

    filtered = client.get(f"{BASE}/tree?phase=第一期").json["data"]
    assert [n["platform"]["name"] for n in filtered["platformTree"]] == ["小程序"]

    r = client.delete(f"{BASE}/platforms?id={platform['id']}")
    assert r.status_code == 409
    assert r.json["projectCount"] == 1


def test_platform_name_unique(client):
    _post(client, "/platforms", {"name": "App"})
    r = client.post(f"{BASE}/platforms", json={"name": "App"})
    assert r.status_code == 409


def test_phase_catalogue(client):
    _seed_project(client)
    r = client.post(f"{BASE}/phases/manage", json={"name": "第十期"})
    assert r.status_code == 201
    client.post(f"{BASE}/phases/manage", json={"name": "第二期"})
    assert client.post(f"{BASE}/phases/manage", json={"name": "第十期"}).status_code == 409

    catalogue = client.get(f"{BASE}/phases/manage").json["data"]
    assert [c["name"] for c in catalogue] == ["第一期", "第二期", "第十期"]

    r = client.delete(f"{BASE}/phases/manage", query_string={"name": "第一期"})
    assert r.status_code == 200
    assert r.json["data"] == {"name": "第一期", "affectedProjects": ["运营后台"]}

    with session_scope(client.application) as s:
        assert s.query(ProjectPhase).filter(ProjectPhase.name == "第一期").count() == 0
        assert s.query(FeatureModule).one().phase_id is None

    assert client.delete(f"{BASE}/phases/manage", query_string={"name": "第九期"}).status_code == 404


def test_phase_sort_key_orders_chinese_numerals():
    names = ["第十二期", "第三期", "第10期", "其他", "第二十一期"]
    assert sorted(names, key=phase_sort_key) == ["第三期", "第10期", "第十二期", "第二十一期", "其他"]


def test_import_template_roundtrip(client):
    template = client.get(f"{BASE}/import").json["data"]
    r = client.post(f"{BASE}/import", json={"projectData": template})
    assert r.status_code == 200
    assert r.json["data"]["stats"] == {
        "projectsImported": 1,
        "phasesImported": 2,
        "modulesImported": 2,
        "featureItemsImported": 2,
    }

    project_id = r.json["data"]["projectId"]
    items = client.get(f"{BASE}/feature-items?projectId={project_id}").json["data"]
    assert {i["name"]: i["module"]["phase_name"] for i in items} == {"用户注册功能": "第一期", "数据可视化": "第二期"}


def test_import_rejects_dangling_module_reference(client):
    data = {
        "project": {"name": "坏数据"},
        "modules": [{"originalId": "m1", "name": "A"}],
        "featureItems": [{"name": "x", "moduleOriginalId": "m2"}],
    }
    r = client.post(f"{BASE}/import", json={"projectData": data})
    assert r.status_code == 400
    assert client.get(f"{BASE}/projects").json["data"] == []


def test_project_delete_cascades(client):
    project, _phase, _module, _item = _seed_project(client)
    r = client.delete(f"{BASE}/projects?id={project['id']}")
    assert r.status_code == 200

    with session_scope(client.application) as s:
        assert s.query(ProjectPhase).count() == 0
        assert s.query(FeatureModule).count() == 0
        assert s.query(FeatureItem).count() == 0
        assert s.query(ProgressRecord).count() == 0
