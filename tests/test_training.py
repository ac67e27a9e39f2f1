from collections import defaultdict
from datetime import datetime, timedelta

import pytest

from app.opsdesk import auth, create_app
from app.opsdesk.db import session_scope
from app.opsdesk.models import Base
from app.opsdesk.modules.training.models import Question, QuestionSet, TrainingRecord
from app.opsdesk.modules.training.parsers.html import parse_question_html
from app.opsdesk.modules.training.service import score_answers


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


BANK_HTML = """
<html><head><title>备用标题</title></head>
<body>
  <h1>信息安全基础考核</h1>
  <p style="text-align: center">本试卷用于新员工信息安全基础知识考核</p>
  <div class="question-block" id="q1-block">
    <p class="question-text">1. 密码最短长度应为多少位？</p>
    <ul class="options-list">
      <li><label><input type="radio" value="A"> A. 4位</label></li>
      <li><label><input type="radio" value="B"> B. 8位</label></li>
      <li><label><input type="radio" value="C"> C. 2位</label></li>
      <li><label><input type="radio" value="D"> D. 1位</label></li>
    </ul>
    <p class="feedback">正确答案：B 解析：公司规定密码至少八位并包含数字。</p>
  </div>
  <div class="question-block" id="q2-block">
    <p class="question-text">2. 发现钓鱼邮件应如何处理？</p>
    <ul class="options-list">
      <li><label><input type="radio" value="A"> A. 直接回复</label></li>
      <li><label><input type="radio" value="B"> B. 转发同事</label></li>
      <li><label><input type="radio" value="C"> C. 点击链接</label></li>
      <li><label><input type="radio" value="D"> D. 上报安全部门</label></li>
    </ul>
    <p class="feedback">正确答案：D 解析：可疑邮件应第一时间上报安全部门。</p>
  </div>
</body></html>
"""


def _create_category(client, name="安全培训") -> int:
    r = client.post("/api/training/categories", json={"name": name, "color": "#112233"})
    assert r.status_code == 201
    return r.json["data"]["id"]


def _import_bank(client) -> int:
    category_id = _create_category(client)
    parsed = client.post("/api/training/parse-html", json={"htmlContent": BANK_HTML, "setName": "x"}).json["data"]
    r = client.post("/api/training/import-html", json={"questionSet": parsed, "categoryId": category_id})
    assert r.status_code == 200
    assert r.json["data"]["importedCount"] == 2
    return r.json["data"]["setId"]


def test_parse_html_extracts_blocks():
    result = parse_question_html(BANK_HTML, "ignored")
    assert result.success is True
    data = result.data
    assert data.name == "信息安全基础考核"
    assert data.description == "本试卷用于新员工信息安全基础知识考核"
    assert [q.questionNumber for q in data.questions] == [1, 2]
    first = data.questions[0]
    assert first.questionText == "密码最短长度应为多少位？"
    assert first.optionB == "8位"
    assert first.correctAnswer == "B"
    assert first.section == "第一部分"
    assert result.warnings == []


def test_parse_html_reports_problems_as_warnings():
    html = '<div class="question-block" id="q3-block"><p class="question-text">3. 缺答案</p></div>'
    result = parse_question_html(html, "手工题库")
    assert result.success is True
    assert result.data.name == "手工题库"
    assert any("缺少正确答案" in w for w in result.warnings)
    assert any("缺少选项" in w for w in result.warnings)

    assert parse_question_html("   ").success is False


def test_parse_endpoint_requires_login(client):
    client.post("/api/auth/logout")
    r = client.post("/api/training/parse-html", json={"htmlContent": BANK_HTML})
    assert r.status_code == 401


def test_duplicate_category_name_rejected(client):
    _create_category(client, "合规")
    r = client.post("/api/training/categories", json={"name": "合规"})
    assert r.status_code == 400

    r = client.post("/api/training/categories", json={"name": "新分类", "color": "blue"})
    assert r.status_code == 400


def test_import_replaces_same_named_set(client):
    set_id = _import_bank(client)
    parsed = client.post("/api/training/parse-html", json={"htmlContent": BANK_HTML}).json["data"]
    parsed["questions"] = parsed["questions"][:1]

    with session_scope(client.application) as s:
        category_id = s.get(QuestionSet, set_id).category_id
    r = client.post("/api/training/import-html", json={"questionSet": parsed, "categoryId": category_id})
    assert r.json["data"]["setId"] == set_id
    assert r.json["data"]["replaced"] is True

    with session_scope(client.application) as s:
        assert s.query(Question).filter(Question.set_id == set_id).count() == 1
        assert s.get(QuestionSet, set_id).total_questions == 1


def test_exam_flow_scores_and_blocks_set_delete(client):
    set_id = _import_bank(client)
    client.post("/api/auth/logout")

    r = client.post("/api/training/start", json={"employeeName": "张三", "setId": set_id})
    assert r.status_code == 200
    exam = r.json["data"]
    assert exam["questionSet"]["id"] == set_id
    assert all("correct_answer" not in q for q in exam["questions"])

    answers = {str(q["id"]): ("B" if q["question_number"] == 1 else "A") for q in exam["questions"]}
    r = client.post(
        "/api/training/submit",
        json={
            "sessionId": exam["sessionId"],
            "employeeName": "张三",
            "setId": set_id,
            "answers": answers,
            "startedAt": exam["startedAt"],
        },
    )
    assert r.status_code == 200
    result = r.json["data"]
    assert result["score"] == 50
    assert result["passed"] is False
    assert result["passScore"] == 60
    assert result["correctAnswers"] == 1

    assert client.post("/api/auth/login", json={"password": "pw"}).status_code == 200
    r = client.delete(f"/api/training/sets/{set_id}")
    assert r.status_code == 409
    assert r.json["recordsCount"] == 1

    r = client.get("/api/training/records")
    data = r.json["data"]
    assert data["pagination"]["total"] == 1
    assert data["statistics"]["totalRecords"] == 1
    assert data["statistics"]["scoreDistribution"]["0-59"] == 1
    assert data["records"][0]["employee_name"] == "张三"


def test_submit_rejects_missing_fields(client):
    r = client.post("/api/training/submit", json={"employeeName": "张三"})
    assert r.status_code == 400


def test_records_export_csv_and_empty(client):
    r = client.get("/api/training/export?format=csv")
    assert r.status_code == 404

    set_id = _import_bank(client)
    exam = client.post("/api/training/start", json={"employeeName": "李四", "setId": set_id}).json["data"]
    answers = {str(q["id"]): ("B" if q["question_number"] == 1 else "D") for q in exam["questions"]}
    client.post(
        "/api/training/submit",
        json={"sessionId": exam["sessionId"], "employeeName": "李四", "setId": set_id, "answers": answers, "startedAt": exam["startedAt"]},
    )

    r = client.get("/api/training/export?format=csv")
    assert r.status_code == 200
    text = r.data.decode("utf-8")
    assert text.startswith("\ufeff序号,员工姓名")
    assert "李四" in text
    assert "100" in text

    r = client.get("/api/training/export?format=pdf")
    assert r.status_code == 400


def test_bad_path_id_is_400(client):
    assert client.get("/api/training/sets/abc").status_code == 400
    assert client.get("/api/training/sets/999").status_code == 404


def test_set_without_records_deletes_questions(client):
    set_id = _import_bank(client)
    r = client.delete(f"/api/training/sets/{set_id}")
    assert r.status_code == 200
    assert r.json["deletedQuestions"] == 2
    with session_scope(client.application) as s:
        assert s.query(Question).count() == 0


def _create_set(client, **payload) -> dict:
    r = client.post("/api/training/sets", json=payload)
    assert r.status_code == 201
    return r.json["data"]


def _add_record(app, set_id, name, score, days_ago=0):
    completed = datetime.utcnow() - timedelta(days=days_ago)
    with session_scope(app) as s:
        s.add(
            TrainingRecord(
                employee_name=name,
                set_id=set_id,
                answers="[]",
                score=score,
                total_questions=10,
                started_at=completed - timedelta(minutes=20),
                completed_at=completed,
                ip_address="127.0.0.1",
                session_duration=1200,
            )
        )


def test_parse_html_rejects_non_text_input(client):
    for value in (12345, ["<div>"], {"html": "<p>x</p>"}, None):
        result = parse_question_html(value)
        assert result.success is False
        assert result.error == "HTML内容为空"

    assert parse_question_html(BANK_HTML, set_name=42).success is True

    r = client.post("/api/training/parse-html", json={"htmlContent": ["<div>"]})
    assert r.status_code == 400
    assert r.json["error"] == "HTML内容为空"


def test_created_set_reads_back(client):
    category_id = _create_category(client)
    created = _create_set(
        client, name="消防演练", description="年度消防知识", categoryId=category_id, is_active=False
    )

    r = client.get(f"/api/training/sets/{created['id']}")
    assert r.status_code == 200
    data = r.json["data"]
    assert data["name"] == "消防演练"
    assert data["description"] == "年度消防知识"
    assert data["category_id"] == category_id
    assert data["is_active"] is False
    assert data["questionsCount"] == 0


def test_active_flag_parses_strings(client):
    created = _create_set(client, name="字符串开关", is_active="false")
    assert created["is_active"] is False

    r = client.put(f"/api/training/sets/{created['id']}", json={"is_active": "true"})
    assert r.json["data"]["is_active"] is True

    r = client.put(f"/api/training/sets/{created['id']}", json={"is_active": "0"})
    assert r.json["data"]["is_active"] is False


def test_import_with_duplicate_set_names_replaces_oldest(client):
    category_id = _create_category(client)
    first = _create_set(client, name="dup", categoryId=category_id)
    _create_set(client, name="dup", categoryId=category_id)

    parsed = client.post("/api/training/parse-html", json={"htmlContent": BANK_HTML}).json["data"]
    parsed["name"] = "dup"
    parsed["questions"].append("not a question")
    r = client.post("/api/training/import-html", json={"questionSet": parsed, "categoryId": category_id})
    assert r.status_code == 200
    data = r.json["data"]
    assert data["setId"] == first["id"]
    assert data["replaced"] is True
    assert data["importedCount"] == 2
    assert data["errors"] == ["第3题: 题目数据格式无效"]


def test_category_with_sets_cannot_be_deleted(client):
    category_id = _create_category(client)
    _create_set(client, name="仍在使用", categoryId=category_id)

    r = client.delete("/api/training/categories", query_string={"id": category_id})
    assert r.status_code == 409
    assert r.json["questionSetsCount"] == 1
    assert r.json["examRecordsCount"] == 0

    assert client.delete("/api/training/categories", query_string={"id": 999}).status_code == 404


def test_records_filters_pagination_and_distribution(client):
    app = client.application
    set_a = _create_set(client, name="A卷")["id"]
    set_b = _create_set(client, name="B卷")["id"]
    _add_record(app, set_a, "王五", 95)
    _add_record(app, set_a, "赵六", 72, days_ago=10)
    _add_record(app, set_a, "孙七", 40, days_ago=40)
    _add_record(app, set_b, "周八", 85)

    def fetch(**params):
        r = client.get("/api/training/records", query_string=params)
        assert r.status_code == 200
        return r.json["data"]

    data = fetch()
    assert data["statistics"]["scoreDistribution"] == {
        "90-100": 1,
        "80-89": 1,
        "70-79": 1,
        "60-69": 0,
        "0-59": 1,
    }
    assert data["statistics"]["passedCount"] == 3
    assert data["passScore"] == 60

    assert fetch(minScore=70)["pagination"]["total"] == 3
    assert [r["score"] for r in fetch(minScore=60, maxScore=80)["records"]] == [72]
    assert [r["employee_name"] for r in fetch(setId=set_b)["records"]] == ["周八"]
    assert fetch(employeeName="王")["pagination"]["total"] == 1
    assert fetch(dateRange="week")["pagination"]["total"] == 2
    assert fetch(dateRange="month")["pagination"]["total"] == 3

    page1 = fetch(pageSize=3)
    assert page1["pagination"]["totalPages"] == 2
    assert page1["pagination"]["hasMore"] is True
    assert len(page1["records"]) == 3
    page2 = fetch(pageSize=3, page=2)
    assert page2["pagination"]["hasMore"] is False
    assert len(page2["records"]) == 1


def test_pass_flag_follows_configured_pass_score(client):
    set_id = _import_bank(client)
    r = client.post("/api/config", json={"key": "training_pass_score", "value": "50"})
    assert r.status_code == 200

    exam = client.post("/api/training/start", json={"employeeName": "吴九", "setId": set_id}).json["data"]
    answers = {str(q["id"]): ("B" if q["question_number"] == 1 else "A") for q in exam["questions"]}
    r = client.post(
        "/api/training/submit",
        json={"sessionId": exam["sessionId"], "employeeName": "吴九", "setId": set_id, "answers": answers, "startedAt": exam["startedAt"]},
    )
    result = r.json["data"]
    assert result["score"] == 50
    assert result["passScore"] == 50
    assert result["passed"] is True

    records = client.get("/api/training/records").json["data"]
    assert records["passScore"] == 50
    assert records["records"][0]["passed"] is True


def test_score_stays_within_bounds():
    questions = [Question(id=i, question_number=i, correct_answer="A") for i in (1, 2, 3)]

    all_right = score_answers(questions, {"1": "a", "2": "A", 3: "A", "99": "A"})
    assert all_right.score == 100
    assert all_right.correct == 3

    none_right = score_answers(questions, {"1": "B"})
    assert none_right.score == 0
    assert none_right.wrong == 3

    assert score_answers([], {"1": "A"}).score == 0
    assert round(2 / 3 * 100) == score_answers(questions, {"1": "A", "2": "A"}).score
