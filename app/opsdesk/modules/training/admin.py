from __future__ import annotations

from datetime import datetime

from flask import Blueprint, Response, current_app, request

from app.opsdesk.db import db_session
from app.opsdesk.errors import NotFoundError, ValidationError
from app.opsdesk.modules.system_config.service import get_training_pass_score
from app.opsdesk.modules.training.export import build_records_csv, build_records_workbook
from app.opsdesk.modules.training.models import ExamCategory, Question, QuestionSet, TrainingRecord
from app.opsdesk.modules.training.parsers.html import parse_question_html
from app.opsdesk.modules.training.service import (
    RecordFilters,
    category_to_dict,
    correct_answers_for_set,
    count_questions,
    create_category,
    create_set,
    delete_category,
    delete_question,
    delete_question_set,
    delete_record,
    employee_history,
    filtered_records_query,
    find_questions_with_empty_options,
    get_set,
    import_question_set,
    list_categories,
    list_records,
    list_sets,
    question_to_dict,
    record_to_dict,
    records_statistics,
    set_details,
    set_to_dict,
    start_exam,
    submit_exam,
    update_category,
    update_question,
    update_set,
    validate_category_payload,
    validate_question_payload,
    validate_set_payload,
)
from app.opsdesk.utils import client_ip, fail, json_body, ok, page_pagination, parse_bool, parse_datetime, parse_int

bp = Blueprint("training", __name__)
questions_bp = Blueprint("admin_questions", __name__)

MAX_PAGE_SIZE = 100


def _path_id(raw: str, label: str) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"无效的{label}ID")
    if value <= 0:
        raise ValidationError(f"无效的{label}ID")
    return value


def _record_filters() -> RecordFilters:
    set_raw = (request.args.get("setId") or "").strip()
    return RecordFilters(
        employee_name=(request.args.get("employeeName") or "").strip() or None,
        set_id=parse_int(set_raw, field="setId") if set_raw and set_raw != "all" else None,
        min_score=parse_int(request.args.get("minScore"), field="minScore"),
        max_score=parse_int(request.args.get("maxScore"), field="maxScore"),
        date_range=(request.args.get("dateRange") or "all").strip(),
    )


# ---------- Categories ----------
@bp.get("/categories")
def categories_list():
    s = db_session()
    return ok(list_categories(s, include_stats=parse_bool(request.args.get("includeStats"))))


@bp.post("/categories")
def categories_create():
    s = db_session()
    payload = json_body()
    errors = validate_category_payload(payload)
    if errors:
        return fail(errors[0], 400)
    c = create_category(s, payload)
    s.commit()
    return ok(category_to_dict(c), message="分类创建成功", status=201)


@bp.put("/categories")
def categories_update():
    s = db_session()
    payload = json_body()
    category_id = parse_int(payload.get("id"))
    if not category_id:
        return fail("缺少分类ID", 400)
    errors = validate_category_payload(payload, require_name=False)
    if errors:
        return fail(errors[0], 400)
    c = s.get(ExamCategory, category_id)
    if c is None:
        return fail("分类不存在", 404)
    update_category(s, c, payload)
    s.commit()
    return ok(category_to_dict(c), message="分类更新成功")


@bp.delete("/categories")
def categories_delete():
    s = db_session()
    category_id = parse_int(request.args.get("id"))
    if not category_id:
        return fail("缺少分类ID", 400)
    delete_category(s, category_id)
    s.commit()
    return ok(message="分类删除成功")


# ---------- Question sets ----------
@bp.get("/sets")
def sets_list():
    s = db_session()
    category_id = parse_int(request.args.get("categoryId"), field="categoryId")
    return ok(list_sets(s, category_id=category_id))


@bp.post("/sets")
def sets_create():
    s = db_session()
    payload = json_body()
    errors = validate_set_payload(payload)
    if errors:
        return fail(errors[0], 400)
    qs = create_set(s, payload)
    s.commit()
    return ok(set_to_dict(qs, 0), message="题库创建成功", status=201)


@bp.get("/sets/<set_id>")
def sets_get(set_id: str):
    s = db_session()
    qs = get_set(s, _path_id(set_id, "题库"))
    return ok(set_to_dict(qs, count_questions(s, qs.id)))


@bp.put("/sets/<set_id>")
def sets_update(set_id: str):
    s = db_session()
    qs = get_set(s, _path_id(set_id, "题库"))
    payload = json_body()
    errors = validate_set_payload(payload, require_name=False)
    if errors:
        return fail(errors[0], 400)
    update_set(s, qs, payload)
    s.commit()
    return ok(set_to_dict(qs, count_questions(s, qs.id)), message="题库更新成功")


@bp.delete("/sets/<set_id>")
def sets_delete(set_id: str):
    s = db_session()
    removed = delete_question_set(s, _path_id(set_id, "题库"))
    s.commit()
    current_app.logger.info("Deleted question set %s with %s questions", set_id, removed)
    return ok(message="题库删除成功", deletedQuestions=removed)


@bp.get("/sets/<set_id>/details")
def sets_details(set_id: str):
    s = db_session()
    return ok(set_details(s, _path_id(set_id, "题库")))


# ---------- Exam flow ----------
@bp.post("/start")
def exam_start():
    s = db_session()
    payload = json_body()
    employee_name = (payload.get("employeeName") or "").strip()
    if not employee_name:
        return fail("请输入员工姓名", 400)
    data = start_exam(
        s,
        employee_name,
        set_id=parse_int(payload.get("setId"), field="setId"),
        category_id=parse_int(payload.get("categoryId"), field="categoryId"),
    )
    current_app.logger.info("Exam started employee=%s set=%s", employee_name, data["questionSet"]["id"])
    return ok(data)


@bp.get("/start")
def exam_sets():
    s = db_session()
    set_id = parse_int(request.args.get("setId"), field="setId")
    if set_id is not None:
        qs = get_set(s, set_id)
        return ok(set_to_dict(qs, count_questions(s, qs.id)))
    return ok(list_sets(s, active_only=True))


@bp.post("/submit")
def exam_submit():
    s = db_session()
    payload = json_body()
    employee_name = (payload.get("employeeName") or "").strip()
    set_id = parse_int(payload.get("setId"))
    answers = payload.get("answers")
    if not payload.get("sessionId") or not employee_name or not set_id or not isinstance(answers, dict):
        return fail("缺少必要参数", 400)

    started_at = parse_datetime(payload.get("startedAt"))
    if started_at is None:
        return fail("开始时间无效", 400)
    if started_at > datetime.utcnow():
        started_at = datetime.utcnow()

    data = submit_exam(
        s,
        employee_name=employee_name,
        set_id=set_id,
        started_at=started_at,
        answers=answers,
        ip_address=client_ip(),
        pass_score=get_training_pass_score(s),
    )
    s.commit()
    return ok(data, message="提交成功")


@bp.get("/submit")
def exam_history():
    s = db_session()
    employee_name = (request.args.get("employeeName") or "").strip()
    if not employee_name:
        return fail("请提供员工姓名", 400)
    return ok(employee_history(s, employee_name, get_training_pass_score(s)))


@bp.post("/answers")
def exam_answers():
    s = db_session()
    payload = json_body()
    set_id = parse_int(payload.get("setId"))
    if not payload.get("sessionId") or not set_id:
        return fail("缺少必要参数", 400)
    return ok({"correctAnswers": correct_answers_for_set(s, set_id)})


# ---------- Records ----------
@bp.get("/records")
def records_list():
    s = db_session()
    filters = _record_filters()
    page = max(1, parse_int(request.args.get("page"), 1) or 1)
    page_size = min(MAX_PAGE_SIZE, max(1, parse_int(request.args.get("pageSize"), 10) or 10))
    pass_score = get_training_pass_score(s)

    rows, total = list_records(s, filters, page=page, page_size=page_size)
    question_sets = s.query(QuestionSet).order_by(QuestionSet.id.asc()).all()
    return ok(
        {
            "records": [record_to_dict(r, pass_score) for r in rows],
            "pagination": page_pagination(total, page, page_size),
            "statistics": records_statistics(s, filters, pass_score),
            "questionSets": [{"id": qs.id, "name": qs.name} for qs in question_sets],
            "passScore": pass_score,
        }
    )


@bp.get("/records/<record_id>")
def records_get(record_id: str):
    s = db_session()
    r = s.get(TrainingRecord, _path_id(record_id, "记录"))
    if r is None:
        raise NotFoundError("考试记录不存在")
    pass_score = get_training_pass_score(s)
    return ok(record_to_dict(r, pass_score, include_answers=True), passScore=pass_score)


@bp.delete("/records/<record_id>")
def records_delete(record_id: str):
    s = db_session()
    delete_record(s, _path_id(record_id, "记录"))
    s.commit()
    return ok(message="记录删除成功")


@bp.get("/export")
def records_export():
    s = db_session()
    filters = _record_filters()
    fmt = (request.args.get("format") or "xlsx").strip().lower()
    if fmt not in ("xlsx", "csv"):
        return fail("不支持的导出格式", 400)

    records = (
        filtered_records_query(s, filters)
        .order_by(TrainingRecord.completed_at.desc(), TrainingRecord.id.desc())
        .all()
    )
    if not records:
        return fail("没有找到符合条件的数据", 404)

    pass_score = get_training_pass_score(s)
    stamp = datetime.utcnow().strftime("%Y%m%d_%H%M%S")
    if fmt == "csv":
        body = build_records_csv(records, pass_score)
        mimetype = "text/csv; charset=utf-8"
    else:
        body = build_records_workbook(records, pass_score, records_statistics(s, filters, pass_score))
        mimetype = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    return Response(
        body,
        mimetype=mimetype,
        headers={"Content-Disposition": f'attachment; filename="training_records_{stamp}.{fmt}"'},
    )


# ---------- HTML ingestion ----------
@bp.post("/parse-html")
def parse_html():
    payload = json_body()
    result = parse_question_html(payload.get("htmlContent"), payload.get("setName"))
    if not result.success:
        return fail(result.error or "解析失败", 400, warnings=result.warnings)
    return ok(result.to_dict()["data"], warnings=result.warnings)


@bp.post("/import-html")
def import_html():
    s = db_session()
    payload = json_body()
    question_set = payload.get("questionSet")
    category_id = parse_int(payload.get("categoryId"))
    if not category_id:
        return fail("请选择题库分类", 400)
    if not isinstance(question_set, dict):
        return fail("缺少题库数据", 400)
    result = import_question_set(s, question_set, category_id)
    s.commit()
    current_app.logger.info(
        "Imported question set %s (%s questions, %s errors)", result["setId"], result["importedCount"], len(result["errors"])
    )
    message = f"成功导入 {result['importedCount']} 道题目"
    if result["errors"]:
        message += f"，{len(result['errors'])} 道题目导入失败"
    return ok(result, message=message)


# ---------- Question admin ----------
@questions_bp.get("/check-empty")
def questions_check_empty():
    s = db_session()
    set_id = parse_int(request.args.get("setId"), field="setId")
    groups = find_questions_with_empty_options(s, set_id)
    return ok(groups, totalQuestions=sum(len(g["questions"]) for g in groups))


@questions_bp.get("/<question_id>")
def questions_get(question_id: str):
    s = db_session()
    q = s.get(Question, _path_id(question_id, "题目"))
    if q is None:
        return fail("题目不存在", 404)
    return ok(question_to_dict(q))


@questions_bp.put("/<question_id>")
def questions_update(question_id: str):
    s = db_session()
    q = s.get(Question, _path_id(question_id, "题目"))
    if q is None:
        return fail("题目不存在", 404)
    payload = json_body()
    errors = validate_question_payload(payload)
    if errors:
        return fail(errors[0], 400)
    update_question(s, q, payload)
    s.commit()
    return ok(question_to_dict(q), message="题目更新成功")


@questions_bp.delete("/<question_id>")
def questions_delete(question_id: str):
    s = db_session()
    delete_question(s, _path_id(question_id, "题目"))
    s.commit()
    return ok(message="题目删除成功")
