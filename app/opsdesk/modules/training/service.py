from __future__ import annotations

import json
import random
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_

from app.opsdesk.audit import record_event
from app.opsdesk.constants import ANSWER_LETTERS, HEX_COLOR_RE
from app.opsdesk.errors import ConflictError, NotFoundError, ValidationError
from app.opsdesk.modules.training.models import ExamCategory, Question, QuestionSet, TrainingRecord
from app.opsdesk.utils import clean_str, date_range_start, iso, parse_bool

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session


UNCATEGORIZED_NAME = "未分类"
UNCATEGORIZED_COLOR = "#6b7280"
DEFAULT_SECTION = "通用知识"
QUESTION_REQUIRED_FIELDS = ("question_text", "option_a", "option_b", "option_c", "option_d", "correct_answer")
SCORE_BUCKETS = (("90-100", 90, 100), ("80-89", 80, 89), ("70-79", 70, 79), ("60-69", 60, 69), ("0-59", 0, 59))


# ---------- Serialization ----------
def category_to_dict(c: ExamCategory) -> dict[str, Any]:
    return {
        "id": c.id,
        "name": c.name,
        "description": c.description,
        "icon": c.icon,
        "color": c.color,
        "sort_order": c.sort_order,
        "is_active": c.is_active,
        "created_at": iso(c.created_at),
        "updated_at": iso(c.updated_at),
    }


def set_to_dict(qs: QuestionSet, questions_count: int | None = None) -> dict[str, Any]:
    return {
        "id": qs.id,
        "name": qs.name,
        "description": qs.description,
        "category_id": qs.category_id,
        "categoryId": qs.category_id,
        "categoryName": qs.category.name if qs.category else UNCATEGORIZED_NAME,
        "categoryColor": qs.category.color if qs.category else UNCATEGORIZED_COLOR,
        "total_questions": qs.total_questions,
        "is_active": qs.is_active,
        "questionsCount": questions_count if questions_count is not None else len(qs.questions),
        "created_at": iso(qs.created_at),
        "updated_at": iso(qs.updated_at),
    }


def question_to_dict(q: Question, *, include_answer: bool = True) -> dict[str, Any]:
    d: dict[str, Any] = {
        "id": q.id,
        "set_id": q.set_id,
        "question_number": q.question_number,
        "section": q.section,
        "question_text": q.question_text,
        "option_a": q.option_a,
        "option_b": q.option_b,
        "option_c": q.option_c,
        "option_d": q.option_d,
    }
    if include_answer:
        d["correct_answer"] = q.correct_answer
        d["explanation"] = q.explanation
    return d


def record_to_dict(r: TrainingRecord, pass_score: int, *, include_answers: bool = False) -> dict[str, Any]:
    d: dict[str, Any] = {
        "id": r.id,
        "employee_name": r.employee_name,
        "set_id": r.set_id,
        "setName": r.question_set.name if r.question_set else None,
        "score": r.score,
        "total_questions": r.total_questions,
        "started_at": iso(r.started_at),
        "completed_at": iso(r.completed_at),
        "ip_address": r.ip_address,
        "session_duration": r.session_duration,
        "passed": r.score >= pass_score,
    }
    if include_answers:
        try:
            d["answers"] = json.loads(r.answers or "[]")
        except ValueError:
            d["answers"] = []
    return d


def _set_question_counts(s: "Session", set_ids: list[int]) -> dict[int, int]:
    if not set_ids:
        return {}
    rows = (
        s.query(Question.set_id, func.count(Question.id))
        .filter(Question.set_id.in_(set_ids))
        .group_by(Question.set_id)
        .all()
    )
    return {set_id: count for set_id, count in rows}


def count_questions(s: "Session", set_id: int) -> int:
    return s.query(func.count(Question.id)).filter(Question.set_id == set_id).scalar() or 0


# ---------- Categories ----------
def list_categories(s: "Session", *, include_stats: bool = False) -> list[dict[str, Any]]:
    cats = s.query(ExamCategory).order_by(ExamCategory.sort_order.asc(), ExamCategory.id.asc()).all()
    out = []
    for c in cats:
        d = category_to_dict(c)
        if include_stats:
            d["question_sets_count"] = (
                s.query(func.count(QuestionSet.id)).filter(QuestionSet.category_id == c.id).scalar() or 0
            )
            d["exam_records_count"] = (
                s.query(func.count(TrainingRecord.id))
                .join(QuestionSet, TrainingRecord.set_id == QuestionSet.id)
                .filter(QuestionSet.category_id == c.id)
                .scalar()
                or 0
            )
        out.append(d)
    return out


def validate_category_payload(payload: dict, *, require_name: bool = True) -> list[str]:
    errors = []
    name = (payload.get("name") or "").strip() if isinstance(payload.get("name"), str) else ""
    if require_name and not name:
        errors.append("分类名称不能为空")
    color = payload.get("color")
    if color and not HEX_COLOR_RE.match(str(color)):
        errors.append("颜色格式无效，应为 #RRGGBB")
    sort_order = payload.get("sortOrder", payload.get("sort_order"))
    if sort_order not in (None, ""):
        try:
            int(sort_order)
        except (TypeError, ValueError):
            errors.append("排序值必须是整数")
    return errors


def _name_taken(s: "Session", name: str, exclude_id: int | None = None) -> bool:
    q = s.query(ExamCategory.id).filter(ExamCategory.name == name)
    if exclude_id is not None:
        q = q.filter(ExamCategory.id != exclude_id)
    return q.first() is not None


def create_category(s: "Session", payload: dict) -> ExamCategory:
    name = payload["name"].strip()
    if _name_taken(s, name):
        raise ValidationError("分类名称已存在")
    now = datetime.utcnow()
    c = ExamCategory(
        name=name,
        description=clean_str(payload.get("description")),
        icon=clean_str(payload.get("icon")) or "BookOpen",
        color=clean_str(payload.get("color")) or "#3b82f6",
        sort_order=int(payload.get("sortOrder", payload.get("sort_order")) or 0),
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    s.add(c)
    s.flush()
    record_event(s, action="training.category.create", entity_type="ExamCategory", entity_id=str(c.id), metadata={"name": name})
    return c


def update_category(s: "Session", c: ExamCategory, payload: dict) -> ExamCategory:
    changes = {}
    new_name = (payload.get("name") or "").strip()
    if new_name and new_name != c.name:
        if _name_taken(s, new_name, exclude_id=c.id):
            raise ValidationError("分类名称已存在")
        changes["name"] = {"old": c.name, "new": new_name}
        c.name = new_name
    if "description" in payload:
        c.description = clean_str(payload.get("description"))
    if payload.get("icon"):
        c.icon = str(payload["icon"]).strip()
    if payload.get("color"):
        c.color = str(payload["color"]).strip()
    sort_order = payload.get("sortOrder", payload.get("sort_order"))
    if sort_order not in (None, ""):
        c.sort_order = int(sort_order)
    if "is_active" in payload or "isActive" in payload:
        c.is_active = parse_bool(payload.get("is_active", payload.get("isActive")), c.is_active)
    c.updated_at = datetime.utcnow()
    record_event(s, action="training.category.edit", entity_type="ExamCategory", entity_id=str(c.id), metadata={"changes": changes})
    return c


def delete_category(s: "Session", category_id: int) -> None:
    c = s.get(ExamCategory, category_id)
    if c is None:
        raise NotFoundError("分类不存在")
    set_count = s.query(func.count(QuestionSet.id)).filter(QuestionSet.category_id == c.id).scalar() or 0
    if set_count:
        record_count = (
            s.query(func.count(TrainingRecord.id))
            .join(QuestionSet, TrainingRecord.set_id == QuestionSet.id)
            .filter(QuestionSet.category_id == c.id)
            .scalar()
            or 0
        )
        raise ConflictError(
            f"该分类下还有 {set_count} 个题库和 {record_count} 条考试记录，无法删除",
            questionSetsCount=set_count,
            examRecordsCount=record_count,
        )
    s.delete(c)
    record_event(s, action="training.category.delete", entity_type="ExamCategory", entity_id=str(category_id), metadata={"name": c.name})


# ---------- Question sets ----------
def list_sets(s: "Session", *, category_id: int | None = None, active_only: bool = False) -> list[dict[str, Any]]:
    q = s.query(QuestionSet)
    if category_id is not None:
        q = q.filter(QuestionSet.category_id == category_id)
    if active_only:
        q = q.filter(QuestionSet.is_active.is_(True))
    sets = q.order_by(QuestionSet.id.asc()).all()
    counts = _set_question_counts(s, [qs.id for qs in sets])
    return [set_to_dict(qs, counts.get(qs.id, 0)) for qs in sets]


def get_set(s: "Session", set_id: int) -> QuestionSet:
    qs = s.get(QuestionSet, set_id)
    if qs is None:
        raise NotFoundError("题库不存在")
    return qs


def validate_set_payload(payload: dict, *, require_name: bool = True) -> list[str]:
    errors = []
    name = (payload.get("name") or "").strip() if isinstance(payload.get("name"), str) else ""
    if require_name and not name:
        errors.append("题库名称不能为空")
    total = payload.get("total_questions")
    if total not in (None, ""):
        try:
            if int(total) < 0:
                errors.append("题目总数不能为负数")
        except (TypeError, ValueError):
            errors.append("题目总数必须是整数")
    return errors


def _resolve_category_id(s: "Session", payload: dict) -> int | None:
    raw = payload.get("category_id", payload.get("categoryId"))
    if raw in (None, ""):
        return None
    try:
        category_id = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("分类ID无效")
    if s.get(ExamCategory, category_id) is None:
        raise NotFoundError("分类不存在")
    return category_id


def create_set(s: "Session", payload: dict) -> QuestionSet:
    now = datetime.utcnow()
    qs = QuestionSet(
        name=payload["name"].strip(),
        description=clean_str(payload.get("description")),
        category_id=_resolve_category_id(s, payload),
        total_questions=int(payload.get("total_questions") or 50),
        is_active=parse_bool(payload.get("is_active", payload.get("isActive")), True),
        created_at=now,
        updated_at=now,
    )
    s.add(qs)
    s.flush()
    record_event(s, action="training.set.create", entity_type="QuestionSet", entity_id=str(qs.id), metadata={"name": qs.name})
    return qs


def update_set(s: "Session", qs: QuestionSet, payload: dict) -> QuestionSet:
    changes = {}
    new_name = (payload.get("name") or "").strip()
    if new_name and new_name != qs.name:
        changes["name"] = {"old": qs.name, "new": new_name}
        qs.name = new_name
    if "description" in payload:
        qs.description = clean_str(payload.get("description"))
    if "category_id" in payload or "categoryId" in payload:
        new_cat = _resolve_category_id(s, payload)
        if new_cat != qs.category_id:
            changes["category_id"] = {"old": qs.category_id, "new": new_cat}
            qs.category_id = new_cat
    if payload.get("total_questions") not in (None, ""):
        qs.total_questions = int(payload["total_questions"])
    if "is_active" in payload or "isActive" in payload:
        qs.is_active = parse_bool(payload.get("is_active", payload.get("isActive")), qs.is_active)
    qs.updated_at = datetime.utcnow()
    record_event(s, action="training.set.edit", entity_type="QuestionSet", entity_id=str(qs.id), metadata={"changes": changes})
    return qs


def delete_question_set(s: "Session", set_id: int) -> int:
    """
    Delete a set and its questions in one transaction.
    Refuses when any training record references the set. Returns the number of questions removed.
    """
    qs = get_set(s, set_id)
    record_count = s.query(func.count(TrainingRecord.id)).filter(TrainingRecord.set_id == set_id).scalar() or 0
    if record_count:
        raise ConflictError(
            f"该题库已有 {record_count} 条考试记录，无法删除",
            recordsCount=record_count,
        )
    question_count = count_questions(s, set_id)
    s.delete(qs)
    record_event(
        s,
        action="training.set.delete",
        entity_type="QuestionSet",
        entity_id=str(set_id),
        metadata={"name": qs.name, "questions": question_count},
    )
    return question_count


def set_details(s: "Session", set_id: int) -> dict[str, Any]:
    qs = get_set(s, set_id)
    questions = s.query(Question).filter(Question.set_id == set_id).order_by(Question.question_number.asc()).all()
    d = set_to_dict(qs, len(questions))
    d["questions"] = [question_to_dict(q) for q in questions]
    return d


# ---------- Questions ----------
def validate_question_payload(payload: dict) -> list[str]:
    errors = []
    for name in QUESTION_REQUIRED_FIELDS:
        value = payload.get(name)
        if value is None or not str(value).strip():
            errors.append(f"字段 {name} 不能为空")
    answer = str(payload.get("correct_answer") or "").strip().upper()
    if answer and answer not in ANSWER_LETTERS:
        errors.append("正确答案必须是 A、B、C、D 之一")
    return errors


def update_question(s: "Session", q: Question, payload: dict) -> Question:
    changes = {}
    for name in ("question_text", "option_a", "option_b", "option_c", "option_d"):
        new = str(payload[name]).strip()
        if new != getattr(q, name):
            changes[name] = {"old": getattr(q, name), "new": new}
            setattr(q, name, new)
    answer = str(payload["correct_answer"]).strip().upper()
    if answer != q.correct_answer:
        changes["correct_answer"] = {"old": q.correct_answer, "new": answer}
        q.correct_answer = answer
    if "explanation" in payload:
        q.explanation = clean_str(payload.get("explanation"))
    if "section" in payload:
        q.section = clean_str(payload.get("section"))
    record_event(s, action="training.question.edit", entity_type="Question", entity_id=str(q.id), metadata={"changes": changes})
    return q


def delete_question(s: "Session", question_id: int) -> None:
    q = s.get(Question, question_id)
    if q is None:
        raise NotFoundError("题目不存在")
    s.delete(q)
    record_event(s, action="training.question.delete", entity_type="Question", entity_id=str(question_id), metadata={"set_id": q.set_id})


def find_questions_with_empty_options(s: "Session", set_id: int | None = None) -> list[dict[str, Any]]:
    """Questions missing any option text, grouped by set."""
    empty = lambda col: or_(col.is_(None), func.trim(col) == "")  # noqa: E731
    q = s.query(Question).filter(
        or_(empty(Question.option_a), empty(Question.option_b), empty(Question.option_c), empty(Question.option_d))
    )
    if set_id is not None:
        q = q.filter(Question.set_id == set_id)
    grouped: dict[int, dict[str, Any]] = {}
    for question in q.order_by(Question.set_id.asc(), Question.question_number.asc()).all():
        group = grouped.get(question.set_id)
        if group is None:
            group = {
                "setId": question.set_id,
                "setName": question.question_set.name if question.question_set else None,
                "questions": [],
            }
            grouped[question.set_id] = group
        d = question_to_dict(question)
        d["emptyOptions"] = [
            letter
            for letter in ANSWER_LETTERS
            if not (getattr(question, f"option_{letter.lower()}") or "").strip()
        ]
        group["questions"].append(d)
    return list(grouped.values())


# ---------- Exam flow ----------
def pick_question_set(s: "Session", *, set_id: int | None = None, category_id: int | None = None) -> QuestionSet:
    if set_id is not None:
        qs = s.get(QuestionSet, set_id)
        if qs is None or not qs.is_active:
            raise NotFoundError("题库不存在或未启用")
        return qs
    q = s.query(QuestionSet).filter(QuestionSet.is_active.is_(True))
    if category_id is not None:
        q = q.filter(QuestionSet.category_id == category_id)
    candidates = q.all()
    if not candidates:
        raise NotFoundError("没有可用的题库")
    return random.choice(candidates)


def start_exam(s: "Session", employee_name: str, *, set_id: int | None = None, category_id: int | None = None) -> dict[str, Any]:
    qs = pick_question_set(s, set_id=set_id, category_id=category_id)
    questions = s.query(Question).filter(Question.set_id == qs.id).order_by(Question.question_number.asc()).all()
    if not questions:
        raise NotFoundError("题库中没有题目")
    return {
        "sessionId": uuid.uuid4().hex,
        "employeeName": employee_name,
        "questionSet": {
            "id": qs.id,
            "name": qs.name,
            "description": qs.description,
            "totalQuestions": len(questions),
        },
        "questions": [question_to_dict(q, include_answer=False) for q in questions],
        "startedAt": datetime.utcnow().isoformat() + "Z",
    }


@dataclass(frozen=True)
class ExamScore:
    score: int
    total: int
    correct: int
    details: list[dict[str, Any]]

    @property
    def wrong(self) -> int:
        return self.total - self.correct

    @property
    def accuracy(self) -> float:
        return round(self.correct / self.total * 100, 2) if self.total else 0.0


def score_answers(questions: list[Question], answers: dict[str, Any]) -> ExamScore:
    """Score submitted answers keyed by question id (str or int)."""
    details = []
    correct = 0
    for q in questions:
        raw = answers.get(str(q.id), answers.get(q.id))  # type: ignore[call-overload]
        user_answer = str(raw).strip().upper() if raw not in (None, "") else ""
        is_correct = user_answer == q.correct_answer
        if is_correct:
            correct += 1
        details.append(
            {
                "questionId": q.id,
                "questionNumber": q.question_number,
                "questionText": q.question_text,
                "userAnswer": user_answer or None,
                "correctAnswer": q.correct_answer,
                "isCorrect": is_correct,
                "explanation": q.explanation,
                "section": q.section,
            }
        )
    total = len(questions)
    score = round(correct / total * 100) if total else 0
    return ExamScore(score=min(100, max(0, score)), total=total, correct=correct, details=details)


def submit_exam(
    s: "Session",
    *,
    employee_name: str,
    set_id: int,
    started_at: datetime | None,
    answers: dict[str, Any],
    ip_address: str,
    pass_score: int,
) -> dict[str, Any]:
    questions = s.query(Question).filter(Question.set_id == set_id).order_by(Question.question_number.asc()).all()
    if not questions:
        raise NotFoundError("题库中没有题目")

    result = score_answers(questions, answers)
    now = datetime.utcnow()
    duration = max(0, int((now - started_at).total_seconds())) if started_at else None
    record = TrainingRecord(
        employee_name=employee_name,
        set_id=set_id,
        answers=json.dumps(result.details, ensure_ascii=False),
        score=result.score,
        total_questions=result.total,
        started_at=started_at,
        completed_at=now,
        ip_address=ip_address,
        session_duration=duration,
    )
    s.add(record)
    s.flush()
    record_event(
        s,
        action="training.exam.submit",
        entity_type="TrainingRecord",
        entity_id=str(record.id),
        metadata={"employee": employee_name, "set_id": set_id, "score": result.score},
    )
    return {
        "recordId": record.id,
        "score": result.score,
        "totalQuestions": result.total,
        "correctAnswers": result.correct,
        "wrongAnswers": result.wrong,
        "accuracy": result.accuracy,
        "sessionDuration": duration,
        "passed": result.score >= pass_score,
        "passScore": pass_score,
        "answerDetails": result.details,
        "completedAt": now.isoformat() + "Z",
    }


def employee_history(s: "Session", employee_name: str, pass_score: int) -> dict[str, Any]:
    records = (
        s.query(TrainingRecord)
        .filter(TrainingRecord.employee_name == employee_name)
        .order_by(TrainingRecord.completed_at.desc())
        .all()
    )
    return {
        "records": [record_to_dict(r, pass_score) for r in records],
        "totalAttempts": len(records),
        "bestScore": max((r.score for r in records), default=0),
    }


def correct_answers_for_set(s: "Session", set_id: int) -> list[dict[str, Any]]:
    questions = s.query(Question).filter(Question.set_id == set_id).order_by(Question.question_number.asc()).all()
    if not questions:
        raise NotFoundError("题库中没有题目")
    return [
        {
            "questionId": q.id,
            "questionNumber": q.question_number,
            "correctAnswer": q.correct_answer,
            "explanation": q.explanation,
        }
        for q in questions
    ]


# ---------- Records ----------
@dataclass(frozen=True)
class RecordFilters:
    employee_name: str | None = None
    set_id: int | None = None
    min_score: int | None = None
    max_score: int | None = None
    date_range: str = "all"


def filtered_records_query(s: "Session", f: RecordFilters) -> "Query":
    q = s.query(TrainingRecord)
    if f.employee_name:
        q = q.filter(TrainingRecord.employee_name.ilike(f"%{f.employee_name}%"))
    if f.set_id is not None:
        q = q.filter(TrainingRecord.set_id == f.set_id)
    if f.min_score is not None:
        q = q.filter(TrainingRecord.score >= f.min_score)
    if f.max_score is not None:
        q = q.filter(TrainingRecord.score <= f.max_score)
    start = date_range_start(f.date_range)
    if start is not None:
        q = q.filter(TrainingRecord.completed_at >= start)
    return q


def records_statistics(s: "Session", f: RecordFilters, pass_score: int) -> dict[str, Any]:
    scores = [row[0] for row in filtered_records_query(s, f).with_entities(TrainingRecord.score).all()]
    total = len(scores)
    passed = sum(1 for sc in scores if sc >= pass_score)
    distribution = {
        label: sum(1 for sc in scores if lo <= sc <= hi) for label, lo, hi in SCORE_BUCKETS
    }
    return {
        "totalRecords": total,
        "averageScore": round(sum(scores) / total, 1) if total else 0,
        "passedCount": passed,
        "passRate": round(passed / total * 100, 1) if total else 0,
        "highestScore": max(scores, default=0),
        "lowestScore": min(scores, default=0),
        "scoreDistribution": distribution,
    }


def list_records(s: "Session", f: RecordFilters, *, page: int, page_size: int) -> tuple[list[TrainingRecord], int]:
    q = filtered_records_query(s, f)
    total = q.count()
    rows = (
        q.order_by(TrainingRecord.completed_at.desc(), TrainingRecord.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return rows, total


def delete_record(s: "Session", record_id: int) -> None:
    r = s.get(TrainingRecord, record_id)
    if r is None:
        raise NotFoundError("考试记录不存在")
    s.delete(r)
    record_event(
        s,
        action="training.record.delete",
        entity_type="TrainingRecord",
        entity_id=str(record_id),
        metadata={"employee": r.employee_name, "score": r.score},
    )


# ---------- HTML import ----------
def _item_text(item: dict, *keys: str) -> str:
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return str(value).strip()
    return ""


def import_question_set(s: "Session", question_set: dict, category_id: int) -> dict[str, Any]:
    """
    Persist a parsed question set into a category.
    A set with the same name in the same category is replaced in place.
    """
    if s.get(ExamCategory, category_id) is None:
        raise NotFoundError("分类不存在")
    name = _item_text(question_set, "name")
    questions = question_set.get("questions") or []
    if not name:
        raise ValidationError("题库名称不能为空")
    if not isinstance(questions, list) or not questions:
        raise ValidationError("题库中没有题目")

    now = datetime.utcnow()
    existing = (
        s.query(QuestionSet)
        .filter(QuestionSet.name == name, QuestionSet.category_id == category_id)
        .order_by(QuestionSet.id.asc())
        .first()
    )
    replaced = existing is not None
    if existing is not None:
        s.query(Question).filter(Question.set_id == existing.id).delete(synchronize_session=False)
        existing.description = clean_str(question_set.get("description")) or existing.description
        existing.updated_at = now
        qs = existing
    else:
        qs = QuestionSet(
            name=name,
            description=clean_str(question_set.get("description")),
            category_id=category_id,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        s.add(qs)
    s.flush()

    errors: list[str] = []
    imported = 0
    for idx, item in enumerate(questions, start=1):
        if not isinstance(item, dict):
            errors.append(f"第{idx}题: 题目数据格式无效")
            continue
        try:
            number = int(item.get("questionNumber") or item.get("question_number") or idx)
        except (TypeError, ValueError):
            number = idx
        answer = _item_text(item, "correctAnswer", "correct_answer").upper()
        text = _item_text(item, "questionText", "question_text")
        if not text:
            errors.append(f"第{number}题: 题目内容为空")
            continue
        if answer not in ANSWER_LETTERS:
            errors.append(f"第{number}题: 正确答案无效")
            continue
        s.add(
            Question(
                set_id=qs.id,
                question_number=number,
                section=clean_str(item.get("section")) or DEFAULT_SECTION,
                question_text=text,
                option_a=_item_text(item, "optionA", "option_a"),
                option_b=_item_text(item, "optionB", "option_b"),
                option_c=_item_text(item, "optionC", "option_c"),
                option_d=_item_text(item, "optionD", "option_d"),
                correct_answer=answer,
                explanation=clean_str(item.get("explanation")),
                created_at=now,
            )
        )
        imported += 1

    qs.total_questions = imported
    record_event(
        s,
        action="training.set.import_html",
        entity_type="QuestionSet",
        entity_id=str(qs.id),
        metadata={"name": name, "imported": imported, "errors": len(errors), "replaced": replaced},
    )
    return {"setId": qs.id, "importedCount": imported, "errors": errors, "replaced": replaced}
