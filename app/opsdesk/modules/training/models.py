from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.opsdesk.models import Base


class ExamCategory(Base):
    __tablename__ = "exam_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    icon: Mapped[str] = mapped_column(String(64), nullable=False, default="BookOpen")
    color: Mapped[str] = mapped_column(String(16), nullable=False, default="#3b82f6")
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    question_sets: Mapped[list["QuestionSet"]] = relationship(back_populates="category")


class QuestionSet(Base):
    __tablename__ = "question_sets"
    __table_args__ = (
        Index("idx_question_sets_category", "category_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category_id: Mapped[int | None] = mapped_column(ForeignKey("exam_categories.id", ondelete="SET NULL"), nullable=True)
    total_questions: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    category: Mapped[ExamCategory | None] = relationship(back_populates="question_sets", lazy="joined")
    questions: Mapped[list["Question"]] = relationship(
        back_populates="question_set",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Question.question_number",
    )
    # No cascade: sets with exam history must not be deleted.
    training_records: Mapped[list["TrainingRecord"]] = relationship(back_populates="question_set", passive_deletes="all")


class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (
        CheckConstraint("correct_answer IN ('A', 'B', 'C', 'D')", name="ck_questions_correct_answer"),
        Index("idx_questions_set", "set_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    set_id: Mapped[int] = mapped_column(ForeignKey("question_sets.id", ondelete="CASCADE"), nullable=False)
    question_number: Mapped[int] = mapped_column(Integer, nullable=False)
    section: Mapped[str | None] = mapped_column(String(128), nullable=True)
    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    option_a: Mapped[str] = mapped_column(Text, nullable=False, default="")
    option_b: Mapped[str] = mapped_column(Text, nullable=False, default="")
    option_c: Mapped[str] = mapped_column(Text, nullable=False, default="")
    option_d: Mapped[str] = mapped_column(Text, nullable=False, default="")
    correct_answer: Mapped[str] = mapped_column(String(1), nullable=False)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    question_set: Mapped[QuestionSet] = relationship(back_populates="questions")


class TrainingRecord(Base):
    __tablename__ = "training_records"
    __table_args__ = (
        CheckConstraint("score >= 0 AND score <= 100", name="ck_training_records_score"),
        Index("idx_training_records_employee", "employee_name"),
        Index("idx_training_records_set", "set_id"),
        Index("idx_training_records_completed", "completed_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_name: Mapped[str] = mapped_column(String(128), nullable=False)
    set_id: Mapped[int] = mapped_column(ForeignKey("question_sets.id", ondelete="RESTRICT"), nullable=False)
    answers: Mapped[str] = mapped_column(Text, nullable=False)  # JSON list of per-question results
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    total_questions: Mapped[int] = mapped_column(Integer, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    session_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)  # seconds

    question_set: Mapped[QuestionSet] = relationship(back_populates="training_records")
