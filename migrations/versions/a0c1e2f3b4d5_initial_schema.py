"""Initial schema: audit, config, training, phone directory, project progress, supplier import, sms.

Revision ID: a0c1e2f3b4d5
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a0c1e2f3b4d5"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("entity_type", sa.String(128), nullable=True),
        sa.Column("entity_id", sa.String(128), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("client_ip", sa.String(64), nullable=True),
    )

    op.create_table(
        "system_config",
        sa.Column("key", sa.String(128), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    # Training
    op.create_table(
        "exam_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("icon", sa.String(64), nullable=False, server_default="BookOpen"),
        sa.Column("color", sa.String(16), nullable=False, server_default="#3b82f6"),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("name"),
    )
    op.create_table(
        "question_sets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("total_questions", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["category_id"], ["exam_categories.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_question_sets_category", "question_sets", ["category_id"])
    op.create_table(
        "questions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("set_id", sa.Integer(), nullable=False),
        sa.Column("question_number", sa.Integer(), nullable=False),
        sa.Column("section", sa.String(128), nullable=True),
        sa.Column("question_text", sa.Text(), nullable=False),
        sa.Column("option_a", sa.Text(), nullable=False),
        sa.Column("option_b", sa.Text(), nullable=False),
        sa.Column("option_c", sa.Text(), nullable=False),
        sa.Column("option_d", sa.Text(), nullable=False),
        sa.Column("correct_answer", sa.String(1), nullable=False),
        sa.Column("explanation", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["set_id"], ["question_sets.id"], ondelete="CASCADE"),
        sa.CheckConstraint("correct_answer IN ('A', 'B', 'C', 'D')", name="ck_questions_correct_answer"),
    )
    op.create_index("idx_questions_set", "questions", ["set_id"])
    op.create_table(
        "training_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("employee_name", sa.String(128), nullable=False),
        sa.Column("set_id", sa.Integer(), nullable=False),
        sa.Column("answers", sa.Text(), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("total_questions", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("session_duration", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["set_id"], ["question_sets.id"], ondelete="RESTRICT"),
        sa.CheckConstraint("score >= 0 AND score <= 100", name="ck_training_records_score"),
    )
    op.create_index("idx_training_records_employee", "training_records", ["employee_name"])
    op.create_index("idx_training_records_set", "training_records", ["set_id"])
    op.create_index("idx_training_records_completed", "training_records", ["completed_at"])

    # Phone directory
    op.create_table(
        "phone_numbers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("number", sa.String(11), nullable=False),
        sa.Column("carrier", sa.String(32), nullable=False),
        sa.Column("province", sa.String(64), nullable=True),
        sa.Column("city", sa.String(64), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("number"),
    )
    op.create_index("idx_phone_numbers_carrier", "phone_numbers", ["carrier"])

    # Project progress
    op.create_table(
        "platforms",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("color", sa.String(16), nullable=False, server_default="#3b82f6"),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("name"),
    )
    op.create_table(
        "projects",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("platform_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["platform_id"], ["platforms.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_projects_platform", "projects", ["platform_id"])
    op.create_table(
        "project_phases",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("phase_order", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_project_phases_project", "project_phases", ["project_id"])
    op.create_table(
        "feature_modules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("phase_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("module_order", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["phase_id"], ["project_phases.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_feature_modules_project", "feature_modules", ["project_id"])
    op.create_index("idx_feature_modules_phase", "feature_modules", ["phase_id"])
    op.create_table(
        "feature_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("module_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("priority", sa.String(16), nullable=False, server_default="medium"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("progress_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("estimated_hours", sa.Float(), nullable=True),
        sa.Column("actual_hours", sa.Float(), nullable=True),
        sa.Column("assignee", sa.String(128), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("estimated_completion_date", sa.Date(), nullable=True),
        sa.Column("actual_completion_date", sa.Date(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["module_id"], ["feature_modules.id"], ondelete="CASCADE"),
        sa.CheckConstraint(
            "progress_percentage >= 0 AND progress_percentage <= 100",
            name="ck_feature_items_progress",
        ),
    )
    op.create_index("idx_feature_items_module", "feature_items", ["module_id"])
    op.create_index("idx_feature_items_status", "feature_items", ["status"])
    op.create_table(
        "progress_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("feature_item_id", sa.Integer(), nullable=False),
        sa.Column("old_status", sa.String(16), nullable=True),
        sa.Column("new_status", sa.String(16), nullable=False),
        sa.Column("old_progress", sa.Integer(), nullable=True),
        sa.Column("new_progress", sa.Integer(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("updated_by", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["feature_item_id"], ["feature_items.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_progress_records_item", "progress_records", ["feature_item_id"])

    # Supplier import
    op.create_table(
        "seller_company",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.BigInteger(), nullable=False),
        sa.Column("company_no", sa.String(64), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("country", sa.String(64), nullable=True),
        sa.Column("province", sa.String(64), nullable=True),
        sa.Column("city", sa.String(64), nullable=True),
        sa.Column("county", sa.String(64), nullable=True),
        sa.Column("address", sa.String(500), nullable=True),
        sa.Column("business_scope", sa.Text(), nullable=True),
        sa.Column("contact_person", sa.String(64), nullable=True),
        sa.Column("contact_person_title", sa.String(64), nullable=True),
        sa.Column("mobile", sa.String(32), nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("email", sa.String(128), nullable=True),
        sa.Column("intro", sa.Text(), nullable=True),
        sa.Column("whats_app", sa.String(32), nullable=True),
        sa.Column("fax", sa.String(32), nullable=True),
        sa.Column("postal_code", sa.String(16), nullable=True),
        sa.Column("company_birth", sa.Integer(), nullable=True),
        sa.Column("is_verified", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("homepage", sa.String(255), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("company_id"),
    )
    op.create_table(
        "seller_company_lang",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.BigInteger(), nullable=False),
        sa.Column("language_code", sa.String(16), nullable=False, server_default="en-US"),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("province", sa.String(64), nullable=True),
        sa.Column("city", sa.String(64), nullable=True),
        sa.Column("county", sa.String(64), nullable=True),
        sa.Column("address", sa.String(500), nullable=True),
        sa.Column("business_scope", sa.Text(), nullable=True),
        sa.Column("contact_person", sa.String(64), nullable=True),
        sa.Column("contact_person_title", sa.String(64), nullable=True),
        sa.Column("intro", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["seller_company.company_id"], ondelete="CASCADE"),
        sa.UniqueConstraint("company_id", "language_code", name="uq_seller_company_lang"),
    )
    op.create_table(
        "import_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("import_date", sa.DateTime(), nullable=False),
        sa.Column("total_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("duration_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(16), nullable=False, server_default="processing"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    failed_text_columns = [
        "company_no", "name", "name_en", "country", "province", "province_en", "city", "city_en",
        "county", "county_en", "address", "address_en", "business_scope", "business_scope_en",
        "contact_person", "contact_person_en", "contact_person_title", "contact_person_title_en",
        "mobile", "phone", "email", "intro", "intro_en", "whats_app", "fax", "postal_code",
        "company_birth",
    ]
    op.create_table(
        "failed_companies",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("import_record_id", sa.Integer(), nullable=False),
        sa.Column("company_id", sa.BigInteger(), nullable=True),
        *[sa.Column(name, sa.Text(), nullable=True) for name in failed_text_columns],
        sa.Column("is_verified", sa.Integer(), nullable=True),
        sa.Column("homepage", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_retry_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["import_record_id"], ["import_records.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_failed_companies_record", "failed_companies", ["import_record_id"])

    # SMS
    op.create_table(
        "sms_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("out_id", sa.String(64), nullable=False),
        sa.Column("phone_number", sa.String(20), nullable=False),
        sa.Column("carrier", sa.String(32), nullable=True),
        sa.Column("phone_note", sa.String(255), nullable=True),
        sa.Column("template_code", sa.String(64), nullable=True),
        sa.Column("template_name", sa.String(255), nullable=True),
        sa.Column("template_params", sa.Text(), nullable=True),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("send_date", sa.String(32), nullable=True),
        sa.Column("receive_date", sa.String(32), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="发送中"),
        sa.Column("error_code", sa.String(64), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_retry_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("out_id"),
    )
    op.create_index("idx_sms_records_phone", "sms_records", ["phone_number"])
    op.create_index("idx_sms_records_status", "sms_records", ["status"])
    op.create_index("idx_sms_records_created", "sms_records", ["created_at"])


def downgrade() -> None:
    op.drop_table("sms_records")
    op.drop_table("failed_companies")
    op.drop_table("import_records")
    op.drop_table("seller_company_lang")
    op.drop_table("seller_company")
    op.drop_table("progress_records")
    op.drop_table("feature_items")
    op.drop_table("feature_modules")
    op.drop_table("project_phases")
    op.drop_table("projects")
    op.drop_table("platforms")
    op.drop_table("phone_numbers")
    op.drop_table("training_records")
    op.drop_table("questions")
    op.drop_table("question_sets")
    op.drop_table("exam_categories")
    op.drop_table("system_config")
    op.drop_table("audit_events")
