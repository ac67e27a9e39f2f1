"""
Seed baseline rows: exam settings in system_config and the default exam categories.

Existing rows are left untouched, so re-running after an admin edited the pass
score or a category is safe.

Usage:
  python scripts/init_db.py            # seed only (tables must exist)
  python scripts/init_db.py --create   # create_all first (local SQLite)
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.opsdesk.constants import (  # noqa: E402
    CONFIG_EXAM_TIME_LIMIT,
    CONFIG_TRAINING_PASS_SCORE,
    DEFAULT_EXAM_TIME_LIMIT,
    DEFAULT_PASS_SCORE,
)
from app.opsdesk.models import Base, SystemConfig  # noqa: E402
from app.opsdesk.modules.training.models import ExamCategory  # noqa: E402
from scripts._db_utils import create_script_engine, script_session  # noqa: E402

DEFAULT_CONFIG = (
    (CONFIG_TRAINING_PASS_SCORE, str(DEFAULT_PASS_SCORE), "培训考核及格分数"),
    (CONFIG_EXAM_TIME_LIMIT, str(DEFAULT_EXAM_TIME_LIMIT), "考试时间限制(分钟)"),
)

DEFAULT_CATEGORIES = (
    ("新员工培训考核", "针对新入职员工的基础培训考核，涵盖公司文化、产品知识、业务流程等内容", "GraduationCap", "#10b981"),
    ("公司业务考核", "针对在职员工的业务能力考核，包括销售技巧、客户服务、专业知识等", "Building2", "#3b82f6"),
    ("技能认证考核", "针对特定岗位或技能的专业认证考核", "Award", "#8b5cf6"),
    ("安全培训考核", "工作安全、信息安全等相关培训考核", "Shield", "#ef4444"),
    ("合规培训考核", "法律法规、公司制度等合规性培训考核", "Scale", "#f59e0b"),
)


def seed_only(*, database_url: str | None = None) -> None:
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///opsdesk.db").strip()
    created_config = 0
    created_categories = 0

    with script_session(db_url) as s:
        for key, value, description in DEFAULT_CONFIG:
            if s.get(SystemConfig, key) is None:
                s.add(SystemConfig(key=key, value=value, description=description))
                created_config += 1

        existing = {name for (name,) in s.query(ExamCategory.name).all()}
        for order, (name, description, icon, color) in enumerate(DEFAULT_CATEGORIES, start=1):
            if name in existing:
                continue
            s.add(ExamCategory(name=name, description=description, icon=icon, color=color, sort_order=order))
            created_categories += 1

    print(f"Seed complete: {created_config} config row(s), {created_categories} exam categor(ies) added.", flush=True)


def create_tables(database_url: str | None = None) -> None:
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///opsdesk.db").strip()
    # Register every module table on Base.metadata.
    import app.opsdesk.modules.phone_numbers.models  # noqa: F401
    import app.opsdesk.modules.project_progress.models  # noqa: F401
    import app.opsdesk.modules.sms.models  # noqa: F401
    import app.opsdesk.modules.supplier_import.models  # noqa: F401

    engine = create_script_engine(db_url)
    try:
        Base.metadata.create_all(bind=engine)
    finally:
        engine.dispose()


def main() -> None:
    if "--create" in sys.argv[1:]:
        create_tables()
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
