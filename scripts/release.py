"""
Release phase: migrate the schema to head, then seed defaults.

DATABASE_URL is required; production never runs against SQLite.
Seeding only inserts missing config keys and exam categories.

Usage:
  python scripts/release.py [--no-seed]
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _require_env(name: str) -> str:
    v = (os.environ.get(name) or "").strip()
    if not v:
        raise RuntimeError(f"Missing required environment variable {name}.")
    return v


def alembic_config(db_url: str):
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    return cfg


def upgrade_schema(db_url: str) -> None:
    from alembic import command

    print("Running Alembic migrations...", flush=True)
    command.upgrade(alembic_config(db_url), "head")
    print("Migrations complete.", flush=True)


def run_release(*, seed: bool = True) -> None:
    db_url = _require_env("DATABASE_URL")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")

    print(f"=== opsdesk release (ENV={env or '(unset)'}) ===", flush=True)
    upgrade_schema(db_url)

    if seed:
        from scripts import init_db

        init_db.seed_only(database_url=db_url)
        print("Seeded default config and exam categories.", flush=True)


def main() -> None:
    parser = argparse.ArgumentParser(description="Migrate and seed the opsdesk database.")
    parser.add_argument("--no-seed", action="store_true", help="Only run migrations.")
    args = parser.parse_args()
    run_release(seed=not args.no_seed)


if __name__ == "__main__":
    main()
