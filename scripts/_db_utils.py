from __future__ import annotations

from contextlib import contextmanager

from app.opsdesk.db import build_engine, make_sessionmaker, transaction


def create_script_engine(db_url: str):
    return build_engine(db_url, pooled=False)


@contextmanager
def script_session(db_url: str):
    """Commit-or-rollback session for one-off scripts that run outside the Flask app."""
    engine = create_script_engine(db_url)
    try:
        with transaction(make_sessionmaker(engine)) as s:
            yield s
    finally:
        engine.dispose()
