from __future__ import annotations

from contextlib import contextmanager
from collections.abc import Generator

from flask import Flask, g
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

# Postgres pool sizing; gunicorn runs a few workers per dyno.
POOL_SETTINGS = {
    "pool_recycle": 1800,
    "pool_size": 5,
    "max_overflow": 10,
    "pool_timeout": 30,
}


def _install_sqlite_hooks(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record):  # type: ignore[no-redef]
        # ON DELETE CASCADE is ignored unless enabled per connection.
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
        # pysqlite's implicit BEGIN breaks SAVEPOINT; emit our own instead.
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):  # type: ignore[no-redef]
        conn.exec_driver_sql("BEGIN")


def build_engine(db_url: str, *, pooled: bool = True) -> Engine:
    """
    Engine for the web app (pooled) or a one-off script (pooled=False).
    SQLite engines get foreign keys and working nested transactions.
    """
    is_sqlite = db_url.startswith("sqlite")
    kwargs: dict[str, object] = {"future": True, "pool_pre_ping": True}
    if pooled and not is_sqlite:
        kwargs.update(POOL_SETTINGS)
    engine = create_engine(db_url, **kwargs)
    if is_sqlite:
        _install_sqlite_hooks(engine)
    return engine


def make_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False, future=True)


def init_db(app: Flask) -> None:
    engine = build_engine(app.config["DATABASE_URL"])

    if app.config.get("ENV") != "production":
        @event.listens_for(engine, "checkout")
        def _receive_checkout(dbapi_connection, connection_record, connection_proxy):  # type: ignore[no-redef]
            app.logger.debug("DB connection checkout from pool")

    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = make_sessionmaker(engine)


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session. Use inside request handlers.
    """
    s = getattr(g, "db_session", None)
    if s is None:
        if app is None:
            from flask import current_app

            app = current_app
        s = app.extensions["sqlalchemy_sessionmaker"]()
        g.db_session = s
    return s


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = getattr(g, "db_session", None)
    if s is None:
        return
    g.db_session = None
    try:
        if _exc is not None:
            s.rollback()
    finally:
        s.close()


@contextmanager
def transaction(sm: sessionmaker) -> Generator[Session, None, None]:
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


def session_scope(app: Flask):
    """Commit-or-rollback session outside a request (scripts, tests)."""
    return transaction(app.extensions["sqlalchemy_sessionmaker"])
