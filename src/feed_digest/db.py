from __future__ import annotations

from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import Settings, get_settings
from .errors import StoreUnavailable


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""


def _enable_sqlite_savepoints(engine: Engine) -> None:
    # pysqlite issues its own BEGIN lazily, which breaks SAVEPOINT; take over transaction control.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


@lru_cache(maxsize=8)
def _engine_for_url(db_url: str) -> Engine:
    connect_args = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, future=True, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        _enable_sqlite_savepoints(engine)
    return engine


def get_engine(settings: Settings | None = None) -> Engine:
    active_settings = settings or get_settings()
    return _engine_for_url(active_settings.db_url)


@lru_cache(maxsize=8)
def _sessionmaker_for_url(db_url: str) -> sessionmaker[Session]:
    engine = _engine_for_url(db_url)
    return sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, future=True)


def _ensure_sqlite_parent(db_url: str) -> None:
    if not db_url.startswith("sqlite:///"):
        return
    path = db_url.removeprefix("sqlite:///")
    parent = Path(path).parent
    parent.mkdir(parents=True, exist_ok=True)


def init_db(settings: Settings | None = None) -> None:
    active_settings = settings or get_settings()
    _ensure_sqlite_parent(active_settings.db_url)

    from . import models  # noqa: F401

    Base.metadata.create_all(bind=get_engine(active_settings))


@contextmanager
def session_scope(settings: Settings | None = None):
    active_settings = settings or get_settings()
    SessionLocal = _sessionmaker_for_url(active_settings.db_url)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def store_guard(action: str):
    """Re-raise data layer errors as StoreUnavailable so job hosts can retry."""
    try:
        yield
    except SQLAlchemyError as exc:
        raise StoreUnavailable(f"{action}: {exc}") from exc
