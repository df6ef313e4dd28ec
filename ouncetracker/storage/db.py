"""Database connectivity helpers."""

from __future__ import annotations

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ouncetracker.logging_config import get_logger

from .models_sql import Base

LOGGER = get_logger(__name__)


def _is_sqlite(url: str) -> bool:
    return make_url(url).get_backend_name() == "sqlite"


def _apply_sqlite_pragmas(engine: Engine, timeout_value: float) -> None:
    try:
        with engine.connect() as connection:
            connection.execute(text("PRAGMA journal_mode=WAL"))
            connection.execute(text("PRAGMA synchronous=NORMAL"))
            connection.execute(text(f"PRAGMA busy_timeout = {int(timeout_value * 1000)}"))
    except Exception as exc:  # pragma: no cover - best-effort tuning
        LOGGER.warning("Unable to configure SQLite pragmas: %s", exc)


def get_engine(url: str, *, busy_timeout: int | float | None = None) -> Engine:
    """Create an engine for *url* (any SQLAlchemy URL; SQLite gets WAL pragmas)."""

    if not _is_sqlite(url):
        return create_engine(url, future=True, pool_pre_ping=True)

    timeout_value = float(busy_timeout) if busy_timeout is not None else 30.0
    database = make_url(url).database
    if not database or database == ":memory:":
        # one shared connection so every session sees the same in-memory database
        return create_engine(
            url,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    engine = create_engine(
        url,
        future=True,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False, "timeout": timeout_value},
    )
    _apply_sqlite_pragmas(engine, timeout_value)
    return engine


def make_session(engine: Engine) -> sessionmaker[Session]:
    """Create a configured session factory bound to *engine*."""

    return sessionmaker(engine, expire_on_commit=False, future=True)


def init_db_safe(engine: Engine) -> None:
    """Create missing tables only."""

    Base.metadata.create_all(engine, checkfirst=True)
