"""Ledger store wiring.

One engine and session factory per process, built from DATABASE_URL. All
billing writes go through `session_scope`, which commits on success and rolls
back on any error, so an invoice, its items and the charge or order
transition it settles land together. The schema is owned by Alembic; only
engines handed in explicitly (the test-suite's SQLite files and in-memory
stores) are created from the ORM metadata.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from alembic.config import Config as AlembicConfig
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from alembic import command
from config import APP_ENV, DATABASE_ECHO, DATABASE_URL, ROOT_DIR
from errors import ExternalDependencyError
from observability import get_logger, log_event

from .models import Base

SessionFactory = Callable[[], Session]

SQLITE_LOCK_WAIT_SECONDS = 15

logger = get_logger("ledger.db")


def _ensure_ledger_file_dir(url: str) -> None:
    """Local ledger files (`sqlite:///data/ledger.db`) get their directory created on first start."""
    prefix = "sqlite:///"
    if not url.startswith(prefix):
        return
    db_path = url[len(prefix):].split("?", 1)[0]
    if not db_path or db_path == ":memory:":
        return
    path = Path(db_path).expanduser()
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    path.parent.mkdir(parents=True, exist_ok=True)


def _create_ledger_engine(url: str) -> Engine:
    kwargs: dict[str, Any] = {
        "future": True,
        "echo": DATABASE_ECHO,
        "pool_pre_ping": True,
    }
    if url.startswith("sqlite"):
        # Writers queue on the file lock instead of failing fast.
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": SQLITE_LOCK_WAIT_SECONDS}
    return create_engine(url, **kwargs)


def build_session_factory(database_url: str) -> tuple[Engine, SessionFactory]:
    _ensure_ledger_file_dir(database_url)
    engine = _create_ledger_engine(database_url)
    session_factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    return engine, session_factory


ENGINE, SessionLocal = build_session_factory(DATABASE_URL)


def _is_production_env() -> bool:
    return str(APP_ENV or "").strip().lower() in {"prod", "production"}


def _is_postgres_url(database_url: str) -> bool:
    normalized = str(database_url or "").strip().lower()
    return normalized.startswith("postgresql://") or normalized.startswith("postgresql+")


def _migrate_ledger_schema(revision: str = "head") -> None:
    config_path = Path(ROOT_DIR).resolve() / "alembic.ini"
    if not config_path.exists():
        raise RuntimeError(f"missing alembic.ini: {config_path}")
    alembic_cfg = AlembicConfig(str(config_path))
    alembic_cfg.set_main_option("script_location", str(Path(ROOT_DIR).resolve() / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", DATABASE_URL)
    command.upgrade(alembic_cfg, revision)


def init_ledger_db(engine: Engine | None = None) -> None:
    """Create the ledger tables on an explicit engine, or migrate the configured store to head."""
    if engine is not None:
        Base.metadata.create_all(bind=engine)
        return
    if _is_production_env() and not _is_postgres_url(DATABASE_URL):
        raise RuntimeError("DATABASE_URL must be PostgreSQL in production; SQLite cannot hold concurrent billing writers")
    _migrate_ledger_schema("head")


def ping_database(session_factory: SessionFactory | None = None) -> None:
    """Health check for /health; an unreachable store is reported as a dependency outage."""
    try:
        with session_scope(session_factory) as session:
            session.execute(text("SELECT 1"))
    except OperationalError as exc:
        raise ExternalDependencyError("ledger store unavailable") from exc


@contextmanager
def session_scope(session_factory: SessionFactory | None = None) -> Iterator[Session]:
    factory = session_factory or SessionLocal
    session = factory()
    try:
        yield session
        session.commit()
    except Exception as exc:
        session.rollback()
        log_event(logger, logging.DEBUG, "ledger.session.rolled_back", error_type=type(exc).__name__)
        raise
    finally:
        session.close()
