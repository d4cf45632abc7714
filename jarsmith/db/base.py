"""Engine, session factory and schema helpers.

The engine is built once at import from :func:`jarsmith.config.get_settings`;
point ``DATABASE_URL`` somewhere else before importing this module to use a
different database.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from loguru import logger
from rich.console import Console
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, scoped_session, sessionmaker

from jarsmith.config import Settings, get_settings

console = Console()
log = logger.bind(module="db.base")
settings = get_settings()


class Base(DeclarativeBase):
    pass


def redact_dsn(raw_dsn: str) -> str:
    """Render ``raw_dsn`` with its password replaced by ``***``."""
    return make_url(raw_dsn).render_as_string(hide_password=True)


def _create_engine(config: Settings) -> Engine:
    dsn = config.database_dsn
    options: dict[str, object] = {"pool_pre_ping": True, "echo": config.db_echo}
    url = make_url(dsn)
    # In-memory SQLite runs on a singleton pool that takes no sizing options.
    if not (url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")):
        options["pool_size"] = config.db_pool_size
        options["max_overflow"] = config.db_max_overflow
        options["pool_timeout"] = config.db_pool_timeout
    return create_engine(dsn, **options)


engine = _create_engine(settings)
safe_dsn = redact_dsn(settings.database_dsn)
console.log(f"[bold cyan]SQLAlchemy engine ready[/] {safe_dsn}")
log.info("SQLAlchemy engine initialised for {}", safe_dsn)

SessionLocal = scoped_session(sessionmaker(bind=engine, autoflush=False, expire_on_commit=False))


@contextmanager
def session_scope() -> Iterator[Session]:
    """Commit on success, roll back on any error, always release the session."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        log.exception("Session rollback triggered")
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        SessionLocal.remove()


def _register_models() -> None:
    import jarsmith.db.models  # noqa: F401  # pylint: disable=unused-import


def ensure_database_schema() -> None:
    """Create any missing tables. Existing tables are left untouched."""

    _register_models()
    try:
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as exc:
        console.log(f"[bold red]Failed to ensure database schema[/] reason={exc}")
        log.exception("Failed to ensure database schema for {}", safe_dsn)
        raise
    console.log(f"[green]Database schema ready[/] url={safe_dsn}")
    log.info("Database schema ensured for {}", safe_dsn)


def reset_database_schema() -> None:
    """Drop every table and recreate it empty."""

    _register_models()
    log.warning("Resetting database schema (drop_all + create_all) url={}", safe_dsn)
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    log.info("Database schema reset complete")


def ping_database() -> str | None:
    """Run ``SELECT 1``; return the error text on failure, else None."""

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        log.warning("Database ping failed: {}", exc)
        return str(exc)
    return None
