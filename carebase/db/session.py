"""Engine and session handling.

The engine is created on first use so importing models or stores never opens
a connection.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from loguru import logger
from sqlalchemy import Engine, create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from carebase.core.settings import settings
from carebase.scheduling.errors import SchedulingError

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _engine_options(url: str) -> dict[str, Any]:
    lowered = url.lower()
    if lowered.startswith("sqlite"):
        logger.warning("[DB] SQLite engine, local development only")
        return {"connect_args": {"check_same_thread": False}}
    if lowered.startswith("postgres"):
        return {
            "connect_args": {"connect_timeout": 10, "application_name": "carebase-scheduler"},
            "pool_pre_ping": True,
            "pool_recycle": 3600,
        }
    return {"pool_pre_ping": True}


def get_engine() -> Engine:
    """Shared engine, created on first call."""
    global _engine
    if _engine is None:
        _engine = create_engine(settings.database_url, echo=False, **_engine_options(settings.database_url))
        logger.info("[DB] Engine created", dialect=_engine.dialect.name)
    return _engine


def _get_session_factory() -> sessionmaker[Session]:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False)
    return _session_factory


def check_database_connection() -> None:
    """Run a trivial query so startup fails fast on a bad DATABASE_URL."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        logger.exception("[DB] Connection check failed")
        raise
    logger.info("[DB] Connection check passed")


@contextmanager
def get_session() -> Iterator[Session]:
    """One transaction per block.

    Commits when the block exits cleanly. Any exception rolls the transaction
    back and propagates; scheduling errors are expected outcomes and only
    logged at debug level.
    """
    session = _get_session_factory()()
    try:
        yield session
        session.commit()
    except SchedulingError as e:
        logger.debug("[DB] Rolled back on scheduling error", code=e.code)
        session.rollback()
        raise
    except Exception as e:
        logger.error(
            "[DB] Rolled back on error",
            error_type=type(e).__name__,
            error=str(e),
            pending_new=len(session.new),
            pending_dirty=len(session.dirty),
        )
        session.rollback()
        raise
    finally:
        session.close()
