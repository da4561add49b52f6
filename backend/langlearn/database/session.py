"""
Engine and session lifecycle for the billing core.

One engine per process, built lazily from DATABASE_URL. PostgreSQL gets a
bounded QueuePool; SQLite (local development, tests) gets the driver
default with cross-thread access enabled, since FastAPI runs sync work in
a threadpool.

Usage:
    from langlearn.database.session import get_db_session

    @router.get("/current")
    async def current(db_session=Depends(get_db_session)):
        return SubscriptionService(db_session).get_subscription_info(user_id)
"""

import logging
import os
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import HTTPException, status
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from langlearn.db_base import Base

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def database_url() -> str:
    """
    DATABASE_URL, with the legacy postgres:// scheme rewritten.

    Raises:
        ValueError: If DATABASE_URL is unset
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL is not set")
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "poolclass": QueuePool,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_pre_ping": True,
        "pool_recycle": 1800,
    }


def get_engine() -> Engine:
    """Process-wide engine, created on first use."""
    global _engine
    if _engine is None:
        url = database_url()
        _engine = create_engine(url, **_engine_options(url))
        logger.info("Database engine created", extra={"dialect": _engine.dialect.name})
    return _engine


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(bind=get_engine(), autocommit=False, autoflush=False)
    return _session_factory


def reset_engine() -> None:
    """Dispose the engine and forget the factory (tests, URL changes)."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


def init_db() -> None:
    """Create missing tables for every registered model."""
    import langlearn.models  # noqa: F401

    Base.metadata.create_all(bind=get_engine())


async def get_db_session() -> AsyncGenerator[Session, None]:
    """
    FastAPI dependency yielding one session per request.

    Services own commit/rollback; the session is always closed here.
    Responds 503 when DATABASE_URL is not configured.
    """
    try:
        factory = get_session_factory()
    except ValueError as e:
        logger.error("Database session requested without configuration", extra={
            "error": str(e),
        })
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured"
        )

    session = factory()
    try:
        yield session
    finally:
        session.close()
