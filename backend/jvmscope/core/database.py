"""
Async SQLAlchemy engine, session factory, and declarative base.

Provides:
- ``Base`` -- the declarative base class for all ORM models.
- ``build_engine`` / ``build_session_factory`` -- constructors used by the
  application lifespan, the Celery tasks, and the test-suite.
- ``get_engine`` / ``get_session_factory`` -- lazily created process-wide
  instances bound to the configured ``DATABASE_URL``.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from jvmscope.config import get_settings

# ── Constants ────────────────────────────────────────────────────────────────

_POOL_SIZE: int = 20
_MAX_OVERFLOW: int = 10
_POOL_TIMEOUT_SECONDS: int = 30
_POOL_RECYCLE_SECONDS: int = 1800  # 30 minutes


# ── Declarative Base ─────────────────────────────────────────────────────────

class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models in the project."""


# ── Engine & Session Factory ─────────────────────────────────────────────────

def build_engine(url: Optional[str] = None) -> AsyncEngine:
    """Create and return a new async engine.

    Args:
        url: Database URL.  Defaults to ``settings.DATABASE_URL``.
    """
    settings = get_settings()
    database_url = url or settings.DATABASE_URL
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=settings.DEBUG)
    return create_async_engine(
        database_url,
        echo=settings.DEBUG,
        pool_size=_POOL_SIZE,
        max_overflow=_MAX_OVERFLOW,
        pool_timeout=_POOL_TIMEOUT_SECONDS,
        pool_recycle=_POOL_RECYCLE_SECONDS,
        pool_pre_ping=True,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return a session-maker producing ``AsyncSession`` objects bound to *engine*."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory, creating it on first use."""
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_engine())
    return _session_factory
