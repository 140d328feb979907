"""
Database layer — async SQLAlchemy 2.0 (asyncpg in production, aiosqlite in tests).

Provides:
    • Async engine and session factory
    • Engine builder reused by tests against throwaway databases
    • Base model for ORM entities
    • Startup / shutdown helpers for the FastAPI lifespan

Usage:
    from backend.app.core.database import Base, async_session_factory

    class EmergencyAlert(Base):
        __tablename__ = "emergency_alerts"
        id = mapped_column(String(16), primary_key=True)

    async with async_session_factory() as session:
        result = await session.execute(select(EmergencyAlert))
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


def build_engine(url: Optional[str] = None, *, echo: Optional[bool] = None) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    url = url or settings.DATABASE_URL
    kwargs: Dict[str, Any] = {
        "echo": settings.DATABASE_ECHO if echo is None else echo,
        "future": True,
    }
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
    return create_async_engine(url, **kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


# ── Engine ──
engine = build_engine()

# ── Session Factory ──
async_session_factory = build_session_factory(engine)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Lifecycle ──
async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # Register mapped classes on Base.metadata before create_all.
    from backend.app.alerts import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db(bind: Optional[AsyncEngine] = None) -> None:
    """Dispose engine connections."""
    await (bind or engine).dispose()
    logger.info("Database connections closed")
