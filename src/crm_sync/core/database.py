"""Async SQLAlchemy engine for the primary CRM store.

Provides:
- PrimaryBase: Declarative base for the primary store's lv_* tables
- get_engine(): Lazily created engine singleton bound to PRIMARY_DATABASE_URL
- init_db() / close_db(): Table creation (local/test databases) and disposal
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.crm_sync.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.PRIMARY_DATABASE_URL,
            pool_size=10,
            max_overflow=5,
            echo=False,
        )
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class PrimaryBase(DeclarativeBase):
    """Base class for primary store models (lv_* tables)."""


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create the primary store tables if they don't exist.

    Production schemas are owned by the CRM application; this is used for
    local databases and tests.
    """
    # Register models on PrimaryBase.metadata
    from src.crm_sync.sync import models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(PrimaryBase.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
