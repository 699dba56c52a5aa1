"""
VoxNotes Backend — Database Engine
====================================

What:  The async SQLAlchemy engine, the session factory handed to the
       orchestrator, and the declarative base shared by the models.
How:   One engine per process. The orchestrator never holds a session across
       a provider call: NoteStore and QuotaGuard open a short-lived session
       from `async_session_factory` per operation, so every claim, checkpoint
       and counter bump is its own transaction.
Who:   main.py (lifespan wiring and shutdown), Alembic (metadata).

Drivers:
    postgresql+asyncpg   production (pooled, pre-pinged, recycled hourly)
    sqlite+aiosqlite     tests and local development (no pool sizing)
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from voxnotes.config import settings

POOL_RECYCLE_SECONDS = 3600


class Base(DeclarativeBase):
    """Declarative base; `Base.metadata` is what Alembic autogenerates from."""


def build_engine(url: str) -> AsyncEngine:
    options = {"echo": settings.log_level == "DEBUG"}
    if not url.startswith("sqlite"):
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=settings.db_pool_pre_ping,
            pool_recycle=POOL_RECYCLE_SECONDS,
        )
    return create_async_engine(url, **options)


engine = build_engine(settings.database_url)

# Notes returned by a store call must stay readable after the commit
async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def dispose_engine() -> None:
    """Closes pooled connections; called once from the lifespan shutdown."""
    await engine.dispose()
