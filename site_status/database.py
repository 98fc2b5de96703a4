"""
Site Status — Async SQLAlchemy database setup.

The API and the worker share one process-wide engine built from settings.
``make_engine`` and ``session_factory_for`` let a caller bring its own
engine (the worker accepts one, tests pass an in-memory SQLite engine).
"""

from typing import Any, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from site_status.config import settings

# Pooling options for server databases; SQLite keeps SQLAlchemy's defaults
SERVER_POOL_OPTIONS = {
    "pool_size": 5,
    "max_overflow": 10,
    "pool_pre_ping": True,
    "pool_recycle": 300,
}


class Base(DeclarativeBase):
    pass


def make_engine(url: str, **overrides: Any) -> AsyncEngine:
    options: dict[str, Any] = {} if url.startswith("sqlite") else dict(SERVER_POOL_OPTIONS)
    options.update(overrides)
    return create_async_engine(url, echo=False, **options)


def session_factory_for(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Sessions keep their objects usable after commit; the pipeline hands them across phases."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = make_engine(settings.database_url)
async_session_factory = session_factory_for(engine)


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """FastAPI dependency — yields an async session."""
    async with async_session_factory() as session:
        yield session


async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """Create all tables and indexes on ``bind`` (the shared engine by default)."""
    import site_status.models  # noqa: F401  (register models on Base.metadata)

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(bind: Optional[AsyncEngine] = None) -> None:
    await (bind or engine).dispose()
