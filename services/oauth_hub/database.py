"""
Database access for the OAuth Integration Hub.

Connection records and audit entries live in one database, reached through
a lazily created async engine. SQLite URLs run on aiosqlite, PostgreSQL URLs
on asyncpg.
"""

from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

# Registers the tables on SQLModel.metadata
from services.oauth_hub.models.audit import AuditLog  # noqa: F401
from services.oauth_hub.models.connection import ConnectionRecord  # noqa: F401
from services.oauth_hub.settings import get_settings

ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_async_database_url(url: str) -> str:
    """Rewrite a plain database URL to use the async driver for its dialect."""
    for prefix, async_prefix in ASYNC_DRIVERS.items():
        if url.startswith(prefix):
            return async_prefix + url[len(prefix) :]
    return url


def _engine_options(async_url: str) -> Dict[str, Any]:
    if async_url.startswith("postgresql+asyncpg"):
        return {
            "pool_size": 5,
            "max_overflow": 10,
            "pool_pre_ping": True,
            "pool_recycle": 1800,
            "connect_args": {"command_timeout": 10.0},
        }
    # Maintenance and request handlers share one SQLite file
    return {"connect_args": {"timeout": 15}}


def get_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Shared async engine, created on first use."""
    global _engine
    if _engine is None:
        settings = get_settings()
        async_url = get_async_database_url(database_url or settings.db_url_oauth_hub)
        _engine = create_async_engine(
            async_url, echo=settings.debug, **_engine_options(async_url)
        )
    return _engine


def get_async_session() -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the shared engine; records stay usable after commit."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _session_factory


async def create_all_tables() -> None:
    async with get_engine().begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine; the next access builds a fresh one."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
