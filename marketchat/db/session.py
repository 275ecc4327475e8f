"""
Database session management.

Provides the async engine, the session factory and the FastAPI dependency.
"""
from collections.abc import AsyncGenerator
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from marketchat.core.config import settings
from marketchat.core.exceptions import ChatError

logger = structlog.get_logger()


def build_engine(url: str, **kwargs: Any) -> AsyncEngine:
    """
    Create an async engine for ``url``.

    Pool sizing and server-side timeouts only apply to PostgreSQL.
    """
    if url.startswith("postgresql"):
        kwargs.setdefault("pool_pre_ping", True)
        kwargs.setdefault("pool_size", 20)
        kwargs.setdefault("max_overflow", 30)
        kwargs.setdefault("pool_recycle", 1800)
        kwargs.setdefault("pool_timeout", 20)
        kwargs.setdefault("connect_args", {
            "server_settings": {
                "statement_timeout": "25000",
                "idle_in_transaction_session_timeout": "300000",
                "application_name": "marketchat",
            },
            "command_timeout": 25,
        })
    return create_async_engine(url, **kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(settings.database_url_computed)
async_session_maker = build_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides an async database session.

    Commits when the request handler returns, rolls back on error.

    Usage:
        @router.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except ChatError:
            await session.rollback()
            raise
        except Exception as e:
            await session.rollback()
            logger.error(
                "database_session_error",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
