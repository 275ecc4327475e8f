"""
Transaction management utilities.

Provides explicit transaction boundaries so multi-step writes
(status check, insert, chat bump) commit together or not at all.
"""
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from marketchat.core.exceptions import ChatError

logger = structlog.get_logger()


@asynccontextmanager
async def atomic(db: AsyncSession) -> AsyncGenerator[AsyncSession, None]:
    """
    Execute operations atomically - all or nothing.

    Usage:
        async with atomic(db) as session:
            session.add(obj1)
            session.add(obj2)
            # Auto-commits on success, auto-rollbacks on exception

    Domain errors raised inside the block roll back quietly; anything else is
    logged before being re-raised.
    """
    try:
        yield db
        await db.commit()
    except ChatError:
        await db.rollback()
        raise
    except Exception as e:
        await db.rollback()
        logger.error("transaction_rolled_back", error=str(e), exc_info=True)
        raise
