"""
Health check endpoints.
"""
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from marketchat.api.deps import Hub
from marketchat.db.session import get_db

router = APIRouter()
logger = structlog.get_logger()


@router.get("/health")
async def health_check(hub: Hub, db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns service status, database connectivity and live socket counts.
    """
    db_ok = False
    try:
        await db.execute(text("SELECT 1"))
        db_ok = True
    except Exception as e:
        logger.warning("health_check_database_failed", error=str(e))

    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": {
            "api": "ok",
            "database": "ok" if db_ok else "error",
        },
        "realtime": hub.stats(),
    }
