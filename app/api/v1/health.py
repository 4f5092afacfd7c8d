import asyncio

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.database import get_db

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.get("/health")
async def health_check():
    """Liveness check; does not touch the store"""
    settings = get_settings()
    return {
        "status": "healthy",
        "service": "experiment-promoter",
        "environment": settings.ENVIRONMENT,
    }


@router.get("/health/db")
async def health_check_db(db: AsyncSession = Depends(get_db)):
    """Store check, bounded by the same timeout as promotion round-trips"""
    timeout = get_settings().STORE_TIMEOUT_SECONDS
    try:
        await asyncio.wait_for(db.execute(text("SELECT 1")), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("health_db_timeout", timeout_seconds=timeout)
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "timeout"},
        )
    except SQLAlchemyError as e:
        logger.warning("health_db_failed", error=str(e))
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "disconnected", "error": str(e)},
        )

    return {"status": "healthy", "database": "connected"}
