from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.cache import ping_redis
from app.core.database import get_db

router = APIRouter()


@router.get("/health")
async def health_check():
    """Liveness probe"""
    return {"status": "healthy", "service": "ab-test-engine"}


@router.get("/health/db")
async def health_check_db(db: AsyncSession = Depends(get_db)):
    """Experiment store health check"""
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except SQLAlchemyError as e:
        return {"status": "unhealthy", "database": "disconnected", "error": str(e)}


@router.get("/health/completion")
async def health_check_completion():
    """Completion queue health. Redis is only contacted with the redis backend."""
    backend = get_settings().COMPLETION_BACKEND
    if backend != "redis":
        return {"status": "healthy", "backend": backend}

    if await ping_redis():
        return {"status": "healthy", "backend": backend, "redis": "connected"}
    return {"status": "unhealthy", "backend": backend, "redis": "disconnected"}
