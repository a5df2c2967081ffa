from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from stocksync.database import async_session
from stocksync.dependencies import get_pipeline
from stocksync.integrations.setup import SyncPipeline

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic health check"""
    return {"status": "healthy", "service": "stocksync"}


@router.get("/health/db")
async def database_health():
    """Check database connectivity"""
    try:
        async with async_session() as session:
            await session.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except (SQLAlchemyError, OSError) as e:
        return {"status": "unhealthy", "database": "error", "error": str(e)}


@router.get("/health/broker")
async def broker_health(pipeline: SyncPipeline = Depends(get_pipeline)):
    """Which dispatch path is active, and its queue counters"""
    dispatcher = pipeline.dispatcher
    if dispatcher is None:
        return {"status": "not_started", "method": None}
    return {
        "status": "degraded" if dispatcher.method == "in_process" else "healthy",
        "method": dispatcher.method,
        "queue": await dispatcher.stats(),
    }
