import logging
import time

import psutil
from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ....core.cache import cache
from ....core.config import settings
from ....core.database import get_async_db
from ....services.audit_logger import ClientContext
from ... import deps

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("")
async def get_basic_health():
    """Liveness check, no authentication required"""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "service": settings.service_name,
    }


@router.get("/system")
async def get_system_health(
    request: Request,
    admin: ClientContext = Depends(deps.get_admin_context),
    db: AsyncSession = Depends(get_async_db),
):
    """Storage, cache, presence and host metrics for operators."""
    health_status = {
        "timestamp": time.time(),
        "overall_status": "healthy",
        "services": {},
        "performance": {},
        "alerts": [],
    }

    start_time = time.time()
    try:
        await db.execute(text("SELECT 1"))
        db_response_time = round((time.time() - start_time) * 1000, 2)
        health_status["services"]["database"] = {"status": "healthy", "response_time": db_response_time}
        if db_response_time > 200:
            health_status["alerts"].append("Database response time is high")
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status["services"]["database"] = {"status": "error"}
        health_status["overall_status"] = "unhealthy"

    cache_healthy = await cache.ahealth_check()
    health_status["services"]["cache"] = {"status": "healthy" if cache_healthy else "unhealthy"}
    if not cache_healthy and settings.rate_limit_backend == "redis":
        health_status["alerts"].append("Redis unavailable: rate limiting is failing open")

    flusher = getattr(request.app.state, "presence_flusher", None)
    tracker = getattr(request.app.state, "presence_tracker", None)
    last_flush = flusher.last_result if flusher is not None else None
    health_status["services"]["presence"] = {
        "tracked_connections": len(tracker) if tracker is not None else 0,
        "last_flush_failed": bool(last_flush and last_flush.failed),
    }
    if last_flush is not None and last_flush.failed:
        health_status["alerts"].append("Last presence flush failed; entries will be retried")

    cpu_percent = psutil.cpu_percent(interval=0)
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage("/")
    health_status["performance"] = {
        "cpu_usage_percent": cpu_percent,
        "memory_usage_percent": memory.percent,
        "disk_usage_percent": round((disk.used / disk.total) * 100, 2),
        "available_memory_gb": round(memory.available / (1024 ** 3), 2),
    }
    if cpu_percent > 80:
        health_status["alerts"].append(f"High CPU usage: {cpu_percent}%")
    if memory.percent > 85:
        health_status["alerts"].append(f"High memory usage: {memory.percent}%")

    if health_status["alerts"] and health_status["overall_status"] == "healthy":
        health_status["overall_status"] = "degraded"
    return health_status
