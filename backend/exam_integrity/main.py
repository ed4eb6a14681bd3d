from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
import asyncio
import logging

import psutil

from exam_integrity.core.config import settings
from exam_integrity.core.database import AsyncSessionLocal, create_db_and_tables
from exam_integrity.core.cache import cache
from exam_integrity.core.exceptions import ErrorCode, TransientInfraError
from exam_integrity.api.v1.api import api_router
from exam_integrity.services.audit_logger import AuditLogger
from exam_integrity.services.emergency_controls import EmergencyControls
from exam_integrity.services.integrity_service import IntegrityService
from exam_integrity.services.locks import KeyedLocks
from exam_integrity.services.presence import PresenceFlusher, PresenceTracker
from exam_integrity.services.rate_limiter import build_rate_limiter
from exam_integrity.utils.timezone import SystemClock

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Exam Integrity API",
    description="Server-side integrity enforcement for timed online exam attempts",
    version="1.0.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TransientInfraError)
async def transient_infra_handler(request: Request, exc: TransientInfraError):
    logger.error(f"Transient storage failure on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={
            "detail": {
                "code": ErrorCode.SERVICE_UNAVAILABLE.value,
                "message": "Service temporarily unavailable. Please try again.",
            }
        },
        headers={"Retry-After": "5"},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        }
    )


def build_services(application: FastAPI, session_factory=AsyncSessionLocal, clock=None) -> None:
    """Wire the shared integrity components onto ``application.state``."""
    clock = clock or SystemClock()
    locks = KeyedLocks()
    tracker = PresenceTracker(clock=clock)
    audit = AuditLogger(session_factory, clock=clock)
    service = IntegrityService(
        session_factory,
        presence=tracker,
        rate_limiter=build_rate_limiter(clock=clock),
        audit=audit,
        clock=clock,
        locks=locks,
    )

    application.state.presence_tracker = tracker
    application.state.audit_logger = audit
    application.state.integrity_service = service
    application.state.emergency_controls = EmergencyControls(session_factory, audit, locks, clock=clock)
    application.state.presence_flusher = PresenceFlusher(tracker, service.presence_store)


@app.on_event("startup")
async def startup_event():
    """Application startup tasks"""
    logger.info("Starting Exam Integrity API...")

    create_db_and_tables()
    logger.info("Database initialized")

    cache_health = await cache.ahealth_check()
    if cache_health:
        logger.info("Cache connection established")
    elif settings.rate_limit_backend == "redis":
        logger.warning("Cache connection failed - rate limiting will fail open")
    else:
        logger.warning("Cache connection failed - running without cache")

    build_services(app)
    app.state.presence_flusher.start()
    app.state.sweep_task = asyncio.create_task(schedule_rate_limit_sweep())
    logger.info("Background tasks scheduled")

    logger.info("Exam Integrity API startup completed")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown tasks"""
    logger.info("Shutting down Exam Integrity API...")

    sweep_task = getattr(app.state, "sweep_task", None)
    if sweep_task is not None:
        sweep_task.cancel()

    flusher = getattr(app.state, "presence_flusher", None)
    if flusher is not None:
        result = await flusher.stop()
        logger.info(f"Final presence flush: {result.flushed} entries (failed={result.failed})")

    await cache.close()
    logger.info("Cache connections closed")

    logger.info("Exam Integrity API shutdown completed")


async def schedule_rate_limit_sweep():
    """Full sweep of expired rate-limit windows on a fixed interval"""
    while True:
        await asyncio.sleep(settings.rate_limit_sweep_interval_seconds)
        try:
            await app.state.integrity_service.rate_limiter.sweep()
        except Exception as e:
            logger.error(f"Rate limit sweep failed: {e}")


app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    health_status = {
        "status": "healthy",
        "version": "1.0.0",
        "services": {}
    }

    cache_health = await cache.ahealth_check()
    health_status["services"]["cache"] = "healthy" if cache_health else "unhealthy"

    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        health_status["services"]["database"] = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status["services"]["database"] = "unhealthy"
        health_status["status"] = "unhealthy"

    health_status["system"] = {
        "cpu_percent": psutil.cpu_percent(),
        "memory_percent": psutil.virtual_memory().percent,
        "disk_percent": psutil.disk_usage('/').percent
    }
    return health_status


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("exam_integrity.main:app", host="0.0.0.0", port=settings.port)
