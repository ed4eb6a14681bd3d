from datetime import timedelta
import logging

from sqlalchemy import text

from exam_integrity.core.celery_app import celery_app, run_async
from exam_integrity.core.cache import cache
from exam_integrity.core.config import settings
from exam_integrity.core.database import AsyncSessionLocal
from exam_integrity.services.attempt_repository import AttemptRepository, PresenceStore
from exam_integrity.services.audit_logger import AuditLogger
from exam_integrity.utils.timezone import SystemClock

logger = logging.getLogger(__name__)


@celery_app.task(name="expire_overdue_attempts")
def expire_overdue_attempts():
    """Move started attempts past their end time to time_expired"""
    try:
        return run_async(_expire_overdue_internal())
    except Exception as exc:
        logger.error(f"Error in expire_overdue_attempts: {exc}")
        raise


async def _expire_overdue_internal(session_factory=AsyncSessionLocal, clock=None):
    clock = clock or SystemClock()
    audit = AuditLogger(session_factory, clock=clock)
    expired = []

    async with session_factory() as db:
        repo = AttemptRepository(db)
        now = clock.now()
        for attempt in await repo.list_overdue(now):
            if attempt.expire_if_due(now):
                await repo.save(attempt)
                expired.append(attempt)

    for attempt in expired:
        await audit.record_or_log(audit.event("time_expired", attempt, None, {"source": "maintenance"}))

    if expired:
        logger.info(f"Expired {len(expired)} overdue attempt(s)")
    return {"expired": len(expired), "attempt_ids": [a.id for a in expired]}


@celery_app.task(name="purge_stale_heartbeats")
def purge_stale_heartbeats():
    """Delete durable heartbeat rows older than the retention window"""
    try:
        return run_async(_purge_heartbeats_internal())
    except Exception as exc:
        logger.error(f"Error in purge_stale_heartbeats: {exc}")
        raise


async def _purge_heartbeats_internal(session_factory=AsyncSessionLocal, clock=None):
    clock = clock or SystemClock()
    cutoff = clock.now() - timedelta(hours=settings.heartbeat_retention_hours)
    removed = await PresenceStore(session_factory).purge_before(cutoff)
    logger.info(f"Purged {removed} heartbeat row(s) older than {cutoff.isoformat()}")
    return {"purged": removed, "cutoff": cutoff.isoformat()}


@celery_app.task(name="health_check")
def health_check():
    """Periodic health check of the worker's dependencies"""
    return run_async(_health_check_internal())


async def _health_check_internal(session_factory=AsyncSessionLocal):
    status = {
        "cache": "healthy" if cache.health_check() else "unhealthy",
        "database": "healthy",
    }
    try:
        async with session_factory() as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        status["database"] = "unhealthy"

    if "unhealthy" in status.values():
        logger.warning(f"Maintenance health check degraded: {status}")
    return status
