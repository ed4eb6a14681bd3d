"""
Audit trail for security-relevant attempt events.

``record`` returns an ``AuditOutcome`` instead of raising: callers decide
what to do with a failed write (in practice: log it and carry on), and the
discard is visible at every call site.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func

from ..core.config import settings
from ..models.audit_log import AuditLog
from ..utils.timezone import SystemClock

logger = logging.getLogger(__name__)


@dataclass
class ClientContext:
    """Who/where a request came from, as seen by the server."""
    user_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    connection_id: Optional[str] = None


@dataclass
class AuditEvent:
    event_type: str
    user_id: str
    attempt_id: Optional[int] = None
    exam_id: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None


@dataclass
class AuditOutcome:
    recorded: bool
    error: Optional[str] = None


class AuditLogger:
    def __init__(self, session_factory, clock=None, timeout_seconds: Optional[float] = None):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.timeout = timeout_seconds or settings.storage_timeout_seconds

    def event(self, event_type: str, attempt, context: Optional[ClientContext], metadata: Optional[Dict[str, Any]] = None) -> AuditEvent:
        """Build an event for an attempt, filling request metadata from the client context."""
        return AuditEvent(
            event_type=event_type,
            user_id=attempt.user_id if attempt is not None else (context.user_id if context else "unknown"),
            attempt_id=getattr(attempt, "id", None),
            exam_id=getattr(attempt, "exam_id", None),
            metadata=dict(metadata or {}),
            ip_address=context.ip_address if context else None,
            user_agent=context.user_agent if context else None,
            device_fingerprint=getattr(attempt, "locked_device_fingerprint", None),
        )

    async def _write(self, event: AuditEvent) -> None:
        async with self.session_factory() as db:
            db.add(AuditLog(
                attempt_id=event.attempt_id,
                user_id=str(event.user_id),
                exam_id=event.exam_id,
                event_type=event.event_type,
                timestamp=self.clock.now(),
                event_metadata=event.metadata,
                ip_address=event.ip_address,
                user_agent=(event.user_agent or "")[:512] or None,
                device_fingerprint=event.device_fingerprint,
            ))
            await db.commit()

    async def record(self, event: AuditEvent) -> AuditOutcome:
        try:
            await asyncio.wait_for(self._write(event), timeout=self.timeout)
        except Exception as e:
            return AuditOutcome(False, f"{type(e).__name__}: {e}")
        return AuditOutcome(True)

    async def record_or_log(self, event: AuditEvent) -> None:
        """Record and deliberately drop any failure after logging it."""
        outcome = await self.record(event)
        if not outcome.recorded:
            logger.warning(
                f"Audit event '{event.event_type}' for attempt {event.attempt_id} dropped: {outcome.error}"
            )

    async def get_audit_logs(
        self,
        attempt_id: int,
        limit: int = 100,
        skip: int = 0,
        event_type: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[AuditLog]:
        query = select(AuditLog).where(AuditLog.attempt_id == attempt_id)
        if event_type:
            query = query.where(AuditLog.event_type == event_type)
        if start:
            query = query.where(AuditLog.timestamp >= start)
        if end:
            query = query.where(AuditLog.timestamp <= end)
        query = query.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).offset(skip).limit(limit)

        async with self.session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def get_audit_statistics(self, attempt_id: int) -> Dict[str, Any]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(AuditLog.event_type, func.count(AuditLog.id))
                .where(AuditLog.attempt_id == attempt_id)
                .group_by(AuditLog.event_type)
            )
            event_types = {event_type: count for event_type, count in result.all()}

            bounds = await db.execute(
                select(func.min(AuditLog.timestamp), func.max(AuditLog.timestamp))
                .where(AuditLog.attempt_id == attempt_id)
            )
            first_at, last_at = bounds.one()

        return {
            "total_events": sum(event_types.values()),
            "event_types": event_types,
            "violations": sum(count for name, count in event_types.items() if "violation" in name),
            "disconnects": event_types.get("disconnect", 0),
            "time_range": {
                "start": first_at.isoformat() if first_at else None,
                "end": last_at.isoformat() if last_at else None,
            },
        }
