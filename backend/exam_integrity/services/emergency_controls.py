import logging
from typing import Optional

from ..core.exceptions import ErrorCode
from ..models.attempt import Attempt, AttemptStatus
from ..utils.timezone import SystemClock, to_iso
from .attempt_repository import AttemptRepository
from .audit_logger import AuditLogger, ClientContext
from .integrity_service import ActionResult, IntegrityService
from .locks import KeyedLocks

logger = logging.getLogger(__name__)


class EmergencyControls:
    """Administrator overrides on a single attempt.

    Each action loads the attempt by id, then reloads it under the same
    per-(user, exam) lock candidate operations use, so an override never
    interleaves with an in-flight answer or heartbeat.
    """

    def __init__(self, session_factory, audit: AuditLogger, locks: KeyedLocks, clock=None):
        self.session_factory = session_factory
        self.audit = audit
        self.locks = locks
        self.clock = clock or SystemClock()

    @staticmethod
    def _clean_reason(reason: Optional[str]) -> Optional[str]:
        if reason is None:
            return None
        reason = reason.strip()
        return reason or None

    async def _owner(self, attempt_id: int):
        async with self.session_factory() as db:
            attempt = await AttemptRepository(db).get(attempt_id)
            if attempt is None:
                return None
            return attempt.user_id, attempt.exam_id

    async def _apply(self, attempt_id: int, admin: ClientContext, event_type: str, action, metadata) -> ActionResult:
        owner = await self._owner(attempt_id)
        if owner is None:
            return ActionResult.reject(ErrorCode.ATTEMPT_NOT_FOUND, "Attempt not found", 404)

        async with self.locks.hold(IntegrityService.lock_key(*owner)):
            async with self.session_factory() as db:
                repo = AttemptRepository(db)
                attempt = await repo.get(attempt_id)
                if attempt is None:
                    return ActionResult.reject(ErrorCode.ATTEMPT_NOT_FOUND, "Attempt not found", 404)

                previous_status = attempt.status
                now = self.clock.now()
                try:
                    action(attempt, now)
                except ValueError as e:
                    return ActionResult.reject(ErrorCode.ATTEMPT_NOT_ACTIVE, str(e), 409, status=attempt.status)
                await repo.save(attempt)

                logger.warning(
                    f"Admin {admin.user_id} applied {event_type} to attempt {attempt_id} "
                    f"({previous_status} -> {attempt.status})"
                )
                await self.audit.record_or_log(self.audit.event(event_type, attempt, admin, {
                    "admin_id": admin.user_id,
                    "previous_status": previous_status,
                    "new_status": attempt.status,
                    **metadata,
                }))
                return ActionResult.ok(
                    f"Attempt {attempt.status}",
                    attempt=attempt.to_summary(),
                    previous_status=previous_status,
                    applied_at=to_iso(now),
                )

    async def pause(self, attempt_id: int, admin: ClientContext, reason: Optional[str]) -> ActionResult:
        reason = self._clean_reason(reason)
        if reason is None:
            return ActionResult.reject(ErrorCode.INVALID_INPUT, "A reason is required to pause an attempt")

        def action(attempt: Attempt, now):
            attempt.pause(now, admin.user_id, reason)

        return await self._apply(attempt_id, admin, "admin_pause", action, {"reason": reason})

    async def force_submit(self, attempt_id: int, admin: ClientContext, reason: Optional[str] = None) -> ActionResult:
        reason = self._clean_reason(reason)

        def action(attempt: Attempt, now):
            attempt.force_submit(now, admin.user_id)

        return await self._apply(attempt_id, admin, "admin_force_submit", action, {"reason": reason})

    async def invalidate(self, attempt_id: int, admin: ClientContext, reason: Optional[str]) -> ActionResult:
        reason = self._clean_reason(reason)
        if reason is None:
            return ActionResult.reject(ErrorCode.INVALID_INPUT, "A reason is required to invalidate an attempt")

        def action(attempt: Attempt, now):
            if attempt.status == AttemptStatus.ADMIN_INVALIDATED.value:
                raise ValueError("Attempt is already invalidated")
            attempt.invalidate(now, admin.user_id, reason)

        return await self._apply(attempt_id, admin, "admin_invalidate", action, {"reason": reason})
