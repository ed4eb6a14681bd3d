"""
Attempt lifecycle: start, question access, answers, skips, heartbeats,
violation reports and submission.

Every candidate operation runs as one fetch-update-persist sequence under a
per-attempt lock. Guards return structured results; only storage failures
raise (``TransientInfraError``).
"""
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from ..core.config import settings
from ..core.exceptions import ErrorCode, TransientInfraError
from ..models.attempt import Attempt, AttemptStatus
from ..models.exam import Exam, ExamQuestion
from ..utils.timezone import SystemClock, to_iso, to_naive_utc
from .attempt_repository import AttemptRepository, PresenceStore
from .audit_logger import AuditEvent, AuditLogger, ClientContext
from .device_binding import DeviceBinder
from .fingerprint import detect_vm, hash_fingerprint
from .heartbeat import HeartbeatMonitor
from .locks import KeyedLocks
from .presence import PresenceTracker
from .proctoring import detect_revocations, normalize_status, validate_proctoring_status
from .rate_limiter import RateLimiter, RateLimitResult
from .replay_protection import ReplayGuard
from .timer import timer_status
from .trust_scoring import (
    CLASSIFICATION_INVALID,
    TrustScorer,
    ViolationType,
)
from .verification import PostAttemptVerifier

logger = logging.getLogger(__name__)

MAX_VIOLATION_TYPE_LENGTH = 100
MAX_VIOLATION_DETAIL_KEYS = 20

# status -> (code, message, http status) for requests that need a running attempt
STATUS_REJECTIONS = {
    AttemptStatus.COMPLETED.value: (ErrorCode.ATTEMPT_COMPLETED, "Attempt already completed", 409),
    AttemptStatus.TIME_EXPIRED.value: (ErrorCode.TIME_EXPIRED, "Time has expired for this attempt", 410),
    AttemptStatus.DEVICE_SWITCH_DETECTED.value: (
        ErrorCode.DEVICE_SWITCH_DETECTED, "Device switch detected. This attempt has been locked.", 403
    ),
    AttemptStatus.PAUSED.value: (ErrorCode.ATTEMPT_PAUSED, "Attempt has been paused by an administrator", 423),
    AttemptStatus.PENDING.value: (ErrorCode.ATTEMPT_NOT_ACTIVE, "Attempt has not been started", 409),
}


@dataclass
class ActionResult:
    success: bool
    code: Optional[ErrorCode] = None
    message: str = ""
    http_status: int = 200
    data: Dict[str, Any] = field(default_factory=dict)
    rate_limit: Optional[RateLimitResult] = None

    @classmethod
    def ok(cls, message: str = "", **data) -> "ActionResult":
        return cls(True, None, message, 200, data)

    @classmethod
    def reject(cls, code: ErrorCode, message: str, http_status: int = 400, **data) -> "ActionResult":
        return cls(False, code, message, http_status, data)


class IntegrityService:
    def __init__(
        self,
        session_factory,
        presence: PresenceTracker,
        rate_limiter: RateLimiter,
        audit: AuditLogger,
        clock=None,
        locks: Optional[KeyedLocks] = None,
        replay_guard: Optional[ReplayGuard] = None,
        scorer: Optional[TrustScorer] = None,
        verifier: Optional[PostAttemptVerifier] = None,
        device_binder: Optional[DeviceBinder] = None,
    ):
        self.session_factory = session_factory
        self.presence = presence
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.clock = clock or SystemClock()
        self.locks = locks if locks is not None else KeyedLocks()
        self.replay_guard = replay_guard or ReplayGuard()
        self.scorer = scorer or TrustScorer()
        self.verifier = verifier or PostAttemptVerifier()
        self.device_binder = device_binder or DeviceBinder()
        self.presence_store = PresenceStore(session_factory)
        self.heartbeats = HeartbeatMonitor(presence, self.presence_store, self.clock)

    # ------------------------------------------------------------------ helpers

    @staticmethod
    def lock_key(user_id: str, exam_id: int):
        return ("attempt", str(user_id), int(exam_id))

    @staticmethod
    def _origin(ctx: ClientContext) -> str:
        return ctx.connection_id or ctx.ip_address or "unknown"

    def _status_rejection(self, attempt: Attempt) -> Optional[ActionResult]:
        if attempt.is_started:
            return None
        code, message, http_status = STATUS_REJECTIONS.get(
            attempt.status, (ErrorCode.ATTEMPT_TERMINATED, "Attempt has been terminated", 403)
        )
        return ActionResult.reject(code, message, http_status, status=attempt.status)

    def _enforce_violation_policy(self, attempt: Attempt, violation_type: str) -> bool:
        """Terminate on a high-severity type or once the violation ceiling is reached."""
        if not attempt.is_started:
            return False
        if violation_type in settings.high_severity_violations or attempt.violation_count >= settings.max_violations:
            attempt.terminate_for_violations()
            logger.warning(
                f"Attempt {attempt.id} terminated after {violation_type} ({attempt.violation_count} violations)"
            )
            return True
        return False

    def _record_guard_violation(
        self, attempt: Attempt, violation_type: str, now: datetime, details: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        if not attempt.is_started:
            return None
        violation = attempt.record_violation(violation_type, now, details)
        self._enforce_violation_policy(attempt, violation_type)
        return violation

    async def _audit(self, event_type: str, attempt: Attempt, ctx: Optional[ClientContext], **metadata) -> None:
        await self.audit.record_or_log(self.audit.event(event_type, attempt, ctx, metadata))

    async def _load_running(self, repo: AttemptRepository, exam_id: int, ctx: ClientContext):
        """Load the caller's attempt and apply lazy expiry; returns (attempt, rejection)."""
        attempt = await repo.get_for_user(ctx.user_id, exam_id)
        if attempt is None:
            return None, ActionResult.reject(ErrorCode.ATTEMPT_NOT_FOUND, "No attempt found for this exam", 404)

        if attempt.expire_if_due(self.clock.now()):
            await repo.save(attempt)
            logger.info(f"Attempt {attempt.id} expired on access")
            await self._audit("time_expired", attempt, ctx)
        return attempt, None

    async def _device_guard(
        self, repo: AttemptRepository, attempt: Attempt, ctx: ClientContext, fingerprint, now: datetime
    ) -> Optional[ActionResult]:
        try:
            check = self.device_binder.check_request(attempt, fingerprint, now)
        except ValueError:
            return ActionResult.reject(ErrorCode.INVALID_INPUT, "Invalid device fingerprint")

        if check.ok:
            return None

        await repo.save(attempt)
        await self._audit(
            "device_switch", attempt, ctx,
            locked_fingerprint=attempt.locked_device_fingerprint,
            current_fingerprint=check.fingerprint_hash,
        )
        return ActionResult.reject(check.code, check.message, 403, status=attempt.status)

    async def _rate_limit(
        self, endpoint_class: str, repo: AttemptRepository, attempt: Attempt, ctx: ClientContext
    ) -> RateLimitResult:
        result = await self.rate_limiter.check(endpoint_class, attempt.id, ctx.user_id, self._origin(ctx))
        if not result.allowed:
            logger.warning(f"Rate limit exceeded on '{endpoint_class}' for attempt {attempt.id}")
            if self._record_guard_violation(attempt, ViolationType.RATE_LIMIT_EXCEEDED.value, self.clock.now(), {
                "endpoint": endpoint_class,
                "limit": result.limit,
                "origin": self._origin(ctx),
            }) is not None:
                await repo.save(attempt)
        return result

    def _question_count_guard(self, questions: List[ExamQuestion], index: int) -> Optional[ActionResult]:
        if index < 0 or index >= len(questions):
            return ActionResult.reject(
                ErrorCode.QUESTION_OUT_OF_RANGE,
                f"Question index {index} is out of range",
                404,
                total_questions=len(questions),
            )
        return None

    def _exam_guard(self, exam: Optional[Exam], now: datetime) -> Optional[ActionResult]:
        if exam is None:
            return ActionResult.reject(ErrorCode.EXAM_NOT_FOUND, "Exam not found", 404)
        if not exam.is_available():
            return ActionResult.reject(ErrorCode.EXAM_NOT_AVAILABLE, "Exam is not available", 403)
        if exam.opens_at and now < exam.opens_at:
            return ActionResult.reject(ErrorCode.EXAM_NOT_OPEN, "Exam has not opened yet", 403,
                                       opens_at=to_iso(exam.opens_at))
        if exam.closes_at and now > exam.closes_at:
            return ActionResult.reject(ErrorCode.EXAM_CLOSED, "Exam has closed", 403)
        return None

    # -------------------------------------------------------------------- start

    async def start_attempt(
        self,
        exam_id: int,
        ctx: ClientContext,
        fingerprint: Optional[Dict[str, Any]],
        proctoring_status: Optional[Dict[str, Any]] = None,
    ) -> ActionResult:
        if not fingerprint or not isinstance(fingerprint, dict):
            return ActionResult.reject(ErrorCode.DEVICE_FINGERPRINT_REQUIRED, "Device fingerprint is required")
        fingerprint_hash = hash_fingerprint(fingerprint)

        async with self.locks.hold(self.lock_key(ctx.user_id, exam_id)):
            async with self.session_factory() as db:
                repo = AttemptRepository(db)
                now = self.clock.now()

                exam = await repo.get_exam(exam_id)
                rejection = self._exam_guard(exam, now)
                if rejection:
                    return rejection

                questions = await repo.get_questions(exam_id)
                if not questions:
                    return ActionResult.reject(ErrorCode.EXAM_HAS_NO_QUESTIONS, "Exam has no questions", 409)

                attempt, _ = await self._load_running(repo, exam_id, ctx)
                if attempt is not None:
                    if attempt.is_started:
                        return await self._resume(repo, attempt, ctx, fingerprint, len(questions))
                    if not attempt.is_restartable():
                        return ActionResult.reject(
                            ErrorCode.ALREADY_ATTEMPTED,
                            "You have already attempted this exam",
                            409,
                            status=attempt.status,
                        )

                proctoring = normalize_status(proctoring_status, now)
                readiness = validate_proctoring_status(proctoring)
                if not readiness.valid:
                    return ActionResult.reject(
                        ErrorCode.PROCTORING_NOT_READY,
                        "Proctoring requirements not met",
                        400,
                        missing=readiness.errors,
                    )

                vm = detect_vm(fingerprint)
                if vm.is_vm:
                    logger.warning(f"Likely VM for user {ctx.user_id} on exam {exam_id}: {vm.reasons}")
                    if settings.vm_detection_blocking:
                        return ActionResult.reject(
                            ErrorCode.VM_DETECTED,
                            "Virtual machines are not allowed for this exam",
                            403,
                            vm_detection=vm.to_dict(),
                        )

                restarted = attempt is not None
                if restarted:
                    previous_status = attempt.status
                    attempt.reset_for_restart()
                else:
                    previous_status = None
                    attempt = Attempt.create(ctx.user_id, exam_id)

                attempt.begin(
                    now=now,
                    duration_seconds=exam.duration_seconds or settings.default_exam_duration_seconds,
                    fingerprint_hash=fingerprint_hash,
                    ip_address=ctx.ip_address,
                    session_token=secrets.token_hex(32),
                    proctoring_status=proctoring,
                )

                try:
                    if restarted:
                        await repo.save(attempt)
                    else:
                        await repo.add(attempt)
                except IntegrityError:
                    logger.warning(f"Concurrent start for user {ctx.user_id} on exam {exam_id}")
                    return ActionResult.reject(
                        ErrorCode.ALREADY_ATTEMPTED, "You have already attempted this exam", 409
                    )

                logger.info(f"Attempt {attempt.id} started for user {ctx.user_id} (restart={restarted})")
                await self._audit(
                    "start", attempt, ctx,
                    restart=restarted,
                    previous_status=previous_status,
                    duration_seconds=attempt.duration_seconds,
                    vm_detection=vm.to_dict(),
                )
                return ActionResult.ok(
                    "Attempt restarted" if restarted else "Attempt started",
                    attempt=attempt.to_summary(),
                    session_token=attempt.session_token,
                    total_questions=len(questions),
                    timer=timer_status(attempt.ends_at, now),
                    resumed=False,
                    restarted=restarted,
                )

    async def _resume(
        self, repo: AttemptRepository, attempt: Attempt, ctx: ClientContext, fingerprint, total_questions: int
    ) -> ActionResult:
        check = self.device_binder.check_resume(attempt, fingerprint)
        if not check.ok:
            await self._audit("device_mismatch", attempt, ctx, current_fingerprint=check.fingerprint_hash)
            return ActionResult.reject(check.code, check.message, 403, status=attempt.status)

        if check.rebound:
            await repo.save(attempt)
            await self._audit("device_rebind", attempt, ctx, fingerprint=check.fingerprint_hash)

        now = self.clock.now()
        return ActionResult.ok(
            "Attempt resumed",
            attempt=attempt.to_summary(),
            session_token=attempt.session_token,
            total_questions=total_questions,
            timer=timer_status(attempt.ends_at, now),
            resumed=True,
            restarted=False,
        )

    # ---------------------------------------------------------------- questions

    async def get_question(
        self, exam_id: int, index: int, ctx: ClientContext, fingerprint: Optional[Dict[str, Any]] = None
    ) -> ActionResult:
        async with self.locks.hold(self.lock_key(ctx.user_id, exam_id)):
            async with self.session_factory() as db:
                repo = AttemptRepository(db)
                attempt, rejection = await self._load_running(repo, exam_id, ctx)
                if rejection:
                    return rejection
                rejection = self._status_rejection(attempt)
                if rejection:
                    return rejection

                now = self.clock.now()
                rejection = await self._device_guard(repo, attempt, ctx, fingerprint, now)
                if rejection:
                    return rejection

                questions = await repo.get_questions(exam_id)
                rejection = self._question_count_guard(questions, index)
                if rejection:
                    return rejection

                if index != attempt.current_question_index:
                    logger.warning(
                        f"Attempt {attempt.id} requested question {index}, current is {attempt.current_question_index}"
                    )
                    return ActionResult.reject(
                        ErrorCode.INVALID_QUESTION_ACCESS,
                        "Questions must be accessed in order",
                        403,
                        current_question_index=attempt.current_question_index,
                    )

                question = questions[index]
                issued = self.replay_guard.issue(attempt, question.id, now)
                await repo.save(attempt)

                await self._audit("question_access", attempt, ctx, question_id=question.id, question_index=index)
                return ActionResult.ok(
                    question=question.to_public_dict(),
                    question_index=index,
                    total_questions=len(questions),
                    is_last=index == len(questions) - 1,
                    answered=question.id in attempt.answered_questions,
                    nonce=issued.nonce,
                    nonce_expires_at=to_iso(issued.expires_at),
                    timer=timer_status(attempt.ends_at, now),
                )

    # ------------------------------------------------------------------ answers

    async def submit_answer(
        self,
        exam_id: int,
        ctx: ClientContext,
        question_index: int,
        answer: Any,
        nonce: Optional[str],
        fingerprint: Optional[Dict[str, Any]] = None,
        time_spent_ms: Optional[int] = None,
    ) -> ActionResult:
        async with self.locks.hold(self.lock_key(ctx.user_id, exam_id)):
            async with self.session_factory() as db:
                repo = AttemptRepository(db)
                attempt, rejection = await self._load_running(repo, exam_id, ctx)
                if rejection:
                    return rejection

                limit = await self._rate_limit("answer", repo, attempt, ctx)
                if not limit.allowed:
                    result = ActionResult.reject(
                        ErrorCode.RATE_LIMIT_EXCEEDED, "Rate limit exceeded. Please slow down.", 429,
                        retry_after=to_iso(limit.reset_at),
                    )
                    result.rate_limit = limit
                    return result

                result = await self._answer_locked(
                    repo, attempt, ctx, question_index, answer, nonce, fingerprint, time_spent_ms
                )
                result.rate_limit = limit
                return result

    async def _answer_locked(
        self, repo, attempt, ctx, question_index, answer, nonce, fingerprint, time_spent_ms
    ) -> ActionResult:
        rejection = self._status_rejection(attempt)
        if rejection:
            return rejection

        now = self.clock.now()
        rejection = await self._device_guard(repo, attempt, ctx, fingerprint, now)
        if rejection:
            return rejection

        if question_index != attempt.current_question_index:
            return ActionResult.reject(
                ErrorCode.INVALID_QUESTION_INDEX,
                "Answers can only be submitted for the current question",
                400,
                current_question_index=attempt.current_question_index,
            )

        questions = await repo.get_questions(attempt.exam_id)
        rejection = self._question_count_guard(questions, question_index)
        if rejection:
            return rejection
        question = questions[question_index]

        if not nonce:
            return ActionResult.reject(ErrorCode.NONCE_REQUIRED, "Question nonce is required", 400)

        window = self.replay_guard.validate_and_consume(attempt, question.id, nonce, now)
        if not window.valid and window.window_violation is None:
            self._record_guard_violation(attempt, ViolationType.REPLAY_ATTEMPT.value, now, {
                "question_id": question.id,
                "reason": window.reason,
            })
            await repo.save(attempt)
            await self._audit("replay_rejection", attempt, ctx, question_id=question.id, reason=window.reason)
            return ActionResult.reject(ErrorCode.REPLAY_ATTEMPT, window.reason, 400, status=attempt.status)

        if not window.valid:
            self._record_guard_violation(attempt, ViolationType.TIME_WINDOW_VIOLATION.value, now, {
                "question_id": question.id,
                "reason": window.window_violation,
                "message": window.reason,
                "time_spent_ms": window.time_spent_ms,
            })
            await repo.save(attempt)
            await self._audit(
                "replay_rejection", attempt, ctx,
                question_id=question.id, reason=window.reason, time_spent_ms=window.time_spent_ms,
            )
            return ActionResult.reject(
                ErrorCode.TIME_WINDOW_VIOLATION, window.reason, 400,
                status=attempt.status, time_spent_ms=window.time_spent_ms,
            )

        first_answer = attempt.mark_answered(question.id)
        is_last = question_index == len(questions) - 1
        if not is_last:
            attempt.advance_to(question_index + 1)

        await repo.record_answer(
            attempt.id, question.id, answer,
            time_spent_ms if time_spent_ms is not None else window.time_spent_ms, now,
        )
        await repo.save(attempt)

        await self._audit(
            "answer" if first_answer else "answer_update", attempt, ctx,
            question_id=question.id, question_index=question_index, time_spent_ms=window.time_spent_ms,
        )
        return ActionResult.ok(
            "Answer saved",
            question_id=question.id,
            next_question_index=attempt.current_question_index,
            is_last=is_last,
            answered_count=len(attempt.answered_questions),
            timer=timer_status(attempt.ends_at, now),
        )

    async def skip_question(
        self,
        exam_id: int,
        ctx: ClientContext,
        question_index: int,
        fingerprint: Optional[Dict[str, Any]] = None,
    ) -> ActionResult:
        async with self.locks.hold(self.lock_key(ctx.user_id, exam_id)):
            async with self.session_factory() as db:
                repo = AttemptRepository(db)
                attempt, rejection = await self._load_running(repo, exam_id, ctx)
                if rejection:
                    return rejection

                limit = await self._rate_limit("skip", repo, attempt, ctx)
                if not limit.allowed:
                    result = ActionResult.reject(
                        ErrorCode.RATE_LIMIT_EXCEEDED, "Rate limit exceeded. Please slow down.", 429,
                        retry_after=to_iso(limit.reset_at),
                    )
                    result.rate_limit = limit
                    return result

                rejection = self._status_rejection(attempt)
                if rejection:
                    return rejection

                now = self.clock.now()
                rejection = await self._device_guard(repo, attempt, ctx, fingerprint, now)
                if rejection:
                    return rejection

                if question_index != attempt.current_question_index:
                    return ActionResult.reject(
                        ErrorCode.INVALID_QUESTION_INDEX,
                        "Only the current question can be skipped",
                        400,
                        current_question_index=attempt.current_question_index,
                    )

                questions = await repo.get_questions(exam_id)
                rejection = self._question_count_guard(questions, question_index)
                if rejection:
                    return rejection
                question = questions[question_index]

                if attempt.is_question_handled(question.id):
                    return ActionResult.reject(
                        ErrorCode.QUESTION_ALREADY_HANDLED, "Question already answered or skipped", 409
                    )

                attempt.mark_skipped(question.id)
                is_last = question_index == len(questions) - 1
                if not is_last:
                    attempt.advance_to(question_index + 1)
                await repo.save(attempt)

                await self._audit("skip", attempt, ctx, question_id=question.id, question_index=question_index)
                result = ActionResult.ok(
                    "Question skipped",
                    question_id=question.id,
                    next_question_index=attempt.current_question_index,
                    is_last=is_last,
                    skipped_count=len(attempt.skipped_questions),
                    timer=timer_status(attempt.ends_at, now),
                )
                result.rate_limit = limit
                return result

    # ---------------------------------------------------------------- heartbeat

    async def heartbeat(
        self,
        exam_id: int,
        ctx: ClientContext,
        client_now: Optional[datetime] = None,
        proctoring_status: Optional[Dict[str, Any]] = None,
    ) -> ActionResult:
        """Presence update plus gap, drift and proctoring checks.

        Storage failures are logged and swallowed here: a lost heartbeat write
        must not disconnect a candidate.
        """
        connection_id = ctx.connection_id or ctx.ip_address or "http"
        if client_now is not None:
            client_now = to_naive_utc(client_now)
        async with self.locks.hold(self.lock_key(ctx.user_id, exam_id)):
            async with self.session_factory() as db:
                repo = AttemptRepository(db)
                try:
                    attempt, rejection = await self._load_running(repo, exam_id, ctx)
                except TransientInfraError as e:
                    logger.error(f"Heartbeat dropped for user {ctx.user_id}: {e}")
                    return ActionResult.ok("Heartbeat accepted", persisted=False)
                if rejection:
                    return rejection

                limit = await self.rate_limiter.check("heartbeat", attempt.id, ctx.user_id, connection_id)
                now = self.clock.now()
                _, previous_seen = await self.presence.update(attempt.id, connection_id, last_seen_at=now)

                if not attempt.is_started:
                    return ActionResult.ok(
                        "Attempt is not active",
                        active=False,
                        status=attempt.status,
                        timer=timer_status(attempt.ends_at, now),
                    )

                if previous_seen is None:
                    previous_seen = await self._durable_last_seen(attempt)

                new_violations = []
                if not limit.allowed:
                    logger.warning(f"Heartbeat rate limit exceeded for attempt {attempt.id}")
                    new_violations.append(self._record_guard_violation(
                        attempt, ViolationType.RATE_LIMIT_EXCEEDED.value, now,
                        {"endpoint": "heartbeat", "limit": limit.limit, "origin": connection_id},
                    ))

                gap = self.heartbeats.apply_gap(attempt, previous_seen, now, connection_id)
                if gap.violation is not None:
                    new_violations.append(gap.violation)
                    self._enforce_violation_policy(attempt, ViolationType.HEARTBEAT_GAP.value)

                drift = self.heartbeats.check_drift(attempt, client_now, now)
                if drift is not None:
                    new_violations.append(drift)
                    self._enforce_violation_policy(attempt, ViolationType.TIME_DRIFT_ANOMALY.value)

                proctoring_changed = False
                if proctoring_status is not None and attempt.is_started:
                    revocations, proctoring_changed = self._apply_proctoring_update(attempt, proctoring_status, now)
                    new_violations.extend(revocations)

                new_violations = [v for v in new_violations if v is not None]
                persisted = True
                # clean beats only touch presence; the attempt row is written on state changes
                if new_violations or gap.recorded or proctoring_changed:
                    attempt.register_heartbeat(now)
                    try:
                        await repo.save(attempt)
                    except TransientInfraError as e:
                        logger.error(f"Heartbeat state for attempt {attempt.id} not persisted: {e}")
                        persisted = False

                if gap.violation is not None:
                    await self._audit(
                        "heartbeat_violation", attempt, ctx,
                        missed_heartbeats=gap.missed,
                        max_allowed=settings.max_missed_heartbeats,
                        total_missed=attempt.missed_heartbeats,
                    )

                result = ActionResult.ok(
                    "Heartbeat accepted",
                    active=attempt.is_started,
                    status=attempt.status,
                    persisted=persisted,
                    rate_limited=not limit.allowed,
                    missed_heartbeats=gap.missed,
                    total_missed_heartbeats=attempt.missed_heartbeats,
                    new_violations=new_violations,
                    timer=timer_status(attempt.ends_at, now),
                )
                result.rate_limit = limit
                return result

    async def _durable_last_seen(self, attempt: Attempt) -> Optional[datetime]:
        try:
            durable = await self.presence_store.latest_heartbeat_at(attempt.id)
        except TransientInfraError as e:
            logger.warning(f"Durable heartbeat lookup failed for attempt {attempt.id}: {e}")
            durable = None
        return durable or attempt.last_heartbeat_at

    async def _sync_last_heartbeat(self, attempt: Attempt) -> None:
        try:
            last_seen = await self.heartbeats.last_seen(attempt.id)
        except TransientInfraError as e:
            logger.warning(f"Last heartbeat lookup failed for attempt {attempt.id}: {e}")
            return
        if last_seen is not None and (attempt.last_heartbeat_at is None or last_seen > attempt.last_heartbeat_at):
            attempt.register_heartbeat(last_seen)

    def _apply_proctoring_update(self, attempt: Attempt, raw_status: Dict[str, Any], now: datetime):
        """Returns the revocation violations and whether the stored status changed."""
        current = normalize_status(raw_status, now)
        previous = dict(attempt.proctoring_status or {})
        recorded = []
        for revocation in detect_revocations(previous, current):
            if not attempt.is_started:
                break
            recorded.append(self._record_guard_violation(
                attempt, revocation["type"], now, {"message": revocation["message"], "source": "heartbeat"},
            ))
        changed = any(previous.get(key) != value for key, value in current.items() if key != "last_validated")
        if changed:
            attempt.proctoring_status = current
        return recorded, changed

    async def check_heartbeat_compliance(self, attempt_id: int):
        return await self.heartbeats.check_compliance(attempt_id)

    # --------------------------------------------------------------- violations

    @staticmethod
    def validate_violation_input(violation_type, details) -> Optional[str]:
        if not violation_type or not isinstance(violation_type, str):
            return "Violation type is required and must be a string"
        if len(violation_type) > MAX_VIOLATION_TYPE_LENGTH:
            return f"Violation type must be at most {MAX_VIOLATION_TYPE_LENGTH} characters"
        if details is not None:
            if not isinstance(details, dict):
                return "Violation details must be an object"
            if len(details) > MAX_VIOLATION_DETAIL_KEYS:
                return f"Violation details may contain at most {MAX_VIOLATION_DETAIL_KEYS} keys"
        return None

    async def report_violation(
        self,
        exam_id: int,
        ctx: ClientContext,
        violation_type: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> ActionResult:
        error = self.validate_violation_input(violation_type, details)
        if error:
            return ActionResult.reject(ErrorCode.INVALID_VIOLATION_INPUT, error, 400)

        async with self.locks.hold(self.lock_key(ctx.user_id, exam_id)):
            async with self.session_factory() as db:
                repo = AttemptRepository(db)
                attempt, rejection = await self._load_running(repo, exam_id, ctx)
                if rejection:
                    return rejection

                if not attempt.is_started:
                    return ActionResult.ok(
                        "Attempt is not active; violation not recorded",
                        recorded=False,
                        status=attempt.status,
                    )

                now = self.clock.now()
                attempt.record_violation(violation_type, now, details)
                terminated = self._enforce_violation_policy(attempt, violation_type)
                await repo.save(attempt)

                await self._audit(
                    "violation", attempt, ctx,
                    violation_type=violation_type, details=details or {}, terminated=terminated,
                )
                return ActionResult.ok(
                    "Attempt terminated due to violations" if terminated else "Violation recorded",
                    recorded=True,
                    terminated=terminated,
                    status=attempt.status,
                    violation_count=attempt.violation_count,
                    max_violations=settings.max_violations,
                )

    # -------------------------------------------------------------------- timer

    async def timer_sync(self, exam_id: int, ctx: ClientContext) -> ActionResult:
        async with self.locks.hold(self.lock_key(ctx.user_id, exam_id)):
            async with self.session_factory() as db:
                repo = AttemptRepository(db)
                attempt, rejection = await self._load_running(repo, exam_id, ctx)
                if rejection:
                    return rejection
                return ActionResult.ok(
                    status=attempt.status,
                    timer=timer_status(attempt.ends_at, self.clock.now()),
                )

    # ------------------------------------------------------------------- submit

    async def submit_attempt(
        self, exam_id: int, ctx: ClientContext, fingerprint: Optional[Dict[str, Any]] = None
    ) -> ActionResult:
        async with self.locks.hold(self.lock_key(ctx.user_id, exam_id)):
            async with self.session_factory() as db:
                repo = AttemptRepository(db)
                attempt, rejection = await self._load_running(repo, exam_id, ctx)
                if rejection:
                    return rejection
                rejection = self._status_rejection(attempt)
                if rejection:
                    return rejection

                now = self.clock.now()
                rejection = await self._device_guard(repo, attempt, ctx, fingerprint, now)
                if rejection:
                    return rejection

                await self._sync_last_heartbeat(attempt)
                attempt.submitted_at = now
                report = self.verifier.verify(attempt)
                attempt.apply_verification(report.passed, report.to_dict())

                score = self.scorer.score_attempt(attempt)
                attempt.apply_trust_score(score.score, score.classification, score.breakdown)

                if score.classification == CLASSIFICATION_INVALID:
                    final_status = AttemptStatus.AUTO_DISQUALIFIED
                elif not report.passed:
                    final_status = AttemptStatus.VERIFICATION_FAILED
                else:
                    final_status = AttemptStatus.COMPLETED
                attempt.finalize(now, final_status)
                await repo.save(attempt)

                logger.info(
                    f"Attempt {attempt.id} submitted: status={attempt.status} "
                    f"trust={score.score} ({score.classification}) verification={attempt.verification_status}"
                )
                await self._audit(
                    "post_attempt_verification", attempt, ctx,
                    passed=report.passed, results=report.to_dict(),
                )
                await self._audit(
                    "submit", attempt, ctx,
                    status=attempt.status,
                    trust_score=score.score,
                    trust_classification=score.classification,
                )
                return ActionResult.ok(
                    "Attempt submitted",
                    attempt=attempt.to_summary(),
                    trust_score=score.score,
                    trust_classification=score.classification,
                    scoring_breakdown=score.breakdown,
                    verification=report.to_dict(),
                )

    # --------------------------------------------------------------- disconnect

    async def disconnect(self, attempt_id: int, connection_id: str, ctx: ClientContext) -> bool:
        persisted = await self.presence.disconnect(attempt_id, connection_id, self.presence_store)
        await self.audit.record_or_log(AuditEvent(
            event_type="disconnect",
            user_id=ctx.user_id,
            attempt_id=attempt_id,
            metadata={"connection_id": connection_id, "persisted": persisted},
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        ))
        return persisted

    async def check_realtime_rate(self, exam_id: int, ctx: ClientContext) -> RateLimitResult:
        """Limit for realtime events other than heartbeats; over-limit events are recorded as violations."""
        async with self.locks.hold(self.lock_key(ctx.user_id, exam_id)):
            async with self.session_factory() as db:
                repo = AttemptRepository(db)
                attempt = await repo.get_for_user(ctx.user_id, exam_id)
                if attempt is None:
                    return await self.rate_limiter.check("websocket", None, ctx.user_id, self._origin(ctx))
                return await self._rate_limit("websocket", repo, attempt, ctx)

    async def find_attempt_id(self, exam_id: int, user_id: str) -> Optional[int]:
        async with self.session_factory() as db:
            attempt = await AttemptRepository(db).get_for_user(user_id, exam_id)
            return attempt.id if attempt else None
