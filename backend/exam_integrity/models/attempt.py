from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import Column, String, DateTime, ForeignKey, Float, Boolean, Integer, JSON, UniqueConstraint
from sqlalchemy.ext.mutable import MutableDict, MutableList

from ..core.database import Base
from ..utils.timezone import utc_now, to_iso, from_iso


class AttemptStatus(str, Enum):
    PENDING = "pending"
    STARTED = "started"
    PAUSED = "paused"
    COMPLETED = "completed"
    TIME_EXPIRED = "time_expired"
    VIOLATION_TERMINATED = "violation_terminated"
    AUTO_DISQUALIFIED = "auto_disqualified"
    DEVICE_SWITCH_DETECTED = "device_switch_detected"
    VERIFICATION_FAILED = "verification_failed"
    ADMIN_INVALIDATED = "admin_invalidated"


RESTARTABLE_STATUSES = frozenset({
    AttemptStatus.VERIFICATION_FAILED.value,
    AttemptStatus.AUTO_DISQUALIFIED.value,
    AttemptStatus.ADMIN_INVALIDATED.value,
})


class Attempt(Base):
    """One user's timed session against one exam.

    The row is the single aggregate every integrity guard reads and writes.
    Callers go through the methods below instead of assigning fields, so the
    ordering rules hold in one place:

    * ``violations`` only ever grows;
    * ``current_question_index`` never moves backwards;
    * the device lock is set once per lifetime (restart or zero-progress rebind
      are the only ways to replace it);
    * ``ends_at`` is computed on start from the full duration.
    """
    __tablename__ = "exam_attempts"
    __table_args__ = (
        UniqueConstraint("user_id", "exam_id", name="uq_attempt_user_exam"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False, index=True)

    status = Column(String(32), default=AttemptStatus.PENDING.value, nullable=False)
    started_at = Column(DateTime, nullable=True)
    ends_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    submitted_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    current_question_index = Column(Integer, default=0, nullable=False)
    answered_questions = Column(MutableList.as_mutable(JSON), default=list)
    skipped_questions = Column(MutableList.as_mutable(JSON), default=list)

    locked_device_fingerprint = Column(String(64), nullable=True)
    device_switch_detected = Column(Boolean, default=False)
    device_switch_at = Column(DateTime, nullable=True)
    ip_address = Column(String(64), nullable=True)
    session_token = Column(String(64), nullable=True)
    proctoring_status = Column(MutableDict.as_mutable(JSON), default=dict)

    # [{type, timestamp (iso), details}]
    violations = Column(MutableList.as_mutable(JSON), default=list)

    missed_heartbeats = Column(Integer, default=0)
    last_heartbeat_at = Column(DateTime, nullable=True)
    # [{observed_at (iso), gap_seconds, connection_id}]
    heartbeat_gaps = Column(MutableList.as_mutable(JSON), default=list)

    trust_score = Column(Float, nullable=True)
    trust_classification = Column(String(16), nullable=True)
    scoring_breakdown = Column(JSON, nullable=True)
    verification_status = Column(String(16), default="pending")
    verification_results = Column(JSON, nullable=True)

    # question_id (str) -> {nonce, issued_at, expires_at, used}
    question_nonces = Column(MutableDict.as_mutable(JSON), default=dict)

    paused_at = Column(DateTime, nullable=True)
    paused_by = Column(String(64), nullable=True)
    pause_reason = Column(String(500), nullable=True)
    invalidated_at = Column(DateTime, nullable=True)
    invalidated_by = Column(String(64), nullable=True)
    invalidation_reason = Column(String(500), nullable=True)
    admin_submitted = Column(Boolean, default=False)

    restart_count = Column(Integer, default=0)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    @classmethod
    def create(cls, user_id: str, exam_id: int) -> "Attempt":
        attempt = cls(user_id=user_id, exam_id=exam_id, restart_count=0)
        attempt._clear_integrity_fields()
        return attempt

    def _clear_integrity_fields(self) -> None:
        self.status = AttemptStatus.PENDING.value
        self.started_at = None
        self.ends_at = None
        self.submitted_at = None
        self.completed_at = None
        self.current_question_index = 0
        self.answered_questions = []
        self.skipped_questions = []
        self.locked_device_fingerprint = None
        self.device_switch_detected = False
        self.device_switch_at = None
        self.session_token = None
        self.proctoring_status = {}
        self.violations = []
        self.missed_heartbeats = 0
        self.last_heartbeat_at = None
        self.heartbeat_gaps = []
        self.trust_score = None
        self.trust_classification = None
        self.scoring_breakdown = None
        self.verification_status = "pending"
        self.verification_results = None
        self.question_nonces = {}
        self.paused_at = None
        self.paused_by = None
        self.pause_reason = None
        self.invalidated_at = None
        self.invalidated_by = None
        self.invalidation_reason = None
        self.admin_submitted = False

    # ------------------------------------------------------------------ status

    @property
    def is_started(self) -> bool:
        return self.status == AttemptStatus.STARTED.value

    @property
    def progress_count(self) -> int:
        return len(self.answered_questions or []) + len(self.skipped_questions or [])

    @property
    def has_progress(self) -> bool:
        return self.progress_count > 0

    def is_restartable(self) -> bool:
        restartable_state = (
            self.status in RESTARTABLE_STATUSES
            or self.trust_classification == "invalid"
        )
        return restartable_state and not self.has_progress

    def begin(
        self,
        now: datetime,
        duration_seconds: int,
        fingerprint_hash: str,
        ip_address: Optional[str],
        session_token: str,
        proctoring_status: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.status != AttemptStatus.PENDING.value:
            raise ValueError(f"Cannot start attempt in status {self.status}")
        self.status = AttemptStatus.STARTED.value
        self.started_at = now
        self.duration_seconds = duration_seconds
        self.ends_at = now + timedelta(seconds=duration_seconds)
        self.ip_address = ip_address
        self.session_token = session_token
        self.proctoring_status = dict(proctoring_status or {})
        self.bind_device(fingerprint_hash)

    def reset_for_restart(self) -> None:
        if not self.is_restartable():
            raise ValueError("Attempt is not eligible for restart")
        self._clear_integrity_fields()
        self.restart_count = (self.restart_count or 0) + 1

    def expire_if_due(self, now: datetime) -> bool:
        """Move a running attempt to time_expired once its window has closed."""
        if self.is_started and self.ends_at is not None and now >= self.ends_at:
            self.status = AttemptStatus.TIME_EXPIRED.value
            return True
        return False

    def remaining_seconds(self, now: datetime) -> int:
        if self.ends_at is None:
            return 0
        return max(0, int((self.ends_at - now).total_seconds()))

    # ------------------------------------------------------------------ device

    def bind_device(self, fingerprint_hash: str, rebind: bool = False) -> None:
        if self.locked_device_fingerprint and not rebind:
            raise ValueError("Device fingerprint is already locked for this attempt")
        if rebind and self.has_progress:
            raise ValueError("Cannot rebind a device after progress has been made")
        self.locked_device_fingerprint = fingerprint_hash

    def device_matches(self, fingerprint_hash: str) -> bool:
        return self.locked_device_fingerprint is None or self.locked_device_fingerprint == fingerprint_hash

    def flag_device_switch(self, now: datetime, details: Dict[str, Any]) -> Dict[str, Any]:
        self.device_switch_detected = True
        self.device_switch_at = now
        self.status = AttemptStatus.DEVICE_SWITCH_DETECTED.value
        return self.record_violation("DEVICE_SWITCH_DETECTED", now, details)

    # -------------------------------------------------------------- violations

    def record_violation(
        self, violation_type: str, now: datetime, details: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        entry = {
            "type": violation_type,
            "timestamp": to_iso(now),
            "details": dict(details or {}),
        }
        self.violations.append(entry)
        return entry

    @property
    def violation_count(self) -> int:
        return len(self.violations or [])

    def last_violation_at(self, violation_type: str) -> Optional[datetime]:
        for entry in reversed(self.violations or []):
            if entry.get("type") == violation_type:
                return from_iso(entry.get("timestamp"))
        return None

    def terminate_for_violations(self) -> None:
        self.status = AttemptStatus.VIOLATION_TERMINATED.value

    # ------------------------------------------------------------------ nonces

    def store_nonce(self, question_id: int, nonce: str, issued_at: datetime, expires_at: datetime) -> None:
        self.question_nonces[str(question_id)] = {
            "nonce": nonce,
            "issued_at": to_iso(issued_at),
            "expires_at": to_iso(expires_at),
            "used": False,
        }

    def get_nonce(self, question_id: int) -> Optional[Dict[str, Any]]:
        return (self.question_nonces or {}).get(str(question_id))

    def mark_nonce_used(self, question_id: int) -> None:
        entry = self.get_nonce(question_id)
        if entry is None:
            raise KeyError(question_id)
        # reassigned rather than mutated in place so the JSON change is tracked
        self.question_nonces[str(question_id)] = {**entry, "used": True}

    # -------------------------------------------------------------- navigation

    def advance_to(self, index: int) -> None:
        if index < self.current_question_index:
            raise ValueError(
                f"Question index cannot move backwards ({self.current_question_index} -> {index})"
            )
        self.current_question_index = index

    def is_question_handled(self, question_id: int) -> bool:
        return question_id in (self.answered_questions or []) or question_id in (self.skipped_questions or [])

    def mark_answered(self, question_id: int) -> bool:
        """Returns True the first time a question is answered."""
        if question_id in self.answered_questions:
            return False
        self.answered_questions.append(question_id)
        return True

    def mark_skipped(self, question_id: int) -> None:
        if question_id not in self.skipped_questions:
            self.skipped_questions.append(question_id)

    # --------------------------------------------------------------- heartbeat

    def register_heartbeat(self, now: datetime) -> None:
        self.last_heartbeat_at = now

    def add_missed_heartbeats(self, count: int) -> None:
        self.missed_heartbeats = (self.missed_heartbeats or 0) + count

    def record_heartbeat_gap(self, now: datetime, gap_seconds: float, connection_id: str) -> None:
        self.heartbeat_gaps.append({
            "observed_at": to_iso(now),
            "gap_seconds": round(gap_seconds, 3),
            "connection_id": connection_id,
        })

    # ------------------------------------------------------------- submission

    def apply_verification(self, passed: bool, results: Dict[str, Any]) -> None:
        self.verification_status = "passed" if passed else "failed"
        self.verification_results = results

    def apply_trust_score(self, score: float, classification: str, breakdown: Dict[str, Any]) -> None:
        self.trust_score = score
        self.trust_classification = classification
        self.scoring_breakdown = breakdown

    def finalize(self, now: datetime, status: AttemptStatus) -> None:
        self.status = status.value
        self.submitted_at = self.submitted_at or now
        self.completed_at = now

    # ------------------------------------------------------------------- admin

    def pause(self, now: datetime, admin_id: str, reason: str) -> None:
        if not self.is_started:
            raise ValueError("Only started attempts can be paused")
        self.status = AttemptStatus.PAUSED.value
        self.paused_at = now
        self.paused_by = admin_id
        self.pause_reason = reason

    def force_submit(self, now: datetime, admin_id: str) -> None:
        if self.status == AttemptStatus.COMPLETED.value:
            raise ValueError("Attempt is already completed")
        self.status = AttemptStatus.COMPLETED.value
        self.submitted_at = now
        self.completed_at = now
        self.admin_submitted = True

    def invalidate(self, now: datetime, admin_id: str, reason: str) -> None:
        self.status = AttemptStatus.ADMIN_INVALIDATED.value
        self.invalidated_at = now
        self.invalidated_by = admin_id
        self.invalidation_reason = reason

    def to_summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "exam_id": self.exam_id,
            "status": self.status,
            "started_at": to_iso(self.started_at),
            "ends_at": to_iso(self.ends_at),
            "submitted_at": to_iso(self.submitted_at),
            "current_question_index": self.current_question_index,
            "answered_count": len(self.answered_questions or []),
            "skipped_count": len(self.skipped_questions or []),
            "violation_count": self.violation_count,
            "missed_heartbeats": self.missed_heartbeats or 0,
            "device_switch_detected": bool(self.device_switch_detected),
            "trust_score": self.trust_score,
            "trust_classification": self.trust_classification,
            "verification_status": self.verification_status,
            "admin_submitted": bool(self.admin_submitted),
        }

