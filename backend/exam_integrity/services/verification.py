"""
Post-attempt verification.

Four independent consistency checks run once the candidate submits. Each
returns pass/fail plus the numbers it was decided on, so reviewers can see
exactly why an attempt was flagged.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..core.config import settings
from ..models.attempt import Attempt
from ..utils.timezone import from_iso


@dataclass
class CheckResult:
    passed: bool
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"passed": self.passed, "reason": self.reason, "details": self.details}


@dataclass
class VerificationReport:
    time_consistency: CheckResult
    question_order: CheckResult
    violation_timestamps: CheckResult
    heartbeat_continuity: CheckResult

    @property
    def passed(self) -> bool:
        return all((
            self.time_consistency.passed,
            self.question_order.passed,
            self.violation_timestamps.passed,
            self.heartbeat_continuity.passed,
        ))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time_consistency": self.time_consistency.to_dict(),
            "question_order": self.question_order.to_dict(),
            "violation_timestamps": self.violation_timestamps.to_dict(),
            "heartbeat_continuity": self.heartbeat_continuity.to_dict(),
            "overall_passed": self.passed,
        }


class PostAttemptVerifier:
    def __init__(self, buffer_seconds: Optional[int] = None, suspicious_gap_seconds: Optional[int] = None):
        self.buffer_seconds = buffer_seconds or settings.time_consistency_buffer_seconds
        self.suspicious_gap_seconds = suspicious_gap_seconds or settings.suspicious_heartbeat_gap_seconds

    def verify_time_consistency(self, attempt: Attempt, expected_duration_seconds: int) -> CheckResult:
        if not attempt.started_at or not attempt.submitted_at:
            return CheckResult(False, "Missing start or submit timestamp", {
                "has_started_at": attempt.started_at is not None,
                "has_submitted_at": attempt.submitted_at is not None,
            })

        actual = (attempt.submitted_at - attempt.started_at).total_seconds()
        difference = abs(actual - expected_duration_seconds)
        passed = difference <= self.buffer_seconds
        if passed:
            reason = "Time consistency check passed"
        else:
            reason = f"Time difference exceeds buffer ({round(difference)}s > {self.buffer_seconds}s)"

        return CheckResult(passed, reason, {
            "actual_duration_seconds": round(actual),
            "expected_duration_seconds": expected_duration_seconds,
            "difference_seconds": round(difference),
            "buffer_seconds": self.buffer_seconds,
        })

    def verify_question_order(self, attempt: Attempt) -> CheckResult:
        answered = len(attempt.answered_questions or [])
        skipped = len(attempt.skipped_questions or [])
        expected = answered + skipped
        current = attempt.current_question_index or 0
        passed = expected - 1 <= current <= expected + 1

        if passed:
            reason = "Question order check passed"
        else:
            reason = f"Question index inconsistency (current: {current}, expected: ~{expected})"

        return CheckResult(passed, reason, {
            "current_question_index": current,
            "answered_count": answered,
            "skipped_count": skipped,
            "expected_index": expected,
        })

    def verify_violation_timestamps(self, attempt: Attempt) -> CheckResult:
        if not attempt.started_at or not attempt.submitted_at:
            return CheckResult(False, "Missing start or submit timestamp")

        violations = attempt.violations or []
        out_of_range = [
            v for v in violations
            if not (attempt.started_at <= from_iso(v.get("timestamp")) <= attempt.submitted_at)
        ]
        passed = not out_of_range
        reason = (
            "Violation timestamp check passed" if passed
            else f"{len(out_of_range)} violations outside attempt timeframe"
        )
        return CheckResult(passed, reason, {
            "violations_checked": len(violations),
            "violations_out_of_range": len(out_of_range),
        })

    def verify_heartbeat_continuity(self, attempt: Attempt) -> CheckResult:
        if attempt.last_heartbeat_at is None:
            return CheckResult(False, "No heartbeat records found", {"heartbeat_seen": False})

        suspicious = [
            gap for gap in (attempt.heartbeat_gaps or [])
            if gap.get("gap_seconds", 0) > self.suspicious_gap_seconds
        ]
        passed = not suspicious
        reason = (
            "Heartbeat timeline check passed" if passed
            else f"{len(suspicious)} suspicious gaps detected"
        )
        return CheckResult(passed, reason, {
            "heartbeat_seen": True,
            "recorded_gaps": len(attempt.heartbeat_gaps or []),
            "suspicious_gaps": len(suspicious),
            "gaps": suspicious,
            "threshold_seconds": self.suspicious_gap_seconds,
        })

    def verify(self, attempt: Attempt, expected_duration_seconds: Optional[int] = None) -> VerificationReport:
        expected = expected_duration_seconds or attempt.duration_seconds or settings.default_exam_duration_seconds
        return VerificationReport(
            time_consistency=self.verify_time_consistency(attempt, expected),
            question_order=self.verify_question_order(attempt),
            violation_timestamps=self.verify_violation_timestamps(attempt),
            heartbeat_continuity=self.verify_heartbeat_continuity(attempt),
        )
