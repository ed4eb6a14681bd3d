import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from ..core.config import settings
from ..models.attempt import Attempt
from .trust_scoring import ViolationType

logger = logging.getLogger(__name__)


def calculate_missed_heartbeats(
    last_seen_at: Optional[datetime],
    now: datetime,
    interval_seconds: int = None,
    grace_seconds: int = None,
    max_missed: int = None,
) -> int:
    interval_seconds = interval_seconds or settings.heartbeat_interval_seconds
    grace_seconds = grace_seconds or settings.heartbeat_grace_seconds
    max_missed = settings.max_missed_heartbeats if max_missed is None else max_missed

    if last_seen_at is None:
        return max_missed + 1

    gap = (now - last_seen_at).total_seconds()
    if gap < grace_seconds:
        return 0
    return max(0, int(gap // interval_seconds) - 1)


@dataclass
class HeartbeatCompliance:
    compliant: bool
    missed_heartbeats: int
    reason: str
    last_seen_at: Optional[datetime] = None


@dataclass
class GapOutcome:
    gap_seconds: Optional[float] = None
    missed: int = 0
    violation: Optional[Dict[str, Any]] = None
    recorded: bool = False


class HeartbeatMonitor:
    """Turns the gap between consecutive heartbeats into attempt state.

    Regular beats leave the attempt untouched; last-seen lives in the presence
    tracker and the durable heartbeat rows.
    """

    def __init__(self, tracker, repository, clock):
        self.tracker = tracker
        self.repository = repository
        self.clock = clock
        self.max_missed = settings.max_missed_heartbeats
        self.grace_seconds = settings.heartbeat_grace_seconds
        self.dedup_window = timedelta(seconds=settings.heartbeat_gap_dedup_seconds)
        self.max_drift_seconds = settings.max_client_drift_seconds

    def apply_gap(
        self, attempt: Attempt, previous_seen: Optional[datetime], now: datetime, connection_id: str
    ) -> GapOutcome:
        if previous_seen is None:
            return GapOutcome()

        gap = (now - previous_seen).total_seconds()
        outcome = GapOutcome(gap_seconds=gap)
        if gap >= self.grace_seconds:
            attempt.record_heartbeat_gap(now, gap, connection_id)
            outcome.recorded = True

        missed = calculate_missed_heartbeats(previous_seen, now)
        outcome.missed = missed
        if missed <= self.max_missed:
            return outcome

        attempt.add_missed_heartbeats(missed)
        if not attempt.is_started:
            return outcome

        last_gap_violation = attempt.last_violation_at(ViolationType.HEARTBEAT_GAP.value)
        if last_gap_violation is not None and now - last_gap_violation < self.dedup_window:
            logger.debug(f"Heartbeat gap violation suppressed for attempt {attempt.id}")
            return outcome

        outcome.violation = attempt.record_violation(
            ViolationType.HEARTBEAT_GAP.value,
            now,
            {
                "missed_heartbeats": missed,
                "max_allowed": self.max_missed,
                "grace_window_seconds": self.grace_seconds,
                "gap_seconds": round(gap, 3),
            },
        )
        return outcome

    def check_drift(self, attempt: Attempt, client_now: Optional[datetime], now: datetime) -> Optional[Dict[str, Any]]:
        """Client clock telemetry, flagged at most once per attempt."""
        if client_now is None or not attempt.is_started:
            return None
        if attempt.last_violation_at(ViolationType.TIME_DRIFT_ANOMALY.value) is not None:
            return None
        drift = (now - client_now).total_seconds()
        if abs(drift) <= self.max_drift_seconds:
            return None
        return attempt.record_violation(
            ViolationType.TIME_DRIFT_ANOMALY.value,
            now,
            {"drift_seconds": round(drift, 3), "max_allowed": self.max_drift_seconds},
        )

    async def last_seen(self, attempt_id: int) -> Optional[datetime]:
        latest = await self.tracker.latest_seen(attempt_id)
        if latest is not None:
            return latest
        return await self.repository.latest_heartbeat_at(attempt_id)

    async def check_compliance(self, attempt_id: int) -> HeartbeatCompliance:
        try:
            last_seen = await self.last_seen(attempt_id)
        except Exception as e:
            logger.error(f"Error checking heartbeat compliance: {e}")
            return HeartbeatCompliance(False, self.max_missed + 1, "Error checking heartbeat compliance")

        if last_seen is None:
            return HeartbeatCompliance(False, self.max_missed + 1, "No heartbeat records found")

        missed = calculate_missed_heartbeats(last_seen, self.clock.now())
        if missed > self.max_missed:
            reason = f"Exceeded maximum missed heartbeats ({self.max_missed})"
        else:
            reason = "Heartbeat compliance OK"
        return HeartbeatCompliance(missed <= self.max_missed, missed, reason, last_seen)
