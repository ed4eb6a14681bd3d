"""
Unit Tests for heartbeat gap accounting and clock drift checks
"""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from exam_integrity.models.attempt import Attempt
from exam_integrity.services.heartbeat import HeartbeatMonitor, calculate_missed_heartbeats
from exam_integrity.services.presence import PresenceTracker


@pytest.fixture
def attempt(clock):
    attempt = Attempt.create("student-1", 1)
    attempt.begin(clock.now(), 3600, "a" * 64, "10.0.0.5", "token")
    return attempt


@pytest.fixture
def repository():
    repo = AsyncMock()
    repo.latest_heartbeat_at.return_value = None
    return repo


@pytest.fixture
def monitor(clock, repository):
    return HeartbeatMonitor(PresenceTracker(clock=clock), repository, clock)


class TestCalculateMissedHeartbeats:
    """Tests for the missed-heartbeat formula"""

    @pytest.mark.parametrize("gap,expected", [(0, 0), (5, 0), (14.9, 0), (15, 2), (20, 3), (25, 4), (60, 11)])
    def test_gap_to_missed(self, clock, gap, expected):
        now = clock.now()
        assert calculate_missed_heartbeats(now - timedelta(seconds=gap), now) == expected

    def test_never_seen_exceeds_max(self, clock):
        assert calculate_missed_heartbeats(None, clock.now()) == 4


class TestApplyGap:
    """Tests for HeartbeatMonitor.apply_gap"""

    def test_first_heartbeat_has_no_gap(self, monitor, attempt, clock):
        outcome = monitor.apply_gap(attempt, None, clock.now(), "tab-1")
        assert outcome.gap_seconds is None
        assert outcome.recorded is False
        assert attempt.last_heartbeat_at is None
        assert attempt.heartbeat_gaps == []

    def test_regular_heartbeats_record_nothing(self, monitor, attempt, clock):
        previous = clock.now()
        now = clock.advance(5)
        outcome = monitor.apply_gap(attempt, previous, now, "tab-1")
        assert outcome.missed == 0
        assert outcome.violation is None
        assert outcome.recorded is False
        assert attempt.last_heartbeat_at is None
        assert attempt.missed_heartbeats == 0

    def test_gap_within_tolerance_is_recorded_but_not_a_violation(self, monitor, attempt, clock):
        previous = clock.now()
        now = clock.advance(20)

        outcome = monitor.apply_gap(attempt, previous, now, "tab-1")

        assert outcome.missed == 3
        assert outcome.violation is None
        assert outcome.recorded is True
        assert attempt.heartbeat_gaps[0]["gap_seconds"] == 20
        assert attempt.missed_heartbeats == 0

    def test_long_gap_is_a_violation(self, monitor, attempt, clock):
        previous = clock.now()
        now = clock.advance(40)

        outcome = monitor.apply_gap(attempt, previous, now, "tab-1")

        assert outcome.missed == 7
        assert outcome.violation["type"] == "HEARTBEAT_GAP"
        assert outcome.violation["details"]["max_allowed"] == 3
        assert attempt.missed_heartbeats == 7

    def test_repeated_gap_violations_are_deduplicated(self, monitor, attempt, clock):
        previous = clock.now()
        now = clock.advance(40)
        monitor.apply_gap(attempt, previous, now, "tab-1")

        previous = now
        now = clock.advance(40)
        outcome = monitor.apply_gap(attempt, previous, now, "tab-1")

        assert outcome.violation is None
        assert attempt.violation_count == 1
        assert attempt.missed_heartbeats == 14

        previous = now
        now = clock.advance(40)
        assert monitor.apply_gap(attempt, previous, now, "tab-1").violation is not None
        assert attempt.violation_count == 2


class TestCheckDrift:
    """Tests for client clock drift telemetry"""

    def test_small_drift_ignored(self, monitor, attempt, clock):
        assert monitor.check_drift(attempt, clock.now() - timedelta(seconds=10), clock.now()) is None

    def test_large_drift_flagged_once(self, monitor, attempt, clock):
        first = monitor.check_drift(attempt, clock.now() - timedelta(seconds=30), clock.now())
        assert first["type"] == "TIME_DRIFT_ANOMALY"
        assert first["details"]["drift_seconds"] == 30

        clock.advance(5)
        assert monitor.check_drift(attempt, clock.now() + timedelta(seconds=45), clock.now()) is None
        assert attempt.violation_count == 1

    def test_missing_client_time(self, monitor, attempt, clock):
        assert monitor.check_drift(attempt, None, clock.now()) is None


class TestCompliance:
    """Tests for HeartbeatMonitor.check_compliance"""

    async def test_no_records(self, monitor):
        result = await monitor.check_compliance(1)
        assert result.compliant is False
        assert result.reason == "No heartbeat records found"

    async def test_in_memory_presence_wins(self, monitor, clock):
        await monitor.tracker.update(1, "tab-1")
        clock.advance(10)

        result = await monitor.check_compliance(1)

        assert result.compliant is True
        assert result.missed_heartbeats == 0

    async def test_durable_fallback(self, monitor, repository, clock):
        repository.latest_heartbeat_at.return_value = clock.now() - timedelta(seconds=60)

        result = await monitor.check_compliance(1)

        assert result.compliant is False
        assert result.missed_heartbeats == 11

    async def test_lookup_error_is_non_compliant(self, monitor, repository):
        repository.latest_heartbeat_at.side_effect = ConnectionError("down")
        result = await monitor.check_compliance(1)
        assert result.compliant is False
        assert result.reason == "Error checking heartbeat compliance"
