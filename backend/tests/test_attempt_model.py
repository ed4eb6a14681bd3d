"""
Unit Tests for Attempt state transitions
"""
from datetime import timedelta

import pytest

from exam_integrity.models.attempt import Attempt, AttemptStatus

FINGERPRINT_HASH = "a" * 64


@pytest.fixture
def attempt(clock):
    attempt = Attempt.create("student-1", 1)
    attempt.begin(clock.now(), 3600, FINGERPRINT_HASH, "10.0.0.5", "token")
    return attempt


class TestBegin:
    """Tests for starting an attempt"""

    def test_begin_sets_window_and_device(self, attempt, clock):
        assert attempt.status == AttemptStatus.STARTED.value
        assert attempt.ends_at == clock.now() + timedelta(seconds=3600)
        assert attempt.locked_device_fingerprint == FINGERPRINT_HASH

    def test_begin_twice_is_rejected(self, attempt, clock):
        with pytest.raises(ValueError):
            attempt.begin(clock.now(), 3600, FINGERPRINT_HASH, None, "token")

    def test_expire_if_due(self, attempt, clock):
        assert attempt.expire_if_due(clock.now() + timedelta(seconds=3599)) is False
        assert attempt.expire_if_due(clock.now() + timedelta(seconds=3600)) is True
        assert attempt.status == AttemptStatus.TIME_EXPIRED.value
        assert attempt.remaining_seconds(clock.now() + timedelta(seconds=4000)) == 0


class TestNavigation:
    """Tests for forward-only navigation"""

    def test_index_never_moves_backwards(self, attempt):
        attempt.advance_to(2)
        with pytest.raises(ValueError):
            attempt.advance_to(1)
        assert attempt.current_question_index == 2

    def test_mark_answered_reports_first_answer(self, attempt):
        assert attempt.mark_answered(10) is True
        assert attempt.mark_answered(10) is False
        assert attempt.answered_questions == [10]
        assert attempt.is_question_handled(10)


class TestDeviceLock:
    """Tests for device binding rules"""

    def test_lock_is_set_once(self, attempt):
        with pytest.raises(ValueError):
            attempt.bind_device("b" * 64)

    def test_rebind_allowed_without_progress(self, attempt):
        attempt.bind_device("b" * 64, rebind=True)
        assert attempt.device_matches("b" * 64)

    def test_rebind_blocked_after_progress(self, attempt):
        attempt.mark_skipped(10)
        with pytest.raises(ValueError):
            attempt.bind_device("b" * 64, rebind=True)

    def test_flag_device_switch(self, attempt, clock):
        violation = attempt.flag_device_switch(clock.now(), {"current_fingerprint": "b" * 64})
        assert attempt.status == AttemptStatus.DEVICE_SWITCH_DETECTED.value
        assert attempt.device_switch_detected is True
        assert violation["type"] == "DEVICE_SWITCH_DETECTED"


class TestRestart:
    """Tests for restart eligibility"""

    @pytest.mark.parametrize("status", [
        AttemptStatus.VERIFICATION_FAILED,
        AttemptStatus.AUTO_DISQUALIFIED,
        AttemptStatus.ADMIN_INVALIDATED,
    ])
    def test_restartable_statuses_without_progress(self, attempt, status):
        attempt.status = status.value
        assert attempt.is_restartable() is True

    def test_invalid_classification_is_restartable(self, attempt):
        attempt.status = AttemptStatus.COMPLETED.value
        attempt.trust_classification = "invalid"
        assert attempt.is_restartable() is True

    @pytest.mark.parametrize("status", [
        AttemptStatus.COMPLETED,
        AttemptStatus.TIME_EXPIRED,
        AttemptStatus.VIOLATION_TERMINATED,
        AttemptStatus.DEVICE_SWITCH_DETECTED,
    ])
    def test_other_statuses_are_final(self, attempt, status):
        attempt.status = status.value
        assert attempt.is_restartable() is False

    def test_progress_blocks_restart(self, attempt):
        attempt.status = AttemptStatus.VERIFICATION_FAILED.value
        attempt.mark_answered(10)
        assert attempt.is_restartable() is False
        with pytest.raises(ValueError):
            attempt.reset_for_restart()

    def test_reset_clears_state_and_counts(self, attempt, clock):
        attempt.record_violation("TAB_HIDDEN", clock.now())
        attempt.status = AttemptStatus.ADMIN_INVALIDATED.value

        attempt.reset_for_restart()

        assert attempt.status == AttemptStatus.PENDING.value
        assert attempt.violations == []
        assert attempt.locked_device_fingerprint is None
        assert attempt.restart_count == 1


class TestAdminTransitions:
    """Tests for pause, force submit and invalidate"""

    def test_pause_requires_started(self, attempt, clock):
        attempt.pause(clock.now(), "admin-1", "network outage")
        assert attempt.status == AttemptStatus.PAUSED.value
        with pytest.raises(ValueError):
            attempt.pause(clock.now(), "admin-1", "again")

    def test_force_submit(self, attempt, clock):
        attempt.force_submit(clock.now(), "admin-1")
        assert attempt.status == AttemptStatus.COMPLETED.value
        assert attempt.admin_submitted is True
        with pytest.raises(ValueError):
            attempt.force_submit(clock.now(), "admin-1")

    def test_invalidate_from_any_state(self, attempt, clock):
        attempt.status = AttemptStatus.TIME_EXPIRED.value
        attempt.invalidate(clock.now(), "admin-1", "collusion")
        assert attempt.status == AttemptStatus.ADMIN_INVALIDATED.value
        assert attempt.invalidation_reason == "collusion"
