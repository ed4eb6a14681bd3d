"""
Unit Tests for post-attempt verification checks
"""
from datetime import timedelta

import pytest

from exam_integrity.models.attempt import Attempt
from exam_integrity.services.verification import PostAttemptVerifier


@pytest.fixture
def verifier():
    return PostAttemptVerifier(buffer_seconds=5, suspicious_gap_seconds=30)


@pytest.fixture
def attempt(clock):
    attempt = Attempt.create("student-1", 1)
    attempt.begin(clock.now(), 3600, "a" * 64, "10.0.0.5", "token")
    attempt.register_heartbeat(clock.now() + timedelta(seconds=3595))
    attempt.submitted_at = clock.now() + timedelta(seconds=3598)
    return attempt


class TestTimeConsistency:
    """Tests for verify_time_consistency"""

    def test_within_buffer(self, verifier, attempt):
        result = verifier.verify_time_consistency(attempt, 3600)
        assert result.passed is True
        assert result.details["difference_seconds"] == 2

    def test_early_submission_fails(self, verifier, attempt):
        attempt.submitted_at = attempt.started_at + timedelta(seconds=600)
        result = verifier.verify_time_consistency(attempt, 3600)
        assert result.passed is False
        assert "exceeds buffer" in result.reason

    def test_missing_timestamps(self, verifier, attempt):
        attempt.submitted_at = None
        result = verifier.verify_time_consistency(attempt, 3600)
        assert result.passed is False
        assert result.details["has_submitted_at"] is False


class TestQuestionOrder:
    """Tests for verify_question_order"""

    def test_index_matches_progress(self, verifier, attempt):
        attempt.mark_answered(10)
        attempt.mark_skipped(11)
        attempt.advance_to(2)
        assert verifier.verify_question_order(attempt).passed is True

    def test_index_far_ahead_of_progress(self, verifier, attempt):
        attempt.mark_answered(10)
        attempt.advance_to(4)
        result = verifier.verify_question_order(attempt)
        assert result.passed is False
        assert result.details["expected_index"] == 1


class TestViolationTimestamps:
    """Tests for verify_violation_timestamps"""

    def test_violations_inside_window(self, verifier, attempt):
        attempt.record_violation("TAB_HIDDEN", attempt.started_at + timedelta(seconds=60))
        assert verifier.verify_violation_timestamps(attempt).passed is True

    def test_violation_after_submit(self, verifier, attempt):
        attempt.record_violation("TAB_HIDDEN", attempt.submitted_at + timedelta(seconds=1))
        result = verifier.verify_violation_timestamps(attempt)
        assert result.passed is False
        assert result.details["violations_out_of_range"] == 1


class TestHeartbeatContinuity:
    """Tests for verify_heartbeat_continuity"""

    def test_no_heartbeat_fails(self, verifier, attempt):
        attempt.last_heartbeat_at = None
        assert verifier.verify_heartbeat_continuity(attempt).passed is False

    def test_short_gaps_pass(self, verifier, attempt):
        attempt.record_heartbeat_gap(attempt.started_at, 20, "tab-1")
        assert verifier.verify_heartbeat_continuity(attempt).passed is True

    def test_suspicious_gap_fails(self, verifier, attempt):
        attempt.record_heartbeat_gap(attempt.started_at, 45, "tab-1")
        result = verifier.verify_heartbeat_continuity(attempt)
        assert result.passed is False
        assert result.details["suspicious_gaps"] == 1


class TestVerify:
    """Tests for the combined report"""

    def test_all_checks_pass(self, verifier, attempt):
        report = verifier.verify(attempt)
        assert report.passed is True
        assert report.to_dict()["overall_passed"] is True

    def test_one_failed_check_fails_report(self, verifier, attempt):
        attempt.record_heartbeat_gap(attempt.started_at, 90, "tab-1")
        report = verifier.verify(attempt)
        assert report.passed is False
        assert report.to_dict()["heartbeat_continuity"]["passed"] is False
        assert report.to_dict()["time_consistency"]["passed"] is True
