"""
Unit Tests for question nonces and the answer time window
"""
from datetime import datetime, timedelta

import pytest

from exam_integrity.models.attempt import Attempt
from exam_integrity.services.replay_protection import ReplayGuard


START = datetime(2025, 3, 1, 9, 0, 0)
QUESTION_ID = 42


@pytest.fixture
def guard():
    return ReplayGuard(nonce_ttl_seconds=600, min_answer_seconds=5, max_answer_seconds=600)


@pytest.fixture
def attempt():
    return Attempt.create("student-1", 1)


class TestNonceIssue:
    """Tests for nonce issuing"""

    def test_issue_stores_unused_nonce(self, guard, attempt):
        issued = guard.issue(attempt, QUESTION_ID, START)

        entry = attempt.get_nonce(QUESTION_ID)
        assert entry["nonce"] == issued.nonce
        assert entry["used"] is False
        assert len(issued.nonce) == 64
        assert issued.expires_at == START + timedelta(seconds=600)

    def test_reissue_replaces_previous_nonce(self, guard, attempt):
        first = guard.issue(attempt, QUESTION_ID, START)
        second = guard.issue(attempt, QUESTION_ID, START + timedelta(seconds=1))

        assert first.nonce != second.nonce
        check = guard.check_nonce(attempt, QUESTION_ID, first.nonce, START + timedelta(seconds=10))
        assert check.valid is False
        assert "mismatch" in check.reason


class TestValidateAndConsume:
    """Tests for the combined nonce + time window check"""

    def test_valid_answer_consumes_nonce(self, guard, attempt):
        issued = guard.issue(attempt, QUESTION_ID, START)

        result = guard.validate_and_consume(attempt, QUESTION_ID, issued.nonce, START + timedelta(seconds=30))

        assert result.valid is True
        assert result.time_spent_ms == 30000
        assert attempt.get_nonce(QUESTION_ID)["used"] is True

    def test_second_use_is_rejected(self, guard, attempt):
        issued = guard.issue(attempt, QUESTION_ID, START)
        guard.validate_and_consume(attempt, QUESTION_ID, issued.nonce, START + timedelta(seconds=30))

        result = guard.validate_and_consume(attempt, QUESTION_ID, issued.nonce, START + timedelta(seconds=31))

        assert result.valid is False
        assert "already used" in result.reason
        assert result.window_violation is None

    def test_unissued_question_is_rejected(self, guard, attempt):
        result = guard.validate_and_consume(attempt, QUESTION_ID, "deadbeef", START)
        assert result.valid is False
        assert result.reason == "No nonce issued for this question"

    def test_expired_nonce_is_rejected(self, guard, attempt):
        issued = guard.issue(attempt, QUESTION_ID, START)

        result = guard.validate_and_consume(attempt, QUESTION_ID, issued.nonce, START + timedelta(seconds=601))

        assert result.valid is False
        assert result.reason == "Nonce expired"
        assert attempt.get_nonce(QUESTION_ID)["used"] is False

    def test_too_fast_leaves_nonce_usable(self, guard, attempt):
        """A rejected-too-early answer can be resent once the minimum has passed"""
        issued = guard.issue(attempt, QUESTION_ID, START)

        early = guard.validate_and_consume(attempt, QUESTION_ID, issued.nonce, START + timedelta(seconds=2))
        assert early.valid is False
        assert early.window_violation == "too_fast"
        assert early.time_spent_ms == 2000
        assert attempt.get_nonce(QUESTION_ID)["used"] is False

        on_time = guard.validate_and_consume(attempt, QUESTION_ID, issued.nonce, START + timedelta(seconds=5))
        assert on_time.valid is True

    def test_exactly_minimum_is_accepted(self, guard, attempt):
        issued = guard.issue(attempt, QUESTION_ID, START)
        result = guard.validate_and_consume(attempt, QUESTION_ID, issued.nonce, START + timedelta(seconds=5))
        assert result.valid is True

    def test_too_slow_within_nonce_ttl(self, attempt):
        guard = ReplayGuard(nonce_ttl_seconds=900, min_answer_seconds=5, max_answer_seconds=600)
        issued = guard.issue(attempt, QUESTION_ID, START)

        result = guard.validate_and_consume(attempt, QUESTION_ID, issued.nonce, START + timedelta(seconds=700))

        assert result.valid is False
        assert result.window_violation == "too_slow"

    def test_wrong_nonce_is_rejected(self, guard, attempt):
        guard.issue(attempt, QUESTION_ID, START)
        result = guard.validate_and_consume(attempt, QUESTION_ID, "forged", START + timedelta(seconds=10))
        assert result.valid is False
        assert "mismatch" in result.reason
