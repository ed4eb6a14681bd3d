"""
Per-question nonces that gate answer submission.

A nonce is issued when a question is served, must be echoed back with the
answer, and is consumed only when both the nonce check and the answer time
window check pass.
"""
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ..core.config import settings
from ..models.attempt import Attempt
from ..utils.timezone import from_iso


@dataclass
class IssuedNonce:
    nonce: str
    issued_at: datetime
    expires_at: datetime


@dataclass
class NonceCheck:
    valid: bool
    reason: str
    time_spent_ms: Optional[int] = None
    # "too_fast" | "too_slow" for time window rejections
    window_violation: Optional[str] = None


def generate_nonce() -> str:
    return secrets.token_hex(32)


class ReplayGuard:
    def __init__(
        self,
        nonce_ttl_seconds: int = None,
        min_answer_seconds: int = None,
        max_answer_seconds: int = None,
    ):
        self.nonce_ttl = timedelta(seconds=nonce_ttl_seconds or settings.nonce_ttl_seconds)
        self.min_answer = timedelta(seconds=settings.min_answer_seconds if min_answer_seconds is None else min_answer_seconds)
        self.max_answer = timedelta(seconds=max_answer_seconds or settings.max_answer_seconds)

    def issue(self, attempt: Attempt, question_id: int, now: datetime) -> IssuedNonce:
        """Issue a fresh nonce, replacing any earlier one for the question."""
        issued = IssuedNonce(nonce=generate_nonce(), issued_at=now, expires_at=now + self.nonce_ttl)
        attempt.store_nonce(question_id, issued.nonce, issued.issued_at, issued.expires_at)
        return issued

    def check_nonce(self, attempt: Attempt, question_id: int, nonce: str, now: datetime) -> NonceCheck:
        """Validate without consuming."""
        entry = attempt.get_nonce(question_id)
        if not entry:
            return NonceCheck(False, "No nonce issued for this question")

        if not secrets.compare_digest(str(entry.get("nonce", "")), str(nonce or "")):
            return NonceCheck(False, "Nonce mismatch - possible replay attack")

        if entry.get("used"):
            return NonceCheck(False, "Nonce already used - possible replay attack")

        if now > from_iso(entry["expires_at"]):
            return NonceCheck(False, "Nonce expired")

        return NonceCheck(True, "Nonce validated successfully")

    def check_time_window(self, attempt: Attempt, question_id: int, now: datetime) -> NonceCheck:
        entry = attempt.get_nonce(question_id)
        if not entry:
            return NonceCheck(False, "No nonce data found for question")

        elapsed = now - from_iso(entry["issued_at"])
        time_spent_ms = int(elapsed.total_seconds() * 1000)
        seconds = round(elapsed.total_seconds())

        if elapsed < self.min_answer:
            return NonceCheck(
                False,
                f"Answer submitted too quickly ({seconds}s < {int(self.min_answer.total_seconds())}s minimum)",
                time_spent_ms,
                "too_fast",
            )

        if elapsed > self.max_answer:
            return NonceCheck(
                False,
                f"Answer submitted too late ({seconds}s > {int(self.max_answer.total_seconds())}s maximum)",
                time_spent_ms,
                "too_slow",
            )

        return NonceCheck(True, "Answer time window valid", time_spent_ms)

    def consume(self, attempt: Attempt, question_id: int) -> None:
        attempt.mark_nonce_used(question_id)

    def validate_and_consume(self, attempt: Attempt, question_id: int, nonce: str, now: datetime) -> NonceCheck:
        """Nonce check then time window check; the nonce is marked used only if both pass."""
        nonce_check = self.check_nonce(attempt, question_id, nonce, now)
        if not nonce_check.valid:
            return nonce_check

        window_check = self.check_time_window(attempt, question_id, now)
        if not window_check.valid:
            return window_check

        self.consume(attempt, question_id)
        return window_check
