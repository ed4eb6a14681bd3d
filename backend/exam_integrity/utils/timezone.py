"""
Server clock helpers.

All integrity decisions use server time only. Datetimes are stored naive in UTC,
the same way rows are written everywhere else in the service.
"""
from datetime import datetime, timedelta
from typing import Optional
import pytz


UTC = pytz.UTC


def utc_now() -> datetime:
    """Current server time as a naive UTC datetime"""
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(UTC).replace(tzinfo=None)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return to_naive_utc(dt).isoformat()


def from_iso(value) -> Optional[datetime]:
    """Parse an ISO timestamp (as stored inside JSON columns) back to naive UTC"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(text))


def from_epoch_ms(value) -> Optional[datetime]:
    """Client telemetry timestamps arrive as epoch milliseconds"""
    if value is None:
        return None
    return datetime.fromtimestamp(float(value) / 1000.0, UTC).replace(tzinfo=None)


class SystemClock:
    """Wall clock used in production"""

    def now(self) -> datetime:
        return utc_now()


class FrozenClock:
    """Manually advanced clock for tests and replaying recorded sessions"""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or utc_now()

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = to_naive_utc(value)
