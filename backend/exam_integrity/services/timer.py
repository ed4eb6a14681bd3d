from datetime import datetime
from typing import Any, Dict, Optional

from ..utils.timezone import to_iso


def remaining_seconds(ends_at: Optional[datetime], now: datetime) -> int:
    if ends_at is None:
        return 0
    return max(0, int((ends_at - now).total_seconds()))


def is_expired(ends_at: Optional[datetime], now: datetime) -> bool:
    return ends_at is None or now >= ends_at


def format_remaining(seconds: int) -> str:
    """MM:SS, or HH:MM:SS once an hour or more is left"""
    if seconds <= 0:
        return "00:00"
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def timer_status(ends_at: Optional[datetime], now: datetime) -> Dict[str, Any]:
    remaining = remaining_seconds(ends_at, now)
    return {
        "ends_at": to_iso(ends_at),
        "remaining_seconds": remaining,
        "formatted": format_remaining(remaining),
        "expired": is_expired(ends_at, now),
        "server_time": to_iso(now),
    }
