import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ..core.exceptions import ErrorCode
from ..models.attempt import Attempt
from .fingerprint import hash_fingerprint

logger = logging.getLogger(__name__)


@dataclass
class DeviceCheck:
    ok: bool
    fingerprint_hash: Optional[str] = None
    drift: bool = False
    rebound: bool = False
    code: Optional[ErrorCode] = None
    message: str = ""
    violation: Optional[Dict[str, Any]] = None


class DeviceBinder:
    """Compares request fingerprints against the one locked on the attempt."""

    def check_resume(self, attempt: Attempt, fingerprint: Optional[Dict[str, Any]]) -> DeviceCheck:
        """Resume: zero progress rebinds silently, otherwise reject without touching state."""
        if not fingerprint:
            return DeviceCheck(ok=True)

        current = hash_fingerprint(fingerprint)
        if attempt.device_matches(current):
            return DeviceCheck(ok=True, fingerprint_hash=current)

        if not attempt.has_progress:
            logger.info(f"Rebinding device for attempt {attempt.id} (no progress yet)")
            attempt.bind_device(current, rebind=True)
            return DeviceCheck(ok=True, fingerprint_hash=current, drift=True, rebound=True)

        logger.warning(f"Device mismatch on resume for attempt {attempt.id}")
        return DeviceCheck(
            ok=False,
            fingerprint_hash=current,
            drift=True,
            code=ErrorCode.DEVICE_MISMATCH,
            message="This attempt is locked to another device",
        )

    def check_request(self, attempt: Attempt, fingerprint: Optional[Dict[str, Any]], now: datetime) -> DeviceCheck:
        """Any other request: the lock never moves here; drift flags a device switch and blocks."""
        if not fingerprint:
            return DeviceCheck(ok=True)

        current = hash_fingerprint(fingerprint)
        if attempt.device_matches(current):
            return DeviceCheck(ok=True, fingerprint_hash=current)

        logger.warning(f"Device switch detected for attempt {attempt.id}")
        violation = attempt.flag_device_switch(now, {
            "locked_fingerprint": attempt.locked_device_fingerprint,
            "current_fingerprint": current,
        })
        return DeviceCheck(
            ok=False,
            fingerprint_hash=current,
            drift=True,
            code=ErrorCode.DEVICE_SWITCH_DETECTED,
            message="Device switch detected. This attempt has been locked.",
            violation=violation,
        )
