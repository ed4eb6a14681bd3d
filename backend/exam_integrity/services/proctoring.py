"""
Proctoring readiness and permission-revocation checks.

Front camera and a full-monitor screen share are mandatory; the back camera
is optional and only recorded.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..utils.timezone import to_iso
from .trust_scoring import ViolationType

REQUIRED_DISPLAY_SURFACE = "monitor"


@dataclass
class ProctoringValidation:
    valid: bool
    errors: List[str] = field(default_factory=list)


def normalize_status(raw: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Accepts camelCase (browser) or snake_case keys."""
    raw = raw or {}

    def pick(snake, camel, default=None):
        if snake in raw:
            return raw[snake]
        return raw.get(camel, default)

    status = {
        "front_camera_active": bool(pick("front_camera_active", "frontCameraActive", False)),
        "back_camera_active": bool(pick("back_camera_active", "backCameraActive", False)),
        "screen_share_active": bool(pick("screen_share_active", "screenShareActive", False)),
        "display_surface": pick("display_surface", "displaySurface"),
    }
    if now is not None:
        status["last_validated"] = to_iso(now)
    return status


def validate_proctoring_status(status: Optional[Dict[str, Any]]) -> ProctoringValidation:
    if not status:
        return ProctoringValidation(False, ["Proctoring status not provided"])

    errors = []
    if not status.get("front_camera_active"):
        errors.append("Front camera is not active")
    if not status.get("screen_share_active"):
        errors.append("Screen share is not active")
    if status.get("display_surface") != REQUIRED_DISPLAY_SURFACE:
        errors.append("Screen share must be full screen (monitor), not browser or window")
    return ProctoringValidation(not errors, errors)


def detect_revocations(previous: Optional[Dict[str, Any]], current: Optional[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Violations implied by a change between two normalized statuses."""
    if not previous or not current:
        return []

    found = []
    if previous.get("front_camera_active") and not current.get("front_camera_active"):
        found.append({
            "type": ViolationType.FRONT_CAMERA_REVOKED.value,
            "message": "Front camera permission was revoked",
        })
    if previous.get("screen_share_active") and not current.get("screen_share_active"):
        found.append({
            "type": ViolationType.SCREEN_SHARE_REVOKED.value,
            "message": "Screen share permission was revoked",
        })
    if (
        previous.get("display_surface") == REQUIRED_DISPLAY_SURFACE
        and current.get("display_surface") != REQUIRED_DISPLAY_SURFACE
        and current.get("screen_share_active")
    ):
        found.append({
            "type": ViolationType.DISPLAY_SURFACE_INVALID.value,
            "message": "Screen share changed from full screen (monitor) to invalid surface",
        })
    return found
