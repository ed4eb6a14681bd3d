"""
Trust score aggregation.

Every attempt starts with 100 points; each signal deducts a fixed amount.
The model is deterministic so a score can always be explained from its
breakdown during an appeal.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..core.config import settings
from ..models.attempt import Attempt


class ViolationType(str, Enum):
    TAB_HIDDEN = "TAB_HIDDEN"
    TAB_VISIBLE = "TAB_VISIBLE"
    WINDOW_BLUR = "WINDOW_BLUR"
    WINDOW_FOCUS = "WINDOW_FOCUS"
    DEVTOOLS_OPEN = "DEVTOOLS_OPEN"
    COPY_ATTEMPT = "COPY_ATTEMPT"
    PASTE_ATTEMPT = "PASTE_ATTEMPT"
    CONTEXT_MENU = "CONTEXT_MENU"
    SUSPICIOUS_KEYBOARD_SHORTCUT = "SUSPICIOUS_KEYBOARD_SHORTCUT"
    FRONT_CAMERA_REVOKED = "FRONT_CAMERA_REVOKED"
    SCREEN_SHARE_REVOKED = "SCREEN_SHARE_REVOKED"
    DISPLAY_SURFACE_INVALID = "DISPLAY_SURFACE_INVALID"
    PROCTORING_VIOLATION = "PROCTORING_VIOLATION"
    VM_DETECTED = "VM_DETECTED"
    HEARTBEAT_GAP = "HEARTBEAT_GAP"
    DEVICE_SWITCH_DETECTED = "DEVICE_SWITCH_DETECTED"
    REPLAY_ATTEMPT = "REPLAY_ATTEMPT"
    TIME_WINDOW_VIOLATION = "TIME_WINDOW_VIOLATION"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    TIME_DRIFT_ANOMALY = "TIME_DRIFT_ANOMALY"


# points deducted per occurrence; anything not listed costs settings.default_violation_weight
VIOLATION_WEIGHTS: Mapping[ViolationType, int] = {
    ViolationType.TAB_HIDDEN: 5,
    ViolationType.TAB_VISIBLE: 2,
    ViolationType.WINDOW_BLUR: 5,
    ViolationType.WINDOW_FOCUS: 2,
    ViolationType.DEVTOOLS_OPEN: 15,
    ViolationType.COPY_ATTEMPT: 10,
    ViolationType.PASTE_ATTEMPT: 15,
    ViolationType.CONTEXT_MENU: 5,
    ViolationType.SUSPICIOUS_KEYBOARD_SHORTCUT: 10,
    ViolationType.FRONT_CAMERA_REVOKED: 30,
    ViolationType.SCREEN_SHARE_REVOKED: 30,
    ViolationType.DISPLAY_SURFACE_INVALID: 25,
    ViolationType.PROCTORING_VIOLATION: 25,
    ViolationType.VM_DETECTED: 100,
    ViolationType.HEARTBEAT_GAP: 10,
    ViolationType.DEVICE_SWITCH_DETECTED: 50,
    ViolationType.REPLAY_ATTEMPT: 40,
    ViolationType.TIME_WINDOW_VIOLATION: 15,
}

DEFAULT_PROCTORING_WEIGHT = 25

MISSED_HEARTBEAT_POINTS = 5
MAX_TIMING_HEARTBEAT_POINTS = 25
FAILED_VERIFICATION_POINTS = 30
DEVICE_SWITCH_POINTS = 50

CLASSIFICATION_INVALID = "invalid"
CLASSIFICATION_SUSPICIOUS = "suspicious"
CLASSIFICATION_CLEAN = "clean"


def is_proctoring_violation(violation_type: str) -> bool:
    return (
        "CAMERA" in violation_type
        or "SCREEN" in violation_type
        or violation_type in (ViolationType.PROCTORING_VIOLATION.value, ViolationType.DISPLAY_SURFACE_INVALID.value)
    )


@dataclass
class TrustScoreResult:
    score: float
    classification: str
    breakdown: Dict[str, Any] = field(default_factory=dict)


class TrustScorer:
    def __init__(
        self,
        weight_overrides: Optional[Mapping[str, int]] = None,
        invalid_threshold: Optional[float] = None,
        suspicious_threshold: Optional[float] = None,
    ):
        overrides = settings.violation_weight_overrides if weight_overrides is None else weight_overrides
        self._weights: Dict[str, int] = {t.value: w for t, w in VIOLATION_WEIGHTS.items()}
        self._explicit = set(self._weights)
        self.default_weight = settings.default_violation_weight
        for violation_type, weight in overrides.items():
            self._weights[str(violation_type)] = int(weight)
            self._explicit.add(str(violation_type))
        self.invalid_threshold = settings.trust_invalid_threshold if invalid_threshold is None else invalid_threshold
        self.suspicious_threshold = (
            settings.trust_suspicious_threshold if suspicious_threshold is None else suspicious_threshold
        )

    def weight_for(self, violation_type: str) -> int:
        return self._weights.get(violation_type, self.default_weight)

    def violation_points(self, violations: Iterable[Dict[str, Any]]):
        total = 0
        itemized: List[Dict[str, Any]] = []
        for violation in violations:
            weight = self.weight_for(violation.get("type", ""))
            total += weight
            itemized.append({
                "type": violation.get("type"),
                "points": weight,
                "timestamp": violation.get("timestamp"),
                "details": violation.get("details") or {},
            })
        return total, itemized

    @staticmethod
    def timing_anomaly_points(missed_heartbeats: int, verification_failed: bool) -> int:
        points = 0
        if missed_heartbeats and missed_heartbeats > 0:
            points += min(missed_heartbeats * MISSED_HEARTBEAT_POINTS, MAX_TIMING_HEARTBEAT_POINTS)
        if verification_failed:
            points += FAILED_VERIFICATION_POINTS
        return points

    @staticmethod
    def device_drift_points(device_switch_detected: bool) -> int:
        return DEVICE_SWITCH_POINTS if device_switch_detected else 0

    def proctoring_points(self, violations: Iterable[Dict[str, Any]]) -> int:
        points = 0
        for violation in violations:
            violation_type = violation.get("type", "")
            if is_proctoring_violation(violation_type):
                if violation_type in self._explicit:
                    points += self._weights[violation_type]
                else:
                    points += DEFAULT_PROCTORING_WEIGHT
        return points

    def classify(self, score: float) -> str:
        if score <= self.invalid_threshold:
            return CLASSIFICATION_INVALID
        if score <= self.suspicious_threshold:
            return CLASSIFICATION_SUSPICIOUS
        return CLASSIFICATION_CLEAN

    def calculate(
        self,
        violations: List[Dict[str, Any]],
        missed_heartbeats: int = 0,
        verification_failed: bool = False,
        device_switch_detected: bool = False,
    ) -> TrustScoreResult:
        violation_total, itemized = self.violation_points(violations)
        timing = self.timing_anomaly_points(missed_heartbeats, verification_failed)
        drift = self.device_drift_points(device_switch_detected)
        proctoring = self.proctoring_points(violations)

        deducted = violation_total + timing + drift + proctoring
        score = round(max(0.0, min(100.0, 100.0 - deducted)), 2)

        return TrustScoreResult(
            score=score,
            classification=self.classify(score),
            breakdown={
                "violation_points": violation_total,
                "timing_anomaly_points": timing,
                "device_drift_points": drift,
                "proctoring_points": proctoring,
                "total_deducted": deducted,
                "violation_breakdown": itemized,
            },
        )

    def score_attempt(self, attempt: Attempt) -> TrustScoreResult:
        return self.calculate(
            violations=list(attempt.violations or []),
            missed_heartbeats=attempt.missed_heartbeats or 0,
            verification_failed=attempt.verification_status == "failed",
            device_switch_detected=bool(attempt.device_switch_detected),
        )
