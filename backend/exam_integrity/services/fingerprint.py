"""
Device fingerprint hashing and virtual-machine heuristics.

The client sends a flat map of browser/device attributes. The hash is the
SHA-256 of its canonical JSON form, so key order on the wire never matters.
"""
import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


VM_INDICATORS = (
    "virtualbox",
    "vmware",
    "qemu",
    "kvm",
    "xen",
    "parallels",
    "bochs",
    "emulator",
)

COMMON_VM_RESOLUTIONS = frozenset({
    "1024x768",
    "1280x720",
    "1280x1024",
    "1920x1080",
})

VM_CONFIDENCE_THRESHOLD = 0.5


def hash_fingerprint(fingerprint: Dict[str, Any]) -> str:
    if not fingerprint or not isinstance(fingerprint, dict):
        raise ValueError("Fingerprint data is required")

    canonical = json.dumps(fingerprint, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class VMDetectionResult:
    is_vm: bool
    confidence: float
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"is_vm": self.is_vm, "confidence": self.confidence, "reasons": list(self.reasons)}


def _first_indicator(value: Optional[str]) -> Optional[str]:
    lowered = (value or "").lower()
    for indicator in VM_INDICATORS:
        if indicator in lowered:
            return indicator
    return None


def detect_vm(fingerprint: Optional[Dict[str, Any]]) -> VMDetectionResult:
    if not fingerprint:
        return VMDetectionResult(False, 0.0, ["No fingerprint data provided"])

    reasons = []
    confidence = 0.0

    cores = fingerprint.get("hardwareConcurrency")
    if isinstance(cores, (int, float)) and cores <= 2:
        reasons.append("Low hardware concurrency (possibly VM)")
        confidence += 0.2

    memory = fingerprint.get("deviceMemory")
    if isinstance(memory, (int, float)) and memory <= 2:
        reasons.append("Low device memory (possibly VM)")
        confidence += 0.2

    indicator = _first_indicator(fingerprint.get("userAgent"))
    if indicator:
        reasons.append(f"User agent contains VM indicator: {indicator}")
        confidence += 0.5

    indicator = _first_indicator(fingerprint.get("webglVendor"))
    if indicator:
        reasons.append(f"WebGL vendor contains VM indicator: {indicator}")
        confidence += 0.3

    indicator = _first_indicator(fingerprint.get("webglRenderer"))
    if indicator:
        reasons.append(f"WebGL renderer contains VM indicator: {indicator}")
        confidence += 0.3

    width, height = fingerprint.get("screenWidth"), fingerprint.get("screenHeight")
    if width and height:
        resolution = f"{width}x{height}"
        if resolution in COMMON_VM_RESOLUTIONS:
            reasons.append(f"Common VM resolution detected: {resolution}")
            confidence += 0.1

    return VMDetectionResult(
        is_vm=confidence > VM_CONFIDENCE_THRESHOLD,
        confidence=round(min(confidence, 1.0), 2),
        reasons=reasons,
    )
