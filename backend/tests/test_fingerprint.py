"""
Unit Tests for device fingerprint hashing, VM heuristics and device locking
"""
import pytest

from exam_integrity.core.exceptions import ErrorCode
from exam_integrity.models.attempt import Attempt
from exam_integrity.services.device_binding import DeviceBinder
from exam_integrity.services.fingerprint import detect_vm, hash_fingerprint


class TestHashFingerprint:
    """Tests for canonical fingerprint hashing"""

    def test_hash_is_sha256_hex(self, fingerprint):
        digest = hash_fingerprint(fingerprint)
        assert len(digest) == 64
        assert all(c in "0123456789abcdef" for c in digest)

    def test_key_order_does_not_matter(self, fingerprint):
        reordered = dict(reversed(list(fingerprint.items())))
        assert hash_fingerprint(reordered) == hash_fingerprint(fingerprint)

    def test_any_attribute_change_changes_hash(self, fingerprint, other_fingerprint):
        assert hash_fingerprint(fingerprint) != hash_fingerprint(other_fingerprint)

    @pytest.mark.parametrize("bad", [None, {}, "not-a-dict", []])
    def test_missing_fingerprint_rejected(self, bad):
        with pytest.raises(ValueError):
            hash_fingerprint(bad)


class TestDetectVM:
    """Tests for the additive VM confidence model"""

    def test_ordinary_desktop_is_not_vm(self, fingerprint):
        result = detect_vm(fingerprint)
        assert result.is_vm is False
        assert result.confidence == 0.0
        assert result.reasons == []

    def test_empty_fingerprint(self):
        result = detect_vm(None)
        assert result.is_vm is False
        assert result.reasons == ["No fingerprint data provided"]

    def test_virtualbox_user_agent_and_renderer(self):
        result = detect_vm({
            "userAgent": "Mozilla/5.0 (X11; Linux x86_64) VirtualBox",
            "webglRenderer": "VirtualBox Graphics Adapter",
            "hardwareConcurrency": 8,
        })
        assert result.is_vm is True
        assert result.confidence == 0.8
        assert "User agent contains VM indicator: virtualbox" in result.reasons

    def test_weak_signals_stay_below_threshold(self):
        """Low cores and a common resolution add up to 0.3, which is not enough"""
        result = detect_vm({
            "hardwareConcurrency": 2,
            "deviceMemory": 8,
            "screenWidth": 1920,
            "screenHeight": 1080,
        })
        assert result.is_vm is False
        assert result.confidence == 0.3
        assert len(result.reasons) == 2

    def test_exactly_half_is_not_vm(self):
        result = detect_vm({"userAgent": "QEMU guest"})
        assert result.confidence == 0.5
        assert result.is_vm is False

    def test_confidence_is_capped(self):
        result = detect_vm({
            "userAgent": "vmware",
            "webglVendor": "VMware, Inc.",
            "webglRenderer": "SVGA3D; vmware",
            "hardwareConcurrency": 1,
            "deviceMemory": 1,
            "screenWidth": 1024,
            "screenHeight": 768,
        })
        assert result.is_vm is True
        assert result.confidence == 1.0
        assert result.to_dict()["reasons"] == result.reasons


class TestDeviceBinder:
    """Tests for where the device lock may move"""

    @pytest.fixture
    def attempt(self, clock, fingerprint):
        attempt = Attempt.create("student-1", 1)
        attempt.begin(clock.now(), 3600, hash_fingerprint(fingerprint), "10.0.0.5", "token")
        return attempt

    def test_resume_without_progress_rebinds(self, attempt, other_fingerprint):
        check = DeviceBinder().check_resume(attempt, other_fingerprint)

        assert check.ok is True
        assert check.rebound is True
        assert attempt.locked_device_fingerprint == hash_fingerprint(other_fingerprint)

    def test_request_without_progress_is_a_switch(self, attempt, clock, fingerprint, other_fingerprint):
        check = DeviceBinder().check_request(attempt, other_fingerprint, clock.now())

        assert check.ok is False
        assert check.rebound is False
        assert check.code == ErrorCode.DEVICE_SWITCH_DETECTED
        assert attempt.locked_device_fingerprint == hash_fingerprint(fingerprint)
        assert attempt.device_switch_detected is True

    def test_request_from_locked_device(self, attempt, clock, fingerprint):
        assert DeviceBinder().check_request(attempt, fingerprint, clock.now()).ok is True
