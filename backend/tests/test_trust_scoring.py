"""
Unit Tests for trust score aggregation
"""
import pytest

from exam_integrity.services.trust_scoring import (
    CLASSIFICATION_CLEAN,
    CLASSIFICATION_INVALID,
    CLASSIFICATION_SUSPICIOUS,
    TrustScorer,
    is_proctoring_violation,
)


def violation(violation_type):
    return {"type": violation_type, "timestamp": "2025-03-01T09:10:00", "details": {}}


@pytest.fixture
def scorer():
    return TrustScorer(weight_overrides={}, invalid_threshold=30, suspicious_threshold=60)


class TestTrustScorer:
    """Tests for TrustScorer.calculate"""

    def test_clean_attempt_scores_100(self, scorer):
        result = scorer.calculate([])
        assert result.score == 100
        assert result.classification == CLASSIFICATION_CLEAN
        assert result.breakdown["total_deducted"] == 0

    def test_vm_detection_is_invalid(self, scorer):
        result = scorer.calculate([violation("VM_DETECTED")])
        assert result.score == 0
        assert result.classification == CLASSIFICATION_INVALID

    def test_camera_revocation_counts_twice(self, scorer):
        """Proctoring violations deduct their weight and again as proctoring points"""
        result = scorer.calculate([violation("FRONT_CAMERA_REVOKED")])
        assert result.breakdown["violation_points"] == 30
        assert result.breakdown["proctoring_points"] == 30
        assert result.score == 40
        assert result.classification == CLASSIFICATION_SUSPICIOUS

    def test_unknown_type_uses_default_weight(self, scorer):
        result = scorer.calculate([violation("SOMETHING_NEW")])
        assert result.breakdown["violation_points"] == scorer.default_weight
        assert result.breakdown["violation_breakdown"][0]["points"] == scorer.default_weight

    def test_timing_points_are_capped(self, scorer):
        result = scorer.calculate([], missed_heartbeats=50)
        assert result.breakdown["timing_anomaly_points"] == 25
        assert result.score == 75

    def test_failed_verification_and_device_switch(self, scorer):
        result = scorer.calculate([], verification_failed=True, device_switch_detected=True)
        assert result.breakdown["timing_anomaly_points"] == 30
        assert result.breakdown["device_drift_points"] == 50
        assert result.score == 20
        assert result.classification == CLASSIFICATION_INVALID

    def test_score_never_increases_with_more_violations(self, scorer):
        history = []
        previous = scorer.calculate(history).score
        for violation_type in ["TAB_HIDDEN", "COPY_ATTEMPT", "WINDOW_BLUR", "DEVTOOLS_OPEN", "TAB_HIDDEN"]:
            history.append(violation(violation_type))
            current = scorer.calculate(history).score
            assert current <= previous
            previous = current
        assert previous == 60

    def test_weight_overrides(self):
        scorer = TrustScorer(weight_overrides={"TAB_HIDDEN": 20})
        assert scorer.weight_for("TAB_HIDDEN") == 20
        assert scorer.calculate([violation("TAB_HIDDEN")]).score == 80

    @pytest.mark.parametrize("score,expected", [
        (30, CLASSIFICATION_INVALID),
        (30.01, CLASSIFICATION_SUSPICIOUS),
        (60, CLASSIFICATION_SUSPICIOUS),
        (60.5, CLASSIFICATION_CLEAN),
    ])
    def test_classification_boundaries(self, scorer, score, expected):
        assert scorer.classify(score) == expected


class TestProctoringClassification:
    """Tests for is_proctoring_violation"""

    @pytest.mark.parametrize("violation_type", [
        "FRONT_CAMERA_REVOKED", "SCREEN_SHARE_REVOKED", "DISPLAY_SURFACE_INVALID", "PROCTORING_VIOLATION",
    ])
    def test_proctoring_types(self, violation_type):
        assert is_proctoring_violation(violation_type)

    @pytest.mark.parametrize("violation_type", ["TAB_HIDDEN", "HEARTBEAT_GAP", "VM_DETECTED"])
    def test_other_types(self, violation_type):
        assert not is_proctoring_violation(violation_type)
