import numpy as np
import pytest

from conftest import ScriptedLivenessModel, face
from edge_attendance.liveness import LivenessAssessor, face_ratio_score, spoof_signals


class BrokenModel:
    def predict(self, face_image):
        raise RuntimeError("tensor shape mismatch")


class LogitModel:
    def predict(self, face_image):
        return np.array([0.0, 4.0], dtype=np.float32)


def frames(count):
    return [face(100) for _ in range(count)]


def test_single_frame_threshold():
    assert LivenessAssessor(ScriptedLivenessModel([0.9])).assess(face(100)).is_live is True
    assert LivenessAssessor(ScriptedLivenessModel([0.84])).assess(face(100)).is_live is False


def test_two_logit_output_uses_softmax():
    result = LivenessAssessor(LogitModel()).assess(face(100))
    assert result.confidence == pytest.approx(1 / (1 + np.exp(-4.0)), rel=1e-4)
    assert result.is_live is True


def test_model_failure_is_reported_as_not_live():
    result = LivenessAssessor(BrokenModel()).assess(face(100))
    assert result.is_live is False
    assert result.confidence == 0.0
    assert result.message == "Liveness detection failed"


def test_confidence_buckets_have_distinct_messages():
    assessor = LivenessAssessor(ScriptedLivenessModel())
    messages = {assessor.describe(value) for value in (0.97, 0.9, 0.75, 0.6, 0.2)}
    assert len(messages) == 5


def test_burst_needs_three_frames():
    assessor = LivenessAssessor(ScriptedLivenessModel([0.99]))
    result = assessor.assess_burst(frames(2))
    assert result.is_live is False
    assert result.confidence == 0.0
    assert "at least 3" in result.message


def test_burst_with_one_outlier_is_inconsistent():
    assessor = LivenessAssessor(ScriptedLivenessModel([0.95, 0.2, 0.95, 0.95, 0.95]))
    result = assessor.assess_burst(frames(5))
    assert result.is_live is False
    assert "Inconsistent" in result.message
    assert result.signals["spread"] == pytest.approx(0.75)


def test_consistent_live_burst_passes():
    assessor = LivenessAssessor(ScriptedLivenessModel([0.96, 0.97, 0.98]))
    result = assessor.assess_burst(frames(3))
    assert result.is_live is True
    assert result.confidence == pytest.approx(0.97, abs=1e-6)
    assert result.signals["live_frames"] == 3


def test_burst_live_ratio():
    passing = LivenessAssessor(ScriptedLivenessModel([0.9, 0.9, 0.9, 0.9, 0.75]))
    assert passing.assess_burst(frames(5)).is_live is True

    failing = LivenessAssessor(ScriptedLivenessModel([0.9, 0.9, 0.9, 0.75, 0.75]))
    result = failing.assess_burst(frames(5))
    assert result.is_live is False
    assert result.signals["live_frames"] == 3


def test_spoof_signals_report_every_check():
    signals = spoof_signals(face(100, size=200))
    assert set(signals) == {"size_check", "texture_check", "reflection_check", "quality_check", "moire_check"}
    # A flat synthetic image has no texture and no edges.
    assert signals["size_check"] is True
    assert signals["quality_check"] is False


def test_face_ratio_score_is_clamped():
    assert face_ratio_score(200, 200, 640, 480, tracking_id=3) == pytest.approx(1.0)
    assert face_ratio_score(10, 10, 640, 480) == pytest.approx(0.7)
    assert face_ratio_score(0, 0, 0, 0) >= 0.5


def test_assess_adds_face_ratio_signal_when_given_a_box():
    assessor = LivenessAssessor(ScriptedLivenessModel([0.9, 0.9]))

    boxed = assessor.assess(face(100, size=200), face_box=(0, 0, 200, 200), frame_size=(640, 480), tracking_id=1)
    plain = assessor.assess(face(100, size=200))

    assert boxed.signals["face_ratio_score"] == pytest.approx(1.0)
    assert "face_ratio_score" not in plain.signals
