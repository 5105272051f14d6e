from __future__ import annotations

import math
import threading
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Protocol, Sequence

import cv2
import numpy as np
import torch

from .embedding import to_rgb
from .exceptions import AttendanceError, LivenessError
from .logger import setup_logger
from .types import LivenessResult

MIN_FACE_SIDE = 100
MAX_FACE_SIDE = 800


class LivenessModel(Protocol):
    def predict(self, face_image: np.ndarray) -> np.ndarray:
        """Return raw classifier output: one real-probability or [fake, real] logits."""
        ...


class TorchLivenessModel:
    def __init__(
        self,
        model_path: Optional[Path] = None,
        input_size: int = 80,
        device: str = "cpu",
        model_loader: Optional[Callable[[], torch.nn.Module]] = None,
    ):
        self.model_path = Path(model_path) if model_path else None
        self.input_size = input_size
        self.device = torch.device(device)
        self._model_loader = model_loader or self._default_loader
        self._model: Optional[torch.nn.Module] = None
        self._load_failed = False
        self._lock = threading.Lock()
        self.logger = setup_logger(self.__class__.__name__)

    def _default_loader(self) -> torch.nn.Module:
        if self.model_path is None:
            raise LivenessError("No liveness model configured.")
        return torch.jit.load(str(self.model_path), map_location=self.device)

    def _ensure_model(self) -> torch.nn.Module:
        with self._lock:
            if self._model is not None:
                return self._model
            if self._load_failed:
                raise LivenessError("Liveness model unavailable.")
            try:
                self._model = self._model_loader().eval().to(self.device)
            except Exception as exc:
                self._load_failed = True
                self.logger.error("Failed to load liveness model: %s", exc)
                raise LivenessError("Liveness model unavailable.") from exc
            return self._model

    def reload(self) -> bool:
        with self._lock:
            self._model = None
            self._load_failed = False
        try:
            self._ensure_model()
        except LivenessError:
            return False
        return True

    def predict(self, face_image: np.ndarray) -> np.ndarray:
        model = self._ensure_model()
        rgb = cv2.resize(
            to_rgb(face_image),
            (self.input_size, self.input_size),
            interpolation=cv2.INTER_LINEAR,
        )
        tensor = torch.from_numpy(np.ascontiguousarray(rgb)).permute(2, 0, 1).float().unsqueeze(0) / 255.0
        with torch.inference_mode():
            output = model(tensor.to(self.device))
        return output.detach().cpu().numpy().astype(np.float32).reshape(-1)


def _softmax_real(fake_logit: float, real_logit: float) -> float:
    peak = max(fake_logit, real_logit)
    fake = math.exp(fake_logit - peak)
    real = math.exp(real_logit - peak)
    return real / (fake + real)


def _gray(rgb: np.ndarray) -> np.ndarray:
    return rgb.astype(np.float32) @ np.array([0.3, 0.59, 0.11], dtype=np.float32)


def size_check(rgb: np.ndarray) -> bool:
    side = min(rgb.shape[0], rgb.shape[1])
    return MIN_FACE_SIDE <= side <= MAX_FACE_SIDE


def texture_check(rgb: np.ndarray) -> bool:
    # Printed photos tend to have flat texture at the face centre.
    h, w = rgb.shape[:2]
    cx, cy = w // 2, h // 2
    sample = min(50, w // 4, h // 4)
    if cx + sample > w or cy + sample > h or cx + 10 > w or cy + 10 > h:
        return True
    patch = rgb[cy : cy + 10, cx : cx + 10].astype(np.float32).mean(axis=2)
    return float(patch.var()) > 100.0


def reflection_check(rgb: np.ndarray, samples_per_side: int = 10) -> bool:
    h, w = rgb.shape[:2]
    ys = np.linspace(0, h - 1, samples_per_side).astype(int)
    xs = np.linspace(0, w - 1, samples_per_side).astype(int)
    points = rgb[np.ix_(ys, xs)].reshape(-1, 3)
    bright = int(np.all(points > 250, axis=1).sum())
    return bright < 10


def quality_check(rgb: np.ndarray) -> bool:
    gray = _gray(rgb[:100, :100])
    if gray.shape[0] < 3 or gray.shape[1] < 3:
        return False
    core = gray[1:-1, 1:-1]
    right = gray[1:-1, 2:]
    bottom = gray[2:, 1:-1]
    edge_strength = np.abs(core - right) + np.abs(core - bottom)
    return float(edge_strength.mean()) > 5.0


def moire_check(rgb: np.ndarray) -> bool:
    """True when no alternating bright/dark pattern shows on the diagonal."""
    h, w = rgb.shape[:2]
    samples = min(w, h, 50)
    if samples < 5:
        return True
    idx = np.arange(samples)
    diagonal = rgb[(idx * h) // samples, (idx * w) // samples, 2].astype(np.int32)
    pattern = 0
    for i in range(2, samples - 2):
        curr, prev, nxt = diagonal[i], diagonal[i - 1], diagonal[i + 1]
        if (curr > prev + 20 and curr > nxt + 20) or (curr < prev - 20 and curr < nxt - 20):
            pattern += 1
    return pattern <= samples // 4


def spoof_signals(face_image: np.ndarray) -> dict[str, bool]:
    rgb = to_rgb(face_image)
    return {
        "size_check": size_check(rgb),
        "texture_check": texture_check(rgb),
        "reflection_check": reflection_check(rgb),
        "quality_check": quality_check(rgb),
        "moire_check": moire_check(rgb),
    }


def face_ratio_score(
    face_width: int,
    face_height: int,
    image_width: int,
    image_height: int,
    tracking_id: Optional[int] = None,
) -> float:
    """Heuristic anti-spoof score from face/frame size ratio and tracking continuity."""
    score = 1.0
    image_area = image_width * image_height
    ratio = (face_width * face_height) / image_area if image_area > 0 else 0.0

    if ratio < 0.02 or ratio > 0.9:
        score -= 0.2
    elif ratio < 0.05 or ratio > 0.8:
        score -= 0.1

    if tracking_id is None:
        score -= 0.1

    return min(max(score, 0.5), 1.0)


class LivenessAssessor:
    def __init__(
        self,
        model: LivenessModel,
        threshold: float = 0.85,
        consistency_bound: float = 0.3,
        min_live_ratio: float = 0.8,
        min_frames: int = 3,
    ):
        self.model = model
        self.threshold = threshold
        self.consistency_bound = consistency_bound
        self.min_live_ratio = min_live_ratio
        self.min_frames = min_frames
        self.logger = setup_logger(self.__class__.__name__)

    def real_probability(self, face_image: np.ndarray) -> float:
        output = np.asarray(self.model.predict(face_image), dtype=np.float32).reshape(-1)
        if output.size == 1:
            return float(np.clip(output[0], 0.0, 1.0))
        if output.size >= 2:
            return _softmax_real(float(output[0]), float(output[1]))
        raise LivenessError("Liveness model returned an empty output.")

    def describe(self, confidence: float) -> str:
        if confidence >= 0.95:
            return "Face verified as real (high confidence)"
        if confidence >= self.threshold:
            return "Face verified as real"
        if confidence >= 0.7:
            return "Liveness check uncertain, please try again"
        if confidence >= 0.5:
            return "Possible spoofing detected, move closer and try again"
        return "Spoofing detected! Please use your real face, not a photo or video"

    def assess(
        self,
        face_image: np.ndarray,
        with_signals: bool = True,
        face_box: Optional[tuple[int, int, int, int]] = None,
        frame_size: Optional[tuple[int, int]] = None,
        tracking_id: Optional[int] = None,
    ) -> LivenessResult:
        """Score one face crop.

        ``face_box`` is the ``(x, y, w, h)`` detection inside a frame of
        ``frame_size`` ``(width, height)``; when both are given the size-ratio
        and tracking heuristic is added to the signals.
        """
        try:
            confidence = self.real_probability(face_image)
        except Exception as exc:
            self.logger.warning("Liveness detection failed: %s", exc)
            return LivenessResult(is_live=False, confidence=0.0, message="Liveness detection failed")

        signals: dict[str, Any] = {}
        if with_signals:
            try:
                signals = spoof_signals(face_image)
            except (AttendanceError, cv2.error, ValueError) as exc:
                self.logger.debug("Anti-spoof diagnostics skipped: %s", exc)
            if face_box is not None and frame_size is not None:
                _, _, face_width, face_height = face_box
                signals["face_ratio_score"] = face_ratio_score(
                    face_width, face_height, frame_size[0], frame_size[1], tracking_id
                )

        is_live = confidence >= self.threshold
        self.logger.debug("Liveness score %.3f (live=%s)", confidence, is_live)
        return LivenessResult(
            is_live=is_live,
            confidence=confidence,
            message=self.describe(confidence),
            signals=signals,
        )

    def assess_burst(self, frames: Iterable[np.ndarray]) -> LivenessResult:
        frames = list(frames)
        if not frames:
            return LivenessResult(is_live=False, confidence=0.0, message="No frames provided")
        if len(frames) < self.min_frames:
            return LivenessResult(
                is_live=False,
                confidence=0.0,
                message=f"Need at least {self.min_frames} frames for reliable detection",
            )
        return self.aggregate([self.assess(frame, with_signals=False) for frame in frames])

    def aggregate(self, results: Sequence[LivenessResult]) -> LivenessResult:
        if len(results) < self.min_frames:
            return LivenessResult(
                is_live=False,
                confidence=0.0,
                message=f"Need at least {self.min_frames} frames for reliable detection",
            )

        confidences = [result.confidence for result in results]
        total = len(confidences)
        average = float(sum(confidences) / total)
        live_frames = sum(1 for result in results if result.is_live)
        spread = max(confidences) - min(confidences)

        consistent = spread < self.consistency_bound
        enough_live = live_frames >= math.ceil(total * self.min_live_ratio - 1e-9)
        is_live = consistent and enough_live and average >= self.threshold

        if not consistent:
            message = "Inconsistent readings detected - possible spoofing"
        elif is_live and average >= 0.95:
            message = "Face verified as real (high confidence)"
        elif is_live:
            message = "Face verified as real"
        elif average >= 0.7:
            message = "Liveness check uncertain, please try again"
        elif live_frames == 0:
            message = "No live frames detected - ensure proper lighting"
        else:
            message = "Spoofing detected! Please use your real face, not a photo or video"

        self.logger.info(
            "Multi-frame liveness: %d/%d frames live, avg confidence %.3f, spread %.3f",
            live_frames,
            total,
            average,
            spread,
        )
        return LivenessResult(
            is_live=is_live,
            confidence=average,
            message=message,
            signals={"live_frames": live_frames, "total_frames": total, "spread": spread},
        )
