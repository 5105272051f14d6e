from __future__ import annotations

import threading
from typing import Optional, Protocol

import cv2
import numpy as np

from .exceptions import ModelUnavailableError
from .logger import setup_logger


Box = tuple[int, int, int, int]


class FaceCropper(Protocol):
    def locate(self, image: np.ndarray) -> Optional[tuple[np.ndarray, Box]]:
        """Return the padded face crop and its (x, y, w, h) box in ``image``."""
        ...


def square_pad(crop: np.ndarray) -> np.ndarray:
    """Centre a face crop on a black square canvas."""
    h, w = crop.shape[:2]
    side = max(h, w)
    top = (side - h) // 2
    left = (side - w) // 2
    return cv2.copyMakeBorder(
        crop,
        top,
        side - h - top,
        left,
        side - w - left,
        cv2.BORDER_CONSTANT,
        value=0,
    )


class HaarFaceDetector:
    def __init__(self, min_face_size: int = 80, scale_factor: float = 1.1, min_neighbors: int = 5):
        self.min_face_size = min_face_size
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self._cascade: Optional[cv2.CascadeClassifier] = None
        self._lock = threading.Lock()
        self.logger = setup_logger(self.__class__.__name__)

    def _ensure_cascade(self) -> cv2.CascadeClassifier:
        with self._lock:
            if self._cascade is None:
                path = cv2.data.haarcascades + "haarcascade_frontalface_default.xml"
                cascade = cv2.CascadeClassifier(path)
                if cascade.empty():
                    raise ModelUnavailableError(f"Face detector cascade could not be loaded from {path}.")
                self._cascade = cascade
            return self._cascade

    def detect(self, image: np.ndarray) -> list[Box]:
        cascade = self._ensure_cascade()
        gray = image if image.ndim == 2 else cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        faces = cascade.detectMultiScale(
            gray,
            scaleFactor=self.scale_factor,
            minNeighbors=self.min_neighbors,
            minSize=(self.min_face_size, self.min_face_size),
        )
        return [tuple(int(v) for v in face) for face in faces]

    def locate(self, image: np.ndarray) -> Optional[tuple[np.ndarray, Box]]:
        faces = self.detect(image)
        if not faces:
            return None
        # Largest face wins.
        x, y, w, h = max(faces, key=lambda item: item[2] * item[3])
        crop = image[y : y + h, x : x + w]
        if crop.size == 0:
            return None
        self.logger.debug("Face crop %dx%d at (%d, %d)", w, h, x, y)
        return square_pad(crop), (x, y, w, h)
