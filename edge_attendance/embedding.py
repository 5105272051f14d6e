from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Optional, Protocol

import cv2
import numpy as np
import torch

from .exceptions import MalformedInputError, ModelUnavailableError, NoFaceError
from .logger import setup_logger
from .matcher import l2_normalize
from .types import Embedding


class EmbeddingSource(Protocol):
    dimension: int

    def embed(self, face_image: np.ndarray) -> Embedding:
        ...


def to_rgb(image: np.ndarray) -> np.ndarray:
    """Validate a decoded BGR/gray/BGRA image and return it as uint8 RGB."""
    if not isinstance(image, np.ndarray):
        raise MalformedInputError(f"Expected a numpy image, got {type(image).__name__}.")
    if image.ndim not in (2, 3):
        raise MalformedInputError(f"Expected a 2D or 3D image array, got ndim={image.ndim}.")
    if image.size == 0 or image.shape[0] == 0 or image.shape[1] == 0:
        raise NoFaceError("Face image is empty.")

    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)

    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
    channels = image.shape[2]
    if channels == 1:
        return cv2.cvtColor(image[..., 0], cv2.COLOR_GRAY2RGB)
    if channels == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
    if channels == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2RGB)
    raise MalformedInputError(f"Unsupported channel count: {channels}.")


def resize_square(rgb: np.ndarray, size: int) -> np.ndarray:
    if rgb.shape[0] < size or rgb.shape[1] < size:
        return cv2.resize(rgb, (size, size), interpolation=cv2.INTER_CUBIC)
    return cv2.resize(rgb, (size, size), interpolation=cv2.INTER_AREA)


class TorchEmbedder:
    """Learned-network embedder.

    The network is loaded lazily on first use and cached for the lifetime of
    the instance. A failed load is remembered, so later calls raise
    ``ModelUnavailableError`` until :meth:`reload` succeeds.
    """

    def __init__(
        self,
        model_path: Optional[Path] = None,
        input_size: int = 160,
        dimension: int = 512,
        device: str = "cpu",
        model_loader: Optional[Callable[[], torch.nn.Module]] = None,
    ):
        self.model_path = Path(model_path) if model_path else None
        self.input_size = input_size
        self.dimension = dimension
        self.device = torch.device(device)
        self._model_loader = model_loader or self._default_loader
        self._model: Optional[torch.nn.Module] = None
        self._load_failed = False
        self._lock = threading.Lock()
        self.logger = setup_logger(self.__class__.__name__)

        self.mean = torch.tensor([0.485, 0.456, 0.406], dtype=torch.float32).view(1, 3, 1, 1)
        self.std = torch.tensor([0.229, 0.224, 0.225], dtype=torch.float32).view(1, 3, 1, 1)
        self.clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))

    def _default_loader(self) -> torch.nn.Module:
        if self.model_path is not None:
            return torch.jit.load(str(self.model_path), map_location=self.device)

        import torchvision.models as models
        from torchvision.models import ResNet18_Weights

        backbone = models.resnet18(weights=ResNet18_Weights.DEFAULT)
        backbone.fc = torch.nn.Identity()
        return backbone

    @property
    def available(self) -> bool:
        return self._model is not None

    def _ensure_model(self) -> torch.nn.Module:
        with self._lock:
            if self._model is not None:
                return self._model
            if self._load_failed:
                raise ModelUnavailableError("Verification unavailable: embedding model not loaded.")
            try:
                model = self._model_loader()
                self._model = model.eval().to(self.device)
            except Exception as exc:
                self._load_failed = True
                self.logger.error("Failed to load embedding model: %s", exc)
                raise ModelUnavailableError("Verification unavailable: embedding model not loaded.") from exc
            self.logger.info("Embedding model loaded (dimension=%d)", self.dimension)
            return self._model

    def reload(self) -> bool:
        with self._lock:
            self._model = None
            self._load_failed = False
        try:
            self._ensure_model()
        except ModelUnavailableError:
            return False
        return True

    def _preprocess(self, face_image: np.ndarray) -> torch.Tensor:
        rgb = resize_square(to_rgb(face_image), self.input_size)

        ycrcb = cv2.cvtColor(rgb, cv2.COLOR_RGB2YCrCb)
        y_channel, cr_channel, cb_channel = cv2.split(ycrcb)
        y_channel = self.clahe.apply(y_channel)
        balanced = cv2.cvtColor(cv2.merge([y_channel, cr_channel, cb_channel]), cv2.COLOR_YCrCb2RGB)

        tensor = torch.from_numpy(np.ascontiguousarray(balanced)).permute(2, 0, 1).float() / 255.0
        tensor = (tensor.unsqueeze(0) - self.mean) / self.std
        return tensor.to(self.device)

    def embed(self, face_image: np.ndarray) -> Embedding:
        model = self._ensure_model()
        batch = self._preprocess(face_image)
        try:
            with torch.inference_mode():
                raw = model(batch)
        except Exception as exc:
            raise MalformedInputError(f"Embedding generation failed: {exc}") from exc

        vector = raw.detach().cpu().numpy().astype(np.float32).reshape(-1)
        if vector.size != self.dimension:
            raise MalformedInputError(
                f"Embedding model produced {vector.size} values, expected {self.dimension}."
            )
        return l2_normalize(vector)


class HistogramEmbedder:
    """Handcrafted colour-histogram, region and edge descriptor (256 values)."""

    dimension = 256
    size = 64
    bins = 16
    grid = 4
    key_points = (
        (0.3, 0.35),
        (0.7, 0.35),
        (0.5, 0.5),
        (0.5, 0.65),
        (0.25, 0.5),
        (0.75, 0.5),
    )

    def embed(self, face_image: np.ndarray) -> Embedding:
        rgb = cv2.resize(to_rgb(face_image), (self.size, self.size), interpolation=cv2.INTER_LINEAR)
        pixels = rgb.astype(np.int32)
        pixel_count = float(self.size * self.size)

        histograms = [
            np.bincount((pixels[..., c] // self.bins).reshape(-1), minlength=self.bins) / pixel_count
            for c in range(3)
        ]
        # r0, g0, b0, r1, g1, b1, ...
        hist_features = np.stack(histograms, axis=1).reshape(-1)

        cell = self.size // self.grid
        regions = rgb.astype(np.float32).reshape(self.grid, cell, self.grid, cell, 3).mean(axis=(1, 3)) / 255.0
        region_features = regions.reshape(-1)

        red = rgb[..., 0].astype(np.float32)
        ys = np.arange(1, self.size - 1)
        xs = np.arange(1, self.size - 1, 4)
        horizontal = np.abs(red[np.ix_(ys, xs + 1)] - red[np.ix_(ys, xs - 1)]) / 255.0
        vertical = np.abs(red[np.ix_(ys + 1, xs)] - red[np.ix_(ys - 1, xs)]) / 255.0
        edge_features = np.stack([horizontal, vertical], axis=-1).reshape(-1)

        point_features = []
        for fx, fy in self.key_points:
            x = min(max(int(self.size * fx), 0), self.size - 1)
            y = min(max(int(self.size * fy), 0), self.size - 1)
            point_features.extend((rgb[y, x] / 255.0).tolist())

        features = np.concatenate(
            [hist_features, region_features, edge_features, np.asarray(point_features)]
        ).astype(np.float32)[: self.dimension]
        if features.size < self.dimension:
            features = np.pad(features, (0, self.dimension - features.size))
        return l2_normalize(features)


def build_embedder(settings) -> EmbeddingSource:
    if settings.embedder == "histogram":
        return HistogramEmbedder()
    return TorchEmbedder(
        model_path=settings.embedding_model_path,
        input_size=settings.embedding_input_size,
        dimension=settings.embedding_dimension,
        device=settings.inference_device,
    )
