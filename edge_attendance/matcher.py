from __future__ import annotations

import numpy as np

from .exceptions import EmbeddingDimensionError
from .types import Embedding, MatchScore


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    vector = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(vector))
    if norm <= 1e-12:
        return np.zeros_like(vector, dtype=np.float32)
    return (vector / norm).astype(np.float32)


class MatchDecider:
    """Dual-metric comparison of two normalized embeddings.

    A pair is accepted only when the cosine similarity (remapped to [0, 1])
    clears ``similarity_threshold`` and the Euclidean distance stays under
    ``distance_threshold``.
    """

    def __init__(self, similarity_threshold: float = 0.75, distance_threshold: float = 0.80):
        self.similarity_threshold = similarity_threshold
        self.distance_threshold = distance_threshold

    @staticmethod
    def _pair(a: Embedding, b: Embedding) -> tuple[np.ndarray, np.ndarray]:
        left = np.asarray(a, dtype=np.float32).reshape(-1)
        right = np.asarray(b, dtype=np.float32).reshape(-1)
        if left.size != right.size:
            raise EmbeddingDimensionError(f"Embedding size mismatch: {left.size} vs {right.size}")
        return left, right

    def similarity(self, a: Embedding, b: Embedding) -> float:
        left, right = self._pair(a, b)
        dot = float(np.dot(left, right))
        return (dot + 1.0) / 2.0

    def distance(self, a: Embedding, b: Embedding) -> float:
        left, right = self._pair(a, b)
        return float(np.linalg.norm(left - right))

    def compare(self, a: Embedding, b: Embedding) -> MatchScore:
        return MatchScore(similarity=self.similarity(a, b), distance=self.distance(a, b))

    def accepts(self, score: MatchScore) -> bool:
        return score.similarity >= self.similarity_threshold and score.distance <= self.distance_threshold

    def decide(self, a: Embedding, b: Embedding) -> bool:
        return self.accepts(self.compare(a, b))
