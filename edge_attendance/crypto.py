from __future__ import annotations

import base64

import numpy as np
from cryptography.fernet import Fernet, InvalidToken

from .exceptions import CorruptEmbeddingError


class EmbeddingCrypto:
    def __init__(self, key_material: str):
        padded = key_material.encode("utf-8")
        key = base64.urlsafe_b64encode(padded.ljust(32, b"0")[:32])
        self._fernet = Fernet(key)

    def encrypt(self, vector: np.ndarray) -> bytes:
        payload = np.asarray(vector, dtype=np.float32).tobytes()
        return self._fernet.encrypt(payload)

    def decrypt(self, ciphertext: bytes) -> np.ndarray:
        try:
            payload = self._fernet.decrypt(ciphertext)
        except InvalidToken as exc:
            raise CorruptEmbeddingError("Stored embedding could not be decrypted.") from exc
        return np.frombuffer(payload, dtype=np.float32)
