from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

import numpy as np

from .crypto import EmbeddingCrypto
from .exceptions import CorruptEmbeddingError, DatabaseError, MalformedInputError
from .logger import setup_logger
from .types import Embedding, Identity, now_ms


class IdentityStore:
    """One embedding per enrolled identity, persisted in sqlite.

    ``best_match`` is a linear scan over every enrolled identity, which is
    fine at device-local scale.
    """

    def __init__(self, db_path: Path, crypto: Optional[EmbeddingCrypto] = None):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.crypto = crypto
        self._lock = threading.RLock()
        self.logger = setup_logger(self.__class__.__name__)
        self._initialize()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=5)
        conn.row_factory = sqlite3.Row
        return conn

    def _initialize(self) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS identities (
                        identity_id TEXT PRIMARY KEY,
                        display_name TEXT NOT NULL,
                        department TEXT NOT NULL DEFAULT '',
                        embedding BLOB NOT NULL,
                        embedding_dim INTEGER NOT NULL,
                        external_id TEXT,
                        enrollment_time INTEGER NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to initialize identity store: {exc}") from exc

    @contextmanager
    def locked(self) -> Iterator["IdentityStore"]:
        """Hold the store lock so a read-then-decide sequence sees one consistent state."""
        with self._lock:
            yield self

    def _encode(self, embedding: Embedding) -> tuple[bytes, int]:
        vector = np.asarray(embedding, dtype=np.float32)
        if vector.ndim != 1 or vector.size == 0:
            raise MalformedInputError("Embedding must be a non-empty 1D vector.")
        if self.crypto is not None:
            return self.crypto.encrypt(vector), int(vector.size)
        return vector.tobytes(), int(vector.size)

    def _decode(self, identity_id: str, blob: bytes, dim: int) -> Embedding:
        if self.crypto is not None:
            vector = self.crypto.decrypt(bytes(blob))
        else:
            raw = bytes(blob)
            if len(raw) % 4 != 0:
                raise CorruptEmbeddingError(f"Embedding for {identity_id} has a truncated payload.")
            vector = np.frombuffer(raw, dtype=np.float32)
        if vector.size != dim:
            raise CorruptEmbeddingError(
                f"Embedding for {identity_id} has {vector.size} values, expected {dim}."
            )
        return vector.copy()

    def put(self, identity_id: str, embedding: Embedding) -> None:
        blob, dim = self._encode(embedding)
        now = datetime.now().isoformat(timespec="seconds")
        try:
            with self._lock, self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO identities (
                        identity_id, display_name, department, embedding, embedding_dim,
                        external_id, enrollment_time, updated_at
                    ) VALUES (?, ?, '', ?, ?, NULL, ?, ?)
                    ON CONFLICT(identity_id) DO UPDATE SET
                        embedding = excluded.embedding,
                        embedding_dim = excluded.embedding_dim,
                        enrollment_time = excluded.enrollment_time,
                        updated_at = excluded.updated_at
                    """,
                    (identity_id, identity_id, blob, dim, now_ms(), now),
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to save embedding for {identity_id}: {exc}") from exc

    def put_identity(self, identity: Identity) -> None:
        blob, dim = self._encode(identity.embedding)
        now = datetime.now().isoformat(timespec="seconds")
        try:
            with self._lock, self._connect() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO identities (
                        identity_id, display_name, department, embedding, embedding_dim,
                        external_id, enrollment_time, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        identity.identity_id,
                        identity.display_name,
                        identity.department,
                        blob,
                        dim,
                        identity.external_id,
                        identity.enrollment_time,
                        now,
                    ),
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to save identity {identity.identity_id}: {exc}") from exc

    def _fetch(self, identity_id: str) -> Optional[sqlite3.Row]:
        try:
            with self._lock, self._connect() as conn:
                return conn.execute(
                    "SELECT * FROM identities WHERE identity_id = ?",
                    (identity_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load identity {identity_id}: {exc}") from exc

    def get(self, identity_id: str) -> Optional[Embedding]:
        row = self._fetch(identity_id)
        if row is None:
            return None
        return self._decode(identity_id, row["embedding"], int(row["embedding_dim"]))

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        row = self._fetch(identity_id)
        if row is None:
            return None
        return Identity(
            identity_id=row["identity_id"],
            display_name=row["display_name"],
            department=row["department"],
            embedding=self._decode(identity_id, row["embedding"], int(row["embedding_dim"])),
            external_id=row["external_id"],
            enrollment_time=int(row["enrollment_time"]),
        )

    def list_identities(self) -> list[Identity]:
        identities: list[Identity] = []
        for identity_id in self.identity_ids():
            try:
                identity = self.get_identity(identity_id)
            except CorruptEmbeddingError as exc:
                self.logger.warning("Skipping identity %s: %s", identity_id, exc)
                continue
            if identity is not None:
                identities.append(identity)
        return identities

    def identity_ids(self) -> list[str]:
        try:
            with self._lock, self._connect() as conn:
                rows = conn.execute("SELECT identity_id FROM identities ORDER BY identity_id ASC").fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to list identities: {exc}") from exc
        return [row["identity_id"] for row in rows]

    def all(self) -> dict[str, Embedding]:
        try:
            with self._lock, self._connect() as conn:
                rows = conn.execute(
                    "SELECT identity_id, embedding, embedding_dim FROM identities ORDER BY identity_id ASC"
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load embeddings: {exc}") from exc

        embeddings: dict[str, Embedding] = {}
        for row in rows:
            try:
                embeddings[row["identity_id"]] = self._decode(
                    row["identity_id"], row["embedding"], int(row["embedding_dim"])
                )
            except CorruptEmbeddingError as exc:
                self.logger.warning("Skipping corrupt embedding: %s", exc)
        return embeddings

    def delete(self, identity_id: str) -> bool:
        try:
            with self._lock, self._connect() as conn:
                cursor = conn.execute("DELETE FROM identities WHERE identity_id = ?", (identity_id,))
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to delete identity {identity_id}: {exc}") from exc
        return cursor.rowcount > 0

    def exists(self, identity_id: str) -> bool:
        return self._fetch(identity_id) is not None

    def count(self) -> int:
        try:
            with self._lock, self._connect() as conn:
                row = conn.execute("SELECT COUNT(*) AS c FROM identities").fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to count identities: {exc}") from exc
        return int(row["c"]) if row else 0

    def best_match(self, query: Embedding) -> Optional[tuple[str, float]]:
        vector = np.asarray(query, dtype=np.float32).reshape(-1)
        with self._lock:
            stored = self.all()

        ids: list[str] = []
        vectors: list[np.ndarray] = []
        for identity_id, embedding in stored.items():
            if embedding.size != vector.size:
                self.logger.warning(
                    "Skipping %s: dimension %d does not match query dimension %d",
                    identity_id,
                    embedding.size,
                    vector.size,
                )
                continue
            ids.append(identity_id)
            vectors.append(embedding)

        if not vectors:
            return None

        matrix = np.vstack(vectors).astype(np.float32)
        scores = (matrix @ vector + 1.0) / 2.0
        idx = int(np.argmax(scores))
        return ids[idx], float(scores[idx])
