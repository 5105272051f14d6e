from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Optional

from .exceptions import DatabaseError
from .types import AttendanceRecord, CaptureMode, EventType, now_ms

DAY_MS = 24 * 60 * 60 * 1000


class AttendanceQueue:
    """Local attendance log; unsynced rows form the upload queue."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=5)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        try:
            with self._connect() as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS attendance (
                        record_id TEXT PRIMARY KEY,
                        identity_id TEXT NOT NULL,
                        event_type TEXT NOT NULL,
                        timestamp INTEGER NOT NULL,
                        mode TEXT NOT NULL,
                        device_id TEXT NOT NULL,
                        confidence REAL NOT NULL DEFAULT 0,
                        location TEXT,
                        synced INTEGER NOT NULL DEFAULT 0,
                        synced_at INTEGER
                    );

                    CREATE INDEX IF NOT EXISTS idx_attendance_unsynced
                        ON attendance (synced, timestamp);
                    """
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to initialize attendance queue: {exc}") from exc

    @staticmethod
    def _to_record(row: sqlite3.Row) -> AttendanceRecord:
        return AttendanceRecord(
            record_id=row["record_id"],
            identity_id=row["identity_id"],
            event_type=EventType(row["event_type"]),
            timestamp=int(row["timestamp"]),
            mode=CaptureMode(row["mode"]),
            device_id=row["device_id"],
            confidence=float(row["confidence"]),
            location=row["location"],
            synced=bool(row["synced"]),
            synced_at=int(row["synced_at"]) if row["synced_at"] is not None else None,
        )

    def insert(self, record: AttendanceRecord) -> None:
        try:
            with self._lock, self._connect() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO attendance (
                        record_id, identity_id, event_type, timestamp, mode, device_id,
                        confidence, location, synced, synced_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.record_id,
                        record.identity_id,
                        record.event_type.value,
                        record.timestamp,
                        record.mode.value,
                        record.device_id,
                        record.confidence,
                        record.location,
                        int(record.synced),
                        record.synced_at,
                    ),
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to store attendance record {record.record_id}: {exc}") from exc

    def get(self, record_id: str) -> Optional[AttendanceRecord]:
        try:
            with self._lock, self._connect() as conn:
                row = conn.execute("SELECT * FROM attendance WHERE record_id = ?", (record_id,)).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load attendance record {record_id}: {exc}") from exc
        return self._to_record(row) if row else None

    def list_unsynced(self) -> list[AttendanceRecord]:
        try:
            with self._lock, self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM attendance WHERE synced = 0 ORDER BY timestamp ASC, rowid ASC"
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to list unsynced attendance: {exc}") from exc
        return [self._to_record(row) for row in rows]

    def count_unsynced(self) -> int:
        try:
            with self._lock, self._connect() as conn:
                row = conn.execute("SELECT COUNT(*) AS c FROM attendance WHERE synced = 0").fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to count unsynced attendance: {exc}") from exc
        return int(row["c"]) if row else 0

    def mark_synced(self, record_id: str, synced_at: Optional[int] = None) -> None:
        stamp = synced_at if synced_at is not None else now_ms()
        try:
            with self._lock, self._connect() as conn:
                conn.execute(
                    "UPDATE attendance SET synced = 1, synced_at = ? WHERE record_id = ?",
                    (stamp, record_id),
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to mark {record_id} as synced: {exc}") from exc

    def recent(self, limit: int = 100) -> list[AttendanceRecord]:
        try:
            with self._lock, self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM attendance ORDER BY timestamp DESC LIMIT ?",
                    (max(1, int(limit)),),
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load recent attendance: {exc}") from exc
        return [self._to_record(row) for row in rows]

    def last_event(self, identity_id: str) -> Optional[AttendanceRecord]:
        try:
            with self._lock, self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM attendance
                    WHERE identity_id = ?
                    ORDER BY timestamp DESC LIMIT 1
                    """,
                    (identity_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load last event for {identity_id}: {exc}") from exc
        return self._to_record(row) if row else None

    def prune_older_than(self, days: int, now: Optional[int] = None) -> int:
        cutoff = (now if now is not None else now_ms()) - int(days) * DAY_MS
        try:
            with self._lock, self._connect() as conn:
                cursor = conn.execute("DELETE FROM attendance WHERE timestamp < ?", (cutoff,))
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to prune attendance: {exc}") from exc
        return cursor.rowcount
