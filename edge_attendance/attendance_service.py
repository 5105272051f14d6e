from __future__ import annotations

from typing import Optional

from .attendance_queue import AttendanceQueue
from .connectivity import ConnectivityMonitor
from .logger import setup_logger
from .types import AttendanceRecord, CaptureMode, EventType, VerificationOutcome, now_ms


class AttendanceService:
    def __init__(
        self,
        queue: AttendanceQueue,
        connectivity: ConnectivityMonitor,
        device_id: str,
        location: Optional[str] = None,
        sync_engine=None,
    ):
        self.queue = queue
        self.connectivity = connectivity
        self.device_id = device_id
        self.location = location
        self.sync_engine = sync_engine
        self.logger = setup_logger(self.__class__.__name__)

    def next_event_type(self, identity_id: str) -> EventType:
        last = self.queue.last_event(identity_id)
        if last is None or last.event_type is EventType.EXIT:
            return EventType.ENTRY
        return EventType.EXIT

    def mark(
        self,
        identity_id: str,
        event_type: Optional[EventType] = None,
        confidence: float = 0.0,
    ) -> AttendanceRecord:
        record = AttendanceRecord(
            identity_id=identity_id,
            event_type=event_type or self.next_event_type(identity_id),
            timestamp=now_ms(),
            mode=CaptureMode.ONLINE if self.connectivity.is_online else CaptureMode.OFFLINE,
            device_id=self.device_id,
            confidence=confidence,
            location=self.location,
        )
        self.queue.insert(record)
        self.logger.info(
            "Marked %s for %s (%s, confidence %.2f)",
            record.event_type.value,
            identity_id,
            record.mode.value,
            confidence,
        )
        if self.sync_engine is not None and record.mode is CaptureMode.ONLINE:
            self.sync_engine.request_sync()
        return record

    def capture(
        self,
        identity_id: str,
        outcome: VerificationOutcome,
        event_type: Optional[EventType] = None,
    ) -> AttendanceRecord:
        """Persist attendance for a capture regardless of the verification result.

        The verification outcome only decides what the caller reports; the
        record is queued either way.
        """
        record = self.mark(identity_id, event_type=event_type, confidence=outcome.confidence)
        if outcome.matched:
            self.logger.info("Capture for %s verified (%.2f)", identity_id, outcome.confidence)
        else:
            self.logger.warning("Capture for %s recorded unverified: %s", identity_id, outcome.message)
        return record
