from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import numpy as np

Embedding = np.ndarray


def now_ms() -> int:
    return int(time.time() * 1000)


class EventType(str, Enum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"


class CaptureMode(str, Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"


class VerificationFailure(str, Enum):
    NO_FACE_DETECTED = "no_face_detected"
    NOT_ENROLLED = "not_enrolled"
    NOT_RECOGNIZED = "not_recognized"
    LIVENESS_FAILED = "liveness_failed"
    IDENTITY_MISMATCH = "identity_mismatch"
    INCONCLUSIVE = "inconclusive"
    UNAVAILABLE = "unavailable"
    DATA_ERROR = "data_error"
    CANCELLED = "cancelled"


FAILURE_MESSAGES = {
    VerificationFailure.NO_FACE_DETECTED: "No face detected",
    VerificationFailure.NOT_ENROLLED: "Person not enrolled",
    VerificationFailure.NOT_RECOGNIZED: "Face not recognized. Please register first.",
    VerificationFailure.LIVENESS_FAILED: "Liveness check failed",
    VerificationFailure.IDENTITY_MISMATCH: "Face does not match this user",
    VerificationFailure.INCONCLUSIVE: "Face not recognized",
    VerificationFailure.UNAVAILABLE: "Verification unavailable",
    VerificationFailure.DATA_ERROR: "Stored face data is unusable, please re-enroll",
    VerificationFailure.CANCELLED: "Verification cancelled",
}


@dataclass
class Identity:
    identity_id: str
    display_name: str
    department: str
    embedding: Embedding
    external_id: Optional[str] = None
    enrollment_time: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class LivenessResult:
    is_live: bool
    confidence: float
    message: str
    signals: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MatchScore:
    similarity: float
    distance: float


@dataclass(frozen=True)
class VerificationOutcome:
    matched: bool
    confidence: float
    is_live: bool
    liveness_confidence: float
    message: str
    failure: Optional[VerificationFailure] = None
    identity_id: Optional[str] = None
    remote_candidate: Optional[str] = None

    @classmethod
    def failed(
        cls,
        failure: VerificationFailure,
        *,
        confidence: float = 0.0,
        is_live: bool = True,
        liveness_confidence: float = 0.0,
        message: Optional[str] = None,
        identity_id: Optional[str] = None,
    ) -> "VerificationOutcome":
        return cls(
            matched=False,
            confidence=confidence,
            is_live=is_live,
            liveness_confidence=liveness_confidence,
            message=message or FAILURE_MESSAGES[failure],
            failure=failure,
            identity_id=identity_id,
        )


@dataclass
class AttendanceRecord:
    identity_id: str
    event_type: EventType
    timestamp: int
    mode: CaptureMode
    device_id: str
    record_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    confidence: float = 0.0
    location: Optional[str] = None
    synced: bool = False
    synced_at: Optional[int] = None


@dataclass(frozen=True)
class SyncState:
    is_syncing: bool = False
    last_sync_time: Optional[int] = None
    pending_count: int = 0
    synced_count: int = 0
    failed_count: int = 0
    progress: float = 0.0
    message: str = "Ready to sync"
