from .exceptions import AttendanceError
from .matcher import MatchDecider
from .types import (
    AttendanceRecord,
    CaptureMode,
    EventType,
    Identity,
    LivenessResult,
    SyncState,
    VerificationFailure,
    VerificationOutcome,
)

__all__ = [
    "AttendanceError",
    "AttendanceRecord",
    "CaptureMode",
    "EventType",
    "Identity",
    "LivenessResult",
    "MatchDecider",
    "SyncState",
    "VerificationFailure",
    "VerificationOutcome",
]
