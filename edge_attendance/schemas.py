from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .types import AttendanceRecord, Identity

DUPLICATE_ERROR_CODES = frozenset({"duplicate_record", "duplicate_attendance"})
NOT_FOUND_ERROR_CODES = frozenset({"identity_not_found", "employee_not_found"})


class PushStatus(str, Enum):
    SUCCESS = "success"
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(frozen=True)
class PushResult:
    status: PushStatus
    code: Optional[int] = None
    body: str = ""

    @property
    def delivered(self) -> bool:
        return self.status in (PushStatus.SUCCESS, PushStatus.DUPLICATE)


class ErrorDetail(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: Optional[str] = None
    message: Optional[str] = None


class ErrorEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    error: Optional[ErrorDetail] = None


def parse_error_code(body: str) -> Optional[str]:
    if not body:
        return None
    try:
        envelope = ErrorEnvelope.model_validate_json(body)
    except ValidationError:
        return None
    if envelope.error is None or envelope.error.code is None:
        return None
    return envelope.error.code.strip().lower()


def classify_push_response(status_code: int, body: str = "") -> PushResult:
    """Map an attendance push response onto exactly one PushStatus.

    A structured ``{"error": {"code": ...}}`` body takes precedence over the
    HTTP status; 409 and 404 are the fallbacks for duplicate and not-found.
    """
    if 200 <= status_code < 300:
        return PushResult(PushStatus.SUCCESS, status_code, body)

    code = parse_error_code(body)
    if code in DUPLICATE_ERROR_CODES:
        return PushResult(PushStatus.DUPLICATE, status_code, body)
    if code in NOT_FOUND_ERROR_CODES:
        return PushResult(PushStatus.NOT_FOUND, status_code, body)
    if code is None and status_code == 409:
        return PushResult(PushStatus.DUPLICATE, status_code, body)
    if code is None and status_code == 404:
        return PushResult(PushStatus.NOT_FOUND, status_code, body)
    return PushResult(PushStatus.ERROR, status_code, body)


class AttendancePayload(BaseModel):
    record_id: str
    identity_id: str
    event_type: str
    timestamp: int
    mode: str
    device_id: str
    confidence: float = 0.0
    location: Optional[str] = None

    @classmethod
    def from_record(cls, record: AttendanceRecord) -> "AttendancePayload":
        return cls(
            record_id=record.record_id,
            identity_id=record.identity_id,
            event_type=record.event_type.value,
            timestamp=record.timestamp,
            mode=record.mode.value,
            device_id=record.device_id,
            confidence=record.confidence,
            location=record.location,
        )


class ProfilePayload(BaseModel):
    identity_id: str
    display_name: str
    department: str
    embedding: list[float]
    external_id: Optional[str] = None
    enrollment_time: int

    @classmethod
    def from_identity(cls, identity: Identity) -> "ProfilePayload":
        return cls(
            identity_id=identity.identity_id,
            display_name=identity.display_name,
            department=identity.department,
            embedding=[float(v) for v in identity.embedding],
            external_id=identity.external_id,
            enrollment_time=identity.enrollment_time,
        )


class DetectedFace(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    face_id: str = Field(alias="faceId")


class IdentifyCandidate(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    person_id: str = Field(alias="personId")
    confidence: float


class IdentifyResult(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    face_id: str = Field(alias="faceId")
    candidates: list[IdentifyCandidate] = []


class PersonCreated(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    person_id: str = Field(alias="personId")
