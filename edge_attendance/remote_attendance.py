from __future__ import annotations

import threading
from typing import Any, Optional, Protocol

import requests

from .logger import setup_logger
from .schemas import AttendancePayload, ProfilePayload, PushResult, PushStatus, classify_push_response
from .types import AttendanceRecord, Identity


class RemoteAttendanceService(Protocol):
    def push_record(self, record: AttendanceRecord) -> PushResult:
        ...

    def push_profile(self, identity: Identity) -> bool:
        ...


class AttendanceApiClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 8.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()
        self._session_lock = threading.Lock()
        self.logger = setup_logger(self.__class__.__name__)

    def _post_json(self, path: str, payload: dict[str, Any]) -> requests.Response:
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        with self._session_lock:
            return self.session.post(url, json=payload, headers=headers, timeout=self.timeout)

    def push_record(self, record: AttendanceRecord) -> PushResult:
        payload = AttendancePayload.from_record(record).model_dump(mode="json")
        try:
            resp = self._post_json("/attendance/record", payload)
        except requests.RequestException as exc:
            self.logger.warning("Attendance push for %s failed: %s", record.record_id, exc)
            return PushResult(PushStatus.ERROR, None, str(exc))

        result = classify_push_response(resp.status_code, resp.text)
        if result.status is not PushStatus.SUCCESS:
            self.logger.info(
                "Attendance push for %s returned %s (%s)",
                record.record_id,
                result.status.value,
                resp.status_code,
            )
        return result

    def push_profile(self, identity: Identity) -> bool:
        payload = ProfilePayload.from_identity(identity).model_dump(mode="json")
        try:
            resp = self._post_json("/employees/register", payload)
        except requests.RequestException as exc:
            self.logger.warning("Profile push for %s failed: %s", identity.identity_id, exc)
            return False
        if not resp.ok:
            self.logger.error(
                "Profile push for %s failed: %s - %s",
                identity.identity_id,
                resp.status_code,
                resp.text,
            )
            return False
        return True
