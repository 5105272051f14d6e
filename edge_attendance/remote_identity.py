from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import cv2
import numpy as np
import requests
from pydantic import TypeAdapter, ValidationError

from .exceptions import RemoteServiceError
from .logger import setup_logger
from .schemas import DetectedFace, IdentifyResult, PersonCreated


@dataclass(frozen=True)
class FaceHandle:
    face_id: str


@dataclass(frozen=True)
class Candidate:
    external_id: str
    confidence: float


@dataclass(frozen=True)
class EnrollmentMetadata:
    identity_id: str
    display_name: str
    department: str = ""


class RemoteIdentityService(Protocol):
    def detect(self, image: np.ndarray) -> list[FaceHandle]:
        ...

    def identify(self, handle: FaceHandle) -> Optional[Candidate]:
        ...

    def enroll(self, metadata: EnrollmentMetadata, image: np.ndarray) -> Optional[str]:
        ...


_FACES = TypeAdapter(list[DetectedFace])
_IDENTIFY = TypeAdapter(list[IdentifyResult])


class HttpFaceIdentityService:
    """Client for a person-group style face API (detect / identify / enroll)."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        person_group: str = "edge-attendance",
        timeout: float = 8.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.person_group = person_group
        self.timeout = timeout
        self.session = session or requests.Session()
        self._session_lock = threading.Lock()
        self._group_ready = False
        self.logger = setup_logger(self.__class__.__name__)

    def _headers(self, content_type: str = "application/json") -> dict[str, str]:
        return {"Ocp-Apim-Subscription-Key": self.api_key, "Content-Type": content_type}

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[dict[str, Any]] = None,
        data: Optional[bytes] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> requests.Response:
        content_type = "application/octet-stream" if data is not None else "application/json"
        url = f"{self.base_url}{path}"
        try:
            with self._session_lock:
                resp = self.session.request(
                    method,
                    url,
                    json=json_body,
                    data=data,
                    params=params,
                    headers=self._headers(content_type),
                    timeout=self.timeout,
                )
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise RemoteServiceError(f"{method} {path} failed: {exc}") from exc
        return resp

    @staticmethod
    def _encode_image(image: np.ndarray) -> bytes:
        ok, buffer = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), 90])
        if not ok:
            raise RemoteServiceError("Failed to encode image for upload.")
        return buffer.tobytes()

    def detect(self, image: np.ndarray) -> list[FaceHandle]:
        resp = self._request(
            "POST",
            "/face/v1.0/detect",
            data=self._encode_image(image),
            params={"returnFaceId": "true"},
        )
        try:
            faces = _FACES.validate_json(resp.content)
        except ValidationError as exc:
            raise RemoteServiceError(f"Unexpected detect response: {exc}") from exc
        return [FaceHandle(face_id=face.face_id) for face in faces]

    def identify(self, handle: FaceHandle) -> Optional[Candidate]:
        resp = self._request(
            "POST",
            "/face/v1.0/identify",
            json_body={
                "personGroupId": self.person_group,
                "faceIds": [handle.face_id],
                "maxNumOfCandidatesReturned": 1,
                "confidenceThreshold": 0.5,
            },
        )
        try:
            results = _IDENTIFY.validate_json(resp.content)
        except ValidationError as exc:
            raise RemoteServiceError(f"Unexpected identify response: {exc}") from exc
        if not results or not results[0].candidates:
            return None
        best = results[0].candidates[0]
        return Candidate(external_id=best.person_id, confidence=best.confidence)

    def ensure_person_group(self) -> None:
        if self._group_ready:
            return
        path = f"/face/v1.0/persongroups/{self.person_group}"
        try:
            with self._session_lock:
                resp = self.session.get(f"{self.base_url}{path}", headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as exc:
            raise RemoteServiceError(f"GET {path} failed: {exc}") from exc
        if resp.status_code == 404:
            self._request("PUT", path, json_body={"name": self.person_group, "recognitionModel": "recognition_04"})
        elif not resp.ok:
            raise RemoteServiceError(f"GET {path} failed with status {resp.status_code}")
        self._group_ready = True

    def enroll(self, metadata: EnrollmentMetadata, image: np.ndarray) -> Optional[str]:
        self.ensure_person_group()
        group_path = f"/face/v1.0/persongroups/{self.person_group}"
        resp = self._request(
            "POST",
            f"{group_path}/persons",
            json_body={
                "name": metadata.display_name,
                "userData": json.dumps(
                    {"identity_id": metadata.identity_id, "department": metadata.department}
                ),
            },
        )
        try:
            person = PersonCreated.model_validate_json(resp.content)
        except ValidationError as exc:
            raise RemoteServiceError(f"Unexpected create-person response: {exc}") from exc

        self._request(
            "POST",
            f"{group_path}/persons/{person.person_id}/persistedFaces",
            data=self._encode_image(image),
        )
        self._request("POST", f"{group_path}/train")
        self.logger.info("Enrolled %s remotely as %s", metadata.identity_id, person.person_id)
        return person.person_id
