import os
import tempfile
import threading
from collections import defaultdict, deque

import numpy as np
import pytest

os.environ.setdefault("EDGE_LOG_DIR", tempfile.mkdtemp(prefix="edge-attendance-logs-"))

from edge_attendance.attendance_queue import AttendanceQueue  # noqa: E402
from edge_attendance.connectivity import ConnectivityMonitor  # noqa: E402
from edge_attendance.identity_store import IdentityStore  # noqa: E402
from edge_attendance.liveness import LivenessAssessor  # noqa: E402
from edge_attendance.matcher import MatchDecider, l2_normalize  # noqa: E402
from edge_attendance.remote_identity import FaceHandle  # noqa: E402
from edge_attendance.schemas import PushResult, PushStatus  # noqa: E402
from edge_attendance.types import AttendanceRecord, CaptureMode, EventType  # noqa: E402
from edge_attendance.verification import VerificationOrchestrator  # noqa: E402

DIM = 16


def unit(index: int, dim: int = DIM) -> np.ndarray:
    vector = np.zeros(dim, dtype=np.float32)
    vector[index] = 1.0
    return vector


def blend(a: np.ndarray, b: np.ndarray, weight: float) -> np.ndarray:
    return l2_normalize((1.0 - weight) * a + weight * b)


def face(key: int, size: int = 120) -> np.ndarray:
    """Synthetic face image; the fake embedder keys on its first pixel."""
    return np.full((size, size, 3), key, dtype=np.uint8)


class KeyedEmbedder:
    dimension = DIM

    def __init__(self, vectors=None):
        self.vectors = dict(vectors or {})
        self.calls = 0

    def embed(self, face_image):
        self.calls += 1
        return self.vectors[int(face_image[0, 0, 0])]


class ScriptedLivenessModel:
    """Returns the next scripted real-probability on every prediction."""

    def __init__(self, scores=(0.97,)):
        self.scores = list(scores)
        self.index = 0

    def predict(self, face_image):
        score = self.scores[min(self.index, len(self.scores) - 1)]
        self.index += 1
        return np.array([score], dtype=np.float32)


class FakeIdentityService:
    def __init__(self, candidate=None, error=None, external_id="person-1"):
        self.candidate = candidate
        self.error = error
        self.external_id = external_id
        self.detect_calls = 0
        self.enroll_calls = 0

    def detect(self, image):
        self.detect_calls += 1
        if self.error is not None:
            raise self.error
        return [FaceHandle("face-1")]

    def identify(self, handle):
        return self.candidate

    def enroll(self, metadata, image):
        self.enroll_calls += 1
        if self.error is not None:
            raise self.error
        return self.external_id


class FakeAttendanceService:
    """Scripted remote store that remembers the order records arrive in."""

    def __init__(self, profile_ok=True):
        self.profile_ok = profile_ok
        self.responses = defaultdict(deque)
        self.pushed = []
        self.profiles = []
        self.on_push = None

    def script(self, record_id, *statuses):
        self.responses[record_id].extend(statuses)

    def push_record(self, record):
        self.pushed.append(record.record_id)
        if self.on_push is not None:
            self.on_push(record)
        queued = self.responses[record.record_id]
        status = queued.popleft() if queued else PushStatus.SUCCESS
        return PushResult(status, None if status is PushStatus.SUCCESS else 500)

    def push_profile(self, identity):
        self.profiles.append(identity.identity_id)
        return self.profile_ok


class BlockingAttendanceService(FakeAttendanceService):
    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def push_record(self, record):
        self.entered.set()
        self.release.wait(timeout=5)
        return super().push_record(record)


def make_record(identity_id="E1", timestamp=1_000, record_id=None, **kwargs):
    fields = dict(
        identity_id=identity_id,
        event_type=EventType.ENTRY,
        timestamp=timestamp,
        mode=CaptureMode.OFFLINE,
        device_id="device-1",
    )
    fields.update(kwargs)
    if record_id is not None:
        fields["record_id"] = record_id
    return AttendanceRecord(**fields)


@pytest.fixture
def store(tmp_path):
    return IdentityStore(tmp_path / "identities.db")


@pytest.fixture
def queue(tmp_path):
    return AttendanceQueue(tmp_path / "queue.db")


@pytest.fixture
def monitor():
    return ConnectivityMonitor(initial_online=True)


@pytest.fixture
def embedder():
    return KeyedEmbedder()


@pytest.fixture
def liveness_model():
    return ScriptedLivenessModel()


@pytest.fixture
def orchestrator(store, embedder, liveness_model, monitor):
    return VerificationOrchestrator(
        embedder=embedder,
        liveness=LivenessAssessor(liveness_model),
        store=store,
        decider=MatchDecider(),
        connectivity=monitor,
    )
