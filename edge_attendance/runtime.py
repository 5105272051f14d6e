from __future__ import annotations

from typing import Optional

from .attendance_queue import AttendanceQueue
from .attendance_service import AttendanceService
from .config import Settings, get_settings
from .connectivity import ConnectivityMonitor, HttpHealthProbe
from .crypto import EmbeddingCrypto
from .embedding import build_embedder
from .face_detector import HaarFaceDetector
from .identity_store import IdentityStore
from .liveness import LivenessAssessor, TorchLivenessModel
from .logger import setup_logger
from .matcher import MatchDecider
from .remote_attendance import AttendanceApiClient
from .remote_identity import HttpFaceIdentityService
from .sync_engine import SyncEngine
from .verification import VerificationOrchestrator


class EdgeRuntime:
    """Wires every service of one device from a ``Settings`` object."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        s = self.settings
        self.logger = setup_logger(self.__class__.__name__)
        s.data_dir.mkdir(parents=True, exist_ok=True)

        crypto = EmbeddingCrypto(s.embedding_cipher_key) if s.embedding_cipher_key else None
        self.identity_store = IdentityStore(s.identity_db_path, crypto=crypto)
        self.queue = AttendanceQueue(s.queue_db_path)
        self.connectivity = ConnectivityMonitor(initial_online=False)
        self.health_probe = (
            HttpHealthProbe(
                self.connectivity,
                s.health_url,
                interval_seconds=s.health_interval_seconds,
                timeout_seconds=s.health_timeout_seconds,
                debounce_samples=s.health_debounce_samples,
            )
            if s.health_url
            else None
        )

        remote_identity = (
            HttpFaceIdentityService(
                s.remote_identity_url,
                s.remote_identity_key,
                person_group=s.remote_identity_group,
                timeout=s.request_timeout_seconds,
            )
            if s.remote_identity_url
            else None
        )
        self.orchestrator = VerificationOrchestrator(
            embedder=build_embedder(s),
            liveness=LivenessAssessor(
                TorchLivenessModel(
                    model_path=s.liveness_model_path,
                    input_size=s.liveness_input_size,
                    device=s.inference_device,
                ),
                threshold=s.liveness_threshold,
                consistency_bound=s.liveness_consistency_bound,
                min_live_ratio=s.liveness_min_live_ratio,
            ),
            store=self.identity_store,
            decider=MatchDecider(s.similarity_threshold, s.distance_threshold),
            remote=remote_identity,
            connectivity=self.connectivity,
            cropper=HaarFaceDetector(min_face_size=s.min_face_size) if s.face_detection_enabled else None,
            min_identification_confidence=s.min_identification_confidence,
            require_liveness=s.liveness_required,
        )

        self.sync_engine = None
        if s.sync_enabled and s.attendance_api_url:
            self.sync_engine = SyncEngine(
                self.queue,
                AttendanceApiClient(s.attendance_api_url, s.attendance_api_key, timeout=s.request_timeout_seconds),
                self.connectivity,
                profile_provider=self.identity_store.list_identities,
                interval_seconds=s.sync_interval_seconds,
                settle_seconds=s.sync_settle_seconds,
            )
        self.attendance = AttendanceService(
            self.queue,
            self.connectivity,
            device_id=s.device_id,
            location=s.location,
            sync_engine=self.sync_engine,
        )

    def check_connectivity(self) -> bool:
        """One blocking probe, used by one-shot commands that do not run the probe thread."""
        if self.health_probe is None:
            return self.connectivity.is_online
        online = self.health_probe.probe()
        self.connectivity.set_online(online)
        return online

    def start(self) -> None:
        if self.health_probe is not None:
            self.health_probe.start()
        if self.sync_engine is not None:
            self.sync_engine.start()
        self.logger.info("Runtime started for device %s", self.settings.device_id)

    def stop(self) -> None:
        if self.sync_engine is not None:
            self.sync_engine.close()
        if self.health_probe is not None:
            self.health_probe.stop()
        self.logger.info("Runtime stopped")
