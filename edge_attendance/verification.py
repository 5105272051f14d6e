from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .embedding import EmbeddingSource
from .exceptions import (
    DatabaseError,
    DataError,
    MalformedInputError,
    ModelUnavailableError,
    NoFaceError,
)
from .face_detector import Box, FaceCropper
from .identity_store import IdentityStore
from .liveness import LivenessAssessor
from .logger import setup_logger
from .matcher import MatchDecider
from .remote_identity import Candidate, EnrollmentMetadata, RemoteIdentityService
from .types import Embedding, Identity, LivenessResult, VerificationFailure, VerificationOutcome

SCORE_TOLERANCE = 1e-6


class _Stop(Exception):
    """Ends a verification chain early with a finished outcome."""

    def __init__(self, outcome: VerificationOutcome):
        super().__init__(outcome.message)
        self.outcome = outcome


@dataclass(frozen=True)
class EnrollmentResult:
    success: bool
    identity_id: str
    message: str
    external_id: Optional[str] = None


class RemoteAdvisoryStrategy:
    """Remote detect -> identify. Its answer is logged and attached, never decisive."""

    authoritative = False

    def __init__(self, service: RemoteIdentityService):
        self.service = service
        self.logger = setup_logger(self.__class__.__name__)

    def consult(self, image: np.ndarray) -> Optional[Candidate]:
        try:
            handles = self.service.detect(image)
            if not handles:
                self.logger.info("No face detected remotely, continuing locally")
                return None
            return self.service.identify(handles[0])
        except Exception as exc:
            self.logger.warning("Remote identification failed, continuing locally: %s", exc)
            return None

    def enroll(self, metadata: EnrollmentMetadata, image: np.ndarray) -> Optional[str]:
        try:
            return self.service.enroll(metadata, image)
        except Exception as exc:
            self.logger.warning("Remote enrollment for %s failed: %s", metadata.identity_id, exc)
            return None


class LocalAuthoritativeStrategy:
    """Threshold decision plus the global best-match check against every enrolled identity."""

    authoritative = True

    def __init__(self, store: IdentityStore, decider: MatchDecider):
        self.store = store
        self.decider = decider
        self.logger = setup_logger(self.__class__.__name__)

    def verify(self, probe: Embedding, identity_id: str) -> VerificationOutcome:
        try:
            return self._decide(probe, identity_id)
        except DatabaseError as exc:
            self.logger.error("Identity store unavailable: %s", exc)
            return VerificationOutcome.failed(VerificationFailure.UNAVAILABLE, identity_id=identity_id)

    def _decide(self, probe: Embedding, identity_id: str) -> VerificationOutcome:
        with self.store.locked():
            try:
                stored = self.store.get(identity_id)
            except DataError as exc:
                self.logger.error("Stored embedding for %s is unusable: %s", identity_id, exc)
                return VerificationOutcome.failed(VerificationFailure.DATA_ERROR, identity_id=identity_id)
            if stored is None:
                return VerificationOutcome.failed(VerificationFailure.NOT_ENROLLED, identity_id=identity_id)

            try:
                score = self.decider.compare(probe, stored)
            except DataError as exc:
                self.logger.error("Cannot compare against %s: %s", identity_id, exc)
                return VerificationOutcome.failed(VerificationFailure.DATA_ERROR, identity_id=identity_id)

            if self.store.count() > 1:
                best = self.store.best_match(probe)
                # Ties go to the claimed identity; only a strictly higher score rejects.
                if best is not None and best[0] != identity_id and best[1] > score.similarity + SCORE_TOLERANCE:
                    self.logger.warning(
                        "Face best matches %s (%.3f), not %s (%.3f). Rejecting.",
                        best[0],
                        best[1],
                        identity_id,
                        score.similarity,
                    )
                    return VerificationOutcome.failed(
                        VerificationFailure.IDENTITY_MISMATCH,
                        confidence=score.similarity,
                        identity_id=identity_id,
                    )

        matched = self.decider.accepts(score)
        self.logger.info(
            "Face comparison for %s - similarity %.3f, distance %.3f, match %s",
            identity_id,
            score.similarity,
            score.distance,
            matched,
        )
        if not matched:
            return VerificationOutcome.failed(
                VerificationFailure.INCONCLUSIVE,
                confidence=score.similarity,
                identity_id=identity_id,
            )
        return VerificationOutcome(
            matched=True,
            confidence=score.similarity,
            is_live=True,
            liveness_confidence=0.0,
            message=f"Face verified (similarity {score.similarity:.2f})",
            identity_id=identity_id,
        )


class VerificationOrchestrator:
    """Liveness gate -> identify -> verify, with online/offline fallback.

    Each attempt runs as one linear chain in the caller's thread. A
    ``threading.Event`` passed as ``cancel`` is checked between stages; a
    cancelled attempt returns a CANCELLED outcome and persists nothing.
    """

    def __init__(
        self,
        embedder: EmbeddingSource,
        liveness: LivenessAssessor,
        store: IdentityStore,
        decider: MatchDecider,
        remote: Optional[RemoteIdentityService] = None,
        connectivity=None,
        cropper: Optional[FaceCropper] = None,
        min_identification_confidence: float = 0.85,
        require_liveness: bool = True,
    ):
        self.embedder = embedder
        self.liveness = liveness
        self.store = store
        self.decider = decider
        self.connectivity = connectivity
        self.cropper = cropper
        self.min_identification_confidence = min_identification_confidence
        self.require_liveness = require_liveness
        self.logger = setup_logger(self.__class__.__name__)

        self.remote_strategy = RemoteAdvisoryStrategy(remote) if remote is not None else None
        self.local_strategy = LocalAuthoritativeStrategy(store, decider)
        self.strategies = [s for s in (self.remote_strategy, self.local_strategy) if s is not None]

    @property
    def is_online(self) -> bool:
        return bool(self.connectivity is not None and self.connectivity.is_online)

    # -- chain steps -------------------------------------------------------

    @staticmethod
    def _check_cancel(cancel: Optional[threading.Event], liveness: Optional[LivenessResult] = None) -> None:
        if cancel is not None and cancel.is_set():
            raise _Stop(
                VerificationOutcome.failed(
                    VerificationFailure.CANCELLED,
                    is_live=liveness.is_live if liveness else False,
                    liveness_confidence=liveness.confidence if liveness else 0.0,
                )
            )

    def _crop(self, image: np.ndarray) -> tuple[np.ndarray, Optional[Box]]:
        if self.cropper is None:
            return image, None
        try:
            located = self.cropper.locate(image)
        except ModelUnavailableError as exc:
            self.logger.error("Face detector unavailable: %s", exc)
            raise _Stop(VerificationOutcome.failed(VerificationFailure.UNAVAILABLE, is_live=False)) from exc
        if located is None:
            raise _Stop(VerificationOutcome.failed(VerificationFailure.NO_FACE_DETECTED, is_live=False))
        return located

    def _assess(
        self,
        image: np.ndarray,
        face: np.ndarray,
        box: Optional[Box],
        tracking_id: Optional[int],
    ) -> LivenessResult:
        height, width = image.shape[:2]
        return self._gate(
            self.liveness.assess(face, face_box=box, frame_size=(width, height), tracking_id=tracking_id)
        )

    def _gate(self, result: LivenessResult) -> LivenessResult:
        if not result.is_live:
            self.logger.warning("Liveness check failed: %s", result.message)
            raise _Stop(
                VerificationOutcome.failed(
                    VerificationFailure.LIVENESS_FAILED,
                    is_live=False,
                    liveness_confidence=result.confidence,
                    message=f"Liveness check failed: {result.message}",
                )
            )
        self.logger.info("Liveness check passed with confidence %.3f", result.confidence)
        return result

    def _embed(self, face: np.ndarray, liveness: Optional[LivenessResult]) -> Embedding:
        live_conf = liveness.confidence if liveness else 0.0
        try:
            return self.embedder.embed(face)
        except NoFaceError:
            failure, message = VerificationFailure.NO_FACE_DETECTED, None
        except MalformedInputError as exc:
            self.logger.warning("Failed to process face: %s", exc)
            failure, message = VerificationFailure.NO_FACE_DETECTED, "Failed to process face"
        except ModelUnavailableError:
            failure, message = VerificationFailure.UNAVAILABLE, None
        raise _Stop(
            VerificationOutcome.failed(failure, liveness_confidence=live_conf, message=message)
        )

    def _consult_remote(
        self,
        strategy: RemoteAdvisoryStrategy,
        image: np.ndarray,
        identity_id: Optional[str],
    ) -> Optional[str]:
        candidate = strategy.consult(image)
        if candidate is None:
            return None
        self.logger.info(
            "Remote service suggests %s (%.2f); local verification decides",
            candidate.external_id,
            candidate.confidence,
        )
        if identity_id is not None:
            try:
                claimed = self.store.get_identity(identity_id)
            except (DataError, DatabaseError):
                claimed = None
            if claimed is not None and claimed.external_id and claimed.external_id != candidate.external_id:
                self.logger.warning(
                    "Remote candidate %s differs from %s's external id %s",
                    candidate.external_id,
                    identity_id,
                    claimed.external_id,
                )
        return candidate.external_id

    def _run_strategies(
        self,
        image: np.ndarray,
        probe: Embedding,
        identity_id: str,
        cancel: Optional[threading.Event],
        liveness: Optional[LivenessResult],
    ) -> tuple[VerificationOutcome, Optional[str]]:
        """Walk the strategies in order until the authoritative one decides."""
        remote_candidate = None
        for strategy in self.strategies:
            self._check_cancel(cancel, liveness)
            if strategy.authoritative:
                outcome = strategy.verify(probe, identity_id)
                self._check_cancel(cancel, liveness)
                return outcome, remote_candidate
            if self.is_online:
                remote_candidate = self._consult_remote(strategy, image, identity_id)
        raise RuntimeError("No authoritative verification strategy configured")

    def _finish(
        self,
        outcome: VerificationOutcome,
        liveness: Optional[LivenessResult],
        remote_candidate: Optional[str],
        success_message: Optional[str],
    ) -> VerificationOutcome:
        message = outcome.message
        if outcome.matched and liveness is not None and success_message:
            message = success_message
        return VerificationOutcome(
            matched=outcome.matched,
            confidence=outcome.confidence,
            # Skipped liveness is reported as not live.
            is_live=liveness.is_live if liveness else False,
            liveness_confidence=liveness.confidence if liveness else 0.0,
            message=message,
            failure=outcome.failure,
            identity_id=outcome.identity_id,
            remote_candidate=remote_candidate,
        )

    # -- public operations -------------------------------------------------

    def verify_embedding(self, probe: Embedding, identity_id: str) -> VerificationOutcome:
        return self.local_strategy.verify(probe, identity_id)

    def verify(
        self,
        image: np.ndarray,
        identity_id: str,
        require_liveness: Optional[bool] = None,
        cancel: Optional[threading.Event] = None,
        tracking_id: Optional[int] = None,
    ) -> VerificationOutcome:
        require = self.require_liveness if require_liveness is None else require_liveness
        try:
            self._check_cancel(cancel)
            face, box = self._crop(image)
            liveness = self._assess(image, face, box, tracking_id) if require else None
            self._check_cancel(cancel, liveness)
            probe = self._embed(face, liveness)
            outcome, remote_candidate = self._run_strategies(image, probe, identity_id, cancel, liveness)
        except _Stop as stop:
            return stop.outcome
        return self._finish(outcome, liveness, remote_candidate, "Face verified successfully with liveness check")

    def verify_burst(
        self,
        frames: Sequence[np.ndarray],
        identity_id: str,
        require_liveness: Optional[bool] = None,
        cancel: Optional[threading.Event] = None,
    ) -> VerificationOutcome:
        require = self.require_liveness if require_liveness is None else require_liveness
        frames = list(frames)
        if not frames:
            return VerificationOutcome.failed(
                VerificationFailure.NO_FACE_DETECTED,
                is_live=False,
                message="No frames provided for verification",
            )
        if not require or len(frames) < self.liveness.min_frames:
            return self.verify(frames[0], identity_id, require_liveness=require, cancel=cancel)

        try:
            self._check_cancel(cancel)
            faces = [self._crop(frame)[0] for frame in frames]
            liveness = self._gate(self.liveness.assess_burst(faces))
            self._check_cancel(cancel, liveness)
            middle = len(frames) // 2
            probe = self._embed(faces[middle], liveness)
            outcome, remote_candidate = self._run_strategies(
                frames[middle], probe, identity_id, cancel, liveness
            )
        except _Stop as stop:
            return stop.outcome
        return self._finish(
            outcome, liveness, remote_candidate, "Face verified successfully with enhanced liveness check"
        )

    def identify(
        self,
        image: np.ndarray,
        require_liveness: Optional[bool] = None,
        cancel: Optional[threading.Event] = None,
        tracking_id: Optional[int] = None,
    ) -> VerificationOutcome:
        """Login flow: find who this is, then verify them with the full invariant."""
        require = self.require_liveness if require_liveness is None else require_liveness
        try:
            self._check_cancel(cancel)
            face, box = self._crop(image)
            liveness = self._assess(image, face, box, tracking_id) if require else None
            self._check_cancel(cancel, liveness)
            probe = self._embed(face, liveness)

            try:
                best = self.store.best_match(probe)
            except DatabaseError as exc:
                self.logger.error("Identity store unavailable: %s", exc)
                raise _Stop(VerificationOutcome.failed(VerificationFailure.UNAVAILABLE)) from exc
            if best is None or best[1] < self.min_identification_confidence:
                self.logger.info("No identity reached %.2f similarity", self.min_identification_confidence)
                raise _Stop(
                    VerificationOutcome.failed(
                        VerificationFailure.NOT_RECOGNIZED,
                        confidence=best[1] if best else 0.0,
                        liveness_confidence=liveness.confidence if liveness else 0.0,
                    )
                )
            outcome, remote_candidate = self._run_strategies(image, probe, best[0], cancel, liveness)
        except _Stop as stop:
            return stop.outcome
        return self._finish(outcome, liveness, remote_candidate, "Face verified successfully with liveness check")

    def _enrolled_as(self, probe: Embedding, identity_id: str) -> Optional[str]:
        """Return another identity this face already matches, if any."""
        with self.store.locked():
            best = self.store.best_match(probe)
            if best is None or best[0] == identity_id:
                return None
            try:
                other = self.store.get(best[0])
            except DataError:
                return None
            if other is not None and self.decider.decide(probe, other):
                return best[0]
        return None

    def enroll(
        self,
        image: np.ndarray,
        identity_id: str,
        display_name: str,
        department: str = "",
        require_liveness: Optional[bool] = None,
        reject_duplicates: bool = True,
    ) -> EnrollmentResult:
        if not identity_id.strip():
            return EnrollmentResult(False, identity_id, "identity_id cannot be empty.")
        if not display_name.strip():
            return EnrollmentResult(False, identity_id, "display_name cannot be empty.")

        require = self.require_liveness if require_liveness is None else require_liveness
        try:
            face, box = self._crop(image)
            if require:
                self._assess(image, face, box, None)
            probe = self._embed(face, None)
        except _Stop as stop:
            return EnrollmentResult(False, identity_id, stop.outcome.message)

        if not np.any(probe):
            return EnrollmentResult(False, identity_id, "Failed to process face")

        if reject_duplicates:
            duplicate_of = self._enrolled_as(probe, identity_id)
            if duplicate_of is not None:
                self.logger.warning("Face for %s already enrolled as %s", identity_id, duplicate_of)
                return EnrollmentResult(False, identity_id, f"Face already enrolled as {duplicate_of}")

        external_id = None
        if self.remote_strategy is not None and self.is_online:
            external_id = self.remote_strategy.enroll(
                EnrollmentMetadata(identity_id, display_name, department), image
            )

        try:
            self.store.put_identity(
                Identity(
                    identity_id=identity_id,
                    display_name=display_name,
                    department=department,
                    embedding=probe,
                    external_id=external_id,
                )
            )
        except DatabaseError as exc:
            self.logger.error("Enrollment for %s could not be saved: %s", identity_id, exc)
            return EnrollmentResult(False, identity_id, f"Enrollment failed: {exc}")

        mode = "online" if external_id else "offline"
        self.logger.info("Enrolled %s (%s) %s", display_name, identity_id, mode)
        return EnrollmentResult(True, identity_id, f"Face enrolled successfully {mode}", external_id)
