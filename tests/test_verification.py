import threading

import pytest

from conftest import FakeIdentityService, KeyedEmbedder, ScriptedLivenessModel, face, unit
from edge_attendance.exceptions import ModelUnavailableError, RemoteServiceError
from edge_attendance.liveness import LivenessAssessor
from edge_attendance.matcher import MatchDecider
from edge_attendance.remote_identity import Candidate
from edge_attendance.types import VerificationFailure
from edge_attendance.verification import VerificationOrchestrator


@pytest.fixture
def enrolled(store, embedder):
    store.put("A", unit(0))
    store.put("B", unit(1))
    embedder.vectors.update({10: unit(0), 20: unit(1), 30: unit(2)})
    return store


def with_remote(store, embedder, monitor, remote, scores=(0.97,)):
    return VerificationOrchestrator(
        embedder=embedder,
        liveness=LivenessAssessor(ScriptedLivenessModel(scores)),
        store=store,
        decider=MatchDecider(),
        remote=remote,
        connectivity=monitor,
    )


def test_matching_face_is_verified(orchestrator, enrolled):
    outcome = orchestrator.verify(face(10), "A")
    assert outcome.matched is True
    assert outcome.failure is None
    assert outcome.identity_id == "A"
    assert outcome.confidence == pytest.approx(1.0, abs=1e-5)
    assert outcome.liveness_confidence == pytest.approx(0.97, abs=1e-6)


def test_face_of_another_enrolled_identity_is_a_mismatch(orchestrator, enrolled):
    outcome = orchestrator.verify(face(20), "A")
    assert outcome.matched is False
    assert outcome.failure is VerificationFailure.IDENTITY_MISMATCH


def test_unknown_claim_is_not_enrolled(orchestrator, enrolled):
    outcome = orchestrator.verify(face(10), "Z")
    assert outcome.failure is VerificationFailure.NOT_ENROLLED


def test_dissimilar_face_is_inconclusive(orchestrator, store, embedder):
    store.put("A", unit(0))
    embedder.vectors[30] = unit(2)
    outcome = orchestrator.verify(face(30), "A")
    assert outcome.failure is VerificationFailure.INCONCLUSIVE
    assert outcome.confidence == pytest.approx(0.5)


def test_liveness_failure_stops_before_embedding(store, embedder, monitor, enrolled):
    orchestrator = with_remote(store, embedder, monitor, remote=None, scores=(0.3,))
    outcome = orchestrator.verify(face(10), "A")
    assert outcome.failure is VerificationFailure.LIVENESS_FAILED
    assert outcome.is_live is False
    assert embedder.calls == 0


def test_liveness_can_be_skipped(store, embedder, monitor, enrolled):
    orchestrator = with_remote(store, embedder, monitor, remote=None, scores=(0.1,))
    outcome = orchestrator.verify(face(10), "A", require_liveness=False)
    assert outcome.matched is True
    assert outcome.is_live is False
    assert outcome.liveness_confidence == 0.0


def test_cancelled_attempt_does_nothing(orchestrator, enrolled, embedder):
    cancel = threading.Event()
    cancel.set()
    outcome = orchestrator.verify(face(10), "A", cancel=cancel)
    assert outcome.failure is VerificationFailure.CANCELLED
    assert embedder.calls == 0


def test_unavailable_embedder(store, monitor, enrolled):
    class Unavailable:
        dimension = 16

        def embed(self, face_image):
            raise ModelUnavailableError("Verification unavailable: model missing")

    orchestrator = with_remote(store, Unavailable(), monitor, remote=None)
    assert orchestrator.verify(face(10), "A").failure is VerificationFailure.UNAVAILABLE


def test_stored_embedding_of_other_dimension_is_a_data_error(orchestrator, store, embedder):
    store.put("A", unit(0, 8))
    embedder.vectors[10] = unit(0)
    assert orchestrator.verify(face(10), "A").failure is VerificationFailure.DATA_ERROR


def test_unreachable_remote_still_verifies_locally(store, embedder, monitor, enrolled):
    remote = FakeIdentityService(error=RemoteServiceError("connection refused"))
    outcome = with_remote(store, embedder, monitor, remote).verify(face(10), "A")
    assert outcome.matched is True
    assert outcome.remote_candidate is None
    assert remote.detect_calls == 1


def test_remote_is_not_consulted_offline(store, embedder, monitor, enrolled):
    remote = FakeIdentityService(candidate=Candidate("person-1", 0.9))
    monitor.set_online(False)
    outcome = with_remote(store, embedder, monitor, remote).verify(face(10), "A")
    assert outcome.matched is True
    assert remote.detect_calls == 0


def test_remote_candidate_is_advisory(store, embedder, monitor, enrolled):
    remote = FakeIdentityService(candidate=Candidate("person-for-B", 0.99))
    orchestrator = with_remote(store, embedder, monitor, remote)

    accepted = orchestrator.verify(face(10), "A")
    assert accepted.matched is True
    assert accepted.remote_candidate == "person-for-B"

    rejected = orchestrator.verify(face(20), "A")
    assert rejected.failure is VerificationFailure.IDENTITY_MISMATCH


def test_burst_rejects_inconsistent_frames(store, embedder, monitor, enrolled):
    orchestrator = with_remote(store, embedder, monitor, None, scores=(0.95, 0.2, 0.95, 0.95, 0.95))
    outcome = orchestrator.verify_burst([face(10)] * 5, "A")
    assert outcome.failure is VerificationFailure.LIVENESS_FAILED
    assert "Inconsistent" in outcome.message


def test_burst_verifies_the_middle_frame(orchestrator, enrolled, embedder):
    outcome = orchestrator.verify_burst([face(10), face(10), face(20), face(10), face(10)], "B")
    assert outcome.matched is True
    assert outcome.identity_id == "B"
    assert embedder.calls == 1


def test_short_burst_falls_back_to_first_frame(orchestrator, enrolled):
    outcome = orchestrator.verify_burst([face(10), face(20)], "A")
    assert outcome.matched is True


def test_identify_finds_the_enrolled_identity(orchestrator, enrolled):
    outcome = orchestrator.identify(face(20))
    assert outcome.matched is True
    assert outcome.identity_id == "B"


def test_identify_unknown_face(orchestrator, enrolled):
    outcome = orchestrator.identify(face(30))
    assert outcome.failure is VerificationFailure.NOT_RECOGNIZED


def test_enroll_stores_identity_and_external_id(store, embedder, monitor):
    embedder.vectors[10] = unit(0)
    remote = FakeIdentityService(external_id="person-42")
    result = with_remote(store, embedder, monitor, remote).enroll(face(10), "E1", "Asha Rao", "Ops")
    assert result.success is True
    assert result.external_id == "person-42"
    assert store.get_identity("E1").external_id == "person-42"


def test_enroll_survives_remote_failure(store, embedder, monitor):
    embedder.vectors[10] = unit(0)
    remote = FakeIdentityService(error=RemoteServiceError("timeout"))
    result = with_remote(store, embedder, monitor, remote).enroll(face(10), "E1", "Asha Rao")
    assert result.success is True
    assert result.external_id is None
    assert store.exists("E1")


def test_enroll_rejects_a_face_enrolled_under_another_id(orchestrator, enrolled):
    result = orchestrator.enroll(face(10), "C", "Someone Else")
    assert result.success is False
    assert "A" in result.message
    assert not orchestrator.store.exists("C")


def test_enroll_requires_liveness(store, monitor):
    embedder = KeyedEmbedder({10: unit(0)})
    result = with_remote(store, embedder, monitor, None, scores=(0.2,)).enroll(face(10), "E1", "Asha")
    assert result.success is False
    assert store.count() == 0


def test_tied_best_match_is_not_a_mismatch(store, embedder):
    store.put("A", unit(0))
    store.put("B", unit(0))
    embedder.vectors[10] = unit(0)
    orchestrator = with_remote(store, embedder, None, remote=None)

    outcome = orchestrator.verify(face(10), "B")

    assert outcome.matched is True
    assert outcome.identity_id == "B"
    assert outcome.failure is None


def test_chain_follows_the_strategy_list(store, embedder, monitor, enrolled):
    remote = FakeIdentityService(candidate=Candidate("person-1", 0.9))
    orchestrator = with_remote(store, embedder, monitor, remote)
    assert [strategy.authoritative for strategy in orchestrator.strategies] == [False, True]

    orchestrator.strategies = [orchestrator.local_strategy]
    outcome = orchestrator.verify(face(10), "A")

    assert outcome.matched is True
    assert outcome.remote_candidate is None
    assert remote.detect_calls == 0


class CornerCropper:
    def locate(self, image):
        return image[:100, :100], (0, 0, 100, 100)


class RecordingAssessor(LivenessAssessor):
    def __init__(self, model):
        super().__init__(model)
        self.results = []

    def assess(self, face_image, **kwargs):
        result = super().assess(face_image, **kwargs)
        self.results.append(result)
        return result


def test_face_box_feeds_the_size_ratio_signal(store, embedder, enrolled):
    liveness = RecordingAssessor(ScriptedLivenessModel([0.97]))
    orchestrator = VerificationOrchestrator(
        embedder=embedder,
        liveness=liveness,
        store=store,
        decider=MatchDecider(),
        cropper=CornerCropper(),
    )

    outcome = orchestrator.verify(face(10), "A", tracking_id=7)

    assert outcome.matched is True
    assert outcome.is_live is True
    assert liveness.results[-1].signals["face_ratio_score"] == 1.0
