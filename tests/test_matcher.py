import numpy as np
import pytest

from conftest import DIM, blend, unit
from edge_attendance.exceptions import EmbeddingDimensionError
from edge_attendance.matcher import MatchDecider, l2_normalize


def test_self_comparison_is_a_perfect_match():
    decider = MatchDecider()
    vector = l2_normalize(np.arange(1, DIM + 1, dtype=np.float32))
    score = decider.compare(vector, vector)
    assert score.similarity == pytest.approx(1.0, abs=1e-5)
    assert score.distance == pytest.approx(0.0, abs=1e-5)
    assert decider.decide(vector, vector) is True


def test_decide_is_symmetric():
    decider = MatchDecider()
    rng = np.random.default_rng(7)
    for _ in range(25):
        a = l2_normalize(rng.normal(size=DIM))
        b = blend(a, l2_normalize(rng.normal(size=DIM)), rng.uniform(0, 1))
        assert decider.decide(a, b) == decider.decide(b, a)
        assert decider.similarity(a, b) == pytest.approx(decider.similarity(b, a))


def test_orthogonal_embeddings_are_rejected():
    decider = MatchDecider()
    score = decider.compare(unit(0), unit(1))
    assert score.similarity == pytest.approx(0.5)
    assert score.distance == pytest.approx(np.sqrt(2.0))
    assert decider.accepts(score) is False


def test_both_metrics_must_pass():
    decider = MatchDecider(similarity_threshold=0.75, distance_threshold=0.4)
    a = unit(0)
    b = blend(a, unit(1), 0.35)
    score = decider.compare(a, b)
    assert score.similarity >= 0.75
    assert score.distance > 0.4
    assert decider.accepts(score) is False


def test_dimension_mismatch_raises():
    with pytest.raises(EmbeddingDimensionError):
        MatchDecider().compare(unit(0, 8), unit(0, 16))


def test_normalize_zero_vector_stays_zero():
    result = l2_normalize(np.zeros(4))
    assert result.dtype == np.float32
    assert not np.any(result)
