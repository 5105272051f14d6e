import numpy as np
import pytest
import torch

from edge_attendance.embedding import HistogramEmbedder, TorchEmbedder, to_rgb
from edge_attendance.exceptions import MalformedInputError, ModelUnavailableError, NoFaceError


def tiny_network(dimension=32):
    return torch.nn.Sequential(
        torch.nn.AdaptiveAvgPool2d(4),
        torch.nn.Flatten(),
        torch.nn.Linear(48, dimension),
    )


def random_image(seed, shape=(96, 96, 3)):
    return np.random.default_rng(seed).integers(0, 256, size=shape, dtype=np.uint8)


def test_histogram_embeddings_have_unit_norm():
    embedder = HistogramEmbedder()
    for seed in range(5):
        vector = embedder.embed(random_image(seed))
        assert vector.shape == (256,)
        assert np.linalg.norm(vector) == pytest.approx(1.0, abs=1e-3)


def test_histogram_embedding_is_deterministic():
    embedder = HistogramEmbedder()
    image = random_image(11)
    assert np.array_equal(embedder.embed(image), embedder.embed(image.copy()))


def test_histogram_accepts_grayscale_and_bgra():
    embedder = HistogramEmbedder()
    gray = random_image(3, shape=(80, 80))
    bgra = random_image(4, shape=(80, 80, 4))
    assert embedder.embed(gray).shape == (256,)
    assert embedder.embed(bgra).shape == (256,)


def test_invalid_images_are_rejected():
    with pytest.raises(NoFaceError):
        to_rgb(np.zeros((0, 0, 3), dtype=np.uint8))
    with pytest.raises(MalformedInputError):
        to_rgb("not an image")
    with pytest.raises(MalformedInputError):
        to_rgb(np.zeros((4, 4, 3, 2), dtype=np.uint8))


def test_torch_embedder_produces_normalized_vectors():
    torch.manual_seed(0)
    embedder = TorchEmbedder(input_size=32, dimension=32, model_loader=tiny_network)
    vector = embedder.embed(random_image(1))
    assert vector.shape == (32,)
    assert vector.dtype == np.float32
    assert np.linalg.norm(vector) == pytest.approx(1.0, abs=1e-4)
    assert embedder.available


def test_torch_embedder_rejects_wrong_output_size():
    embedder = TorchEmbedder(input_size=32, dimension=64, model_loader=tiny_network)
    with pytest.raises(MalformedInputError):
        embedder.embed(random_image(2))


def test_failed_model_load_is_cached_until_reload():
    attempts = []

    def loader():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("weights missing")
        return tiny_network()

    embedder = TorchEmbedder(input_size=32, dimension=32, model_loader=loader)
    with pytest.raises(ModelUnavailableError):
        embedder.embed(random_image(3))
    with pytest.raises(ModelUnavailableError):
        embedder.embed(random_image(3))
    assert len(attempts) == 1

    assert embedder.reload() is True
    assert embedder.embed(random_image(3)).shape == (32,)
    assert len(attempts) == 2
