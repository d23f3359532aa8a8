import pytest
import numpy as np

from signature_ai.core.config import Settings
from signature_ai.services.embedding_engine import EmbeddingEngine
from tests.mocks import (
    InMemorySignatureRepository,
    make_blank_png,
    make_circle_png,
    make_signature_png,
    mock_student,
)


# EMBEDDING FIXTURES
# Fixtures defined here are automatically available to all test files in the backend/tests/ directory.
@pytest.fixture
def unit_vector_512() -> np.ndarray:
    """
    Returns a reproducible L2-normalized 512D vector.
    Identical calls produce the same vector (seeded RNG).
    Simulates a stored signature embedding.
    """
    rng = np.random.default_rng(seed=42)
    vec = rng.standard_normal(512).astype(np.float32)
    return vec / np.linalg.norm(vec)


@pytest.fixture
def similar_vector_512(unit_vector_512) -> np.ndarray:
    """
    Returns a vector close to unit_vector_512 with small Gaussian noise.
    Simulates another signature from the same student.
    Expected cosine distance vs unit_vector_512: ~0.01 - 0.05.
    """
    rng = np.random.default_rng(seed=99)
    noise = rng.standard_normal(512).astype(np.float32) * 0.01
    noisy = unit_vector_512 + noise
    return noisy / np.linalg.norm(noisy)


@pytest.fixture
def different_vector_512() -> np.ndarray:
    """
    Returns a random unit vector seeded differently from unit_vector_512.
    Simulates a signature from a different student.
    Expected cosine distance vs unit_vector_512: ~1.0 +/- 0.1.
    """
    rng = np.random.default_rng(seed=777)
    vec = rng.standard_normal(512).astype(np.float32)
    return vec / np.linalg.norm(vec)


@pytest.fixture
def zero_vector_512() -> np.ndarray:
    """
    Returns a zero vector of 512 dimensions.
    Used to test division-by-zero guards in cosine similarity.
    """
    return np.zeros(512, dtype=np.float32)


@pytest.fixture
def embedding_matrix_5x512(unit_vector_512) -> np.ndarray:
    """
    Five noisy copies of unit_vector_512, L2-normalized.
    Simulates the enrolled samples of one student.
    """
    rng = np.random.default_rng(seed=2024)
    matrix = unit_vector_512 + rng.standard_normal((5, 512)).astype(np.float32) * 0.02
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    return matrix / norms


# IMAGE FIXTURES

@pytest.fixture
def signature_png() -> bytes:
    """A 300x150 PNG with a black zig-zag stroke on white."""
    return make_signature_png()


@pytest.fixture
def shifted_signature_png() -> bytes:
    """Same stroke as signature_png, drawn further right and down on a larger canvas."""
    return make_signature_png(canvas_size=(400, 220), offset=(60, 40))


@pytest.fixture
def circle_png() -> bytes:
    """A round scribble with a very different layout from signature_png."""
    return make_circle_png()


@pytest.fixture
def blank_png() -> bytes:
    """A plain white 300x150 PNG with no strokes."""
    return make_blank_png()


# SERVICE FIXTURES

@pytest.fixture
def test_settings() -> Settings:
    """
    Settings with the production defaults and a small download pool.
    Independent of any .env file on the test machine.
    """
    return Settings(_env_file=None, DOWNLOAD_WORKERS=2)


@pytest.fixture
def fallback_engine() -> EmbeddingEngine:
    """An EmbeddingEngine with no model file, serving fallback embeddings."""
    engine = EmbeddingEngine(model_path="/nonexistent/signature_embedding.onnx")
    engine.load_model()
    return engine


@pytest.fixture
def repository() -> InMemorySignatureRepository:
    """In-memory repository holding one student (pk=1) with no images."""
    repo = InMemorySignatureRepository()
    repo.add_student(mock_student())
    return repo
