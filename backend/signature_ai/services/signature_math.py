import numpy as np
from typing import Sequence

from signature_ai.core.exceptions import DimensionMismatch

# Floor applied to every trained threshold
MIN_THRESHOLD = 0.1

# Threshold = mean + STD_MULTIPLIER * std of intra-class distances
STD_MULTIPLIER = 1.5


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    """
    Projects a vector onto the unit hypersphere.

    A zero vector has no direction, so it is returned unchanged (as zeros)
    instead of dividing by zero.
    """
    vec = np.asarray(vector, dtype=np.float64).flatten()
    norm = np.linalg.norm(vec)

    if norm == 0:
        return np.zeros_like(vec)

    return vec / norm


def compute_cosine_similarity(vector1: np.ndarray, vector2: np.ndarray) -> float:
    """
    Computes the cosine similarity between two embedding vectors.

    Embeddings are stored L2-normalized, so the dot product alone would
    usually suffice. The full formula keeps the result correct for raw
    model outputs and for vectors read back from pgvector as float32.

    Args:
        vector1 (np.ndarray): First embedding (e.g. a stored sample).
        vector2 (np.ndarray): Second embedding (e.g. the probe).

    Returns:
        float: Similarity in [-1.0, 1.0]. 0.0 if either vector has zero norm.

    Raises:
        DimensionMismatch: If the vectors do not have the same length.
    """
    vec1 = np.asarray(vector1, dtype=np.float64).flatten()
    vec2 = np.asarray(vector2, dtype=np.float64).flatten()

    if vec1.shape[0] != vec2.shape[0]:
        raise DimensionMismatch(vec1.shape[0], vec2.shape[0])

    norm_vec1 = np.linalg.norm(vec1)
    norm_vec2 = np.linalg.norm(vec2)

    # Prevent division by zero
    if norm_vec1 == 0 or norm_vec2 == 0:
        return 0.0

    return float(np.dot(vec1, vec2) / (norm_vec1 * norm_vec2))


def compute_cosine_distance(vector1: np.ndarray, vector2: np.ndarray) -> float:
    """1 - cosine similarity. 0 means same direction, 2 means opposite."""
    return 1.0 - compute_cosine_similarity(vector1, vector2)


def compute_centroid(embeddings: Sequence[np.ndarray], embed_dim: int) -> np.ndarray:
    """
    Element-wise mean of a student's embeddings, re-normalized to unit length.

    Args:
        embeddings: Embeddings of equal length (real samples and augmentations).
        embed_dim:  Configured embedding dimension, used for the empty case.

    Returns:
        np.ndarray: Unit centroid, or the zero vector of length embed_dim
                    when no embeddings are given.
    """
    if len(embeddings) == 0:
        return np.zeros(embed_dim, dtype=np.float64)

    matrix = np.vstack([np.asarray(e, dtype=np.float64).flatten() for e in embeddings])

    if matrix.shape[1] != embed_dim:
        raise DimensionMismatch(embed_dim, matrix.shape[1])

    return l2_normalize(np.mean(matrix, axis=0))


def compute_adaptive_threshold(
    embeddings: Sequence[np.ndarray],
    centroid: np.ndarray,
    default_threshold: float,
    min_threshold: float = MIN_THRESHOLD,
) -> float:
    """
    Derives a student's personalised decision threshold from the spread of
    their own samples around the centroid.

    threshold = min(default, mean + 1.5 * std), floored at min_threshold,
    where mean/std are the population statistics of the cosine distances
    between each embedding and the centroid.

    With a single embedding the standard deviation is undefined, so the
    default threshold is returned as-is.
    """
    if len(embeddings) <= 1:
        return float(default_threshold)

    distances = np.array(
        [compute_cosine_distance(embedding, centroid) for embedding in embeddings],
        dtype=np.float64
    )

    mean = float(np.mean(distances))
    std_dev = float(np.std(distances))  # ddof=0, population std

    threshold = min(default_threshold, mean + STD_MULTIPLIER * std_dev)

    return float(max(min_threshold, threshold))
