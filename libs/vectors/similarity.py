"""Cosine similarity between embedding vectors."""

from typing import Sequence

import numpy as np


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """
    Compute cosine similarity between two vectors.

    Args:
        vec1: First vector
        vec2: Second vector

    Returns:
        Cosine similarity in [-1, 1]; 0.0 when either vector has zero norm

    Raises:
        ValueError: If the vectors differ in dimension
    """
    a = np.asarray(vec1, dtype=float)
    b = np.asarray(vec2, dtype=float)

    if a.shape != b.shape:
        raise ValueError(f"Vector dimensions differ: {a.shape} vs {b.shape}")

    norm_product = np.linalg.norm(a) * np.linalg.norm(b)
    if norm_product == 0:
        return 0.0

    similarity = float(np.dot(a, b) / norm_product)
    # Clamp floating point drift (e.g. 1.0000000002)
    return max(-1.0, min(1.0, similarity))
