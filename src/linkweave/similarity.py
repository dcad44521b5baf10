"""Vector similarity and canonical pair identity.

Similarities are cosine scores clamped to [0, 1]. A zero vector is treated
as maximally dissimilar. Batch comparisons go through one matrix product
over row-normalized float matrices.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from .errors import DimensionMismatchError, EmptyVectorError


def _check_dimensions(a: Sequence[float], b: Sequence[float]) -> None:
    if len(a) == 0 or len(b) == 0:
        raise EmptyVectorError("Cannot compare empty vectors")
    if len(a) != len(b):
        raise DimensionMismatchError(f"Vector dimensions differ: {len(a)} vs {len(b)}")


def dot_product(a: Sequence[float], b: Sequence[float]) -> float:
    _check_dimensions(a, b)
    return float(np.dot(np.asarray(a, dtype=np.float64), np.asarray(b, dtype=np.float64)))


def magnitude(v: Sequence[float]) -> float:
    return float(np.linalg.norm(np.asarray(v, dtype=np.float64)))


def normalize(v: Sequence[float]) -> list[float]:
    """Scale to unit length. A zero vector is returned unchanged."""
    mag = magnitude(v)
    if mag == 0.0:
        return list(v)
    return (np.asarray(v, dtype=np.float64) / mag).tolist()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors, clamped to [0, 1].

    Raises:
        EmptyVectorError: If either vector is empty.
        DimensionMismatchError: If the vectors differ in length.
    """
    dot = dot_product(a, b)
    norm_a = magnitude(a)
    norm_b = magnitude(b)
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return min(1.0, max(0.0, dot / (norm_a * norm_b)))


def unit_rows(vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Stack equal-length vectors into a matrix with unit-length rows.

    Zero rows stay zero, so they score 0 against everything.

    Raises:
        EmptyVectorError: If any vector is empty.
        DimensionMismatchError: If the vectors differ in length.
    """
    if len(vectors) == 0:
        return np.zeros((0, 0), dtype=np.float64)
    dims = {len(v) for v in vectors}
    if 0 in dims:
        raise EmptyVectorError("Cannot compare empty vectors")
    if len(dims) > 1:
        raise DimensionMismatchError(f"Vector dimensions differ: {sorted(dims)}")

    matrix = np.asarray(vectors, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    return matrix / norms


def cross_similarities(rows: Sequence[Sequence[float]], columns: Sequence[Sequence[float]]) -> np.ndarray:
    """Similarity of every vector in ``rows`` to every vector in ``columns``.

    Raises:
        DimensionMismatchError: If the two sets differ in dimension.
    """
    left = unit_rows(rows)
    right = unit_rows(columns)
    if left.size == 0 or right.size == 0:
        return np.zeros((len(rows), len(columns)), dtype=np.float64)
    if left.shape[1] != right.shape[1]:
        raise DimensionMismatchError(f"Vector dimensions differ: {left.shape[1]} vs {right.shape[1]}")
    return np.clip(left @ right.T, 0.0, 1.0)


def pairwise_similarities(vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Symmetric similarity matrix with an exact 1.0 diagonal."""
    unit = unit_rows(vectors)
    if unit.size == 0:
        return np.zeros((len(vectors), len(vectors)), dtype=np.float64)
    matrix = np.clip(unit @ unit.T, 0.0, 1.0)
    # Rounding can leave the product a hair off its transpose
    matrix = np.triu(matrix, 1)
    matrix = matrix + matrix.T
    np.fill_diagonal(matrix, 1.0)
    return matrix


def canonical_pair_key(a: str, b: str) -> tuple[str, str]:
    """Order two ids so that (a, b) and (b, a) share one key."""
    return (a, b) if a < b else (b, a)


def pair_key_string(a: str, b: str) -> str:
    """Canonical pair key as a single ``"id_1:id_2"`` string."""
    id_1, id_2 = canonical_pair_key(a, b)
    return f"{id_1}:{id_2}"


def parse_pair_key(key: str) -> tuple[str, str]:
    """Split a ``"id_1:id_2"`` key back into canonical ids.

    Raises:
        ValueError: If the key has no separator.
    """
    a, sep, b = key.partition(":")
    if not sep or not a or not b:
        raise ValueError(f"Not a pair key: {key!r}")
    return canonical_pair_key(a, b)
