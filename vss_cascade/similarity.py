"""
similarity.py - Numeric kernels shared by every stage of the cascade.

=============================================================================
OVERVIEW
=============================================================================

Two distances drive the whole engine:

    1. cosine_similarity(a, b): dense vectors. Used by the graph (as the
       distance 1 - cos), by the late-interaction scorer (token vs token),
       and by the final full-precision rerank.

    2. hamming_distance(a, b): packed bit sketches. Used by the Stage 1
       prefilter. Counting differing bits in a 32-bit integer is orders of
       magnitude cheaper than a 768-dim dot product, which is why it can
       scan the whole corpus.

Everything in this module is stateless.

=============================================================================
WHY COSINE OVER THE SHORTER LENGTH?
=============================================================================

Matryoshka tiers are prefixes of each other, so comparing a 768-dim vector
with a 256-dim one is meaningful: both describe the same first 256
dimensions. cosine_similarity therefore compares over min(len(a), len(b))
and restricts BOTH norms to that prefix. The engine itself always
compares same-width tiers, but callers are allowed to mix them.

=============================================================================
"""

from __future__ import annotations

from typing import Iterable

import numpy as np


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """
    Cosine similarity over the common prefix of two vectors.

        cos(a, b) = (a[:n] · b[:n]) / (||a[:n]|| * ||b[:n]||),  n = min(len(a), len(b))

    A zero (or empty) prefix on either side returns 0.0 instead of dividing
    by zero. Accumulation happens in float64 even for float32 inputs, so the
    result does not depend on the storage precision of the tiers.

    Args:
        a: 1D vector
        b: 1D vector, any length

    Returns:
        Similarity in [-1, 1]; in [0, 1] for the non-negative vectors the
        placeholder providers produce.
    """
    n = min(len(a), len(b))
    if n == 0:
        return 0.0

    x = np.asarray(a[:n], dtype=np.float64)
    y = np.asarray(b[:n], dtype=np.float64)

    norm_x = float(np.dot(x, x))
    norm_y = float(np.dot(y, y))
    if norm_x == 0.0 or norm_y == 0.0:
        return 0.0

    return float(np.dot(x, y) / (np.sqrt(norm_x) * np.sqrt(norm_y)))


def cosine_matrix(queries: np.ndarray, docs: np.ndarray) -> np.ndarray:
    """
    Pairwise cosine similarities between two stacks of equal-width rows.

    Rows with zero norm produce 0.0 against everything (same rule as
    cosine_similarity).

    Args:
        queries: shape (q, d)
        docs: shape (n, d)

    Returns:
        float64 matrix of shape (q, n)
    """
    q = l2_normalize_rows(np.asarray(queries, dtype=np.float64))
    d = l2_normalize_rows(np.asarray(docs, dtype=np.float64))
    return q @ d.T


def hamming_distance(a: int, b: int) -> int:
    """
    Number of differing bits between two packed, unsigned bit sketches.

    This is a true metric (symmetric, zero iff equal, triangle inequality),
    so it is safe to rank by it directly.

    Args:
        a: packed sketch, non-negative int
        b: packed sketch, non-negative int

    Returns:
        popcount(a XOR b)
    """
    if a < 0 or b < 0:
        raise ValueError("bit sketches are unsigned; got a negative value")
    return bin(a ^ b).count("1")


def l2_normalize_rows(x: np.ndarray) -> np.ndarray:
    """
    Normalize each row of a matrix to unit length (L2 norm = 1).

    Once rows are unit length, cosine similarity is just a dot product.
    That is what lets faiss.IndexFlatIP act as an exact cosine baseline and
    what makes the sentence-transformers vectors comparable by inner product.

    Zero rows stay zero rather than becoming NaN.

    Args:
        x: 2D array of shape (n_vectors, dim)

    Returns:
        Array of the same shape with unit-length (or zero) rows
    """
    norms = np.linalg.norm(x, axis=1, keepdims=True)
    safe = np.where(norms == 0.0, 1.0, norms)
    return x / safe


# =============================================================================
# BIT PACKING
# =============================================================================
# Bit i of a packed sketch is dimension i of the source vector (little-endian
# bit order). The same layout is used for the nano int and for the bytes
# handed to faiss, so both Hamming computations agree.


def pack_bits(bits: Iterable[int]) -> int:
    """Pack a sequence of 0/1 values into an int, bit i = bits[i]."""
    value = 0
    for i, bit in enumerate(bits):
        if bit:
            value |= 1 << i
    return value


def unpack_bits(value: int, width: int) -> np.ndarray:
    """Inverse of pack_bits: an array of `width` 0/1 uint8 values."""
    return np.array([(value >> i) & 1 for i in range(width)], dtype=np.uint8)


def sketch_to_bytes(value: int, width_bits: int) -> np.ndarray:
    """Little-endian byte view of a packed sketch, as faiss binary indexes expect."""
    raw = int(value).to_bytes(width_bits // 8, byteorder="little")
    return np.frombuffer(raw, dtype=np.uint8).copy()
