"""Tests for the cosine / Hamming kernels and bit packing."""

from __future__ import annotations

import math

import numpy as np
import pytest
from hypothesis import given
from hypothesis import strategies as st

from vss_cascade.similarity import (
    cosine_matrix,
    cosine_similarity,
    hamming_distance,
    l2_normalize_rows,
    pack_bits,
    sketch_to_bytes,
    unpack_bits,
)

# Three-decimal grid: keeps squared norms well clear of float underflow
finite = st.integers(min_value=-10**6, max_value=10**6).map(lambda x: x / 1000.0)
vectors = st.lists(finite, min_size=1, max_size=64)
sketches = st.integers(min_value=0, max_value=2**32 - 1)


@given(vectors, vectors)
def test_cosine_is_bounded(a, b):
    sim = cosine_similarity(np.array(a), np.array(b))
    assert -1.0 - 1e-9 <= sim <= 1.0 + 1e-9


@given(vectors)
def test_cosine_with_itself_is_one(a):
    v = np.array(a)
    if np.dot(v, v) == 0.0:
        assert cosine_similarity(v, v) == 0.0
    else:
        assert cosine_similarity(v, v) == pytest.approx(1.0, abs=1e-9)


@given(vectors)
def test_cosine_with_zero_vector_is_zero(a):
    zero = np.zeros(len(a))
    assert cosine_similarity(zero, np.array(a)) == 0.0
    assert cosine_similarity(np.array(a), zero) == 0.0


def test_cosine_compares_over_shorter_prefix():
    full = np.array([1.0, 0.0, 5.0, -3.0])
    short = np.array([2.0, 0.0])
    # Only the first two dims count, on both sides
    assert cosine_similarity(full, short) == pytest.approx(1.0)
    assert cosine_similarity(short, full) == pytest.approx(1.0)


def test_cosine_of_empty_vectors_is_zero():
    assert cosine_similarity(np.array([]), np.array([1.0, 2.0])) == 0.0


def test_cosine_known_value():
    a = np.array([1.0, 0.0], dtype=np.float32)
    b = np.array([1.0, 1.0], dtype=np.float32)
    assert cosine_similarity(a, b) == pytest.approx(1.0 / math.sqrt(2.0))


def test_cosine_matrix_matches_pairwise():
    rng = np.random.default_rng(3)
    q = rng.standard_normal((3, 8))
    d = rng.standard_normal((5, 8))
    d[2] = 0.0
    mat = cosine_matrix(q, d)
    assert mat.shape == (3, 5)
    for i in range(3):
        for j in range(5):
            assert mat[i, j] == pytest.approx(cosine_similarity(q[i], d[j]), abs=1e-12)


@given(sketches, sketches)
def test_hamming_is_symmetric(a, b):
    assert hamming_distance(a, b) == hamming_distance(b, a)


@given(sketches)
def test_hamming_identity(a):
    assert hamming_distance(a, a) == 0


@given(sketches, sketches, sketches)
def test_hamming_triangle_inequality(a, b, c):
    assert hamming_distance(a, c) <= hamming_distance(a, b) + hamming_distance(b, c)


def test_hamming_counts_bits():
    assert hamming_distance(0b1011, 0b0001) == 2
    assert hamming_distance(0, 2**32 - 1) == 32


def test_hamming_rejects_negative():
    with pytest.raises(ValueError):
        hamming_distance(-1, 3)


def test_l2_normalize_rows_keeps_zero_rows():
    x = np.array([[3.0, 4.0], [0.0, 0.0]])
    out = l2_normalize_rows(x)
    assert out[0] == pytest.approx([0.6, 0.8])
    assert np.all(out[1] == 0.0)


@given(st.lists(st.integers(min_value=0, max_value=1), min_size=1, max_size=64))
def test_pack_unpack_inverse(bits):
    packed = pack_bits(bits)
    assert unpack_bits(packed, len(bits)).tolist() == bits


def test_pack_bits_is_little_endian():
    assert pack_bits([1, 0, 0]) == 1
    assert pack_bits([0, 0, 1]) == 4


def test_sketch_to_bytes_layout():
    out = sketch_to_bytes(0x01020304, 32)
    assert out.dtype == np.uint8
    assert out.tolist() == [4, 3, 2, 1]
