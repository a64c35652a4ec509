"""
Shared fixtures: configs, seeded random sources, engines and the demo corpus.
"""

from __future__ import annotations

import numpy as np
import pytest

from vss_cascade.config import CascadeConfig
from vss_cascade.engine import CascadeSearchEngine

DEMO_CHUNKS = [
    {
        "id": "A1",
        "content": (
            "Consciousness is a feature that emerges from complex neural networks, "
            "driven by electrical signals."
        ),
        "metadata": {"type": "Theory", "importance": 8},
    },
    {
        "id": "B2",
        "content": (
            "The HNSW graph is a multi-layer structure used for lightning-fast "
            "Approximate Nearest Neighbor search."
        ),
        "metadata": {"type": "Technical", "importance": 7},
    },
    {
        "id": "C3",
        "content": (
            "I often think about the nature of the mind and what it means to be "
            "truly conscious and aware."
        ),
        "metadata": {"type": "Philosophy", "importance": 9},
    },
    {
        "id": "D4",
        "content": (
            "Binary Quantization compresses vectors by 128x, allowing mobile devices "
            "to handle huge datasets."
        ),
        "metadata": {"type": "Technical", "importance": 6},
    },
]

DEMO_QUERY = "What does it mean to be self-aware?"


@pytest.fixture
def config() -> CascadeConfig:
    return CascadeConfig()


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


@pytest.fixture
def engine(rng: np.random.Generator) -> CascadeSearchEngine:
    return CascadeSearchEngine(rng=rng)


@pytest.fixture
def demo_engine(engine: CascadeSearchEngine) -> CascadeSearchEngine:
    engine.ingest_many(DEMO_CHUNKS)
    return engine


def random_vectors(rng: np.random.Generator, n: int, dim: int) -> np.ndarray:
    return rng.standard_normal((n, dim)).astype(np.float32)
