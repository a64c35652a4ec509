"""
config.py - Constructor-time configuration for the cascade search engine.

=============================================================================
WHAT LIVES HERE
=============================================================================

Every tunable number in the pipeline: graph shape (M, efConstruction, level
decay), Matryoshka tier widths, candidate budgets for Stage 1 and Stage 2,
and the Stage 3/4 score weights.

A CascadeConfig is frozen. An engine keeps the same config for its whole
lifetime; clear() rebuilds the graph with the same values. To try different
parameters, build a new engine.

=============================================================================
THE DEFAULTS
=============================================================================

    m=16, ef_construction=200     Standard HNSW settings for small/medium corpora
    level_factor=1/ln(2)          Each layer holds roughly half the nodes of the one below
    768 / 256 / 128               full / medium / small Matryoshka widths
    64 / 32                       tiny / nano sketch widths in bits
    500 / 50                      Stage 1 prefilter size / Stage 2 graph beam
    0.6 / 0.4                     late-interaction / full-cosine weights

=============================================================================
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from vss_cascade.errors import ConfigError


@dataclass(frozen=True)
class CascadeConfig:
    """
    All knobs for one engine instance.

    Graph parameters feed HNSWGraph, the width fields describe the shape the
    embedding provider must produce, and the rest drive the four-stage
    search in CascadeSearchEngine.
    """

    # --- Graph (HNSW) ---
    m: int = 16  # Max neighbors per node per layer
    ef_construction: int = 200  # Beam width while linking a new node
    level_factor: float = 1.0 / math.log(2.0)  # Level decay: floor(-ln(U) * level_factor)

    # --- Matryoshka tiers ---
    full_dim: int = 768
    medium_dim: int = 256  # The tier indexed by the graph
    small_dim: int = 128
    tiny_bits: int = 64
    nano_bits: int = 32  # The Stage 1 sketch
    token_dim: int = 32  # Width of each late-interaction token vector

    # --- Search pipeline ---
    binary_candidates: int = 500  # Stage 1 keeps min(binary_candidates, corpus size)
    graph_ef: int = 50  # Stage 2 beam width at layer 0
    late_interaction_weight: float = 0.6
    full_cosine_weight: float = 0.4
    default_limit: int = 5
    query_deadline_ms: Optional[float] = None  # None = always run to completion

    def __post_init__(self) -> None:
        positive = {
            "m": self.m,
            "ef_construction": self.ef_construction,
            "full_dim": self.full_dim,
            "medium_dim": self.medium_dim,
            "small_dim": self.small_dim,
            "tiny_bits": self.tiny_bits,
            "nano_bits": self.nano_bits,
            "token_dim": self.token_dim,
            "binary_candidates": self.binary_candidates,
            "graph_ef": self.graph_ef,
            "default_limit": self.default_limit,
        }
        for name, value in positive.items():
            if int(value) <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")

        if not self.level_factor > 0.0:
            raise ConfigError(f"level_factor must be positive, got {self.level_factor}")

        if not (self.small_dim <= self.medium_dim <= self.full_dim):
            raise ConfigError(
                "tier widths must nest: small_dim <= medium_dim <= full_dim "
                f"(got {self.small_dim}, {self.medium_dim}, {self.full_dim})"
            )
        if not (self.nano_bits <= self.tiny_bits <= self.full_dim):
            raise ConfigError(
                "sketch widths must nest: nano_bits <= tiny_bits <= full_dim "
                f"(got {self.nano_bits}, {self.tiny_bits}, {self.full_dim})"
            )
        # faiss binary indexes work on whole bytes
        if self.nano_bits % 8 != 0:
            raise ConfigError(f"nano_bits must be a multiple of 8, got {self.nano_bits}")

        if self.late_interaction_weight < 0.0 or self.full_cosine_weight < 0.0:
            raise ConfigError("score weights must be non-negative")

        if self.query_deadline_ms is not None and self.query_deadline_ms < 0.0:
            raise ConfigError(
                f"query_deadline_ms must be >= 0 or None, got {self.query_deadline_ms}"
            )

    def combine(self, late_interaction: float, full_cosine: float) -> float:
        """Weighted Stage 3 + Stage 4 score (the value results are sorted by)."""
        return float(
            self.late_interaction_weight * late_interaction
            + self.full_cosine_weight * full_cosine
        )
