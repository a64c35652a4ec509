"""
engine.py - The retrieval orchestrator: chunk store + four-stage search.

=============================================================================
OVERVIEW
=============================================================================

CascadeSearchEngine owns the corpus and runs every query through a cascade
of filters, cheapest first:

    query text
        │
        ▼  provider.embed / embed_tokens        (the only "model" call)
    {nano, medium, full, tokens}
        │
        ├──► Stage 1: Hamming scan of nano sketches over the WHOLE corpus
        │             keep min(500, N) nearest            (faiss IndexBinaryFlat)
        │
        ├──► Stage 2: HNSW beam search on medium vectors, ef=50, layer 0
        │
        ▼  union of both candidate sets (Stage 1 order first, de-duplicated)
        │
        ├──► Stage 3: late-interaction max-sim score per candidate
        ├──► Stage 4: full-precision cosine per candidate
        │
        ▼  combined = 0.6 * late + 0.4 * cosine
        sort descending (stable), truncate to limit

=============================================================================
KEY DECISIONS
=============================================================================

1. WHY TWO CANDIDATE SOURCES?
   The graph is fast but approximate: a badly connected region can hide a
   good chunk. The binary scan is exhaustive but coarse. Their union costs
   little and gives the rerank stages a recall floor the graph alone lacks.

2. DUPLICATE IDS FAIL FAST
   The HNSW graph here has no delete. Overwriting a chunk while its old
   vector stays linked in the graph would leave the graph pointing at a
   representation no chunk has any more. ingest() therefore raises
   DuplicateIdError and changes nothing. To replace content, clear() and
   re-ingest.

3. PROVIDER OUTPUT IS VALIDATED, NEVER PATCHED
   A malformed bundle raises InvalidEmbeddingBundle at ingest and at query
   time. Substituting zeros would silently corrupt the ranking.

4. CONCURRENCY
   One re-entrant lock guards the chunk store, the graph and the binary
   index. ingest() and clear() hold it while mutating; search() holds it
   while reading candidates, so it never sees a half-linked graph node.
   Embedding and Stage 3/4 scoring run outside the lock (chunks are
   immutable once stored).

5. QUERY DEADLINE
   With config.query_deadline_ms set, the clock starts before embedding.
   If it runs out during Stage 3/4 scoring, scoring stops, a warning is
   logged, and the candidates scored so far are ranked and returned with
   timings.truncated=True. It is a best-effort partial answer, not an
   exception. With no deadline (the default) every search runs to
   completion.

=============================================================================
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from vss_cascade.binary_index import BinaryPrefilter
from vss_cascade.config import CascadeConfig
from vss_cascade.errors import DuplicateIdError
from vss_cascade.hnsw import HNSWGraph
from vss_cascade.late_interaction import LateInteractionScorer
from vss_cascade.matryoshka import (
    EmbeddingBundle,
    EmbeddingProvider,
    HashingProvider,
    TokenData,
    validate_bundle,
    validate_token_data,
)
from vss_cascade.similarity import cosine_similarity, hamming_distance

logger = logging.getLogger(__name__)

# =============================================================================
# DATA CLASSES
# =============================================================================

_KNOWN_METADATA = ("type", "importance", "created", "last_accessed")


@dataclass(frozen=True, eq=False)
class ChunkMetadata:
    """
    Caller metadata: a few well-known optional fields plus free-form extras.

    eq=False because `extra` is a plain mapping; compare to_dict() output instead.

    The engine never reads any of it; it is carried through to results.
    """

    type: Optional[str] = None  # e.g. "Technical", "Philosophy"
    importance: Optional[float] = None  # Caller-defined priority
    created: Optional[float] = None  # Unix timestamp
    last_accessed: Optional[float] = None  # Unix timestamp
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "ChunkMetadata":
        """Split a free-form dict into well-known fields and `extra`."""
        if data is None:
            return cls()
        if isinstance(data, ChunkMetadata):
            return data
        known = {key: data[key] for key in _KNOWN_METADATA if key in data}
        extra = {key: value for key, value in data.items() if key not in known}
        return cls(**known, extra=extra)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.extra)
        for key in _KNOWN_METADATA:
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        return out


@dataclass(frozen=True, eq=False)
class Chunk:
    """One stored piece of text with every representation the search needs."""

    id: str
    content: str
    metadata: ChunkMetadata
    bundle: EmbeddingBundle
    token_data: TokenData


@dataclass(frozen=True)
class ScoreBreakdown:
    """
    The individual signals behind one result.

    binary is a distance (lower = closer); the other two are similarities.
    """

    binary: int  # Hamming distance between nano sketches
    late_interaction: float  # Stage 3 max-sim score
    final_cosine: float  # Stage 4 full-precision cosine


@dataclass(frozen=True, eq=False)
class SearchResult:
    """
    A ranked hit. score is derived from the breakdown:

        score == config.combine(breakdown.late_interaction, breakdown.final_cosine)
    """

    chunk: Chunk
    score: float
    breakdown: ScoreBreakdown

    @property
    def id(self) -> str:
        return self.chunk.id


@dataclass(frozen=True)
class SearchTimingsMs:
    """
    Where the time went for one search.

    encode_ms usually dominates with a real model; with the hashing
    placeholder, rerank_ms does.
    """

    encode_ms: float  # Provider calls for the query
    binary_ms: float  # Stage 1
    graph_ms: float  # Stage 2
    rerank_ms: float  # Stages 3 + 4, including the final sort
    total_ms: float
    candidates: int = 0  # Size of the merged candidate set
    truncated: bool = False  # True if the query deadline cut Stage 3/4 short


@dataclass(frozen=True)
class EngineStats:
    chunks: int
    graph_nodes: int
    max_level: int
    entry_point: Optional[str]


_NO_TIMINGS = SearchTimingsMs(encode_ms=0.0, binary_ms=0.0, graph_ms=0.0, rerank_ms=0.0, total_ms=0.0)


# =============================================================================
# ENGINE
# =============================================================================


class CascadeSearchEngine:
    """
    In-memory multi-stage semantic search over text chunks.

    Typical use:

        engine = CascadeSearchEngine()
        engine.ingest("C3", "I often think about the nature of the mind ...")
        for hit in engine.search("What does it mean to be self-aware?", limit=3):
            print(hit.id, hit.score, hit.breakdown)
    """

    def __init__(
        self,
        config: Optional[CascadeConfig] = None,
        provider: Optional[EmbeddingProvider] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        """
        Args:
            config: Graph and pipeline parameters (fixed for this engine)
            provider: Embedding backend; defaults to HashingProvider(config)
            rng: Random source for graph levels; seed it for reproducible graphs
        """
        self.config = config or CascadeConfig()
        self.provider: EmbeddingProvider = provider or HashingProvider(self.config)
        self.scorer = LateInteractionScorer(self.provider)

        self._rng = rng if rng is not None else np.random.default_rng()
        self._lock = threading.RLock()
        self._chunks: Dict[str, Chunk] = {}
        self._graph = HNSWGraph.from_config(self.config, rng=self._rng)
        self._prefilter = BinaryPrefilter(self.config.nano_bits)

        logger.info(
            "cascade engine ready (m=%d, ef_construction=%d, provider=%s)",
            self.config.m,
            self.config.ef_construction,
            type(self.provider).__name__,
        )

    # -------------------------------------------------------------------------
    # Corpus
    # -------------------------------------------------------------------------

    @property
    def graph(self) -> HNSWGraph:
        return self._graph

    def __len__(self) -> int:
        return len(self._chunks)

    def __contains__(self, chunk_id: object) -> bool:
        return chunk_id in self._chunks

    def get(self, chunk_id: str) -> Optional[Chunk]:
        return self._chunks.get(chunk_id)

    def ingest(
        self,
        chunk_id: str,
        content: str,
        metadata: Optional[Mapping[str, Any]] = None,
        importance: Optional[Sequence[float]] = None,
    ) -> Chunk:
        """
        Embed, store and index one chunk.

        Args:
            chunk_id: Caller-assigned unique id
            content: The text
            metadata: Optional free-form metadata (see ChunkMetadata)
            importance: Optional per-token weights for late interaction, one
                per whitespace token of `content` (default 1.0 each)

        Returns:
            The stored Chunk

        Raises:
            DuplicateIdError: chunk_id was already ingested (nothing changes)
            InvalidEmbeddingBundle: the provider broke its output contract
            ValueError: importance does not match the token count or is negative
        """
        if not isinstance(chunk_id, str) or not chunk_id:
            raise ValueError("chunk_id must be a non-empty string")
        if chunk_id in self._chunks:
            raise DuplicateIdError(chunk_id)

        bundle, token_data = self._embed(content or "")
        if importance is not None:
            token_data = token_data.with_importance(importance)
        chunk = Chunk(
            id=chunk_id,
            content=content or "",
            metadata=ChunkMetadata.from_mapping(metadata),
            bundle=bundle,
            token_data=token_data,
        )

        with self._lock:
            # checked again: another thread may have won the race while we embedded
            if chunk_id in self._chunks:
                raise DuplicateIdError(chunk_id)
            self._graph.insert(chunk_id, bundle.medium)
            self._prefilter.add(chunk_id, bundle.nano)
            self._chunks[chunk_id] = chunk

        return chunk

    def ingest_many(self, items: Iterable[Mapping[str, Any]]) -> List[Chunk]:
        """Ingest dicts shaped like {"id": ..., "content": ..., "metadata": {...}, "importance": [...]}."""
        return [
            self.ingest(
                item["id"],
                item.get("content", ""),
                item.get("metadata"),
                item.get("importance"),
            )
            for item in items
        ]

    def clear(self) -> None:
        """Drop every chunk and start a fresh graph with the same parameters."""
        with self._lock:
            dropped = len(self._chunks)
            self._chunks = {}
            self._graph = HNSWGraph.from_config(self.config, rng=self._rng)
            self._prefilter.reset()
        logger.info("cascade engine cleared (%d chunks dropped)", dropped)

    def stats(self) -> EngineStats:
        with self._lock:
            return EngineStats(
                chunks=len(self._chunks),
                graph_nodes=len(self._graph),
                max_level=self._graph.max_level,
                entry_point=self._graph.entry_point,
            )

    def _embed(self, text: str) -> Tuple[EmbeddingBundle, TokenData]:
        bundle = validate_bundle(self.provider.embed(text), self.config)
        token_data = validate_token_data(self.provider.embed_tokens(text), self.config)
        return bundle, token_data

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    def search(self, query: str, limit: Optional[int] = None) -> List[SearchResult]:
        """
        Rank chunks against a query. The simple interface without timings.

        Args:
            query: Query text
            limit: Maximum number of results (default config.default_limit)

        Returns:
            Up to `limit` results, highest combined score first. Empty for a
            blank query or an empty corpus.
        """
        results, _ = self.search_with_timings(query, limit)
        return results

    def search_with_timings(
        self, query: str, limit: Optional[int] = None
    ) -> Tuple[List[SearchResult], SearchTimingsMs]:
        """
        Rank chunks against a query and report per-stage timings.

        THE ALGORITHM:
        --------------
        1. Blank query or empty corpus: return [] immediately
        2. Embed the query (bundle + token data) with the ingest provider
        3. Stage 1: nearest nano sketches, min(binary_candidates, N)
        4. Stage 2: graph search, ef=graph_ef, layer 0, medium tier
        5. Merge ids (Stage 1 order, then new Stage 2 ids)
        6. Stage 3 + 4 for every candidate, combined with the config weights
        7. Stable sort by combined score, descending; truncate to limit
        """
        n = self.config.default_limit if limit is None else limit
        if isinstance(n, bool) or not isinstance(n, int) or n <= 0:
            raise ValueError(f"limit must be a positive int, got {limit!r}")

        if not (query or "").strip() or not self._chunks:
            return [], _NO_TIMINGS

        t0 = time.perf_counter_ns()
        deadline_ns: Optional[int] = None
        if self.config.query_deadline_ms is not None:
            deadline_ns = t0 + int(self.config.query_deadline_ms * 1e6)

        # --- Embed the query ---
        q_bundle, q_tokens = self._embed(query)
        t1 = time.perf_counter_ns()

        with self._lock:
            # --- Stage 1: binary prefilter ---
            binary_hits = self._prefilter.nearest(q_bundle.nano, self.config.binary_candidates)
            t2 = time.perf_counter_ns()

            # --- Stage 2: graph search ---
            graph_hits = self._graph.search(q_bundle.medium, self.config.graph_ef, 0)
            t3 = time.perf_counter_ns()

            merged = dict.fromkeys(chunk_id for chunk_id, _ in binary_hits)
            merged.update(dict.fromkeys(graph_hits))
            candidates = [self._chunks[c] for c in merged if c in self._chunks]

        logger.debug(
            "search: stage1=%d stage2=%d merged=%d",
            len(binary_hits),
            len(graph_hits),
            len(candidates),
        )

        # --- Stage 3 + 4: rerank ---
        results: List[SearchResult] = []
        truncated = False
        for chunk in candidates:
            if deadline_ns is not None and time.perf_counter_ns() > deadline_ns:
                truncated = True
                logger.warning(
                    "search deadline of %.1f ms hit after scoring %d/%d candidates",
                    self.config.query_deadline_ms,
                    len(results),
                    len(candidates),
                )
                break

            late = self.scorer.score_tokens(q_tokens, chunk.token_data)
            cosine = cosine_similarity(q_bundle.full, chunk.bundle.full)
            results.append(
                SearchResult(
                    chunk=chunk,
                    score=self.config.combine(late, cosine),
                    breakdown=ScoreBreakdown(
                        binary=hamming_distance(q_bundle.nano, chunk.bundle.nano),
                        late_interaction=late,
                        final_cosine=cosine,
                    ),
                )
            )

        # list.sort is stable, also with reverse=True: equal scores keep merge order
        results.sort(key=lambda r: r.score, reverse=True)
        t4 = time.perf_counter_ns()

        timings = SearchTimingsMs(
            encode_ms=(t1 - t0) / 1e6,
            binary_ms=(t2 - t1) / 1e6,
            graph_ms=(t3 - t2) / 1e6,
            rerank_ms=(t4 - t3) / 1e6,
            total_ms=(t4 - t0) / 1e6,
            candidates=len(candidates),
            truncated=truncated,
        )
        return results[:n], timings
