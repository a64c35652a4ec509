"""
bench.py - Benchmarking utilities for search latency and graph recall.

=============================================================================
OVERVIEW
=============================================================================

Two questions matter when tuning the cascade:

1. LATENCY: How fast is each stage?
   - Query encoding (the provider call)
   - Stage 1 binary scan, Stage 2 graph search, Stages 3+4 rerank
   - Reported as p50 / p95 / p99, because users experience the tail

2. GRAPH RECALL: How much does the HNSW graph miss?
   - recall@k = |graph top-k ∩ exact top-k| / k
   - Ground truth comes from faiss.IndexFlatIP over L2-normalized vectors,
     i.e. exact cosine search
   - Low recall means the graph needs a larger M, efConstruction or search
     ef. (The Stage 1 prefilter softens misses in the engine, but the graph
     should still pull its weight.)

=============================================================================
HOW TO USE THIS MODULE
=============================================================================

    from vss_cascade.bench import graph_recall, summarize_latency

    report = graph_recall(engine.graph, vectors, queries, k=10, ef=50)
    print(report.mean, report.minimum)

    _, timings = engine.search_with_timings("some query")
    print(summarize_latency([timings])["total_p95_ms"])

scripts/bench.py wraps both on a synthetic corpus.

=============================================================================
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Sequence

import faiss  # type: ignore
import numpy as np

from vss_cascade.engine import SearchTimingsMs
from vss_cascade.hnsw import HNSWGraph
from vss_cascade.similarity import l2_normalize_rows

# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass(frozen=True)
class RecallReport:
    """
    Graph recall over a batch of queries.

    Attributes:
        k: Cut-off used for recall@k
        ef: Beam width the graph was searched with
        per_query: recall@k for each query, in input order
    """

    k: int
    ef: int
    per_query: List[float]

    @property
    def mean(self) -> float:
        return float(np.mean(self.per_query)) if self.per_query else 0.0

    @property
    def minimum(self) -> float:
        return float(np.min(self.per_query)) if self.per_query else 0.0


# =============================================================================
# LATENCY
# =============================================================================


def percentile_ms(values: List[float], p: float) -> float:
    """
    Compute a percentile from a list of values (0.0 for an empty list).

    Args:
        values: Latencies in milliseconds
        p: Percentile to compute (0-100)
    """
    if not values:
        return 0.0
    arr = np.asarray(values, dtype="float64")
    return float(np.percentile(arr, p))


def summarize_latency(timings: List[SearchTimingsMs]) -> Dict[str, float]:
    """
    p50/p95/p99 for every stage of search_with_timings().

    Returns:
        Dict with keys like "encode_p50_ms", "graph_p95_ms", "total_p99_ms"
    """
    stages = {
        "encode": [t.encode_ms for t in timings],
        "binary": [t.binary_ms for t in timings],
        "graph": [t.graph_ms for t in timings],
        "rerank": [t.rerank_ms for t in timings],
        "total": [t.total_ms for t in timings],
    }
    out: Dict[str, float] = {}
    for stage, values in stages.items():
        for p in (50, 95, 99):
            out[f"{stage}_p{p}_ms"] = percentile_ms(values, p)
    return out


# =============================================================================
# RECALL
# =============================================================================


def exact_neighbors(
    vectors: Mapping[str, np.ndarray], query: np.ndarray, k: int
) -> List[str]:
    """
    Exact cosine top-k ids, the ground truth for recall.

    Rows are L2-normalized and searched with faiss.IndexFlatIP, so inner
    product equals cosine similarity.

    Args:
        vectors: id -> vector (all the same width)
        query: Query vector of that width
        k: How many neighbors

    Returns:
        Up to k ids, most similar first
    """
    if not vectors or k <= 0:
        return []

    ids = list(vectors.keys())
    mat = l2_normalize_rows(np.vstack([np.asarray(vectors[i], dtype="float32") for i in ids]))
    q = l2_normalize_rows(np.asarray(query, dtype="float32").reshape(1, -1))

    index = faiss.IndexFlatIP(int(mat.shape[1]))
    index.add(np.ascontiguousarray(mat, dtype="float32"))  # type: ignore[call-arg]
    _, rows = index.search(np.ascontiguousarray(q, dtype="float32"), min(k, len(ids)))  # type: ignore[call-arg]
    return [ids[int(r)] for r in rows[0].tolist() if r >= 0]


def recall_at_k(truth: Sequence[str], retrieved: Sequence[str], k: int) -> float:
    """
    |top-k retrieved ∩ top-k truth| / |top-k truth|.

    Returns 1.0 when the truth list is empty (nothing could be missed).
    """
    expected = set(truth[:k])
    if not expected:
        return 1.0
    return len(expected & set(retrieved[:k])) / len(expected)


def graph_recall(
    graph: HNSWGraph,
    vectors: Mapping[str, np.ndarray],
    queries: Sequence[np.ndarray],
    k: int = 10,
    ef: int = 50,
) -> RecallReport:
    """
    recall@k of HNSWGraph.search against exact search, query by query.

    Args:
        graph: A graph built from exactly `vectors`
        vectors: id -> indexed vector
        queries: Query vectors in the same tier
        k: Recall cut-off
        ef: Search beam width (must be >= k to return k results)
    """
    per_query: List[float] = []
    for q in queries:
        truth = exact_neighbors(vectors, q, k)
        found = graph.search(q, max(ef, k), 0)
        per_query.append(recall_at_k(truth, found, k))
    return RecallReport(k=int(k), ef=int(ef), per_query=per_query)
