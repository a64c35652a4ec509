"""
bench.py - Benchmark cascade search latency and HNSW recall on a synthetic corpus.

=============================================================================
WHAT THIS SCRIPT DOES
=============================================================================

    1. Generate N synthetic "documents" from a random vocabulary (seeded)
    2. Ingest them all (this builds the HNSW graph)
    3. Run Q synthetic queries through search_with_timings()
    4. Measure graph recall@k of the medium tier against exact faiss search
    5. Print a report (and optionally save it to JSON)

The corpus is made of random words, and the default provider is the hashing
placeholder, so the numbers describe the MECHANICS of the index (latency,
recall of the graph against exact search), not retrieval quality.

=============================================================================
WHAT TO LOOK AT
=============================================================================

    graph recall@k   Should be close to 1.0. If not, raise --m,
                     --ef-construction or --graph-ef.
    rerank p95       Grows with the merged candidate count, which is at least
                     min(--binary-candidates, N).
    total p99        The tail a caller would see.

=============================================================================
USAGE
=============================================================================

    uv run python scripts/bench.py
    uv run python scripts/bench.py --docs 5000 --queries 200 --m 32
    uv run python scripts/bench.py --json-out bench.json

=============================================================================
"""

from __future__ import annotations

import argparse
import json
import logging
import time
from pathlib import Path
from typing import List

import numpy as np

from vss_cascade.bench import graph_recall, summarize_latency
from vss_cascade.config import CascadeConfig
from vss_cascade.engine import CascadeSearchEngine, SearchTimingsMs


def make_vocabulary(rng: np.random.Generator, size: int) -> List[str]:
    letters = np.array(list("abcdefghijklmnopqrstuvwxyz"))
    words = set()
    while len(words) < size:
        length = int(rng.integers(3, 10))
        words.add("".join(rng.choice(letters, size=length)))
    return sorted(words)


def make_text(rng: np.random.Generator, vocab: List[str], min_words: int, max_words: int) -> str:
    n = int(rng.integers(min_words, max_words + 1))
    return " ".join(rng.choice(vocab, size=n))


def main() -> None:
    p = argparse.ArgumentParser(
        description="Benchmark cascade search on a synthetic corpus.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--docs", type=int, default=2000, help="Number of synthetic documents")
    p.add_argument("--queries", type=int, default=100, help="Number of synthetic queries")
    p.add_argument("--vocab", type=int, default=3000, help="Vocabulary size")
    p.add_argument("--seed", type=int, default=0, help="Seed for corpus and graph levels")

    # Graph / pipeline parameters (see CascadeConfig)
    p.add_argument("--m", type=int, default=16, help="Max neighbors per node per layer")
    p.add_argument("--ef-construction", type=int, default=200, help="Construction beam width")
    p.add_argument("--graph-ef", type=int, default=50, help="Stage 2 search beam width")
    p.add_argument("--binary-candidates", type=int, default=500, help="Stage 1 budget")
    p.add_argument("--limit", type=int, default=5, help="Results per query")
    p.add_argument("--k", type=int, default=10, help="Cut-off for graph recall@k")

    p.add_argument("--json-out", default="", help="If provided, write the report to this JSON file")
    p.add_argument("--log-level", default="WARNING", help="Python logging level")
    args = p.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")

    config = CascadeConfig(
        m=args.m,
        ef_construction=args.ef_construction,
        graph_ef=args.graph_ef,
        binary_candidates=args.binary_candidates,
    )
    rng = np.random.default_rng(args.seed)
    engine = CascadeSearchEngine(config=config, rng=rng)

    vocab = make_vocabulary(rng, args.vocab)

    # -------------------------------------------------------------------------
    # Ingest (graph construction)
    # -------------------------------------------------------------------------

    t0 = time.perf_counter()
    for i in range(args.docs):
        engine.ingest(f"doc-{i}", make_text(rng, vocab, 8, 40))
    ingest_s = time.perf_counter() - t0

    # -------------------------------------------------------------------------
    # Search latency
    # -------------------------------------------------------------------------

    query_texts = [make_text(rng, vocab, 3, 10) for _ in range(args.queries)]
    timings: List[SearchTimingsMs] = []
    for q in query_texts:
        _, t = engine.search_with_timings(q, args.limit)
        timings.append(t)
    latency = summarize_latency(timings)

    # -------------------------------------------------------------------------
    # Graph recall (medium tier vs exact cosine)
    # -------------------------------------------------------------------------

    vectors = {node.id: node.vector for node in engine.graph.nodes()}
    query_vectors = [engine.provider.embed(q).medium for q in query_texts]
    recall = graph_recall(engine.graph, vectors, query_vectors, k=args.k, ef=args.graph_ef)

    stats = engine.stats()

    # -------------------------------------------------------------------------
    # Report
    # -------------------------------------------------------------------------

    print("")
    print("=" * 60)
    print("BENCHMARK CONFIGURATION")
    print("=" * 60)
    print(f"Documents:        {args.docs}")
    print(f"Queries:          {args.queries}")
    print(f"m / efC / ef:     {args.m} / {args.ef_construction} / {args.graph_ef}")
    print(f"Stage 1 budget:   {args.binary_candidates}")
    print(f"Graph max level:  {stats.max_level}")
    print(f"Layer sizes:      {engine.graph.layer_sizes()}")
    print("")
    print("=" * 60)
    print("INGEST")
    print("=" * 60)
    print(f"total:            {ingest_s:.2f} s  ({1000 * ingest_s / max(args.docs, 1):.3f} ms/doc)")
    print("")
    print("=" * 60)
    print(f"GRAPH RECALL@{args.k} (vs exact faiss IndexFlatIP)")
    print("=" * 60)
    print(f"mean:             {recall.mean:.4f}")
    print(f"min:              {recall.minimum:.4f}")
    print("")
    print("=" * 60)
    print("SEARCH LATENCY (milliseconds)")
    print("=" * 60)
    for stage in ("encode", "binary", "graph", "rerank", "total"):
        print(
            f"  {stage:<7} p50: {latency[f'{stage}_p50_ms']:8.3f}  "
            f"p95: {latency[f'{stage}_p95_ms']:8.3f}  "
            f"p99: {latency[f'{stage}_p99_ms']:8.3f}"
        )
    print("")

    if args.json_out:
        out_path = Path(args.json_out)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "config": vars(args),
            "ingest_seconds": ingest_s,
            "graph_max_level": stats.max_level,
            "recall": {"k": recall.k, "mean": recall.mean, "min": recall.minimum},
            "latency": latency,
        }
        with open(out_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        print(f"Wrote JSON report to: {out_path}")


if __name__ == "__main__":
    main()
