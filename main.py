"""
main.py - Demo of the four-stage cascade on a tiny corpus.

=============================================================================
WHAT THIS FILE IS
=============================================================================

A self-contained walkthrough, not part of the library. It ingests four short
chunks, runs one query, and prints each result with its score breakdown.

For the library itself, see:
    - vss_cascade/engine.py    (the orchestrator)
    - vss_cascade/hnsw.py      (the graph index)
    - scripts/bench.py         (latency and recall on a synthetic corpus)

=============================================================================
WHAT THIS SCRIPT DEMONSTRATES
=============================================================================

1. Building an engine (HNSW graph construction happens on every ingest)
2. The four stages of a search and their timing
3. Reading a score breakdown:
       - Nano (Hamming distance): lower is better, Stage 1 signal
       - Late interaction:        token max-sim, Stage 3
       - Full cosine:             768-dim cosine, Stage 4
       score = 0.6 * late + 0.4 * cosine

With the default HashingProvider, closeness is LEXICAL: C3 wins because it
shares "what", "it", "to", "be" with the query, not because anything
understands "self-aware". Pass --model to use a real sentence-transformers
model instead (needs the "embeddings" extra).

=============================================================================
USAGE
=============================================================================

    uv run python main.py
    uv run python main.py --query "graph search" --limit 2
    uv run python main.py --model all-mpnet-base-v2

=============================================================================
"""

from __future__ import annotations

import argparse
import logging

import numpy as np

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


def main() -> None:
    p = argparse.ArgumentParser(
        description="Run the cascade search demo.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--query", default=DEMO_QUERY, help="Query text")
    p.add_argument("--limit", type=int, default=3, help="Number of results")
    p.add_argument("--seed", type=int, default=7, help="Seed for HNSW level assignment")
    p.add_argument(
        "--model",
        default=None,
        help="SentenceTransformer model name (default: hashing placeholder, no model)",
    )
    p.add_argument("--log-level", default="WARNING", help="Python logging level")
    args = p.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")

    provider = None
    if args.model:
        # Imported lazily: only this branch needs sentence-transformers
        from vss_cascade.embedder import SentenceTransformerProvider

        print(f"Loading SentenceTransformer model {args.model}...")
        provider = SentenceTransformerProvider(args.model)

    engine = CascadeSearchEngine(provider=provider, rng=np.random.default_rng(args.seed))

    print("=" * 60)
    print("INGESTING CHUNKS (HNSW graph construction)")
    print("=" * 60)
    for item in DEMO_CHUNKS:
        chunk = engine.ingest(item["id"], item["content"], item["metadata"])
        print(f'  Added {chunk.id}: "{chunk.content[:60]}..."')
    print()

    print("=" * 60)
    print("SEARCHING (4-stage pipeline)")
    print("=" * 60)
    print(f'Query: "{args.query}"')
    results, timings = engine.search_with_timings(args.query, args.limit)
    print(f"  Stage 1+2 merged candidates: {timings.candidates}")
    print(
        f"  encode={timings.encode_ms:.3f}ms binary={timings.binary_ms:.3f}ms "
        f"graph={timings.graph_ms:.3f}ms rerank={timings.rerank_ms:.3f}ms"
    )
    print()

    print("=" * 60)
    print("RESULTS")
    print("=" * 60)
    if not results:
        print("No results found.")
        return

    for rank, hit in enumerate(results, start=1):
        b = hit.breakdown
        print(f"[#{rank}] id={hit.id} score={hit.score:.4f}")
        print(f'    "{hit.chunk.content[:80]}..."')
        print(f"    Nano (Hamming distance): {b.binary}  (lower is better)")
        print(f"    Late interaction:        {b.late_interaction:.4f}")
        print(f"    Full cosine:             {b.final_cosine:.4f}")
        print()

    stats = engine.stats()
    print("-" * 60)
    print(f"Total chunks: {stats.chunks}  graph max level: {stats.max_level}")
    print("-" * 60)


if __name__ == "__main__":
    main()
