"""
vss_cascade - Multi-stage approximate nearest-neighbor search over text chunks.

=============================================================================
PACKAGE OVERVIEW
=============================================================================

This package ranks text chunks against a query through a cascade of filters
that get more expensive and more precise at each step:

    Stage 1  32-bit binary sketches, Hamming distance, whole corpus
    Stage 2  HNSW graph search over 256-dim Matryoshka vectors
    Stage 3  token-level late interaction (max-sim)
    Stage 4  768-dim full-precision cosine

Stages 1 and 2 produce candidates cheaply; only those candidates pay for
Stages 3 and 4. The result is approximate: recall is traded for cost.

=============================================================================
MODULE STRUCTURE
=============================================================================

vss_cascade/
├── __init__.py          ← You are here. Package initialization.
├── config.py            ← CascadeConfig: every tunable number
├── errors.py            ← Exception types
├── similarity.py        ← cosine / Hamming kernels, bit packing
├── matryoshka.py        ← Embedding bundles, provider contract, placeholder providers
├── embedder.py          ← sentence-transformers provider (optional extra)
├── hnsw.py              ← HNSW graph index
├── binary_index.py      ← Stage 1 prefilter (faiss IndexBinaryFlat)
├── late_interaction.py  ← Stage 3 max-sim scorer
├── engine.py            ← CascadeSearchEngine: chunk store + the four stages
└── bench.py             ← Latency percentiles and graph recall

HOW THE MODULES FIT TOGETHER:
-----------------------------

1. engine.py is the entry point. CascadeSearchEngine asks a provider for
   embeddings, stores chunks, and feeds the graph and the binary prefilter.

2. matryoshka.py defines what a provider must return. HashingProvider is the
   default: deterministic and lexical, but NOT semantic. For real
   embeddings use embedder.SentenceTransformerProvider.

3. hnsw.py, binary_index.py and late_interaction.py are the stages; they know
   nothing about chunks, only ids and vectors.

=============================================================================
TYPICAL USAGE
=============================================================================

    from vss_cascade.engine import CascadeSearchEngine

    engine = CascadeSearchEngine()
    engine.ingest("B2", "The HNSW graph is a multi-layer structure ...")
    engine.ingest("C3", "I often think about the nature of the mind ...")

    for hit in engine.search("What does it mean to be self-aware?", limit=3):
        print(hit.id, round(hit.score, 4), hit.breakdown)

With a real model:

    from vss_cascade.embedder import SentenceTransformerProvider

    engine = CascadeSearchEngine(provider=SentenceTransformerProvider())

=============================================================================
"""

# embedder is not imported here: it needs the optional "embeddings" extra.
from vss_cascade import bench as bench
from vss_cascade import binary_index as binary_index
from vss_cascade import config as config
from vss_cascade import engine as engine
from vss_cascade import errors as errors
from vss_cascade import hnsw as hnsw
from vss_cascade import late_interaction as late_interaction
from vss_cascade import matryoshka as matryoshka
from vss_cascade import similarity as similarity

__all__ = [
    "bench",
    "binary_index",
    "config",
    "engine",
    "errors",
    "hnsw",
    "late_interaction",
    "matryoshka",
    "similarity",
]
