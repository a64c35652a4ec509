"""End-to-end tests for CascadeSearchEngine."""

from __future__ import annotations

import dataclasses
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from tests.conftest import DEMO_CHUNKS, DEMO_QUERY
from vss_cascade.config import CascadeConfig
from vss_cascade.engine import CascadeSearchEngine, ChunkMetadata
from vss_cascade.errors import DuplicateIdError, InvalidEmbeddingBundle
from vss_cascade.matryoshka import HashingProvider, LengthSeededProvider
from vss_cascade.similarity import hamming_distance


class BrokenMediumProvider(HashingProvider):
    """Returns a bundle whose medium tier is not a prefix of full."""

    def embed(self, text):
        bundle = super().embed(text)
        return dataclasses.replace(bundle, medium=bundle.medium + 1.0)


class WrongWidthTokensProvider(HashingProvider):
    def embed_tokens(self, text):
        td = super().embed_tokens(text)
        return dataclasses.replace(td, embeddings=td.embeddings[:, :4])


# =============================================================================
# Demo corpus
# =============================================================================


def test_demo_query_ranks_c3_first(demo_engine):
    results = demo_engine.search(DEMO_QUERY, limit=3)
    assert [r.id for r in results] == ["C3", "A1", "D4"]
    assert "B2" not in {r.id for r in results}


def test_demo_query_c3_above_b2(demo_engine):
    results = demo_engine.search(DEMO_QUERY, limit=4)
    order = [r.id for r in results]
    assert order.index("C3") < order.index("B2")


def test_result_scores_follow_breakdown(demo_engine, config):
    q = demo_engine.provider.embed(DEMO_QUERY)
    for r in demo_engine.search(DEMO_QUERY, limit=4):
        b = r.breakdown
        assert r.score == config.combine(b.late_interaction, b.final_cosine)
        assert 0.0 <= b.final_cosine <= 1.0
        assert b.late_interaction >= 0.0
        assert b.binary == hamming_distance(q.nano, r.chunk.bundle.nano)


def test_results_are_sorted_and_bounded(demo_engine):
    for limit in (1, 2, 3, 4, 10):
        results = demo_engine.search(DEMO_QUERY, limit=limit)
        assert len(results) == min(limit, 4)
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)
        assert len({r.id for r in results}) == len(results)


def test_default_limit_comes_from_config(rng):
    engine = CascadeSearchEngine(config=CascadeConfig(default_limit=2), rng=rng)
    engine.ingest_many(DEMO_CHUNKS)
    assert len(engine.search(DEMO_QUERY)) == 2


def test_lexical_overlap_wins(demo_engine):
    assert demo_engine.search("graph search", limit=1)[0].id == "B2"


def test_results_carry_chunk_and_metadata(demo_engine):
    top = demo_engine.search(DEMO_QUERY, limit=1)[0]
    assert top.chunk.content.startswith("I often think")
    assert top.chunk.metadata.type == "Philosophy"
    assert top.chunk.metadata.importance == 9


def test_timings_are_reported(demo_engine):
    results, timings = demo_engine.search_with_timings(DEMO_QUERY, limit=2)
    assert len(results) == 2
    assert timings.candidates == 4
    assert not timings.truncated
    for value in (timings.encode_ms, timings.binary_ms, timings.graph_ms, timings.rerank_ms):
        assert 0.0 <= value <= timings.total_ms


def test_candidate_budgets_bound_rerank(rng):
    config = CascadeConfig(binary_candidates=1, graph_ef=1)
    engine = CascadeSearchEngine(config=config, rng=rng)
    engine.ingest_many(DEMO_CHUNKS)
    results, timings = engine.search_with_timings(DEMO_QUERY, limit=4)
    assert 1 <= timings.candidates <= 2
    assert len(results) == timings.candidates


# =============================================================================
# Legacy length-seeded embeddings
# =============================================================================


def test_length_seeded_provider_reproduces_legacy_scores(rng):
    engine = CascadeSearchEngine(provider=LengthSeededProvider(), rng=rng)
    engine.ingest_many(DEMO_CHUNKS)
    results = engine.search(DEMO_QUERY, limit=4)

    assert [r.id for r in results] == ["A1", "D4", "B2", "C3"]
    expected = {"A1": 0.829203, "B2": 0.821942, "C3": 0.819347, "D4": 0.825992}
    hamming = {"A1": 10, "B2": 11, "C3": 9, "D4": 10}
    for r in results:
        assert r.score == pytest.approx(expected[r.id], abs=1e-5)
        assert r.breakdown.binary == hamming[r.id]


# =============================================================================
# Edge cases
# =============================================================================


@pytest.mark.parametrize("query", ["", "   ", "\n\t"])
def test_blank_query_returns_nothing(demo_engine, query):
    results, timings = demo_engine.search_with_timings(query)
    assert results == []
    assert timings.total_ms == 0.0


def test_empty_corpus_returns_nothing(engine):
    assert engine.search(DEMO_QUERY) == []


@pytest.mark.parametrize("limit", [0, -1, 1.5, True, "3"])
def test_bad_limit_raises(demo_engine, limit):
    with pytest.raises(ValueError):
        demo_engine.search(DEMO_QUERY, limit=limit)


def test_empty_content_is_indexed_but_scores_zero(engine):
    engine.ingest("blank", "")
    engine.ingest("text", "what it means to be")
    results = {r.id: r for r in engine.search(DEMO_QUERY, limit=5)}
    assert results["blank"].score == 0.0
    assert results["text"].score > 0.0


def test_empty_id_rejected(engine):
    with pytest.raises(ValueError):
        engine.ingest("", "content")
    assert len(engine) == 0


# =============================================================================
# Ingest contract
# =============================================================================


def test_duplicate_id_raises_and_changes_nothing(demo_engine):
    before = demo_engine.stats()
    original = demo_engine.get("C3")

    with pytest.raises(DuplicateIdError) as exc:
        demo_engine.ingest("C3", "completely different text")
    assert exc.value.chunk_id == "C3"
    assert "C3" in str(exc.value)

    assert demo_engine.stats() == before
    assert demo_engine.get("C3") is original
    assert len(demo_engine.graph) == 4


def test_invalid_bundle_rejected_at_ingest(rng):
    engine = CascadeSearchEngine(provider=BrokenMediumProvider(), rng=rng)
    with pytest.raises(InvalidEmbeddingBundle, match="prefix"):
        engine.ingest("x", "some text")
    assert len(engine) == 0
    assert len(engine.graph) == 0


def test_invalid_token_data_rejected(rng):
    engine = CascadeSearchEngine(provider=WrongWidthTokensProvider(), rng=rng)
    with pytest.raises(InvalidEmbeddingBundle):
        engine.ingest("x", "some text")
    assert len(engine) == 0


def test_invalid_bundle_rejected_at_query_time(demo_engine):
    demo_engine.provider = BrokenMediumProvider()
    with pytest.raises(InvalidEmbeddingBundle):
        demo_engine.search(DEMO_QUERY)


def test_metadata_is_split_into_known_fields_and_extra(engine):
    chunk = engine.ingest(
        "m1", "text", {"type": "Theory", "importance": 8, "created": 1.5, "source": "wiki"}
    )
    meta = chunk.metadata
    assert meta.type == "Theory"
    assert meta.importance == 8
    assert meta.created == 1.5
    assert meta.last_accessed is None
    assert dict(meta.extra) == {"source": "wiki"}
    assert meta.to_dict() == {"type": "Theory", "importance": 8, "created": 1.5, "source": "wiki"}


def test_metadata_defaults():
    assert ChunkMetadata.from_mapping(None).to_dict() == {}
    existing = ChunkMetadata(type="x")
    assert ChunkMetadata.from_mapping(existing) is existing
    assert ChunkMetadata().to_dict() == {}


def test_metadata_is_hashable(engine):
    chunk = engine.ingest("h1", "text", {"type": "Theory", "tags": ["a", "b"]})
    assert {chunk.metadata: "ok"}[chunk.metadata] == "ok"
    assert hash(ChunkMetadata()) is not None


def test_ingest_applies_token_importance(engine):
    engine.ingest("muted", "what it means to be", importance=[0.0, 0.0, 0.0, 0.0, 0.0])
    engine.ingest("plain", "what it means to be")
    results = {r.id: r for r in engine.search(DEMO_QUERY, limit=2)}

    assert engine.get("muted").token_data.importance.tolist() == [0.0] * 5
    assert results["muted"].breakdown.late_interaction == 0.0
    assert results["plain"].breakdown.late_interaction > 0.0
    # full cosine does not depend on token weights
    assert results["muted"].breakdown.final_cosine == results["plain"].breakdown.final_cosine


@pytest.mark.parametrize("importance", [[1.0], [1.0, -1.0, 1.0]])
def test_ingest_rejects_bad_importance(engine, importance):
    with pytest.raises(ValueError):
        engine.ingest("x", "three token text", importance=importance)
    assert "x" not in engine
    assert len(engine.graph) == 0


def test_ingest_many_passes_importance(engine):
    engine.ingest_many([{"id": "w", "content": "alpha beta", "importance": [2.0, 0.5]}])
    assert engine.get("w").token_data.importance.tolist() == [2.0, 0.5]


def test_ingest_many_returns_chunks_in_order(engine):
    chunks = engine.ingest_many(DEMO_CHUNKS)
    assert [c.id for c in chunks] == ["A1", "B2", "C3", "D4"]
    assert "A1" in engine
    assert "Z9" not in engine
    assert engine.get("Z9") is None


# =============================================================================
# Lifecycle
# =============================================================================


def test_stats(demo_engine):
    stats = demo_engine.stats()
    assert stats.chunks == 4
    assert stats.graph_nodes == 4
    assert stats.entry_point in {"A1", "B2", "C3", "D4"}
    assert stats.max_level == demo_engine.graph.node(stats.entry_point).level


def test_clear_is_idempotent_and_keeps_parameters(rng):
    config = CascadeConfig(m=8, ef_construction=32)
    engine = CascadeSearchEngine(config=config, rng=rng)
    engine.ingest_many(DEMO_CHUNKS)

    engine.clear()
    engine.clear()
    assert len(engine) == 0
    assert engine.stats().entry_point is None
    assert engine.search(DEMO_QUERY) == []
    assert engine.graph.m == 8
    assert engine.graph.ef_construction == 32

    # Ids are free again after clear
    engine.ingest_many(DEMO_CHUNKS)
    assert engine.search(DEMO_QUERY, limit=1)[0].id == "C3"


def test_same_seed_gives_same_graph():
    a = CascadeSearchEngine(rng=np.random.default_rng(5))
    b = CascadeSearchEngine(rng=np.random.default_rng(5))
    a.ingest_many(DEMO_CHUNKS)
    b.ingest_many(DEMO_CHUNKS)
    assert a.stats() == b.stats()
    assert a.graph.layer_sizes() == b.graph.layer_sizes()


def test_logs_engine_lifecycle(caplog, rng):
    with caplog.at_level(logging.INFO, logger="vss_cascade.engine"):
        engine = CascadeSearchEngine(rng=rng)
        engine.clear()
    messages = [rec.getMessage() for rec in caplog.records]
    assert any("cascade engine ready" in m for m in messages)
    assert any("cleared" in m for m in messages)


# =============================================================================
# Deadline
# =============================================================================


def test_zero_deadline_truncates_with_warning(caplog, rng):
    engine = CascadeSearchEngine(config=CascadeConfig(query_deadline_ms=0.0), rng=rng)
    engine.ingest_many(DEMO_CHUNKS)

    with caplog.at_level(logging.WARNING, logger="vss_cascade.engine"):
        results, timings = engine.search_with_timings(DEMO_QUERY, limit=3)

    assert timings.truncated
    assert len(results) < 4
    assert any("deadline" in rec.getMessage() for rec in caplog.records)


def test_generous_deadline_does_not_truncate(rng):
    engine = CascadeSearchEngine(config=CascadeConfig(query_deadline_ms=60_000.0), rng=rng)
    engine.ingest_many(DEMO_CHUNKS)
    results, timings = engine.search_with_timings(DEMO_QUERY, limit=3)
    assert not timings.truncated
    assert [r.id for r in results] == ["C3", "A1", "D4"]


# =============================================================================
# Concurrency
# =============================================================================


def test_concurrent_ingest_and_search(rng):
    engine = CascadeSearchEngine(config=CascadeConfig(m=8, ef_construction=32), rng=rng)
    texts = [f"chunk number {i} about topic {i % 7}" for i in range(60)]

    def work(i):
        engine.ingest(f"c{i}", texts[i])
        return engine.search(f"topic {i % 7}", limit=3)

    with ThreadPoolExecutor(max_workers=8) as pool:
        outputs = list(pool.map(work, range(60)))

    assert len(engine) == 60
    assert len(engine.graph) == 60
    assert all(1 <= len(out) <= 3 for out in outputs)


def test_concurrent_duplicate_ingest_has_one_winner(rng):
    engine = CascadeSearchEngine(rng=rng)
    barrier = threading.Barrier(6)
    outcomes = []

    def work():
        barrier.wait()
        try:
            engine.ingest("same", "racing writers")
            outcomes.append("ok")
        except DuplicateIdError:
            outcomes.append("dup")

    threads = [threading.Thread(target=work) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("dup") == 5
    assert len(engine.graph) == 1
