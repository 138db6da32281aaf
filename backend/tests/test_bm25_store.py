"""
Tests for the sparse index engine.

Covers build/persist/load, search resolution through the document cache,
cache failure tolerance and the build task helper.
"""

import asyncio
import json
import shutil
import tempfile
from pathlib import Path

import pytest
from hypothesis import given, settings, strategies as st, HealthCheck

from hybridrag.retrieval.bm25_store import IndexState, SparseIndexEngine
from hybridrag.retrieval.tokenizer import TokenizationPipeline
from hybridrag.retrieval.types import Document
from hybridrag.services.cache_service import DocumentCache

from conftest import CORPUS, DictDocumentCache, FakeAsyncRedis, run


def build_engine(store_path: Path, pipeline: TokenizationPipeline, documents=CORPUS, cache=None):
    engine = SparseIndexEngine(cache=cache if cache is not None else DictDocumentCache())
    run(engine.build_index(documents, store_path, pipeline))
    return engine


class TestBuildAndSearch:

    def test_build_makes_engine_queryable(self, temp_index_dir, pipeline):
        engine = build_engine(temp_index_dir / "index.json", pipeline)

        assert engine.is_loaded is True
        assert engine.state == IndexState.PERSISTED
        assert engine.document_count == len(CORPUS)

        results = run(engine.search("merkle tree", limit=5))
        assert [r.document_id for r in results] == [4]
        assert results[0].document == CORPUS[4]
        assert results[0].score > 0

    def test_build_writes_documents_to_cache_by_position(self, temp_index_dir, pipeline):
        cache = DictDocumentCache()
        build_engine(temp_index_dir / "index.json", pipeline, cache=cache)
        assert cache.documents == {i: doc for i, doc in enumerate(CORPUS)}

    def test_build_persists_json_file(self, temp_index_dir, pipeline):
        store_path = temp_index_dir / "nested" / "index.json"
        build_engine(store_path, pipeline)

        assert store_path.exists()
        with open(store_path, "r", encoding="utf-8") as f:
            state = json.load(f)
        assert state["doc_ids"] == list(range(len(CORPUS)))
        # no temp files left behind
        assert [p.name for p in store_path.parent.iterdir()] == ["index.json"]

    def test_results_bounded_and_ordered(self, temp_index_dir, pipeline):
        engine = build_engine(temp_index_dir / "index.json", pipeline)
        for limit in (1, 2, 10):
            results = run(engine.search("smart contracts proof of stake block", limit=limit))
            assert len(results) <= limit
            scores = [r.score for r in results]
            assert scores == sorted(scores, reverse=True)

    def test_rebuild_overwrites_index(self, temp_index_dir, pipeline):
        store_path = temp_index_dir / "index.json"
        build_engine(store_path, pipeline)
        build_engine(store_path, pipeline, documents=[Document(text="only one document")])

        fresh = SparseIndexEngine(cache=DictDocumentCache())
        assert fresh.load_index(store_path, pipeline) is True
        assert fresh.document_count == 1

    def test_zero_document_build(self, temp_index_dir, pipeline):
        store_path = temp_index_dir / "empty.json"
        engine = build_engine(store_path, pipeline, documents=[])

        assert engine.is_loaded is True
        assert run(engine.search("anything", limit=5)) == []

        fresh = SparseIndexEngine(cache=DictDocumentCache())
        assert fresh.load_index(store_path, pipeline) is True
        assert fresh.document_count == 0

    def test_start_build_returns_task(self, temp_index_dir, pipeline):
        engine = SparseIndexEngine(cache=DictDocumentCache())
        store_path = temp_index_dir / "index.json"

        async def scenario():
            task = engine.start_build(CORPUS, store_path, pipeline)
            assert isinstance(task, asyncio.Task)
            await task
            return await engine.search("lightning payments", limit=3)

        results = run(scenario())
        assert results[0].document_id == 3
        assert store_path.exists()


class TestCacheInteraction:

    def test_missing_cached_document_is_dropped(self, temp_index_dir, pipeline):
        documents = [Document(text=f"shared term document {i}") for i in range(10)]
        cache = DictDocumentCache(missing=[7])
        engine = build_engine(temp_index_dir / "index.json", pipeline, documents=documents, cache=cache)

        results = run(engine.search("shared term", limit=10))
        ids = [r.document_id for r in results]
        assert 7 not in ids
        assert len(results) == 9
        assert sorted(cache.get_calls) == list(range(10))

    def test_cache_write_failure_does_not_abort_build(self, temp_index_dir, pipeline):
        cache = DocumentCache(redis_client=FakeAsyncRedis(fail_on_set=True))
        store_path = temp_index_dir / "index.json"
        engine = build_engine(store_path, pipeline, cache=cache)

        assert engine.state == IndexState.PERSISTED
        assert store_path.exists()
        # hits exist in the index but every document lookup misses
        assert run(engine.search("bitcoin", limit=5)) == []

    def test_cache_read_failure_yields_empty_results(self, temp_index_dir, pipeline):
        redis = FakeAsyncRedis()
        engine = build_engine(
            temp_index_dir / "index.json", pipeline, cache=DocumentCache(redis_client=redis),
        )
        assert len(run(engine.search("bitcoin", limit=5))) == 1

        redis.fail_on_get = True
        assert run(engine.search("bitcoin", limit=5)) == []

    def test_cache_exception_is_contained(self, temp_index_dir, pipeline):
        class ExplodingCache(DictDocumentCache):
            async def get(self, document_id):
                raise RuntimeError("boom")

        engine = build_engine(temp_index_dir / "index.json", pipeline, cache=ExplodingCache())
        assert run(engine.search("bitcoin", limit=5)) == []


class TestLoad:

    def test_search_before_load_returns_empty(self, pipeline):
        engine = SparseIndexEngine(cache=DictDocumentCache())
        assert engine.state == IndexState.UNINITIALIZED
        assert engine.is_loaded is False
        assert run(engine.search("bitcoin", limit=5)) == []

    def test_load_missing_file(self, temp_index_dir, pipeline):
        engine = SparseIndexEngine(cache=DictDocumentCache())
        assert engine.load_index(temp_index_dir / "missing.json", pipeline) is False
        assert engine.is_loaded is False
        assert engine.state == IndexState.UNINITIALIZED

    @pytest.mark.parametrize("content", [
        "not json at all",
        json.dumps({"format": "something-else", "version": 1}),
        json.dumps({"format": "hybridrag.bm25", "version": 1, "params": {}}),
        json.dumps([1, 2, 3]),
    ])
    def test_load_corrupt_file(self, temp_index_dir, pipeline, content):
        store_path = temp_index_dir / "corrupt.json"
        store_path.write_text(content, encoding="utf-8")

        engine = SparseIndexEngine(cache=DictDocumentCache())
        assert engine.load_index(store_path, pipeline) is False
        assert engine.is_loaded is False

    def test_load_is_idempotent(self, temp_index_dir, pipeline):
        store_path = temp_index_dir / "index.json"
        build_engine(store_path, pipeline)

        engine = SparseIndexEngine(cache=DictDocumentCache())
        assert engine.load_index(store_path, pipeline) is True
        store_path.unlink()
        assert engine.load_index(store_path, pipeline) is True
        assert engine.state == IndexState.PERSISTED

    def test_loaded_engine_uses_shared_cache(self, temp_index_dir, pipeline):
        cache = DictDocumentCache()
        store_path = temp_index_dir / "index.json"
        build_engine(store_path, pipeline, cache=cache)

        engine = SparseIndexEngine(cache=cache)
        engine.load_index(store_path, pipeline)
        results = run(engine.search("ethereum virtual machine", limit=3))
        assert results[0].document == CORPUS[1]


words = st.sampled_from([
    "bitcoin", "ethereum", "stake", "work", "block", "chain", "contract",
    "fee", "wallet", "node", "hash", "merkle", "validator", "channel",
])


@settings(max_examples=25, deadline=None, suppress_health_check=[HealthCheck.too_slow])
@given(
    texts=st.lists(st.lists(words, min_size=1, max_size=8).map(" ".join), min_size=1, max_size=12),
    query=st.lists(words, min_size=1, max_size=3).map(" ".join),
)
def test_persisted_index_ranks_like_built_index(texts, query):
    """A freshly loaded engine returns the same ids and scores as the builder."""
    pipeline = TokenizationPipeline()
    documents = [Document(text=t) for t in texts]
    temp_dir = Path(tempfile.mkdtemp())
    try:
        cache = DictDocumentCache()
        store_path = temp_dir / "index.json"
        built = SparseIndexEngine(cache=cache)
        run(built.build_index(documents, store_path, pipeline))

        loaded = SparseIndexEngine(cache=cache)
        assert loaded.load_index(store_path, pipeline) is True

        expected = run(built.search(query, limit=5))
        actual = run(loaded.search(query, limit=5))
        assert [(r.document_id, r.score) for r in actual] == [
            (r.document_id, r.score) for r in expected
        ]
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)
