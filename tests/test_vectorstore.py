# =============================================================================
# Unit Tests — Vector Store (ChromaDB backend)
# =============================================================================
#
# Tests ChromaDB vector store operations: add, search, metadata filtering,
# retagging and retrieval counters. Uses ChromaDB's in-process mode (no
# external services needed). pgvector tests are skipped here; they require
# a running PostgreSQL instance.
# =============================================================================

import asyncio
import itertools
from unittest.mock import patch

import pytest

from app.config import settings
from app.db.models import SourceCategory
from app.exceptions import EmbeddingDimensionError, InvalidFilterError
from app.services.vectorstore import (
    ChromaVectorStore,
    RetrievalFilters,
    VectorSearchResult,
    _chroma_where,
    _to_chroma_metadata,
)

_collection_ids = itertools.count(1)


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture(autouse=True)
def three_dimensions():
    with patch.object(settings, "embedding_dimensions", 3):
        yield


def _make_store() -> ChromaVectorStore:
    """A fresh store with a unique collection per test."""
    return ChromaVectorStore(collection_name=f"test_collection_{next(_collection_ids)}")


def _meta(index: int, entity_id: str | None = "480228", category=None, topics=None, page: int = 1) -> dict:
    return {
        "chunk_index": index,
        "page_number": page,
        "entity_id": entity_id,
        "category": category,
        "topics": topics or [],
    }


def _seed(store: ChromaVectorStore) -> None:
    store.add_chunks(
        document_id=1,
        contents=["Efficiency ratio improved to 58%", "Deposit costs rose sharply"],
        embeddings=[[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]],
        metadatas=[
            _meta(0, category=SourceCategory.INVESTOR_PRESENTATION, topics=["efficiency"]),
            _meta(1, category=SourceCategory.INVESTOR_PRESENTATION, topics=["liquidity", "earnings"]),
        ],
    )
    store.add_chunks(
        document_id=2,
        contents=["Industry-wide margin compression"],
        embeddings=[[0.9, 0.1, 0.0]],
        metadatas=[_meta(0, entity_id=None, category=SourceCategory.ANALYST_REPORTS, topics=["earnings"])],
    )


class TestChromaVectorStore:
    def test_add_chunks_returns_ids(self):
        store = _make_store()
        ids = store.add_chunks(
            document_id=1,
            contents=["Hello world", "Goodbye world"],
            embeddings=[[0.1] * 3, [0.2] * 3],
            metadatas=[_meta(0), _meta(1)],
        )
        assert ids == ["doc1_chunk0", "doc1_chunk1"]
        assert store.count_chunks(1) == 2

    def test_wrong_width_is_rejected_before_storage(self):
        store = _make_store()
        with pytest.raises(EmbeddingDimensionError):
            store.add_chunks(
                document_id=1,
                contents=["ok", "too wide"],
                embeddings=[[0.1] * 3, [0.1] * 4],
                metadatas=[_meta(0), _meta(1)],
            )
        assert store.count_chunks(1) == 0

    def test_mismatched_batch_raises(self):
        store = _make_store()
        with pytest.raises(ValueError, match="Mismatched chunk batch"):
            store.add_chunks(1, ["a", "b"], [[0.1] * 3], [_meta(0), _meta(1)])

    def test_query_with_wrong_width_raises(self):
        store = _make_store()
        _seed(store)
        with pytest.raises(EmbeddingDimensionError):
            _run(store.search([1.0, 0.0], top_k=2))

    def test_search_orders_by_similarity(self):
        store = _make_store()
        _seed(store)

        results = _run(store.search(query_embedding=[1.0, 0.0, 0.0], top_k=3))

        assert len(results) == 3
        assert all(isinstance(r, VectorSearchResult) for r in results)
        scores = [r.similarity_score for r in results]
        assert scores == sorted(scores, reverse=True)
        assert "Efficiency" in results[0].content
        assert results[0].topics == ["efficiency"]

    def test_search_respects_top_k(self):
        store = _make_store()
        _seed(store)
        assert len(_run(store.search([1.0, 0.0, 0.0], top_k=1))) == 1

    def test_entity_filter(self):
        store = _make_store()
        _seed(store)
        results = _run(store.search([1.0, 0.0, 0.0], top_k=10, filters=RetrievalFilters(entity_id="480228")))
        assert {r.document_id for r in results} == {1}

    def test_topics_filter_matches_any(self):
        store = _make_store()
        _seed(store)
        filters = RetrievalFilters(topics=("efficiency", "liquidity"))
        results = _run(store.search([1.0, 0.0, 0.0], top_k=10, filters=filters))
        assert sorted(r.content for r in results) == [
            "Deposit costs rose sharply",
            "Efficiency ratio improved to 58%",
        ]

    def test_combined_filters(self):
        store = _make_store()
        _seed(store)
        filters = RetrievalFilters(topics=("earnings",), category=SourceCategory.ANALYST_REPORTS)
        results = _run(store.search([1.0, 0.0, 0.0], top_k=10, filters=filters))
        assert [r.document_id for r in results] == [2]
        assert results[0].entity_id is None

    def test_no_match_is_empty_not_error(self):
        store = _make_store()
        _seed(store)
        results = _run(store.search([1.0, 0.0, 0.0], top_k=5, filters=RetrievalFilters(entity_id="999999")))
        assert results == []

    def test_delete_document_chunks(self):
        store = _make_store()
        _seed(store)
        assert store.delete_document_chunks(1) == 2
        assert store.count_chunks(1) == 0
        assert store.count_chunks(2) == 1
        assert store.delete_document_chunks(1) == 0

    def test_retag_replaces_entity_and_topics(self):
        store = _make_store()
        _seed(store)

        retagged = store.retag_document_chunks(1, None, SourceCategory.STRATEGY_ANALYSIS, ["strategy"])
        assert retagged == 2

        # Old topic keys are gone, new ones match
        old = _run(store.search([1.0, 0.0, 0.0], top_k=10, filters=RetrievalFilters(topics=("efficiency",))))
        assert old == []
        new = _run(store.search([1.0, 0.0, 0.0], top_k=10, filters=RetrievalFilters(topics=("strategy",))))
        assert {r.document_id for r in new} == {1}
        assert all(r.category == "strategy_analysis" for r in new)
        assert all(r.entity_id is None for r in new)

    def test_record_retrievals_increments(self):
        store = _make_store()
        _seed(store)

        _run(store.record_retrievals(["doc1_chunk0"]))
        _run(store.record_retrievals(["doc1_chunk0", "doc1_chunk1"]))

        got = store._collection.get(ids=["doc1_chunk0", "doc1_chunk1"], include=["metadatas"])
        counts = dict(zip(got["ids"], (m["retrieval_count"] for m in got["metadatas"])))
        assert counts == {"doc1_chunk0": 2, "doc1_chunk1": 1}


class TestRetrievalFilters:
    def test_empty_topics_rejected(self):
        with pytest.raises(InvalidFilterError):
            RetrievalFilters(topics=())

    def test_unknown_topic_rejected(self):
        with pytest.raises(InvalidFilterError):
            RetrievalFilters(topics=("crypto",))

    def test_category_string_coerced(self):
        assert RetrievalFilters(category="analyst_reports").category is SourceCategory.ANALYST_REPORTS

    def test_unknown_category_rejected(self):
        with pytest.raises(InvalidFilterError):
            RetrievalFilters(category="press_release")

    def test_where_clause(self):
        assert _chroma_where(None) is None
        assert _chroma_where(RetrievalFilters()) is None
        assert _chroma_where(RetrievalFilters(entity_id="1")) == {"entity_id": "1"}
        assert _chroma_where(RetrievalFilters(entity_id="1", topics=("capital", "growth"))) == {
            "$and": [
                {"entity_id": "1"},
                {"$or": [{"topic_capital": True}, {"topic_growth": True}]},
            ]
        }


class TestChromaMetadata:
    def test_sanitises_none_lists_and_topics(self):
        meta = _to_chroma_metadata({
            "page_number": None,
            "source_pages": [1, 2],
            "topics": ["capital", "growth"],
            "category": SourceCategory.EARNINGS_TRANSCRIPT,
        })
        assert meta == {
            "page_number": "",
            "source_pages": "1,2",
            "topics": "capital,growth",
            "topic_capital": True,
            "topic_growth": True,
            "category": "earnings_transcript",
        }
