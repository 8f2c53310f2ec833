# =============================================================================
# Unit Tests — Vector Retrieval Service
# =============================================================================

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.exceptions import EmbeddingDimensionError, InvalidFilterError
from app.services.retrieval import RetrievalFilters, RetrievalService
from app.services.vectorstore import VectorSearchResult


def _run(coro):
    return asyncio.run(coro)


def _hit(chunk_id, document_id, score, content="text"):
    return VectorSearchResult(
        chunk_id=chunk_id,
        document_id=document_id,
        content=content,
        page_number=1,
        chunk_index=0,
        similarity_score=score,
        entity_id="480228",
        topics=["capital"],
    )


def _service(results=None, embed=None):
    store = MagicMock()
    store.search = AsyncMock(return_value=results or [])
    store.record_retrievals = AsyncMock()
    record_hits = AsyncMock()
    service = RetrievalService(store, embed=embed or (lambda q: [0.1, 0.2, 0.3]), record_document_hits=record_hits)
    return service, store, record_hits


class TestRetrieve:
    def test_results_ordered_and_bounded(self):
        service, store, _ = _service([_hit("a", 1, 0.5), _hit("b", 2, 0.9), _hit("c", 1, 0.7)])

        chunks = _run(service.retrieve("capital adequacy", k=2))

        assert [c.chunk_id for c in chunks] == ["b", "c"]
        assert chunks[0].similarity == 0.9
        store.search.assert_awaited_once()
        assert store.search.call_args.kwargs["top_k"] == 2

    def test_filters_passed_to_store(self):
        service, store, _ = _service()
        filters = RetrievalFilters(entity_id="480228", topics=("capital",))

        _run(service.retrieve("tier 1", filters=filters, k=3))

        assert store.search.call_args.kwargs["filters"] is filters

    def test_counters_incremented_once_per_document(self):
        service, store, record_hits = _service([_hit("a", 1, 0.9), _hit("b", 1, 0.8), _hit("c", 2, 0.7)])

        _run(service.retrieve("margin", k=5))

        store.record_retrievals.assert_awaited_once_with(["a", "b", "c"])
        record_hits.assert_awaited_once_with([1, 2])

    def test_empty_result_is_valid(self):
        service, store, record_hits = _service([])
        assert _run(service.retrieve("nothing here")) == []
        store.record_retrievals.assert_not_awaited()
        record_hits.assert_not_awaited()

    def test_counter_failure_is_swallowed(self):
        service, store, _ = _service([_hit("a", 1, 0.9)])
        store.record_retrievals.side_effect = RuntimeError("db down")

        chunks = _run(service.retrieve("margin"))

        assert len(chunks) == 1

    def test_dimension_mismatch_propagates(self):
        def bad_embed(query):
            raise EmbeddingDimensionError(expected=1536, actual=1024)

        service, _, _ = _service(embed=bad_embed)
        with pytest.raises(EmbeddingDimensionError):
            _run(service.retrieve("margin"))

    def test_invalid_k(self):
        service, _, _ = _service()
        with pytest.raises(ValueError):
            _run(service.retrieve("margin", k=-1))

    def test_malformed_filter_fails_before_search(self):
        with pytest.raises(InvalidFilterError):
            RetrievalFilters(topics=[])

    def test_citation(self):
        service, _, _ = _service([_hit("a", 12, 0.9)])
        chunk = _run(service.retrieve("margin"))[0]
        assert chunk.citation() == "document 12, p.1"
