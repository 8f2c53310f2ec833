# =============================================================================
# Unit Tests — Ingestion Pipeline
# =============================================================================
#
# The vector store is a MagicMock and the document table an in-memory
# tracker, so the pipeline runs without PostgreSQL or an embeddings API.
# =============================================================================

from contextlib import contextmanager
from unittest.mock import MagicMock

import pytest

from app.db.models import SourceCategory
from app.exceptions import DocumentNotFoundError, EmbeddingDimensionError
from app.services.ingestion import DocumentTags, IngestionPipeline, SqlDocumentTracker, suggest_topics

SENTENCE = "Net interest margin widened on loan repricing. "


def _text(length: int) -> str:
    return (SENTENCE * (length // len(SENTENCE) + 1))[:length]


class FakeTracker:
    def __init__(self, tags: DocumentTags | None = None) -> None:
        self.tags = tags or DocumentTags(entity_id="480228", category=SourceCategory.INVESTOR_PRESENTATION)
        self.events: list[tuple] = []

    def mark_processing(self, document_id):
        self.events.append(("processing", document_id))
        return DocumentTags(self.tags.entity_id, self.tags.category, list(self.tags.topics))

    def mark_completed(self, document_id, chunk_count, page_count, topics):
        self.events.append(("completed", document_id, chunk_count, page_count, topics))

    def mark_failed(self, document_id, error):
        self.events.append(("failed", document_id, error))

    @contextmanager
    def deleting(self, document_id):
        if document_id == 404:
            raise DocumentNotFoundError(document_id)
        session = object()
        self.events.append(("begin", document_id, session))
        try:
            yield session
        except Exception:
            self.events.append(("rolled_back", document_id))
            raise
        self.events.append(("deleted", document_id))

    def update_metadata(self, document_id, changes):
        self.events.append(("updated", document_id, changes))
        entity_id = changes.get("entity_id", self.tags.entity_id)
        category = changes.get("category", self.tags.category)
        topics = changes.get("topics", self.tags.topics)
        return DocumentTags(entity_id, category, list(topics))


def _fake_embed(texts):
    return [[0.1, 0.2, 0.3] for _ in texts]


def _pipeline(store=None, tracker=None, embed=_fake_embed):
    store = store or MagicMock()
    store.delete_document_chunks.return_value = 0
    return IngestionPipeline(store, tracker=tracker or FakeTracker(), embed=embed), store


class TestProcessDocument:
    def test_three_page_document_is_chunked_and_stored(self):
        tracker = FakeTracker()
        pipeline, store = _pipeline(tracker=tracker)
        pages = [(1, _text(900)), (2, _text(500)), (3, _text(400))]

        result = pipeline.process_document(7, pages, chunk_size=512, chunk_overlap=100)

        assert 4 <= result.chunk_count <= 5
        assert result.page_count == 3

        document_id, contents, embeddings, metadatas = store.add_chunks.call_args.args
        assert document_id == 7
        assert len(contents) == len(embeddings) == result.chunk_count
        assert [m["chunk_index"] for m in metadatas] == list(range(result.chunk_count))
        assert all(m["entity_id"] == "480228" for m in metadatas)
        assert tracker.events[-1][0] == "completed"

    def test_old_chunks_removed_before_reingestion(self):
        pipeline, store = _pipeline()
        store.delete_document_chunks.return_value = 3
        pipeline.process_document(7, [(1, "Capital ratios remain strong.")])
        store.delete_document_chunks.assert_called_once_with(7)

    def test_topics_suggested_when_document_has_none(self):
        tracker = FakeTracker()
        pipeline, store = _pipeline(tracker=tracker)
        result = pipeline.process_document(7, [(1, "Liquidity and the Tier 1 capital position improved.")])
        assert "liquidity" in result.topics
        assert "capital" in result.topics
        metadatas = store.add_chunks.call_args.args[3]
        assert metadatas[0]["topics"] == result.topics

    def test_embedding_failure_cleans_up_and_propagates(self):
        tracker = FakeTracker()

        def bad_embed(texts):
            raise EmbeddingDimensionError(expected=1536, actual=768)

        pipeline, store = _pipeline(tracker=tracker, embed=bad_embed)

        with pytest.raises(EmbeddingDimensionError):
            pipeline.process_document(7, [(1, _text(600))])

        # Once before chunking, once for cleanup
        assert store.delete_document_chunks.call_count == 2
        store.add_chunks.assert_not_called()
        assert tracker.events[-1][0] == "failed"
        assert "1536" in tracker.events[-1][2]

    def test_store_failure_after_partial_insert_cleans_up(self):
        tracker = FakeTracker()
        pipeline, store = _pipeline(tracker=tracker)
        store.add_chunks.side_effect = RuntimeError("connection lost")

        with pytest.raises(RuntimeError):
            pipeline.process_document(7, [(1, _text(600))])

        assert store.delete_document_chunks.call_count == 2
        assert tracker.events[-1][:2] == ("failed", 7)

    def test_empty_document_fails(self):
        tracker = FakeTracker()
        pipeline, _ = _pipeline(tracker=tracker)
        with pytest.raises(ValueError, match="no text chunks"):
            pipeline.process_document(7, [(1, "   ")])
        assert tracker.events[-1][0] == "failed"


class TestMaintenance:
    def test_delete_document_returns_chunk_count(self):
        tracker = FakeTracker()
        pipeline, store = _pipeline(tracker=tracker)
        store.delete_document_chunks.return_value = 12
        assert pipeline.delete_document(7) == 12
        assert ("deleted", 7) in tracker.events

    def test_delete_runs_chunks_and_document_in_one_transaction(self):
        tracker = FakeTracker()
        pipeline, store = _pipeline(tracker=tracker)
        store.delete_document_chunks.return_value = 5

        pipeline.delete_document(7)

        _, _, session = tracker.events[0]
        store.delete_document_chunks.assert_called_once_with(7, session=session)
        assert tracker.events[-1] == ("deleted", 7)

    def test_chunk_delete_failure_keeps_document(self):
        tracker = FakeTracker()
        pipeline, store = _pipeline(tracker=tracker)
        store.delete_document_chunks.side_effect = RuntimeError("connection lost")

        with pytest.raises(RuntimeError):
            pipeline.delete_document(7)

        assert ("rolled_back", 7) in tracker.events
        assert ("deleted", 7) not in tracker.events

    def test_sql_tracker_rolls_back_with_chunks(self, monkeypatch):
        session = MagicMock()
        doc = object()
        session.get.return_value = doc

        @contextmanager
        def fake_session():
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise

        monkeypatch.setattr("app.services.ingestion.get_sync_session", fake_session)
        tracker = SqlDocumentTracker()

        with pytest.raises(RuntimeError):
            with tracker.deleting(7):
                raise RuntimeError("chunk delete failed")
        session.delete.assert_not_called()
        session.rollback.assert_called_once()

        with tracker.deleting(7) as yielded:
            assert yielded is session
        session.delete.assert_called_once_with(doc)
        session.commit.assert_called_once()

    def test_delete_missing_document_raises(self):
        pipeline, _ = _pipeline()
        with pytest.raises(DocumentNotFoundError):
            pipeline.delete_document(404)

    def test_update_metadata_retags_chunks(self):
        tracker = FakeTracker()
        pipeline, store = _pipeline(tracker=tracker)

        tags = pipeline.update_metadata(7, topics=["capital"], entity_id=None)

        assert tags.entity_id is None
        assert tags.topics == ["capital"]
        store.retag_document_chunks.assert_called_once_with(
            7, None, SourceCategory.INVESTOR_PRESENTATION, ["capital"],
        )

    def test_update_metadata_leaves_unset_entity_alone(self):
        tracker = FakeTracker()
        pipeline, _ = _pipeline(tracker=tracker)
        pipeline.update_metadata(7, title="Q2 deck")
        assert tracker.events[-1] == ("updated", 7, {"title": "Q2 deck"})

    def test_update_metadata_clears_category(self):
        tracker = FakeTracker()
        pipeline, store = _pipeline(tracker=tracker)

        tags = pipeline.update_metadata(7, category=None)

        assert tags.category is None
        assert tracker.events[-1] == ("updated", 7, {"category": None})
        store.retag_document_chunks.assert_called_once_with(7, "480228", None, [])

    def test_update_metadata_rejects_unknown_topics(self):
        pipeline, store = _pipeline()
        with pytest.raises(ValueError, match="Unknown topics"):
            pipeline.update_metadata(7, topics=["crypto"])
        store.retag_document_chunks.assert_not_called()


class TestSuggestTopics:
    def test_word_boundaries(self):
        # "minimal" must not match the "nim" keyword
        assert suggest_topics("A minimal change.") == ["general"]

    def test_multiple_topics(self):
        topics = suggest_topics("Digital banking strategy and non-performing loans")
        assert topics == ["asset_quality", "technology", "strategy"]
