# =============================================================================
# Ingestion Pipeline — Chunk, Embed, Store, Track
# =============================================================================
#
# PIPELINE:
#   1. Mark the document PROCESSING and read its tags (entity, category,
#      topics). Documents without topics get keyword-suggested ones.
#   2. Delete any chunks from a previous attempt (re-ingestion is idempotent).
#   3. Split each page independently (chunker.chunk_pages).
#   4. Embed all chunk texts in batches (embedder.embed_batch).
#   5. Insert every chunk in one batch, tagged with the document tags.
#   6. Mark COMPLETED with chunk_count / page_count.
#
# On ANY failure: delete partially written chunks, mark FAILED with the
# error message, re-raise. A failed document never leaves searchable
# chunks behind.
#
# DESIGN DECISION: The document table is reached through a DocumentTracker
# protocol. SqlDocumentTracker is the production implementation (sync
# session, Celery); tests pass an in-memory fake.
# =============================================================================

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterator, Sequence
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.db.engine import get_sync_session
from app.db.models import Chunk, Document, DocumentStatus, SourceCategory, Topic
from app.exceptions import DocumentNotFoundError
from app.services.chunker import chunk_pages
from app.services.embedder import embed_batch
from app.services.vectorstore import VectorStore

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class DocumentTags:
    entity_id: str | None = None
    category: SourceCategory | None = None
    topics: list[str] = field(default_factory=list)


@dataclass
class IngestionResult:
    document_id: int
    chunk_count: int
    page_count: int
    topics: list[str]


# ---------------------------------------------------------------------------
# Topic suggestion
# ---------------------------------------------------------------------------

TOPIC_KEYWORDS: dict[Topic, tuple[str, ...]] = {
    Topic.LIQUIDITY: ("liquidity", "liquid assets", "cash flow", "funding"),
    Topic.CAPITAL: ("capital", "equity", "tier 1", "leverage ratio"),
    Topic.ASSET_QUALITY: ("asset quality", "npl", "non-performing", "loan loss", "credit quality"),
    Topic.EARNINGS: ("earnings", "profitability", "income", "roe", "roa", "nim"),
    Topic.RISK_MANAGEMENT: ("risk", "var", "stress test", "compliance"),
    Topic.EFFICIENCY: ("efficiency", "operating", "cost", "expense"),
    Topic.GROWTH: ("growth", "expansion", "acquisition", "market share"),
    Topic.TECHNOLOGY: ("technology", "digital", "fintech", "automation"),
    Topic.STRATEGY: ("strategy", "strategic", "plan", "initiative"),
}

_TOPIC_PATTERNS = {
    topic: re.compile(r"\b(?:" + "|".join(re.escape(k) for k in keywords) + r")\b")
    for topic, keywords in TOPIC_KEYWORDS.items()
}


def suggest_topics(text: str) -> list[str]:
    """
    Keyword-based topic detection. Keywords match on word boundaries, so
    "nim" does not fire on "minimal". Falls back to ["general"].
    """
    lowered = text.lower()
    topics = [topic.value for topic, pattern in _TOPIC_PATTERNS.items() if pattern.search(lowered)]
    return topics or [Topic.GENERAL.value]


# ---------------------------------------------------------------------------
# Document tracking
# ---------------------------------------------------------------------------


class DocumentTracker(Protocol):
    def mark_processing(self, document_id: int) -> DocumentTags: ...

    def mark_completed(
        self, document_id: int, chunk_count: int, page_count: int, topics: list[str],
    ) -> None: ...

    def mark_failed(self, document_id: int, error: str) -> None: ...

    def deleting(self, document_id: int) -> AbstractContextManager[Session | None]: ...

    def update_metadata(self, document_id: int, changes: dict) -> DocumentTags: ...


class SqlDocumentTracker:
    """Document status bookkeeping on the sync (Celery) session."""

    def _get(self, session, document_id: int) -> Document:
        doc = session.get(Document, document_id)
        if doc is None:
            raise DocumentNotFoundError(document_id)
        return doc

    def mark_processing(self, document_id: int) -> DocumentTags:
        with get_sync_session() as session:
            doc = self._get(session, document_id)
            doc.status = DocumentStatus.PROCESSING
            doc.error_message = None
            return DocumentTags(doc.entity_id, doc.category, list(doc.topics or []))

    def mark_completed(
        self, document_id: int, chunk_count: int, page_count: int, topics: list[str],
    ) -> None:
        with get_sync_session() as session:
            doc = self._get(session, document_id)
            doc.status = DocumentStatus.COMPLETED
            doc.chunk_count = chunk_count
            doc.page_count = page_count
            doc.topics = topics

    def mark_failed(self, document_id: int, error: str) -> None:
        with get_sync_session() as session:
            doc = session.get(Document, document_id)
            if doc is None:
                logger.warning("Cannot mark missing document_id=%d as failed", document_id)
                return
            doc.status = DocumentStatus.FAILED
            doc.error_message = error[:MAX_ERROR_LENGTH]
            doc.chunk_count = 0

    @contextmanager
    def deleting(self, document_id: int) -> Iterator[Session]:
        """
        One transaction for a document delete. The body removes the chunks
        on the yielded session; the document row goes on a clean exit and
        both roll back together on error.
        """
        with get_sync_session() as session:
            doc = self._get(session, document_id)
            yield session
            session.delete(doc)

    def update_metadata(self, document_id: int, changes: dict) -> DocumentTags:
        with get_sync_session() as session:
            doc = self._get(session, document_id)
            for key, value in changes.items():
                setattr(doc, key, value)
            return DocumentTags(doc.entity_id, doc.category, list(doc.topics or []))


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


UNSET: Any = object()  # "not provided", distinct from an explicit None


class IngestionPipeline:
    def __init__(
        self,
        vector_store: VectorStore,
        tracker: DocumentTracker | None = None,
        embed: Callable[[Sequence[str]], list[list[float]]] = embed_batch,
    ) -> None:
        self._store = vector_store
        self._tracker = tracker or SqlDocumentTracker()
        self._embed = embed

    def process_document(
        self,
        document_id: int,
        pages: Sequence[tuple[int, str]],
        chunk_size: int | None = None,
        chunk_overlap: int | None = None,
    ) -> IngestionResult:
        """
        Run the full pipeline for one document.

        Raises whatever failed (after cleanup and FAILED marking), including
        EmbeddingDimensionError, which must never be degraded.
        """
        tags = self._tracker.mark_processing(document_id)
        topics = tags.topics or suggest_topics(" ".join(text for _, text in pages))

        try:
            removed = self._store.delete_document_chunks(document_id)
            if removed:
                logger.info("Re-ingesting document_id=%d: removed %d old chunks", document_id, removed)

            chunks = chunk_pages(pages, chunk_size=chunk_size, chunk_overlap=chunk_overlap)
            if not chunks:
                raise ValueError("Document produced no text chunks")

            embeddings = self._embed([c.content for c in chunks])

            metadatas = [
                {
                    "page_number": c.page_number,
                    "chunk_index": c.chunk_index,
                    "token_count": c.token_count,
                    "entity_id": tags.entity_id,
                    "category": tags.category,
                    "topics": topics,
                    **c.metadata,
                }
                for c in chunks
            ]
            self._store.add_chunks(
                document_id, [c.content for c in chunks], embeddings, metadatas,
            )

            self._tracker.mark_completed(
                document_id, chunk_count=len(chunks), page_count=len(pages), topics=topics,
            )

        except Exception as exc:
            logger.exception("Ingestion failed for document_id=%d", document_id)
            self._cleanup(document_id)
            self._tracker.mark_failed(document_id, str(exc))
            raise

        logger.info(
            "Ingested document_id=%d: %d pages → %d chunks (topics=%s)",
            document_id, len(pages), len(chunks), topics,
        )
        return IngestionResult(document_id, len(chunks), len(pages), topics)

    def _cleanup(self, document_id: int) -> None:
        try:
            self._store.delete_document_chunks(document_id)
        except Exception:
            # The original failure is re-raised by the caller
            logger.exception("Chunk cleanup failed for document_id=%d", document_id)

    # -- maintenance ---------------------------------------------------------

    def delete_document(self, document_id: int) -> int:
        """Remove a document and every chunk of it. Returns chunks removed."""
        with self._tracker.deleting(document_id) as session:
            removed = self._store.delete_document_chunks(document_id, session=session)
        logger.info("Deleted document_id=%d (%d chunks)", document_id, removed)
        return removed

    def update_metadata(
        self,
        document_id: int,
        title: str | None = None,
        topics: list[str] | None = None,
        category: SourceCategory | str | None = UNSET,
        entity_id: str | None = UNSET,
    ) -> DocumentTags:
        """Update document tags and re-tag all of its chunks to match."""
        changes: dict = {}
        if title is not None:
            changes["title"] = title
        if topics is not None:
            known = {t.value for t in Topic}
            unknown = [t for t in topics if t not in known]
            if unknown:
                raise ValueError(f"Unknown topics: {unknown}")
            changes["topics"] = list(topics)
        if category is not UNSET:
            changes["category"] = SourceCategory(category) if category is not None else None
        if entity_id is not UNSET:
            changes["entity_id"] = entity_id

        tags = self._tracker.update_metadata(document_id, changes)
        retagged = self._store.retag_document_chunks(
            document_id, tags.entity_id, tags.category, tags.topics,
        )
        logger.info("Updated metadata for document_id=%d (%d chunks re-tagged)", document_id, retagged)
        return tags


# ---------------------------------------------------------------------------
# Corpus statistics
# ---------------------------------------------------------------------------


def get_entity_corpus_stats(entity_id: str) -> dict:
    """Document counts by status, chunk total, size and a per-document listing."""
    with get_sync_session() as session:
        documents = session.scalars(
            select(Document).where(Document.entity_id == entity_id).order_by(Document.created_at)
        ).all()
        total_chunks = session.scalar(
            select(func.count(Chunk.id)).where(Chunk.entity_id == entity_id)
        ) or 0

        by_status = {status.value: 0 for status in DocumentStatus}
        for doc in documents:
            by_status[doc.status.value] += 1

        return {
            "entity_id": entity_id,
            "total_documents": len(documents),
            "documents_by_status": by_status,
            "total_chunks": total_chunks,
            "total_size": sum(d.file_size or 0 for d in documents),
            "documents": [
                {
                    "id": d.id,
                    "title": d.title,
                    "filename": d.filename,
                    "status": d.status.value,
                    "chunk_count": d.chunk_count,
                    "file_size": d.file_size,
                    "times_retrieved": d.times_retrieved,
                    "topics": list(d.topics or []),
                    "category": d.category.value if d.category else None,
                    "created_at": d.created_at.isoformat() if d.created_at else None,
                    "error": d.error_message,
                }
                for d in documents
            ],
        }
