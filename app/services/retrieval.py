# =============================================================================
# Vector Retrieval Service
# =============================================================================
#
# retrieve(query, filters, k):
#   1. Embed the query (in a worker thread; the embedder is sync).
#   2. Filtered cosine search in the vector store.
#   3. Bump usage counters for what was returned:
#        - chunks:    retrieval_count + 1, last_retrieved_at = now
#        - documents: times_retrieved + 1, once per distinct document
#      Counter failures are logged and swallowed; they never fail a query.
#
# Empty results are a valid answer. Embedding width mismatches and
# malformed filters are DataIntegrityErrors and always propagate.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sqlalchemy import update

from app.config import settings
from app.db.engine import async_session_factory
from app.db.models import Document
from app.services.embedder import embed_query
from app.services.vectorstore import RetrievalFilters, VectorSearchResult, VectorStore

logger = logging.getLogger(__name__)

__all__ = ["RetrievalFilters", "RetrievedChunk", "RetrievalService", "increment_document_retrievals"]


@dataclass
class RetrievedChunk:
    chunk_id: int | str
    document_id: int
    content: str
    similarity: float
    page_number: int | None
    chunk_index: int
    entity_id: str | None
    category: str | None
    topics: list[str]

    @classmethod
    def from_search_result(cls, r: VectorSearchResult) -> RetrievedChunk:
        return cls(
            chunk_id=r.chunk_id,
            document_id=r.document_id,
            content=r.content,
            similarity=r.similarity_score,
            page_number=r.page_number,
            chunk_index=r.chunk_index,
            entity_id=r.entity_id,
            category=r.category,
            topics=list(r.topics),
        )

    def citation(self) -> str:
        page = f", p.{self.page_number}" if self.page_number else ""
        return f"document {self.document_id}{page}"


async def increment_document_retrievals(document_ids: list[int]) -> None:
    """times_retrieved + 1 for each document, as one atomic UPDATE."""
    if not document_ids:
        return
    async with async_session_factory() as session:
        await session.execute(
            update(Document)
            .where(Document.id.in_(document_ids))
            .values(times_retrieved=Document.times_retrieved + 1)
        )
        await session.commit()


class RetrievalService:
    def __init__(
        self,
        vector_store: VectorStore,
        embed: Callable[[str], list[float]] = embed_query,
        record_document_hits: Callable[[list[int]], Awaitable[None]] = increment_document_retrievals,
    ) -> None:
        self._store = vector_store
        self._embed = embed
        self._record_document_hits = record_document_hits

    async def retrieve(
        self,
        query: str,
        filters: RetrievalFilters | None = None,
        k: int | None = None,
    ) -> list[RetrievedChunk]:
        """
        Top-k chunks most similar to `query`, restricted by every supplied
        filter, ordered by descending similarity.
        """
        top_k = k or settings.retrieval_top_k
        if top_k < 1:
            raise ValueError(f"k must be >= 1, got {top_k}")

        embedding = await asyncio.to_thread(self._embed, query)
        results = await self._store.search(embedding, top_k=top_k, filters=filters)

        chunks = sorted(
            (RetrievedChunk.from_search_result(r) for r in results),
            key=lambda c: c.similarity,
            reverse=True,
        )[:top_k]

        logger.info(
            "Retrieved %d chunks for query '%s' (filters=%s, k=%d)",
            len(chunks), query[:80], filters, top_k,
        )

        if chunks:
            await self._record_usage(chunks)
        return chunks

    async def _record_usage(self, chunks: list[RetrievedChunk]) -> None:
        try:
            await self._store.record_retrievals([c.chunk_id for c in chunks])
            document_ids = sorted({c.document_id for c in chunks})
            await self._record_document_hits(document_ids)
        except Exception:
            logger.exception("Failed to record retrieval counters (%d chunks)", len(chunks))
