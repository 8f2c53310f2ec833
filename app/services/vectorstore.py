# =============================================================================
# Document Store — Pluggable Vector Backend Protocol
# =============================================================================
#
# Stores embedded chunks and answers filtered cosine-similarity queries.
# Two implementations share one Protocol:
#
#   VectorStore (Protocol)
#   ├── PgVectorStore     — PostgreSQL + pgvector (default)
#   │   ├── add_chunks / delete / count / retag — sync (Celery ingestion)
#   │   └── search / record_retrievals          — async (agent, API)
#   └── ChromaVectorStore — ChromaDB (in-process or client/server)
#       └── sync client; async methods wrap it in asyncio.to_thread()
#
# FILTERS: entity_id (exact), category (exact) and topics (chunk carries
# ANY of the requested topics). Filters are applied inside the vector
# query, so top_k is counted after filtering.
#
# DESIGN DECISION: Width check at the write boundary. add_chunks rejects
# any embedding whose length differs from settings.embedding_dimensions
# with EmbeddingDimensionError before touching storage.
#
# DESIGN DECISION: Retrieval counters are atomic increments
# (`SET retrieval_count = retrieval_count + 1` in Postgres, a lock-guarded
# get/update in Chroma). Concurrent agent runs never lose a count.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

import chromadb
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import array
from sqlalchemy.orm import Session

from app.config import settings
from app.db.engine import async_session_factory, get_sync_session
from app.db.models import Chunk, SourceCategory, Topic
from app.exceptions import InvalidFilterError
from app.services.embedder import check_dimensions

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetrievalFilters:
    """
    Metadata restrictions for a vector query. None means "no restriction".

    topics=[] is rejected: an empty any-of set can never match, which is
    always a caller bug.
    """

    entity_id: str | None = None
    topics: tuple[str, ...] | None = None
    category: SourceCategory | None = None

    def __post_init__(self) -> None:
        if self.topics is not None:
            topics = tuple(self.topics)
            if not topics:
                raise InvalidFilterError("topics filter must not be empty; use None for no filter")
            known = {t.value for t in Topic}
            unknown = [t for t in topics if t not in known]
            if unknown:
                raise InvalidFilterError(f"Unknown topics in filter: {unknown}")
            object.__setattr__(self, "topics", topics)
        if self.category is not None and not isinstance(self.category, SourceCategory):
            try:
                object.__setattr__(self, "category", SourceCategory(self.category))
            except ValueError as exc:
                raise InvalidFilterError(f"Unknown category filter: {self.category!r}") from exc

    @property
    def is_empty(self) -> bool:
        return self.entity_id is None and self.topics is None and self.category is None


@dataclass
class VectorSearchResult:
    """One chunk returned by similarity search."""

    chunk_id: int | str
    document_id: int
    content: str
    page_number: int | None
    chunk_index: int
    similarity_score: float  # cosine similarity, higher = more relevant
    entity_id: str | None = None
    category: str | None = None
    topics: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class VectorStore(Protocol):
    def add_chunks(
        self,
        document_id: int,
        contents: list[str],
        embeddings: list[list[float]],
        metadatas: list[dict],
    ) -> list[int | str]:
        """
        Store chunks with their embeddings in one batch. Sync (Celery).

        Each metadata dict carries page_number, chunk_index, token_count and
        the document tags entity_id, category, topics.
        """
        ...

    async def search(
        self,
        query_embedding: list[float],
        top_k: int = 5,
        filters: RetrievalFilters | None = None,
    ) -> list[VectorSearchResult]:
        """At most top_k matches, highest similarity first."""
        ...

    def delete_document_chunks(self, document_id: int, session: Session | None = None) -> int:
        """
        Remove every chunk of a document. Returns the number removed.

        Stores backed by the relational database run the delete on `session`
        when one is given, so it commits or rolls back with the caller.
        """
        ...

    def count_chunks(self, document_id: int) -> int:
        ...

    def retag_document_chunks(
        self,
        document_id: int,
        entity_id: str | None,
        category: SourceCategory | None,
        topics: list[str],
    ) -> int:
        """Rewrite the denormalised document tags on every chunk."""
        ...

    async def record_retrievals(self, chunk_ids: list[int | str]) -> None:
        """Increment retrieval_count and stamp last_retrieved_at."""
        ...


def _check_batch(contents: list[str], embeddings: list[list[float]], metadatas: list[dict]) -> None:
    if not (len(contents) == len(embeddings) == len(metadatas)):
        raise ValueError(
            f"Mismatched chunk batch: {len(contents)} contents, "
            f"{len(embeddings)} embeddings, {len(metadatas)} metadatas"
        )
    for embedding in embeddings:
        check_dimensions(embedding)


def _category_value(category: SourceCategory | str | None) -> str | None:
    if category is None:
        return None
    return category.value if isinstance(category, SourceCategory) else str(category)


# ---------------------------------------------------------------------------
# Implementation 1: pgvector (PostgreSQL)
# ---------------------------------------------------------------------------


class PgVectorStore:
    """
    pgvector-backed store. ORM for writes, pgvector's cosine_distance for
    reads, JSONB `?|` for the any-of topic filter.
    """

    def add_chunks(
        self,
        document_id: int,
        contents: list[str],
        embeddings: list[list[float]],
        metadatas: list[dict],
    ) -> list[int | str]:
        _check_batch(contents, embeddings, metadatas)

        with get_sync_session() as session:
            chunks = []
            for i, (content, embedding, meta) in enumerate(
                zip(contents, embeddings, metadatas, strict=True)
            ):
                category = meta.get("category")
                chunk = Chunk(
                    document_id=document_id,
                    entity_id=meta.get("entity_id"),
                    category=SourceCategory(category) if category else None,
                    topics=list(meta.get("topics") or []),
                    content=content,
                    page_number=meta.get("page_number"),
                    chunk_index=meta.get("chunk_index", i),
                    token_count=meta.get("token_count", 0),
                    embedding=embedding,
                    metadata_={
                        k: v for k, v in meta.items()
                        if k not in ("entity_id", "category", "topics")
                    },
                )
                session.add(chunk)
                chunks.append(chunk)

            # Flush assigns IDs inside the single insert transaction
            session.flush()
            chunk_ids: list[int | str] = [c.id for c in chunks]

        logger.info(
            "Stored %d chunks for document_id=%d in pgvector",
            len(chunk_ids), document_id,
        )
        return chunk_ids

    async def search(
        self,
        query_embedding: list[float],
        top_k: int = 5,
        filters: RetrievalFilters | None = None,
    ) -> list[VectorSearchResult]:
        """
        Cosine search. cosine_distance is in [0, 2]; similarity = 1 - distance.
        """
        check_dimensions(query_embedding)
        distance = Chunk.embedding.cosine_distance(query_embedding)

        stmt = select(Chunk, distance.label("distance"))
        if filters is not None:
            if filters.entity_id is not None:
                stmt = stmt.where(Chunk.entity_id == filters.entity_id)
            if filters.category is not None:
                stmt = stmt.where(Chunk.category == filters.category)
            if filters.topics is not None:
                stmt = stmt.where(Chunk.topics.has_any(array(list(filters.topics))))
        stmt = stmt.order_by(distance).limit(top_k)

        async with async_session_factory() as session:
            result = await session.execute(stmt)
            rows = result.all()

        logger.debug(
            "Vector search returned %d rows (top_k=%d, filters=%s)",
            len(rows), top_k, filters,
        )

        return [
            VectorSearchResult(
                chunk_id=chunk.id,
                document_id=chunk.document_id,
                content=chunk.content,
                page_number=chunk.page_number,
                chunk_index=chunk.chunk_index,
                similarity_score=round(1.0 - dist, 4),
                entity_id=chunk.entity_id,
                category=_category_value(chunk.category),
                topics=list(chunk.topics or []),
                metadata=chunk.metadata_ or {},
            )
            for chunk, dist in rows
        ]

    def delete_document_chunks(self, document_id: int, session: Session | None = None) -> int:
        if session is not None:
            removed = self._delete_chunks(session, document_id)
        else:
            with get_sync_session() as own:
                removed = self._delete_chunks(own, document_id)
        logger.info("Deleted %d chunks for document_id=%d", removed, document_id)
        return removed

    @staticmethod
    def _delete_chunks(session: Session, document_id: int) -> int:
        result = session.execute(delete(Chunk).where(Chunk.document_id == document_id))
        return result.rowcount or 0

    def count_chunks(self, document_id: int) -> int:
        with get_sync_session() as session:
            return session.scalar(
                select(func.count(Chunk.id)).where(Chunk.document_id == document_id)
            ) or 0

    def retag_document_chunks(
        self,
        document_id: int,
        entity_id: str | None,
        category: SourceCategory | None,
        topics: list[str],
    ) -> int:
        with get_sync_session() as session:
            result = session.execute(
                update(Chunk)
                .where(Chunk.document_id == document_id)
                .values(entity_id=entity_id, category=category, topics=list(topics))
            )
            return result.rowcount or 0

    async def record_retrievals(self, chunk_ids: list[int | str]) -> None:
        if not chunk_ids:
            return
        async with async_session_factory() as session:
            await session.execute(
                update(Chunk)
                .where(Chunk.id.in_([int(c) for c in chunk_ids]))
                .values(
                    retrieval_count=Chunk.retrieval_count + 1,
                    last_retrieved_at=func.now(),
                )
            )
            await session.commit()


# ---------------------------------------------------------------------------
# Implementation 2: ChromaDB
# ---------------------------------------------------------------------------


class ChromaVectorStore:
    """
    ChromaDB-backed store, one global collection.

    Chroma metadata values must be scalars, so list-valued topics are
    stored twice: as a comma-joined "topics" string for display and as one
    boolean `topic_<name>` key per topic for the any-of filter.
    """

    def __init__(self, client=None, collection_name: str | None = None) -> None:
        if client is not None:
            self._client = client
        elif settings.chroma_url:
            self._client = chromadb.HttpClient(host=settings.chroma_url)
        else:
            self._client = chromadb.Client()

        # Cosine distance, matching pgvector's vector_cosine_ops
        self._collection = self._client.get_or_create_collection(
            name=collection_name or settings.chroma_collection,
            metadata={"hnsw:space": "cosine"},
        )
        # Serialises read-modify-write of counters and tags
        self._lock = threading.Lock()

    def add_chunks(
        self,
        document_id: int,
        contents: list[str],
        embeddings: list[list[float]],
        metadatas: list[dict],
    ) -> list[int | str]:
        _check_batch(contents, embeddings, metadatas)

        ids = [
            f"doc{document_id}_chunk{meta.get('chunk_index', i)}"
            for i, meta in enumerate(metadatas)
        ]
        chroma_metadatas = [
            _to_chroma_metadata({**meta, "document_id": document_id, "retrieval_count": 0})
            for meta in metadatas
        ]

        self._collection.add(
            ids=ids,
            documents=contents,
            embeddings=embeddings,
            metadatas=chroma_metadatas,
        )

        logger.info(
            "Stored %d chunks for document_id=%d in ChromaDB",
            len(ids), document_id,
        )
        return list(ids)

    async def search(
        self,
        query_embedding: list[float],
        top_k: int = 5,
        filters: RetrievalFilters | None = None,
    ) -> list[VectorSearchResult]:
        check_dimensions(query_embedding)

        def _sync_search() -> list[VectorSearchResult]:
            results = self._collection.query(
                query_embeddings=[query_embedding],
                n_results=top_k,
                where=_chroma_where(filters),
                include=["documents", "metadatas", "distances"],
            )

            search_results: list[VectorSearchResult] = []
            if not (results and results["ids"] and results["ids"][0]):
                return search_results

            for i, chroma_id in enumerate(results["ids"][0]):
                distance = results["distances"][0][i] if results["distances"] else 0.0
                metadata = dict(results["metadatas"][0][i]) if results["metadatas"] else {}
                content = results["documents"][0][i] if results["documents"] else ""
                search_results.append(VectorSearchResult(
                    chunk_id=chroma_id,
                    document_id=int(metadata.get("document_id", 0)),
                    content=content,
                    page_number=metadata.get("page_number"),
                    chunk_index=int(metadata.get("chunk_index", i)),
                    similarity_score=round(1.0 - distance, 4),
                    entity_id=metadata.get("entity_id") or None,
                    category=metadata.get("category") or None,
                    topics=_topics_from_metadata(metadata),
                    metadata=metadata,
                ))
            return search_results

        return await asyncio.to_thread(_sync_search)

    def delete_document_chunks(self, document_id: int, session: Session | None = None) -> int:
        # The collection sits outside the SQL transaction; session is unused
        with self._lock:
            existing = self._collection.get(where={"document_id": document_id}, include=[])
            ids = existing["ids"]
            if ids:
                self._collection.delete(ids=ids)
        logger.info("Deleted %d chunks for document_id=%d", len(ids), document_id)
        return len(ids)

    def count_chunks(self, document_id: int) -> int:
        existing = self._collection.get(where={"document_id": document_id}, include=[])
        return len(existing["ids"])

    def retag_document_chunks(
        self,
        document_id: int,
        entity_id: str | None,
        category: SourceCategory | None,
        topics: list[str],
    ) -> int:
        with self._lock:
            existing = self._collection.get(
                where={"document_id": document_id}, include=["metadatas"],
            )
            if not existing["ids"]:
                return 0
            new_metadatas = []
            for meta in existing["metadatas"]:
                base = {k: v for k, v in meta.items() if not k.startswith("topic_")}
                base.update(entity_id=entity_id, category=_category_value(category), topics=topics)
                new_metadatas.append(_to_chroma_metadata(base))
            # Dropping keys needs a full replace: Chroma's update merges metadata
            documents = self._collection.get(ids=existing["ids"], include=["documents", "embeddings"])
            self._collection.upsert(
                ids=documents["ids"],
                documents=documents["documents"],
                embeddings=documents["embeddings"],
                metadatas=new_metadatas,
            )
            return len(existing["ids"])

    async def record_retrievals(self, chunk_ids: list[int | str]) -> None:
        if not chunk_ids:
            return

        def _sync_record() -> None:
            stamp = datetime.now(UTC).isoformat()
            with self._lock:
                existing = self._collection.get(
                    ids=[str(c) for c in chunk_ids], include=["metadatas"],
                )
                if not existing["ids"]:
                    return
                self._collection.update(
                    ids=existing["ids"],
                    metadatas=[
                        {
                            "retrieval_count": int(meta.get("retrieval_count", 0)) + 1,
                            "last_retrieved_at": stamp,
                        }
                        for meta in existing["metadatas"]
                    ],
                )

        await asyncio.to_thread(_sync_record)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_store: PgVectorStore | ChromaVectorStore | None = None


def get_vector_store(
    override_type: str | None = None,
) -> PgVectorStore | ChromaVectorStore:
    """
    Return the configured backend ("pgvector" or "chroma").

    The default store is cached per process so the Chroma collection and
    its lock are shared by every caller.
    """
    global _store
    store_type = override_type or settings.vectorstore_type

    if override_type is None and _store is not None:
        return _store

    if store_type == "chroma":
        logger.info("Using ChromaDB vector store")
        store: PgVectorStore | ChromaVectorStore = ChromaVectorStore()
    else:
        logger.info("Using pgvector vector store")
        store = PgVectorStore()

    if override_type is None:
        _store = store
    return store


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _to_chroma_metadata(metadata: dict) -> dict:
    """
    Flatten metadata into Chroma's scalar-only format:
    - None → "" (entity_id "" means the shared corpus)
    - topics list → "a,b" plus one topic_<name>=True key each
    - other lists → comma-joined string
    """
    sanitised: dict = {}
    for key, value in metadata.items():
        if key == "topics":
            topics = list(value or [])
            sanitised["topics"] = ",".join(topics)
            for topic in topics:
                sanitised[f"topic_{topic}"] = True
        elif key == "category":
            sanitised[key] = _category_value(value) or ""
        elif value is None:
            sanitised[key] = ""
        elif isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised


def _topics_from_metadata(metadata: dict) -> list[str]:
    raw = metadata.get("topics") or ""
    return [t for t in str(raw).split(",") if t]


def _chroma_where(filters: RetrievalFilters | None) -> dict | None:
    if filters is None or filters.is_empty:
        return None

    clauses: list[dict] = []
    if filters.entity_id is not None:
        clauses.append({"entity_id": filters.entity_id})
    if filters.category is not None:
        clauses.append({"category": filters.category.value})
    if filters.topics is not None:
        topic_clauses = [{f"topic_{t}": True} for t in filters.topics]
        clauses.append(topic_clauses[0] if len(topic_clauses) == 1 else {"$or": topic_clauses})

    return clauses[0] if len(clauses) == 1 else {"$and": clauses}
