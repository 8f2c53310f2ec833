# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────────┐       ┌──────────────────────────────────┐
# │  documents       │       │  chunks                          │
# ├──────────────────┤       ├──────────────────────────────────┤
# │ id (PK)          │──1:N─▶│ id (PK)                          │
# │ title, filename  │       │ document_id (FK, ON DELETE CASC.)│
# │ entity_id        │       │ entity_id, category, topics      │
# │ category, topics │       │ chunk_index, page_number         │
# │ status           │       │ content, token_count             │
# │ chunk_count      │       │ embedding (vector(d))            │
# │ times_retrieved  │       │ retrieval_count                  │
# └──────────────────┘       │ last_retrieved_at                │
#                            └──────────────────────────────────┘
#
# ┌──────────────────────────┐   ┌──────────────────────────────┐
# │  sources                 │   │  memory_patterns             │
# ├──────────────────────────┤   ├──────────────────────────────┤
# │ id, entity_id, session_id│   │ id, memory_type              │
# │ category, url, title     │   │ size_tier, region            │
# │ content, fetch_status    │   │ pattern, example, use_case   │
# │ score, recommended       │   │ success_count, usage_count   │
# │ status                   │   │ worked_for, version          │
# └──────────────────────────┘   └──────────────────────────────┘
#
# DESIGN DECISIONS:
#
# 1. Chunks denormalise entity_id, category and topics from their document.
#    Retrieval filters on them inside the vector query without a join.
#
# 2. Usage counters (retrieval_count, times_retrieved) are only ever
#    changed with `UPDATE ... SET x = x + 1` so concurrent agent runs
#    cannot lose increments.
#
# 3. memory_patterns carries a version_id_col. Concurrent outcome writes
#    on the same pattern raise StaleDataError and are retried by the
#    memory store (re-fetch, re-apply, save).
#
# 4. Enums are string enums stored by value — readable in SQL and stable
#    when new members are added.
# =============================================================================

import enum
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for all ORM models."""

    pass


def _enum_column(enum_cls: type[enum.Enum]) -> Enum:
    """Store enums by value ("investor_presentation"), not by member name."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


# =============================================================================
# Enumerations
# =============================================================================


class DocumentStatus(str, enum.Enum):
    """
    Ingestion pipeline state for a document.

    State machine:
        PENDING → PROCESSING → COMPLETED
                             → FAILED
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SourceCategory(str, enum.Enum):
    """Kinds of evidence source, in descending priority."""

    INVESTOR_PRESENTATION = "investor_presentation"
    EARNINGS_TRANSCRIPT = "earnings_transcript"
    STRATEGY_ANALYSIS = "strategy_analysis"
    ANALYST_REPORTS = "analyst_reports"


class Topic(str, enum.Enum):
    LIQUIDITY = "liquidity"
    CAPITAL = "capital"
    ASSET_QUALITY = "asset_quality"
    EARNINGS = "earnings"
    RISK_MANAGEMENT = "risk_management"
    EFFICIENCY = "efficiency"
    GROWTH = "growth"
    TECHNOLOGY = "technology"
    STRATEGY = "strategy"
    GENERAL = "general"


class FetchStatus(str, enum.Enum):
    """
    Content fetch state of a source (independent of approval status).

        NOT_FETCHED → FETCHING → FETCHED
                               → FETCH_FAILED
    """

    NOT_FETCHED = "not_fetched"
    FETCHING = "fetching"
    FETCHED = "fetched"
    FETCH_FAILED = "fetch_failed"


class SourceStatus(str, enum.Enum):
    """Human or automated approval state of a source."""

    PENDING = "pending"
    APPROVED = "approved"
    IGNORED = "ignored"


class MemoryType(str, enum.Enum):
    SEARCH_QUERY = "search_query"
    DOCUMENT_QUERY = "document_query"
    ANALYSIS_STRATEGY = "analysis_strategy"
    CROSS_ENTITY = "cross_entity"


class SizeTier(str, enum.Enum):
    """Coarse entity size bucket, derived from total assets."""

    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    MEGA = "mega"


# =============================================================================
# Documents & Chunks — the retrieval corpus
# =============================================================================


class Document(Base):
    """
    A document in the retrieval corpus.

    entity_id is None for documents that belong to the shared corpus
    (industry reports, regulatory guidance) rather than to one bank.
    """

    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    filename: Mapped[str] = mapped_column(String(500), nullable=False)

    # Reference into the blob store (local path or mounted volume)
    file_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    page_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    category: Mapped[SourceCategory | None] = mapped_column(
        _enum_column(SourceCategory), nullable=True,
    )
    topics: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)

    status: Mapped[DocumentStatus] = mapped_column(
        _enum_column(DocumentStatus),
        nullable=False,
        default=DocumentStatus.PENDING,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Incremented once per retrieval that returned any chunk of this document
    times_retrieved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    celery_task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # cascade="all, delete-orphan" + FK ON DELETE CASCADE: deleting a
    # document never leaves orphaned chunks, whether the delete goes
    # through the ORM or straight through SQL.
    chunks: Mapped[list["Chunk"]] = relationship(
        "Chunk",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="noload",
    )

    def __repr__(self) -> str:
        return f"<Document(id={self.id}, title='{self.title}', status={self.status})>"


class Chunk(Base):
    """A bounded text window of a document, paired with its embedding."""

    __tablename__ = "chunks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    document_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Denormalised from the parent document for filtered vector search
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    category: Mapped[SourceCategory | None] = mapped_column(
        _enum_column(SourceCategory), nullable=True,
    )
    topics: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)

    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    page_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    embedding: Mapped[list[float]] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=False,
    )

    # Named `metadata_` to avoid SQLAlchemy's reserved `.metadata`
    metadata_: Mapped[dict | None] = mapped_column(
        "metadata", JSONB, nullable=True, default=dict,
    )

    retrieval_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retrieved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    document: Mapped["Document"] = relationship("Document", back_populates="chunks")

    def __repr__(self) -> str:
        return (
            f"<Chunk(id={self.id}, doc_id={self.document_id}, "
            f"index={self.chunk_index}, tokens={self.token_count})>"
        )


# HNSW index for cosine similarity search
chunk_embedding_idx = Index(
    "idx_chunk_embedding_hnsw",
    Chunk.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)

chunk_document_idx = Index("idx_chunk_document_id", Chunk.document_id)
chunk_entity_idx = Index("idx_chunk_entity_category", Chunk.entity_id, Chunk.category)

# GIN index so `topics ?| array[...]` filters stay cheap
chunk_topics_idx = Index(
    "idx_chunk_topics_gin",
    Chunk.topics,
    postgresql_using="gin",
)


# =============================================================================
# Sources — discovered evidence candidates
# =============================================================================


class Source(Base):
    """
    A candidate evidence reference discovered for an entity in a session.

    Rows are never deleted by the fetch path: a failed fetch is recorded in
    fetch_status/fetch_error so the discovery history survives.
    """

    __tablename__ = "sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    category: Mapped[SourceCategory] = mapped_column(
        _enum_column(SourceCategory), nullable=False,
    )

    url: Mapped[str] = mapped_column(String(2000), nullable=False)
    title: Mapped[str] = mapped_column(String(1000), nullable=False)
    preview: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Free-text date label as discovered, e.g. "Q2 2025" or "Oct 2025"
    date: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # --- Fetched content ---
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_length: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    fetchable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_probably_paywalled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_probably_truncated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requires_web_search: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    fetch_status: Mapped[FetchStatus] = mapped_column(
        _enum_column(FetchStatus),
        nullable=False,
        default=FetchStatus.NOT_FETCHED,
        index=True,
    )
    fetch_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    fetched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # --- Approval ---
    status: Mapped[SourceStatus] = mapped_column(
        _enum_column(SourceStatus),
        nullable=False,
        default=SourceStatus.PENDING,
        index=True,
    )

    # --- Scoring (written for every source, recommended or not) ---
    score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    score_breakdown: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    recommended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    found_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("session_id", "url", name="uq_source_session_url"),
    )

    def __repr__(self) -> str:
        return (
            f"<Source(id={self.id}, category={self.category}, "
            f"score={self.score}, status={self.status})>"
        )


# =============================================================================
# Memory Patterns — learned, reusable research strategies
# =============================================================================


class MemoryPattern(Base):
    """
    A normalised query or strategy pattern, tagged with the entity context
    in which it was first used.

    size_tier / region are NULL for context-agnostic (general) patterns.
    use_case is "" rather than NULL so the unique key also covers patterns
    without a use case.
    """

    __tablename__ = "memory_patterns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    memory_type: Mapped[MemoryType] = mapped_column(
        _enum_column(MemoryType), nullable=False, index=True,
    )

    size_tier: Mapped[SizeTier | None] = mapped_column(_enum_column(SizeTier), nullable=True)
    region: Mapped[str | None] = mapped_column(String(64), nullable=True)

    pattern: Mapped[str] = mapped_column(Text, nullable=False)
    example: Mapped[str | None] = mapped_column(Text, nullable=True)
    use_case: Mapped[str] = mapped_column(String(128), nullable=False, default="")

    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    # [{"entity_id", "entity_name", "date", "result"}]
    worked_for: Mapped[list[dict]] = mapped_column(JSONB, nullable=False, default=list)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint(
            "memory_type", "pattern", "use_case", name="uq_memory_type_pattern_use_case",
        ),
        Index("idx_memory_context", "size_tier", "region"),
    )

    def __repr__(self) -> str:
        return (
            f"<MemoryPattern(id={self.id}, type={self.memory_type}, "
            f"success={self.success_count}/{self.usage_count})>"
        )
