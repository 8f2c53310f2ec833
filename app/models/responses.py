# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data going OUT of the API. Chunk embeddings and fetched page
# content never leave through these models.
# =============================================================================

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.db.models import FetchStatus, SourceCategory, SourceStatus


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    service: str


class TaskQueuedResponse(BaseModel):
    task_id: str = Field(description="Celery task ID")
    session_id: str
    status: str = "queued"


class SourceResponse(BaseModel):
    id: int
    entity_id: str
    session_id: str
    category: SourceCategory
    url: str
    title: str
    date: str | None = None
    status: SourceStatus
    fetch_status: FetchStatus
    fetch_error: str | None = None
    score: int | None = None
    score_breakdown: dict[str, Any] | None = None
    confidence: float | None = None
    recommended: bool = False
    found_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class CategoryRecommendation(BaseModel):
    total_found: int
    recommended: int
    average_score: float
    top_sources: list[dict[str, Any]]


class RankingResponse(BaseModel):
    success: bool
    session_id: str
    total_sources: int
    message: str | None = None
    recommendations: dict[str, CategoryRecommendation] | None = None
    summary: dict[str, Any] | None = None


class AssessmentResponse(BaseModel):
    decision: str
    confidence: float = 0.0
    reasoning: str = ""
    strengths: list[str] = Field(default_factory=list)
    weaknesses: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    missing_categories: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None
    error: str | None = None


class DocumentTagsResponse(BaseModel):
    document_id: int
    entity_id: str | None
    category: str | None
    topics: list[str]


class DocumentDeletedResponse(BaseModel):
    document_id: int
    chunks_deleted: int


class CorpusDocument(BaseModel):
    id: int
    title: str | None
    filename: str | None
    status: str
    chunk_count: int | None
    file_size: int | None
    times_retrieved: int
    topics: list[str]
    category: str | None
    created_at: str | None
    error: str | None


class CorpusStatsResponse(BaseModel):
    entity_id: str
    total_documents: int
    documents_by_status: dict[str, int]
    total_chunks: int
    total_size: int
    documents: list[CorpusDocument]


class MemoryStatsResponse(BaseModel):
    total_patterns: int
    by_type: dict[str, int]
    average_success_rate: float


class IngestResponse(BaseModel):
    document_id: int
    task_id: str = Field(description="Celery task ID")
    entity_id: str | None = Field(default=None, description="None for the global corpus")
    status: str = "processing"
