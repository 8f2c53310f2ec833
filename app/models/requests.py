# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data coming INTO the API. Financial statements arrive in the
# research request itself; this service does not store them.
# =============================================================================

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from app.db.models import SourceCategory, Topic


class EntityIn(BaseModel):
    entity_id: str = Field(..., min_length=1, max_length=64, examples=["480228"])
    name: str = Field(..., min_length=1, max_length=255, examples=["First Example Bank"])
    city: str | None = None
    state: str | None = None
    region: str | None = Field(
        default=None,
        description="Region tag for memory matching. Defaults to the state when omitted.",
    )
    total_assets: float | None = Field(default=None, ge=0)


class FinancialStatementIn(BaseModel):
    reporting_period: str = Field(..., examples=["2025-06-30"])
    ratios: dict[str, float] = Field(default_factory=dict)
    values: dict[str, float] = Field(default_factory=dict)
    total_assets: float | None = None


class PeerSetIn(BaseModel):
    peer_ids: list[str] = Field(default_factory=list)
    peer_averages: dict[str, float] = Field(default_factory=dict)


class ResearchRequest(BaseModel):
    """
    Request body for POST /research.

    The response is a stream of NDJSON progress events ending with a
    `result` event.
    """

    entity: EntityIn
    financials: list[FinancialStatementIn] = Field(
        default_factory=list, description="Quarterly statements, newest first",
    )
    peers: PeerSetIn | None = None
    session_id: str | None = Field(
        default=None, description="Source session whose approved sources the agent may read",
    )
    prompt: str | None = Field(default=None, max_length=4000)

    max_iterations: int | None = Field(default=None, ge=1, le=50)
    timeout_seconds: float | None = Field(default=None, gt=0, le=3600)
    silent_stop_policy: Literal["complete", "stall_retry", "fail"] | None = None

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "entity": {"entity_id": "480228", "name": "First Example Bank", "state": "OH"},
                    "financials": [
                        {"reporting_period": "2025-06-30", "ratios": {"efficiency_ratio": 58.1}},
                    ],
                    "session_id": "sess-2025-10",
                }
            ]
        }
    )


class RankSourcesRequest(BaseModel):
    min_score_threshold: int | None = Field(default=None, ge=0, le=100)
    top_n_per_category: int | None = Field(default=None, ge=1, le=20)


class AssessSourcesRequest(BaseModel):
    entity_id: str = Field(..., min_length=1, max_length=64)


class FetchSourcesRequest(BaseModel):
    concurrency: int | None = Field(default=None, ge=1, le=10)


class SourceStatusUpdate(BaseModel):
    status: Literal["pending", "approved", "ignored"]


class DocumentMetadataUpdate(BaseModel):
    """
    PATCH /documents/{id}. Only fields present in the body change;
    an explicit `"entity_id": null` moves the document to the global corpus
    and `"category": null` clears its category.
    """

    title: str | None = Field(default=None, min_length=1, max_length=500)
    topics: list[Topic] | None = None
    category: SourceCategory | None = None
    entity_id: str | None = Field(default=None, max_length=64)


class GatherSourcesRequest(BaseModel):
    entity: EntityIn
    categories: list[SourceCategory] | None = Field(
        default=None, description="Defaults to every source category",
    )
