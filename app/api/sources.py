# =============================================================================
# Sources API — Ranking, Review and Fetching of Discovered Sources
# =============================================================================
#
#   POST  /sessions/{session_id}/sources/gather  queue web discovery (202)
#   POST  /sessions/{session_id}/sources/rank    score + recommend (sync)
#   POST  /sessions/{session_id}/sources/assess  LLM quality verdict
#   POST  /sessions/{session_id}/sources/fetch   queue download + rank (202)
#   PATCH /sources/{source_id}                   approve / ignore / reset
#
# Fetching many pages can take minutes, so it goes to Celery like document
# ingestion does; ranking alone is fast enough to answer inline.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException

from app.db.models import SourceStatus
from app.exceptions import SourceNotFoundError
from app.models.requests import (
    AssessSourcesRequest,
    FetchSourcesRequest,
    GatherSourcesRequest,
    RankSourcesRequest,
    SourceStatusUpdate,
)
from app.models.responses import (
    AssessmentResponse,
    RankingResponse,
    SourceResponse,
    TaskQueuedResponse,
)
from app.services.llm import get_llm_provider
from app.services.scoring import assess_source_quality, rank_and_recommend
from app.services.sources import set_source_status

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Sources"])


@router.post(
    "/sessions/{session_id}/sources/gather",
    response_model=TaskQueuedResponse,
    status_code=202,
    summary="Discover candidate sources for an entity via web search",
)
async def gather_sources(session_id: str, request: GatherSourcesRequest) -> TaskQueuedResponse:
    from app.workers.tasks import gather_session_sources

    categories = [c.value for c in request.categories] if request.categories else None
    task = gather_session_sources.delay(session_id, request.entity.model_dump(), categories)
    logger.info(
        "Queued source gathering for %s in session %s: task_id=%s",
        request.entity.entity_id, session_id, task.id,
    )
    return TaskQueuedResponse(task_id=task.id, session_id=session_id)


@router.post(
    "/sessions/{session_id}/sources/rank",
    response_model=RankingResponse,
    summary="Score and recommend a session's sources",
)
async def rank_sources(session_id: str, request: RankSourcesRequest | None = None) -> RankingResponse:
    request = request or RankSourcesRequest()
    try:
        result = await rank_and_recommend(
            session_id,
            min_score_threshold=request.min_score_threshold,
            top_n_per_category=request.top_n_per_category,
        )
    except Exception as e:
        logger.exception("Ranking failed for session %s", session_id)
        raise HTTPException(status_code=502, detail=f"Ranking failed: {e}") from e
    return RankingResponse(**result)


@router.post(
    "/sessions/{session_id}/sources/assess",
    response_model=AssessmentResponse,
    summary="Ask the LLM whether a session's sources are good enough",
)
async def assess_sources(session_id: str, request: AssessSourcesRequest) -> AssessmentResponse:
    try:
        llm = get_llm_provider()
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise HTTPException(status_code=503, detail=f"Service configuration error: {e}") from e

    verdict = await assess_source_quality(request.entity_id, session_id, llm)
    return AssessmentResponse(**verdict)


@router.post(
    "/sessions/{session_id}/sources/fetch",
    response_model=TaskQueuedResponse,
    status_code=202,
    summary="Fetch every unfetched source of a session, then rank",
)
async def fetch_sources(session_id: str, request: FetchSourcesRequest | None = None) -> TaskQueuedResponse:
    # Deferred so importing the router does not configure Celery
    from app.workers.tasks import fetch_session_sources

    request = request or FetchSourcesRequest()
    task = fetch_session_sources.delay(session_id, request.concurrency)
    logger.info("Queued source fetch for session %s: task_id=%s", session_id, task.id)
    return TaskQueuedResponse(task_id=task.id, session_id=session_id)


@router.patch(
    "/sources/{source_id}",
    response_model=SourceResponse,
    summary="Approve, ignore or reset a source",
)
async def update_source_status(source_id: int, request: SourceStatusUpdate) -> SourceResponse:
    try:
        source = await set_source_status(source_id, SourceStatus(request.status))
    except SourceNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    logger.info("Source %d marked %s", source_id, request.status)
    return SourceResponse.model_validate(source)
