# =============================================================================
# Research API — Streamed Agent Runs
# =============================================================================
#
# POST /research runs one ResearchOrchestrator for one entity and streams
# its progress as newline-delimited JSON:
#
#   {"type": "milestone", "milestone": ..., "details": ...}
#   {"type": "insight",   "insight": {...}}
#   {"type": "stats",     "stats": {...}}
#   {"type": "result",    "result": {...}}     always the last line
#
# The orchestrator's on_progress callback is synchronous, so events go
# through an asyncio.Queue that the response generator drains while the
# run task is in flight. A client disconnect sets the run's cancel event.
#
# A DataIntegrityError cannot change the status code once streaming has
# started; it ends the stream with {"type": "error", ...}.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from app.agents.orchestrator import ResearchOrchestrator
from app.agents.state import OrchestratorConfig, ResearchContext
from app.models.requests import ResearchRequest
from app.services.entity_data import EntityProfile, FinancialStatement, PeerSet
from app.services.llm import get_llm_provider
from app.services.memory import get_memory_service
from app.services.retrieval import RetrievalService
from app.services.vectorstore import get_vector_store
from app.services.web_search import get_web_search_client

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Research"])

_DONE = object()


def context_from_request(request: ResearchRequest) -> ResearchContext:
    entity = request.entity
    return ResearchContext(
        entity=EntityProfile(
            entity_id=entity.entity_id,
            name=entity.name,
            city=entity.city,
            state=entity.state,
            region=entity.region,
            total_assets=entity.total_assets,
        ),
        financials=[FinancialStatement(**s.model_dump()) for s in request.financials],
        peers=PeerSet(**request.peers.model_dump()) if request.peers else None,
        session_id=request.session_id,
        prompt=request.prompt,
    )


def config_from_request(request: ResearchRequest) -> OrchestratorConfig:
    overrides = {
        "max_iterations": request.max_iterations,
        "timeout_seconds": request.timeout_seconds,
        "silent_stop_policy": request.silent_stop_policy,
    }
    return OrchestratorConfig(**{k: v for k, v in overrides.items() if v is not None})


def _line(event: dict) -> bytes:
    return (json.dumps(event, default=str) + "\n").encode()


async def stream_research(
    orchestrator: ResearchOrchestrator,
    context: ResearchContext,
    queue: asyncio.Queue,
    http_request: Request | None = None,
) -> AsyncIterator[bytes]:
    """Yield NDJSON progress lines, then the final result line."""
    cancel_event = asyncio.Event()

    async def _run() -> None:
        try:
            result = await orchestrator.run(context, cancel_event=cancel_event)
            queue.put_nowait({"type": "result", "result": result.to_dict()})
        except Exception as exc:
            logger.exception("Research run for %s raised", context.entity.entity_id)
            queue.put_nowait({"type": "error", "error": f"{type(exc).__name__}: {exc}"})
        finally:
            queue.put_nowait(_DONE)

    task = asyncio.create_task(_run())
    try:
        while True:
            event = await queue.get()
            if event is _DONE:
                break
            yield _line(event)
            if http_request is not None and await http_request.is_disconnected():
                logger.info("Client disconnected; cancelling run for %s", context.entity.entity_id)
                cancel_event.set()
    finally:
        if not task.done():
            cancel_event.set()
        await task


# ---------------------------------------------------------------------------
# POST /research — Run the research agent for one entity
# ---------------------------------------------------------------------------


@router.post(
    "/research",
    summary="Research one bank with the agent",
    description=(
        "Runs the research agent against the supplied financials, ingested "
        "documents, approved sources and the web. Progress is streamed as "
        "NDJSON; the final line carries the result, including partial "
        "results of aborted runs."
    ),
)
async def research_endpoint(http_request: Request, request: ResearchRequest) -> StreamingResponse:
    logger.info(
        "Research request: entity=%s, session=%s, max_iterations=%s",
        request.entity.entity_id, request.session_id, request.max_iterations,
    )

    try:
        config = config_from_request(request)
        llm = get_llm_provider()
        orchestrator_parts = {
            "retrieval": RetrievalService(get_vector_store()),
            "web_search": get_web_search_client(),
            "memory": get_memory_service(),
        }
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise HTTPException(status_code=503, detail=f"Service configuration error: {e}") from e

    queue: asyncio.Queue = asyncio.Queue()
    orchestrator = ResearchOrchestrator(
        llm=llm,
        config=config,
        on_progress=queue.put_nowait,
        **orchestrator_parts,
    )

    return StreamingResponse(
        stream_research(orchestrator, context_from_request(request), queue, http_request),
        media_type="application/x-ndjson",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
