# =============================================================================
# Celery Task Definitions
# =============================================================================
#
# INGESTION (sync, like the pipeline it drives):
#   parse file → IngestionPipeline.process_document()
#   The pipeline marks PROCESSING / COMPLETED / FAILED and removes partial
#   chunks on failure; the task only decides whether to retry.
#
# SOURCES (async services driven from a sync worker):
#   gather_session_sources one web search per category → pending sources
#   fetch_session_sources  fetch every not_fetched source, then rank
#   rank_session_sources   score + recommend only
#
# Async services run through _run_async(), which executes one coroutine
# on a fresh event loop and disposes the async engine's pool before the
# loop closes (pooled asyncpg connections are bound to their loop).
#
# RETRY STRATEGY:
#   max_retries=3, default_retry_delay=60s for transient failures.
#   DataIntegrityError is a defect and is never retried.
# =============================================================================

import asyncio
import logging

from app.config import settings
from app.db.engine import async_engine
from app.db.models import SourceCategory
from app.exceptions import DataIntegrityError
from app.services.entity_data import EntityProfile
from app.services.ingestion import IngestionPipeline
from app.services.model_resolver import ModelResolver
from app.services.parser import parse_document
from app.services.scoring import rank_and_recommend
from app.services.sources import fetch_session_sources as fetch_sources
from app.services.sources import gather_sources
from app.services.vectorstore import get_vector_store
from app.services.web_search import AnthropicWebSearch
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def _run_async(coro):
    async def _wrapped():
        try:
            return await coro
        finally:
            await async_engine.dispose()

    return asyncio.run(_wrapped())


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


@celery_app.task(bind=True, name="ingest_document", max_retries=3, default_retry_delay=60)
def ingest_document(
    self,
    document_id: int,
    file_path: str,
    chunk_size: int | None = None,
    chunk_overlap: int | None = None,
) -> dict:
    task_id = self.request.id
    logger.info(
        "Starting ingestion: document_id=%d, file=%s, task_id=%s, vectorstore=%s",
        document_id, file_path, task_id, settings.vectorstore_type,
    )

    try:
        parsed = parse_document(file_path)
        pages = [(p.page_number, p.text) for p in parsed.pages]
        result = IngestionPipeline(get_vector_store()).process_document(
            document_id, pages, chunk_size=chunk_size, chunk_overlap=chunk_overlap,
        )
    except DataIntegrityError:
        logger.exception("[%s] Data integrity failure for document_id=%d", task_id, document_id)
        raise
    except Exception as exc:
        logger.exception("[%s] Ingestion failed for document_id=%d: %s", task_id, document_id, exc)
        raise self.retry(exc=exc)

    summary = {
        "document_id": document_id,
        "status": "completed",
        "chunk_count": result.chunk_count,
        "page_count": result.page_count,
        "topics": result.topics,
        "vectorstore": settings.vectorstore_type,
    }
    logger.info("[%s] Ingestion complete: %s", task_id, summary)
    return summary


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


@celery_app.task(bind=True, name="fetch_session_sources", max_retries=3, default_retry_delay=60)
def fetch_session_sources(self, session_id: str, concurrency: int | None = None) -> dict:
    """Fetch a session's unfetched sources, then rank the whole session."""

    async def _fetch_then_rank() -> dict:
        fetched = await fetch_sources(session_id, concurrency=concurrency)
        ranking = await rank_and_recommend(session_id)
        return {"session_id": session_id, "fetch": fetched, "ranking": ranking}

    try:
        return _run_async(_fetch_then_rank())
    except Exception as exc:
        logger.exception("[%s] Source fetch failed for session %s", self.request.id, session_id)
        raise self.retry(exc=exc)


@celery_app.task(bind=True, name="rank_session_sources", max_retries=3, default_retry_delay=60)
def rank_session_sources(
    self,
    session_id: str,
    min_score_threshold: int | None = None,
    top_n_per_category: int | None = None,
) -> dict:
    try:
        return _run_async(rank_and_recommend(session_id, min_score_threshold, top_n_per_category))
    except Exception as exc:
        logger.exception("[%s] Ranking failed for session %s", self.request.id, session_id)
        raise self.retry(exc=exc)


@celery_app.task(bind=True, name="gather_session_sources", max_retries=3, default_retry_delay=60)
def gather_session_sources(
    self,
    session_id: str,
    entity: dict,
    categories: list[str] | None = None,
) -> dict:
    """One web search per source category; new references become pending sources."""
    profile = EntityProfile(**entity)
    wanted = [SourceCategory(c) for c in categories] if categories else None

    # A fresh client per task: its connection pool belongs to this task's event loop
    web_search = AnthropicWebSearch(model=ModelResolver())

    try:
        found = _run_async(gather_sources(profile, session_id, web_search, wanted))
    except Exception as exc:
        logger.exception("[%s] Source gathering failed for session %s", self.request.id, session_id)
        raise self.retry(exc=exc)

    logger.info("[%s] Gathered sources for %s: %s", self.request.id, profile.entity_id, found)
    return {"session_id": session_id, "entity_id": profile.entity_id, "found": found}
