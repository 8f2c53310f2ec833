# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Background work that must not block the API:
#   ingest_document        parse → chunk → embed → store
#   gather_session_sources discover candidate sources via web search
#   fetch_session_sources  download every discovered source, then rank
#   rank_session_sources   re-score a session's sources
#
# ARCHITECTURE:
#   FastAPI (producer) ──▶ Redis db 0 (broker) ──▶ worker ──▶ Redis db 1 (results)
# =============================================================================

from celery import Celery

from app.config import settings

celery_app = Celery(
    "app.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # JSON only; pickle can execute code on deserialisation
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Acknowledge after completion so a crashed worker's task is re-queued
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    # Source fetches are bounded by the per-request timeout; ingestion of a
    # large PDF is the long pole
    task_soft_time_limit=600,
    task_time_limit=900,

    result_expires=3600,
    include=["app.workers.tasks"],
)
