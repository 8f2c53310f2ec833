# =============================================================================
# FastAPI Application Entry Point
# =============================================================================
#
# Run with:  uvicorn app.main:app --reload
#
# Logging is configured here once, from settings.log_level; every module
# logs through logging.getLogger(__name__).
#
# On shutdown, outstanding background memory writes are awaited so a
# graceful stop does not drop what the last runs learned.
# =============================================================================

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api import documents, memory, research, sources
from app.config import settings
from app.models.responses import HealthResponse
from app.services.memory import get_memory_service

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s %s", settings.app_name, settings.app_version)
    yield
    service = get_memory_service()
    if service.pending_writes:
        logger.info("Waiting for %d background memory write(s)", service.pending_writes)
    await service.drain()


app = FastAPI(
    title=settings.app_name,
    description="Agentic research over bank financials, documents and web sources",
    version=settings.app_version,
    lifespan=lifespan,
)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    return HealthResponse(version=settings.app_version, service=settings.app_name)


app.include_router(research.router)
app.include_router(sources.router)
app.include_router(documents.router)
app.include_router(memory.router)
