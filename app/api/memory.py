# =============================================================================
# Memory API — Learned Pattern Statistics
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException

from app.models.responses import MemoryStatsResponse
from app.services.memory import get_memory_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Memory"])


@router.get(
    "/memory/stats",
    response_model=MemoryStatsResponse,
    summary="Counts and average success rate of learned patterns",
)
async def memory_stats() -> MemoryStatsResponse:
    try:
        stats = await get_memory_service().get_memory_stats()
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise HTTPException(status_code=503, detail=f"Service configuration error: {e}") from e
    return MemoryStatsResponse(**stats)
