# =============================================================================
# Research Worker Pool — Many Entities, Bounded Parallelism
# =============================================================================
#
# run_research_batch() researches several entities at once, at most
# `width` runs in flight (clamped to 1..AGENT_POOL_MAX_WIDTH).
#
# Every run gets a fresh orchestrator from the factory, and therefore its
# own AgentRunState. One entity failing (even with a DataIntegrityError)
# is captured in its BatchOutcome and never cancels the others.
#
# After the batch, insight types recorded for two or more entities become
# cross-entity memory patterns, written in the background.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from app.agents.orchestrator import ResearchOrchestrator
from app.agents.state import ResearchContext, ResearchResult
from app.config import settings
from app.services.memory import MemoryService

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[ResearchContext], ResearchOrchestrator]


@dataclass
class BatchOutcome:
    entity_id: str
    result: ResearchResult | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None


def clamp_width(width: int | None) -> int:
    requested = settings.agent_pool_width if width is None else width
    return max(1, min(requested, settings.agent_pool_max_width))


def find_cross_entity_patterns(
    contexts: list[ResearchContext],
    outcomes: list[BatchOutcome],
) -> dict[str, list[tuple[str, str]]]:
    """Insight type → (entity_id, entity_name) for types seen in 2+ entities."""
    names = {c.entity.entity_id: c.entity.name for c in contexts}
    seen: dict[str, list[tuple[str, str]]] = {}
    for outcome in outcomes:
        if outcome.result is None:
            continue
        for insight_type in sorted({i.type.value for i in outcome.result.insights}):
            seen.setdefault(insight_type, []).append(
                (outcome.entity_id, names.get(outcome.entity_id, outcome.entity_id))
            )
    return {t: entities for t, entities in seen.items() if len(entities) >= 2}


async def run_research_batch(
    contexts: list[ResearchContext],
    orchestrator_factory: OrchestratorFactory,
    width: int | None = None,
    memory: MemoryService | None = None,
    cancel_event: asyncio.Event | None = None,
) -> list[BatchOutcome]:
    """One orchestrator run per context, in input order."""
    slots = clamp_width(width)
    semaphore = asyncio.Semaphore(slots)
    logger.info("Researching %d entities with %d worker slot(s)", len(contexts), slots)

    async def _one(context: ResearchContext) -> BatchOutcome:
        entity_id = context.entity.entity_id
        async with semaphore:
            try:
                orchestrator = orchestrator_factory(context)
                result = await orchestrator.run(context, cancel_event=cancel_event)
            except Exception as exc:
                logger.exception("Research run for %s failed", entity_id)
                return BatchOutcome(entity_id=entity_id, error=f"{type(exc).__name__}: {exc}")
        return BatchOutcome(entity_id=entity_id, result=result)

    outcomes = list(await asyncio.gather(*(_one(c) for c in contexts)))

    if memory is not None:
        for insight_type, entities in find_cross_entity_patterns(contexts, outcomes).items():
            memory.record_in_background(memory.record_cross_entity_pattern(
                f"{insight_type} insights",
                entities,
                f"{insight_type} findings recorded for {len(entities)} entities in one batch",
            ))

    succeeded = sum(1 for o in outcomes if o.succeeded)
    logger.info("Batch finished: %d succeeded, %d failed", succeeded, len(outcomes) - succeeded)
    return outcomes
