# =============================================================================
# Unit Tests — Research Worker Pool
# =============================================================================

import asyncio
from unittest.mock import MagicMock, patch

from app.agents.pool import clamp_width, find_cross_entity_patterns, run_research_batch
from app.agents.state import Insight, ResearchContext, ResearchResult
from app.agents.tools import Importance, InsightType
from app.config import settings
from app.exceptions import EmbeddingDimensionError, RunStatus
from app.services.entity_data import EntityProfile
from app.services.memory import InMemoryMemoryStore, MemoryService


def _run(coro):
    return asyncio.run(coro)


def _context(entity_id: str) -> ResearchContext:
    return ResearchContext(entity=EntityProfile(entity_id=entity_id, name=f"Bank {entity_id}"))


def _result(*insight_types: InsightType) -> ResearchResult:
    insights = [
        Insight(type=t, title=t.value, content="c", importance=Importance.MEDIUM) for t in insight_types
    ]
    return ResearchResult(
        insights=insights, explored_areas=[], stats={}, status=RunStatus.COMPLETED, confidence="high",
    )


class FakeOrchestrator:
    """Tracks how many runs are in flight across every instance."""

    in_flight = 0
    peak = 0

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    async def run(self, context, cancel_event=None):
        FakeOrchestrator.in_flight += 1
        FakeOrchestrator.peak = max(FakeOrchestrator.peak, FakeOrchestrator.in_flight)
        try:
            await asyncio.sleep(0.01)
            if self.error is not None:
                raise self.error
            return self.result
        finally:
            FakeOrchestrator.in_flight -= 1


class TestClampWidth:
    def test_bounds(self):
        with patch.object(settings, "agent_pool_max_width", 4), patch.object(settings, "agent_pool_width", 1):
            assert clamp_width(None) == 1
            assert clamp_width(0) == 1
            assert clamp_width(3) == 3
            assert clamp_width(50) == 4


class TestRunResearchBatch:
    def setup_method(self):
        FakeOrchestrator.in_flight = 0
        FakeOrchestrator.peak = 0

    def test_width_bounds_concurrency_and_keeps_order(self):
        contexts = [_context(str(i)) for i in range(6)]

        with patch.object(settings, "agent_pool_max_width", 4):
            outcomes = _run(run_research_batch(
                contexts, lambda c: FakeOrchestrator(result=_result()), width=2,
            ))

        assert [o.entity_id for o in outcomes] == [str(i) for i in range(6)]
        assert all(o.succeeded for o in outcomes)
        assert FakeOrchestrator.peak == 2

    def test_one_failure_does_not_cancel_others(self):
        def factory(context):
            if context.entity.entity_id == "1":
                return FakeOrchestrator(error=EmbeddingDimensionError(expected=1536, actual=768))
            return FakeOrchestrator(result=_result())

        outcomes = _run(run_research_batch([_context("0"), _context("1"), _context("2")], factory, width=3))

        assert [o.succeeded for o in outcomes] == [True, False, True]
        assert outcomes[1].error.startswith("EmbeddingDimensionError")

    def test_each_run_gets_a_fresh_orchestrator(self):
        factory = MagicMock(side_effect=lambda c: FakeOrchestrator(result=_result()))
        _run(run_research_batch([_context("a"), _context("b")], factory, width=2))
        assert factory.call_count == 2

    def test_cross_entity_patterns_written_to_memory(self):
        memory = MemoryService(store=InMemoryMemoryStore())
        results = {
            "a": _result(InsightType.RISK_FACTOR, InsightType.FINANCIAL_TREND),
            "b": _result(InsightType.RISK_FACTOR),
            "c": _result(InsightType.TECHNOLOGY_INVESTMENT),
        }

        async def scenario():
            await run_research_batch(
                [_context(k) for k in results],
                lambda c: FakeOrchestrator(result=results[c.entity.entity_id]),
                width=3,
                memory=memory,
            )
            await memory.drain()
            return await memory.get_relevant_memories(ResearchContext(entity=EntityProfile("x", "X")).memory_context)

        (pattern,) = _run(scenario())
        assert pattern.pattern == "risk_factor insights"
        assert pattern.usage_count == 2
        assert {e["entity_id"] for e in pattern.worked_for} == {"a", "b"}


class TestFindCrossEntityPatterns:
    def test_types_seen_twice(self):
        contexts = [_context("a"), _context("b")]
        outcomes = [
            MagicMock(entity_id="a", result=_result(InsightType.RISK_FACTOR, InsightType.RISK_FACTOR)),
            MagicMock(entity_id="b", result=_result(InsightType.RISK_FACTOR)),
            MagicMock(entity_id="c", result=None),
        ]
        patterns = find_cross_entity_patterns(contexts, outcomes)
        assert patterns == {"risk_factor": [("a", "Bank a"), ("b", "Bank b")]}

    def test_single_entity_types_ignored(self):
        outcomes = [MagicMock(entity_id="a", result=_result(InsightType.RISK_FACTOR))]
        assert find_cross_entity_patterns([_context("a")], outcomes) == {}
