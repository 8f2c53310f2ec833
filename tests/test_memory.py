# =============================================================================
# Unit Tests — Agent Memory
# =============================================================================
#
# Runs against InMemoryMemoryStore, which shares the merge rule with the
# SQL store through apply_outcome().
# =============================================================================

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from app.db.models import MemoryType, SizeTier
from app.services.memory import (
    InMemoryMemoryStore,
    MemoryContext,
    MemoryService,
    PatternRecord,
    build_memory_context,
    entity_context,
    normalize_query_pattern,
    size_tier_for,
)

LARGE_MIDWEST = MemoryContext(size_tier=SizeTier.LARGE, region="Midwest")


def _run(coro):
    return asyncio.run(coro)


def _service() -> MemoryService:
    return MemoryService(store=InMemoryMemoryStore())


async def _seed(service: MemoryService) -> None:
    contexts = {
        "tier+region": MemoryContext(SizeTier.LARGE, "Midwest"),
        "tier only": MemoryContext(SizeTier.LARGE, None),
        "region only": MemoryContext(SizeTier.SMALL, "Midwest"),
        "general": MemoryContext(),
        "other tier": MemoryContext(SizeTier.SMALL, None),
        "other region": MemoryContext(SizeTier.LARGE, "West"),
    }
    for name, context in contexts.items():
        await service.record_outcome(
            context, MemoryType.SEARCH_QUERY, name, succeeded=True, normalize=False,
        )


class TestNormalisation:
    def test_years_and_quoted_names(self):
        assert normalize_query_pattern('"First Example Bank" investor day 2025') == (
            '"[BANK_NAME]" investor day [YEAR]'
        )

    def test_empty(self):
        assert normalize_query_pattern(None) == ""

    @pytest.mark.parametrize(
        "assets, tier",
        [
            (None, None),
            (500_000_000, SizeTier.SMALL),
            (1_000_000_000, SizeTier.MEDIUM),
            (25_000_000_000, SizeTier.LARGE),
            (150_000_000_000, SizeTier.MEGA),
        ],
    )
    def test_size_tiers(self, assets, tier):
        assert size_tier_for(assets) is tier

    def test_blank_region_is_none(self):
        assert entity_context(None, "").region is None


class TestRetrievalCascade:
    def test_tier_and_region(self):
        service = _service()

        async def scenario():
            await _seed(service)
            return await service.get_relevant_memories(LARGE_MIDWEST)

        patterns = {p.pattern for p in _run(scenario())}
        assert patterns == {"tier+region", "tier only", "region only", "general"}

    def test_unknown_region_skips_region_patterns(self):
        service = _service()

        async def scenario():
            await _seed(service)
            return await service.get_relevant_memories(MemoryContext(SizeTier.LARGE, None))

        patterns = {p.pattern for p in _run(scenario())}
        assert patterns == {"tier only", "general"}

    def test_unseen_context_falls_back_to_general(self):
        service = _service()
        others = [
            MemoryContext(SizeTier.LARGE, "Midwest"),
            MemoryContext(SizeTier.LARGE, None),
            MemoryContext(SizeTier.MEDIUM, "West"),
            MemoryContext(SizeTier.SMALL, "Midwest"),
        ]

        async def scenario():
            for i, context in enumerate(others):
                await service.record_outcome(
                    context, MemoryType.SEARCH_QUERY, f"other {i}", succeeded=True, normalize=False,
                )
            general = MemoryContext()
            await service.record_outcome(general, MemoryType.SEARCH_QUERY, "general weak", succeeded=True, normalize=False)
            await service.record_outcome(general, MemoryType.SEARCH_QUERY, "general weak", succeeded=False, normalize=False)
            for _ in range(3):
                await service.record_outcome(general, MemoryType.SEARCH_QUERY, "general strong", succeeded=True, normalize=False)
            return await service.get_relevant_memories(MemoryContext(SizeTier.SMALL, "Pacific"))

        patterns = _run(scenario())
        assert [p.pattern for p in patterns] == ["general strong", "general weak"]
        assert all(p.size_tier is None and p.region is None for p in patterns)

    def test_ordering_prefers_success(self):
        service = _service()
        context = MemoryContext()

        async def scenario():
            await service.record_outcome(context, MemoryType.SEARCH_QUERY, "weak", succeeded=False, normalize=False)
            for _ in range(3):
                await service.record_outcome(context, MemoryType.SEARCH_QUERY, "strong", succeeded=True, normalize=False)
            return await service.get_relevant_memories(context)

        assert [p.pattern for p in _run(scenario())] == ["strong", "weak"]

    def test_type_and_use_case_filters(self):
        service = _service()
        context = MemoryContext()

        async def scenario():
            await service.record_search(context, "bank strategy", "strategy", sources_found=2)
            await service.record_search(context, "bank news", "news", sources_found=1)
            await service.record_document_query(context, "What is NIM?", "investor_presentation", 3, True)
            return (
                await service.get_search_patterns(context, "news"),
                await service.get_document_query_patterns(context),
            )

        searches, documents = _run(scenario())
        assert [p.pattern for p in searches] == ["bank news"]
        assert [p.memory_type for p in documents] == [MemoryType.DOCUMENT_QUERY]


class TestRecording:
    def test_repeat_outcomes_merge(self):
        service = _service()

        async def scenario():
            await service.record_search(LARGE_MIDWEST, "Bank investor presentation 2024", "strategy", 3, "1", "A")
            await service.record_search(LARGE_MIDWEST, "Bank investor presentation 2025", "strategy", 0, "2", "B")
            return await service.record_search(LARGE_MIDWEST, "Bank investor presentation 2023", "strategy", 2, "1", "A")

        record = _run(scenario())
        assert record.pattern == "Bank investor presentation [YEAR]"
        assert record.usage_count == 3
        assert record.success_count == 2
        assert [e["entity_id"] for e in record.worked_for] == ["1"]

    def test_success_never_exceeds_usage(self):
        service = _service()

        async def scenario():
            records = []
            for succeeded in (True, False, True, True, False):
                records.append(await service.record_outcome(
                    MemoryContext(), MemoryType.ANALYSIS_STRATEGY, "peer compare", succeeded, normalize=False,
                ))
            return records

        for record in _run(scenario()):
            assert 0 <= record.success_count <= record.usage_count
            assert 0.0 <= record.success_rate <= 1.0

    def test_cross_entity_counts_every_entity(self):
        service = _service()
        entities = [("1", "A"), ("2", "B"), ("3", "C")]

        record = _run(service.record_cross_entity_pattern("Deposit betas rising", entities, "Rate cycle"))

        assert record.usage_count == 3
        assert record.success_count == 3
        assert len(record.worked_for) == 3
        assert record.notes.startswith("Observed across 3 entities")

    def test_cross_entity_requires_entities(self):
        with pytest.raises(ValueError):
            _run(_service().record_cross_entity_pattern("x", [], "y"))

    def test_empty_pattern_rejected(self):
        with pytest.raises(ValueError):
            _run(_service().record_outcome(MemoryContext(), MemoryType.SEARCH_QUERY, "   ", True))

    def test_concurrent_writes_all_land(self):
        service = _service()

        async def scenario():
            await asyncio.gather(*(
                service.record_outcome(MemoryContext(), MemoryType.SEARCH_QUERY, "same", True, normalize=False)
                for _ in range(20)
            ))
            return await service.get_relevant_memories(MemoryContext())

        (record,) = _run(scenario())
        assert record.usage_count == 20
        assert record.success_count == 20

    def test_stats(self):
        service = _service()

        async def scenario():
            await service.record_outcome(MemoryContext(), MemoryType.SEARCH_QUERY, "a", True, normalize=False)
            await service.record_outcome(MemoryContext(), MemoryType.SEARCH_QUERY, "b", False, normalize=False)
            return await service.get_memory_stats()

        stats = _run(scenario())
        assert stats["total_patterns"] == 2
        assert stats["by_type"]["search_query"] == 2
        assert stats["by_type"]["cross_entity"] == 0
        assert stats["average_success_rate"] == 0.5


class TestBackgroundWrites:
    def test_failure_is_logged_not_raised(self, caplog):
        store = InMemoryMemoryStore()
        store.upsert = AsyncMock(side_effect=RuntimeError("db down"))
        service = MemoryService(store=store)

        async def scenario():
            service.record_in_background(
                service.record_outcome(MemoryContext(), MemoryType.SEARCH_QUERY, "q", True)
            )
            assert service.pending_writes == 1
            await service.drain()
            return service.pending_writes

        with caplog.at_level(logging.ERROR, logger="app.services.memory"):
            assert _run(scenario()) == 0
        assert "Background memory write failed" in caplog.text

    def test_drain_waits_for_writes(self):
        service = _service()

        async def scenario():
            for name in ("a", "b", "c"):
                service.record_in_background(
                    service.record_outcome(MemoryContext(), MemoryType.SEARCH_QUERY, name, True, normalize=False)
                )
            await service.drain()
            return await service.get_memory_stats()

        assert _run(scenario())["total_patterns"] == 3


class TestBuildMemoryContext:
    def test_empty(self):
        assert build_memory_context([]) == ""

    def test_sections(self):
        patterns = [
            PatternRecord(MemoryType.SEARCH_QUERY, '"[BANK_NAME]" investor day', example="x", success_count=1,
                          usage_count=2, worked_for=[{"entity_id": "1"}]),
            PatternRecord(MemoryType.ANALYSIS_STRATEGY, "Peer efficiency comparison", success_count=1,
                          usage_count=1, notes="Works for mid-size banks"),
        ]
        text = build_memory_context(patterns)
        assert "### Successful Search Query Patterns:" in text
        assert "Success rate: 50% across 1 banks" in text
        assert "### Effective Analysis Strategies:" in text
        assert "Note: Works for mid-size banks" in text
        assert "### Cross-Bank Patterns:" not in text
