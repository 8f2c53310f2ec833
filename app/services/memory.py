# =============================================================================
# Agent Memory — Learned Query & Strategy Patterns
# =============================================================================
#
# The agent remembers which search queries, document questions and
# analysis strategies produced good evidence, tagged with the context
# (size tier, region) of the entity it was researching.
#
# RETRIEVAL CASCADE (union, then ordered by success, recency, usage):
#   (a) same size tier AND same region
#   (b) same size tier, pattern has no region
#   (c) same region, any tier              (only when the region is known)
#   (d) general patterns: no tier, no region
#
# RECORDING:
#   Patterns are normalised (years → [YEAR], quoted names → "[BANK_NAME]")
#   and keyed by (memory_type, pattern, use_case). A repeat outcome bumps
#   usage_count, bumps success_count when it worked, refreshes last_used,
#   and appends the entity to worked_for once. success_count never
#   exceeds usage_count.
#
# DESIGN DECISION: Two stores, one merge rule.
#   SqlMemoryStore       async SQLAlchemy; concurrent writers resolve via
#                        optimistic concurrency (version_id_col) and retry
#   InMemoryMemoryStore  dict + asyncio.Lock (tests, single-process runs)
#   Both apply outcomes through apply_outcome(), so they cannot drift.
#
# Writes from the agent are fire-and-forget: record_in_background() logs a
# failed write and never lets it reach the research run.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Coroutine, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.db.engine import async_session_factory
from app.db.models import MemoryPattern, MemoryType, SizeTier

logger = logging.getLogger(__name__)

_YEAR_RE = re.compile(r"\b(20\d{2})\b")
_QUOTED_RE = re.compile(r'"[^"]*"')


# ---------------------------------------------------------------------------
# Context and normalisation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MemoryContext:
    size_tier: SizeTier | None = None
    region: str | None = None


def size_tier_for(total_assets: float | None) -> SizeTier | None:
    if total_assets is None:
        return None
    if total_assets >= 100_000_000_000:
        return SizeTier.MEGA
    if total_assets >= 10_000_000_000:
        return SizeTier.LARGE
    if total_assets >= 1_000_000_000:
        return SizeTier.MEDIUM
    return SizeTier.SMALL


def entity_context(total_assets: float | None, region: str | None) -> MemoryContext:
    return MemoryContext(size_tier=size_tier_for(total_assets), region=region or None)


def normalize_query_pattern(text: str | None) -> str:
    """Strip entity-specific detail so a query can be reused across entities."""
    if not text:
        return ""
    pattern = _YEAR_RE.sub("[YEAR]", str(text))
    pattern = _QUOTED_RE.sub('"[BANK_NAME]"', pattern)
    return pattern.strip()


# ---------------------------------------------------------------------------
# Records and the shared merge rule
# ---------------------------------------------------------------------------


@dataclass
class PatternRecord:
    """Store-neutral snapshot of one memory pattern."""

    memory_type: MemoryType
    pattern: str
    use_case: str = ""
    size_tier: SizeTier | None = None
    region: str | None = None
    example: str | None = None
    success_count: int = 0
    usage_count: int = 0
    last_used: datetime = field(default_factory=lambda: datetime.now(UTC))
    worked_for: list[dict] = field(default_factory=list)
    notes: str | None = None
    id: int | None = None

    @property
    def success_rate(self) -> float:
        return self.success_count / self.usage_count if self.usage_count else 0.0

    @property
    def key(self) -> tuple[MemoryType, str, str]:
        return (self.memory_type, self.pattern, self.use_case)


@dataclass
class Outcome:
    """One observation to fold into a pattern."""

    memory_type: MemoryType
    pattern: str
    context: MemoryContext
    use_case: str = ""
    example: str | None = None
    success_increment: int = 1
    usage_increment: int = 1
    new_worked_for: list[dict] = field(default_factory=list)
    notes: str | None = None

    @property
    def key(self) -> tuple[MemoryType, str, str]:
        return (self.memory_type, self.pattern, self.use_case)


def apply_outcome(record: Any, outcome: Outcome, now: datetime) -> None:
    """
    Fold an outcome into an existing record (ORM row or PatternRecord).

    worked_for is reassigned rather than mutated so JSONB change tracking
    sees the update.
    """
    record.usage_count += outcome.usage_increment
    record.success_count = min(record.success_count + outcome.success_increment, record.usage_count)
    record.last_used = now

    known = {entry.get("entity_id") for entry in record.worked_for or []}
    added = [e for e in outcome.new_worked_for if e.get("entity_id") not in known]
    if added:
        record.worked_for = [*(record.worked_for or []), *added]
    if outcome.notes is not None:
        record.notes = outcome.notes


def new_pattern_fields(outcome: Outcome, now: datetime) -> dict:
    return {
        "memory_type": outcome.memory_type,
        "pattern": outcome.pattern,
        "use_case": outcome.use_case,
        "size_tier": outcome.context.size_tier,
        "region": outcome.context.region,
        "example": outcome.example,
        "success_count": min(outcome.success_increment, outcome.usage_increment),
        "usage_count": outcome.usage_increment,
        "last_used": now,
        "worked_for": list(outcome.new_worked_for),
        "notes": outcome.notes,
    }


def matches_context(record: PatternRecord, context: MemoryContext) -> bool:
    if context.region is not None and record.region == context.region:
        return True  # (a) and (c)
    if record.size_tier == context.size_tier and record.region is None:
        return True  # (b); also (d) when the context has no tier
    return record.size_tier is None and record.region is None


def _sort_key(record: PatternRecord) -> tuple:
    return (-record.success_count, -record.last_used.timestamp(), -record.usage_count)


def summarize_stats(records: Iterable[PatternRecord]) -> dict:
    by_type = {t.value: 0 for t in MemoryType}
    rates: list[float] = []
    total = 0
    for r in records:
        total += 1
        by_type[r.memory_type.value] += 1
        if r.usage_count:
            rates.append(r.success_rate)
    return {
        "total_patterns": total,
        "by_type": by_type,
        "average_success_rate": round(sum(rates) / len(rates), 4) if rates else 0.0,
    }


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class MemoryStore(Protocol):
    async def query(
        self,
        context: MemoryContext,
        memory_types: list[MemoryType] | None,
        use_case: str | None,
        limit: int,
    ) -> list[PatternRecord]:
        ...

    async def upsert(self, outcome: Outcome) -> PatternRecord:
        ...

    async def stats(self) -> dict:
        ...


class InMemoryMemoryStore:
    def __init__(self) -> None:
        self._records: dict[tuple[MemoryType, str, str], PatternRecord] = {}
        self._lock = asyncio.Lock()
        self._next_id = 1

    async def query(
        self,
        context: MemoryContext,
        memory_types: list[MemoryType] | None = None,
        use_case: str | None = None,
        limit: int = 50,
    ) -> list[PatternRecord]:
        async with self._lock:
            matched = [
                r for r in self._records.values()
                if matches_context(r, context)
                and (memory_types is None or r.memory_type in memory_types)
                and (use_case is None or r.use_case == use_case)
            ]
        matched.sort(key=_sort_key)
        return matched[:limit]

    async def upsert(self, outcome: Outcome) -> PatternRecord:
        now = datetime.now(UTC)
        async with self._lock:
            record = self._records.get(outcome.key)
            if record is None:
                record = PatternRecord(id=self._next_id, **new_pattern_fields(outcome, now))
                self._next_id += 1
                self._records[outcome.key] = record
            else:
                apply_outcome(record, outcome, now)
            return record

    async def stats(self) -> dict:
        async with self._lock:
            return summarize_stats(list(self._records.values()))


def _to_record(row: MemoryPattern) -> PatternRecord:
    return PatternRecord(
        id=row.id,
        memory_type=row.memory_type,
        pattern=row.pattern,
        use_case=row.use_case or "",
        size_tier=row.size_tier,
        region=row.region,
        example=row.example,
        success_count=row.success_count,
        usage_count=row.usage_count,
        last_used=row.last_used,
        worked_for=list(row.worked_for or []),
        notes=row.notes,
    )


class SqlMemoryStore:
    def __init__(self, session_factory=async_session_factory, max_write_retries: int | None = None) -> None:
        self._session_factory = session_factory
        self._max_attempts = max(1, max_write_retries or settings.memory_max_write_retries)

    @staticmethod
    def _context_clause(context: MemoryContext):
        tier_eq = (
            MemoryPattern.size_tier == context.size_tier
            if context.size_tier is not None
            else MemoryPattern.size_tier.is_(None)
        )
        clauses = [
            and_(tier_eq, MemoryPattern.region.is_(None)),
            and_(MemoryPattern.size_tier.is_(None), MemoryPattern.region.is_(None)),
        ]
        if context.region is not None:
            clauses.append(and_(tier_eq, MemoryPattern.region == context.region))
            clauses.append(MemoryPattern.region == context.region)
        return or_(*clauses)

    async def query(
        self,
        context: MemoryContext,
        memory_types: list[MemoryType] | None = None,
        use_case: str | None = None,
        limit: int = 50,
    ) -> list[PatternRecord]:
        stmt = select(MemoryPattern).where(self._context_clause(context))
        if memory_types:
            stmt = stmt.where(MemoryPattern.memory_type.in_(memory_types))
        if use_case is not None:
            stmt = stmt.where(MemoryPattern.use_case == use_case)
        stmt = stmt.order_by(
            MemoryPattern.success_count.desc(),
            MemoryPattern.last_used.desc(),
            MemoryPattern.usage_count.desc(),
        ).limit(limit)

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_record(r) for r in rows]

    async def upsert(self, outcome: Outcome) -> PatternRecord:
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await self._upsert_once(outcome)
            except (StaleDataError, IntegrityError) as exc:
                if attempt >= self._max_attempts:
                    raise
                logger.info(
                    "Concurrent write on memory pattern %r (attempt %d/%d): %s; retrying",
                    outcome.pattern[:60], attempt, self._max_attempts, type(exc).__name__,
                )
        raise AssertionError("unreachable")

    async def _upsert_once(self, outcome: Outcome) -> PatternRecord:
        now = datetime.now(UTC)
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(MemoryPattern).where(
                        MemoryPattern.memory_type == outcome.memory_type,
                        MemoryPattern.pattern == outcome.pattern,
                        MemoryPattern.use_case == outcome.use_case,
                    )
                )
            ).scalar_one_or_none()

            if row is None:
                row = MemoryPattern(**new_pattern_fields(outcome, now))
                session.add(row)
            else:
                apply_outcome(row, outcome, now)

            await session.commit()
            return _to_record(row)

    async def stats(self) -> dict:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(
                        MemoryPattern.memory_type,
                        func.count(MemoryPattern.id),
                        func.avg(
                            MemoryPattern.success_count * 1.0
                            / func.nullif(MemoryPattern.usage_count, 0)
                        ),
                    ).group_by(MemoryPattern.memory_type)
                )
            ).all()

        by_type = {t.value: 0 for t in MemoryType}
        total = 0
        weighted = 0.0
        for memory_type, count, avg_rate in rows:
            by_type[memory_type.value] = count
            total += count
            weighted += float(avg_rate or 0.0) * count
        return {
            "total_patterns": total,
            "by_type": by_type,
            "average_success_rate": round(weighted / total, 4) if total else 0.0,
        }


_store: MemoryStore | None = None


def get_memory_store() -> MemoryStore:
    """Store selected by MEMORY_BACKEND ("sql" or "memory")."""
    global _store
    if _store is None:
        if settings.memory_backend == "memory":
            _store = InMemoryMemoryStore()
        elif settings.memory_backend == "sql":
            _store = SqlMemoryStore()
        else:
            raise ValueError(f"Unknown memory backend: {settings.memory_backend}")
    return _store


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


def _worked_for_entry(entity_id: str | None, entity_name: str | None, result: dict | None) -> list[dict]:
    if entity_id is None:
        return []
    return [{
        "entity_id": entity_id,
        "entity_name": entity_name,
        "date": datetime.now(UTC).isoformat(),
        "result": result or {},
    }]


class MemoryService:
    def __init__(self, store: MemoryStore | None = None) -> None:
        self._store = store or get_memory_store()
        self._pending: set[asyncio.Task] = set()

    # -- retrieval -----------------------------------------------------------

    async def get_relevant_memories(
        self,
        context: MemoryContext,
        memory_types: list[MemoryType] | MemoryType | None = None,
        use_case: str | None = None,
        limit: int | None = None,
    ) -> list[PatternRecord]:
        if isinstance(memory_types, MemoryType):
            memory_types = [memory_types]
        return await self._store.query(
            context, memory_types, use_case, limit or settings.memory_query_limit,
        )

    async def get_search_patterns(self, context: MemoryContext, focus: str | None = None) -> list[PatternRecord]:
        return await self.get_relevant_memories(
            context, MemoryType.SEARCH_QUERY, f"search_{focus}" if focus else None,
        )

    async def get_document_query_patterns(
        self, context: MemoryContext, category: str | None = None,
    ) -> list[PatternRecord]:
        return await self.get_relevant_memories(
            context, MemoryType.DOCUMENT_QUERY, f"query_{category}" if category else None,
        )

    async def get_analysis_strategies(self, context: MemoryContext) -> list[PatternRecord]:
        return await self.get_relevant_memories(context, MemoryType.ANALYSIS_STRATEGY)

    async def get_memory_stats(self) -> dict:
        return await self._store.stats()

    # -- recording -----------------------------------------------------------

    async def record_outcome(
        self,
        context: MemoryContext,
        memory_type: MemoryType,
        pattern_text: str,
        succeeded: bool,
        result_metrics: dict | None = None,
        use_case: str | None = None,
        entity_id: str | None = None,
        entity_name: str | None = None,
        normalize: bool = True,
        example: str | None = None,
    ) -> PatternRecord:
        pattern = normalize_query_pattern(pattern_text) if normalize else pattern_text.strip()
        if not pattern:
            raise ValueError("Cannot record an empty memory pattern")

        outcome = Outcome(
            memory_type=memory_type,
            pattern=pattern,
            context=context,
            use_case=use_case or "",
            example=example if example is not None else pattern_text,
            success_increment=1 if succeeded else 0,
            usage_increment=1,
            new_worked_for=(
                _worked_for_entry(entity_id, entity_name, result_metrics) if succeeded else []
            ),
        )
        return await self._store.upsert(outcome)

    async def record_search(
        self,
        context: MemoryContext,
        query: str,
        focus: str | None,
        sources_found: int,
        entity_id: str | None = None,
        entity_name: str | None = None,
    ) -> PatternRecord:
        return await self.record_outcome(
            context,
            MemoryType.SEARCH_QUERY,
            query,
            succeeded=sources_found > 0,
            result_metrics={"sources_found": sources_found, "relevance_score": 8 if sources_found > 0 else 3},
            use_case=f"search_{focus}" if focus else None,
            entity_id=entity_id,
            entity_name=entity_name,
        )

    async def record_document_query(
        self,
        context: MemoryContext,
        question: str,
        category: str,
        relevant_results: int,
        succeeded: bool,
        entity_id: str | None = None,
        entity_name: str | None = None,
    ) -> PatternRecord:
        return await self.record_outcome(
            context,
            MemoryType.DOCUMENT_QUERY,
            question,
            succeeded=succeeded,
            result_metrics={
                "relevant_results": relevant_results,
                "relevance_score": 9 if relevant_results > 0 else 2,
            },
            use_case=f"query_{category}",
            entity_id=entity_id,
            entity_name=entity_name,
        )

    async def record_analysis_strategy(
        self,
        context: MemoryContext,
        strategy: str,
        metrics: list[str],
        insights_generated: int,
        entity_id: str | None = None,
        entity_name: str | None = None,
    ) -> PatternRecord:
        return await self.record_outcome(
            context,
            MemoryType.ANALYSIS_STRATEGY,
            strategy,
            succeeded=True,
            result_metrics={
                "insights_generated": insights_generated,
                "relevance_score": 9 if insights_generated > 0 else 5,
            },
            entity_id=entity_id,
            entity_name=entity_name,
            normalize=False,
            example=f"{strategy} - Metrics: {', '.join(metrics)}",
        )

    async def record_cross_entity_pattern(
        self,
        pattern: str,
        entities: list[tuple[str, str]],
        commonality: str,
    ) -> PatternRecord:
        """
        A pattern observed across several entities. `entities` is a list of
        (entity_id, entity_name). Both counters grow by len(entities).
        """
        if not entities:
            raise ValueError("A cross-entity pattern needs at least one entity")
        now = datetime.now(UTC).isoformat()
        outcome = Outcome(
            memory_type=MemoryType.CROSS_ENTITY,
            pattern=pattern.strip(),
            context=MemoryContext(),
            example=f"{pattern} - Common across: {', '.join(name for _, name in entities)}",
            success_increment=len(entities),
            usage_increment=len(entities),
            new_worked_for=[
                {"entity_id": eid, "entity_name": name, "date": now, "result": {"relevance_score": 7}}
                for eid, name in entities
            ],
            notes=f"Observed across {len(entities)} entities. {commonality}",
        )
        return await self._store.upsert(outcome)

    # -- fire-and-forget -----------------------------------------------------

    def record_in_background(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background memory write failed: %s", exc, exc_info=exc)

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for outstanding background writes (errors are already logged)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


_service: MemoryService | None = None


def get_memory_service() -> MemoryService:
    global _service
    if _service is None:
        _service = MemoryService()
    return _service


# ---------------------------------------------------------------------------
# Prompt context
# ---------------------------------------------------------------------------


def _rate(record: PatternRecord) -> str:
    return f"{record.success_rate * 100:.0f}%"


def build_memory_context(patterns: list[PatternRecord]) -> str:
    if not patterns:
        return ""

    by_type: dict[MemoryType, list[PatternRecord]] = {t: [] for t in MemoryType}
    for p in patterns:
        by_type[p.memory_type].append(p)

    lines = [
        "",
        "",
        "## Learned Patterns from Previous Research",
        "",
        "The following patterns have been successful for similar banks. Use these as guidance:",
        "",
    ]

    searches = by_type[MemoryType.SEARCH_QUERY][:10]
    if searches:
        lines.append("### Successful Search Query Patterns:")
        for i, m in enumerate(searches, 1):
            lines.append(f'{i}. Pattern: "{m.pattern}"')
            if m.example:
                lines.append(f'   Example: "{m.example}"')
            lines.append(f"   Success rate: {_rate(m)} across {len(m.worked_for)} banks")
            lines.append("")

    documents = by_type[MemoryType.DOCUMENT_QUERY][:10]
    if documents:
        lines.append("### Effective Document Query Patterns:")
        for i, m in enumerate(documents, 1):
            lines.append(f'{i}. Pattern: "{m.pattern}"')
            if m.example:
                lines.append(f'   Example: "{m.example}"')
            lines.append(f"   Success rate: {_rate(m)}")
            lines.append("")

    strategies = by_type[MemoryType.ANALYSIS_STRATEGY][:5]
    if strategies:
        lines.append("### Effective Analysis Strategies:")
        for i, m in enumerate(strategies, 1):
            lines.append(f"{i}. {m.pattern}")
            if m.notes:
                lines.append(f"   Note: {m.notes}")
            lines.append(f"   Success rate: {_rate(m)}")
            lines.append("")

    cross = by_type[MemoryType.CROSS_ENTITY][:5]
    if cross:
        lines.append("### Cross-Bank Patterns:")
        for i, m in enumerate(cross, 1):
            lines.append(f"{i}. {m.pattern}")
            if m.notes:
                lines.append(f"   Note: {m.notes}")
            lines.append(f"   Success rate: {_rate(m)}")
            lines.append("")

    lines.append(
        "**Important:** Use these patterns as inspiration, but adapt them to the "
        "specific bank context. Do not blindly copy - think about how they apply to this bank."
    )
    return "\n".join(lines) + "\n"
