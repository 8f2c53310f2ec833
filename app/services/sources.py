# =============================================================================
# Source Lifecycle — Discovery → Fetch → Scoring → Approval
# =============================================================================
#
#   gather_sources()            one category-specific web search per
#                               category; references become Source rows
#                               (status=pending, fetch_status=not_fetched)
#   fetch_session_sources()     download every not_fetched source with
#                               bounded concurrency
#   rank_and_recommend()        (app.services.scoring) score + recommend
#   set_source_status()         human approval: approved | ignored | pending
#   get_approved_sources()      what the agent's query_documents tool reads
#
# Fetch state machine per row:
#   not_fetched → fetching → fetched       (content + quality flags)
#                          → fetch_failed  (fetch_error)
# Rows are never deleted by the fetch path.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from sqlalchemy import select

from app.config import settings
from app.db.engine import async_session_factory
from app.db.models import FetchStatus, Source, SourceCategory, SourceStatus
from app.exceptions import SourceNotFoundError
from app.services.content_fetcher import ContentFetcher, FetchResult
from app.services.entity_data import EntityProfile
from app.services.web_search import SourceReference, WebSearchClient

logger = logging.getLogger(__name__)

CATEGORY_QUERIES: dict[SourceCategory, tuple[str, str]] = {
    SourceCategory.INVESTOR_PRESENTATION: (
        "{name} investor presentation {year} investor relations",
        "strategy",
    ),
    SourceCategory.EARNINGS_TRANSCRIPT: (
        "{name} earnings call transcript {year}",
        "news",
    ),
    SourceCategory.STRATEGY_ANALYSIS: (
        "{name} strategic priorities growth strategy analysis",
        "strategy",
    ),
    SourceCategory.ANALYST_REPORTS: (
        "{name} analyst report rating outlook",
        "general",
    ),
}


async def record_discovered_sources(
    session_id: str,
    entity: EntityProfile,
    category: SourceCategory,
    references: list[SourceReference],
    session_factory=async_session_factory,
) -> list[int]:
    """Insert new references for the session; URLs already recorded are skipped."""
    if not references:
        return []

    async with session_factory() as session:
        existing = set(
            (
                await session.execute(
                    select(Source.url).where(Source.session_id == session_id)
                )
            ).scalars().all()
        )

        rows: list[Source] = []
        for ref in references:
            if ref.url in existing:
                continue
            existing.add(ref.url)
            rows.append(Source(
                entity_id=entity.entity_id,
                entity_name=entity.name,
                session_id=session_id,
                category=category,
                url=ref.url,
                title=(ref.title or ref.url)[:1000],
                preview=ref.snippet,
                status=SourceStatus.PENDING,
                fetch_status=FetchStatus.NOT_FETCHED,
            ))

        session.add_all(rows)
        await session.commit()
        ids = [row.id for row in rows]

    logger.info(
        "Recorded %d new %s sources for session %s (%d skipped)",
        len(ids), category.value, session_id, len(references) - len(ids),
    )
    return ids


async def gather_sources(
    entity: EntityProfile,
    session_id: str,
    web_search: WebSearchClient,
    categories: list[SourceCategory] | None = None,
    session_factory=async_session_factory,
) -> dict[str, int]:
    """
    Run one web search per category and record what comes back.

    A failed category is logged and counted as zero; the other categories
    still run.
    """
    year = datetime.now(UTC).year
    found: dict[str, int] = {}

    for category in categories or list(SourceCategory):
        template, focus = CATEGORY_QUERIES[category]
        query = template.format(name=entity.name, year=year)
        try:
            result = await web_search.search(query, focus, entity)
        except Exception:
            logger.exception("Source search failed for %s / %s", entity.entity_id, category.value)
            found[category.value] = 0
            continue

        ids = await record_discovered_sources(
            session_id, entity, category, result.sources, session_factory=session_factory,
        )
        found[category.value] = len(ids)

    return found


async def fetch_source(
    source_id: int,
    fetcher: ContentFetcher,
    session_factory=async_session_factory,
) -> FetchStatus:
    async with session_factory() as session:
        source = await session.get(Source, source_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        source.fetch_status = FetchStatus.FETCHING
        source.fetch_error = None
        url = source.url
        await session.commit()

    try:
        result = await fetcher.fetch_and_parse(url)
    except Exception as exc:
        logger.exception("Fetcher raised for source %d (%s)", source_id, url)
        result = FetchResult(
            url=url, content=None, content_length=0, content_type="error",
            fetchable=False, error=f"{type(exc).__name__}: {exc}",
        )

    async with session_factory() as session:
        source = await session.get(Source, source_id)
        if source is None:
            raise SourceNotFoundError(source_id)

        source.fetchable = result.fetchable
        source.fetched_at = datetime.now(UTC)
        if result.fetchable:
            source.fetch_status = FetchStatus.FETCHED
            source.content = result.content
            source.content_length = result.content_length
            source.content_type = result.content_type
            source.is_probably_paywalled = result.is_probably_paywalled
            source.is_probably_truncated = result.is_probably_truncated
            source.requires_web_search = result.requires_web_search
            source.fetch_error = result.error
        else:
            source.fetch_status = FetchStatus.FETCH_FAILED
            source.fetch_error = result.error
        status = source.fetch_status
        await session.commit()

    logger.info("Source %d (%s): %s", source_id, url, status.value)
    return status


async def fetch_session_sources(
    session_id: str,
    concurrency: int | None = None,
    fetcher: ContentFetcher | None = None,
    session_factory=async_session_factory,
) -> dict[str, int]:
    """Fetch every not_fetched source of a session, at most `concurrency` at once."""
    fetcher = fetcher or ContentFetcher()
    async with session_factory() as session:
        ids = list(
            (
                await session.execute(
                    select(Source.id).where(
                        Source.session_id == session_id,
                        Source.fetch_status == FetchStatus.NOT_FETCHED,
                    )
                )
            ).scalars().all()
        )

    semaphore = asyncio.Semaphore(max(1, concurrency or settings.fetch_concurrency))

    async def _one(source_id: int) -> FetchStatus:
        async with semaphore:
            return await fetch_source(source_id, fetcher, session_factory=session_factory)

    statuses = await asyncio.gather(*(_one(i) for i in ids), return_exceptions=True)
    for source_id, outcome in zip(ids, statuses):
        if isinstance(outcome, BaseException):
            logger.error("Fetching source %d failed: %r", source_id, outcome)
    fetched = sum(1 for s in statuses if s == FetchStatus.FETCHED)

    logger.info(
        "Fetched session %s: %d ok, %d failed", session_id, fetched, len(statuses) - fetched,
    )
    return {"total": len(statuses), "fetched": fetched, "failed": len(statuses) - fetched}


async def set_source_status(
    source_id: int,
    status: SourceStatus,
    session_factory=async_session_factory,
) -> Source:
    async with session_factory() as session:
        source = await session.get(Source, source_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        source.status = status
        await session.commit()
        return source


async def get_approved_sources(
    session_id: str,
    category: SourceCategory | None = None,
    session_factory=async_session_factory,
) -> list[Source]:
    stmt = select(Source).where(
        Source.session_id == session_id,
        Source.status == SourceStatus.APPROVED,
    )
    if category is not None:
        stmt = stmt.where(Source.category == category)
    async with session_factory() as session:
        return list((await session.execute(stmt.order_by(Source.id))).scalars().all())
