# =============================================================================
# Source Scoring & Ranking
# =============================================================================
#
# Every discovered source gets a 0–100 quality score:
#
#   total = round(min(100, (0.4·authority + 0.3·depth + 0.3·freshness)
#                          × category_multiplier))
#
#   authority: how official the origin is (IR subdomain > entity domain >
#              PDF > major financial press > trade press > wires > other)
#   depth:     content length plus financial / strategy vocabulary, or a
#              URL/title/category estimate before content is fetched
#   freshness: age of the date label (or a date found in the URL)
#
# Multipliers encode the source-type priority:
#   investor_presentation 1.3 > earnings_transcript 1.2
#   > strategy_analysis 1.1 > analyst_reports 1.0
#
# Scoring and ranking are pure functions of (source, now). `now` is
# injectable so the same input always produces the same score.
# rank_and_recommend is the DB-bound wrapper that persists the outcome.
# =============================================================================

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any
from urllib.parse import urlparse

from sqlalchemy import or_, select

from app.config import settings
from app.db.engine import async_session_factory
from app.db.models import Source, SourceCategory, SourceStatus

logger = logging.getLogger(__name__)

WEIGHTS = {"authority": 0.4, "depth": 0.3, "freshness": 0.3}

CATEGORY_MULTIPLIERS: dict[SourceCategory, float] = {
    SourceCategory.INVESTOR_PRESENTATION: 1.3,
    SourceCategory.EARNINGS_TRANSCRIPT: 1.2,
    SourceCategory.STRATEGY_ANALYSIS: 1.1,
    SourceCategory.ANALYST_REPORTS: 1.0,
}

# (host substrings, score), first match wins after the two special rules
OFFICIAL_HOST_INDICATORS = ("ir.", "investor.", "investors.", "q4cdn.com", "seekingalpha.com", "fool.com")
DOMAIN_TIERS: tuple[tuple[tuple[str, ...], int], ...] = (
    (("bloomberg.com", "reuters.com", "wsj.com", "ft.com"), 75),
    (("bizjournals.com", "americanbanker.com"), 70),
    (("businesswire.com", "prnewswire.com"), 65),
    (("cnbc.com", "marketwatch.com"), 60),
)

FINANCIAL_INDICATORS = (
    "earnings per share", "net interest margin", "efficiency ratio",
    "return on equity", "return on assets", "noninterest income",
    "operating leverage", "tangible book value", "tier 1 capital",
)
STRATEGY_INDICATORS = (
    "strategic priority", "strategic initiative", "digital transformation",
    "technology investment", "competitive advantage", "market position",
)

# (max age in days, score); anything older scores 10
FRESHNESS_BANDS = ((90, 100), (180, 90), (365, 75), (730, 50), (1095, 25))
UNDATED_FRESHNESS = 40


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ScorableSource:
    """
    The fields scoring reads. ORM Source rows satisfy the same shape, so
    either can be passed to score_source().
    """

    url: str
    title: str = ""
    category: SourceCategory | str | None = None
    date: str | None = None
    content: str | None = None
    content_length: int | None = None
    entity_name: str | None = None
    id: int | str | None = None


@dataclass
class SourceScore:
    total: int
    breakdown: dict[str, int]
    category_multiplier: float


@dataclass
class ScoredSource:
    source: Any
    score: SourceScore
    recommended: bool = False


@dataclass
class CategorySummary:
    total_found: int
    recommended: int
    average_score: int
    top_sources: list[dict]


@dataclass
class RankingResult:
    scored: list[ScoredSource]
    by_category: dict[str, CategorySummary] = field(default_factory=dict)
    summary: dict[str, int] = field(default_factory=dict)

    @property
    def recommended(self) -> list[ScoredSource]:
        return [s for s in self.scored if s.recommended]


def _category(source: Any) -> SourceCategory | None:
    raw = getattr(source, "category", None)
    if raw is None or isinstance(raw, SourceCategory):
        return raw
    try:
        return SourceCategory(raw)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Authority
# ---------------------------------------------------------------------------


def authority_score(source: Any) -> int:
    url = getattr(source, "url", "") or ""
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return 10
    if not host:
        return 10

    url_lower = url.lower()
    entity_key = (getattr(source, "entity_name", None) or "").lower().replace(" ", "")

    if any(indicator in host for indicator in OFFICIAL_HOST_INDICATORS):
        score = 100
    elif entity_key and entity_key in url_lower:
        score = 95
    elif url_lower.endswith(".pdf"):
        score = 80
    else:
        score = 40
        for domains, tier_score in DOMAIN_TIERS:
            if any(d in host for d in domains):
                score = tier_score
                break

    category = _category(source)
    if category is SourceCategory.INVESTOR_PRESENTATION and url_lower.endswith(".pdf"):
        score += 10
    elif category is SourceCategory.EARNINGS_TRANSCRIPT:
        score += 5

    return min(100, score)


# ---------------------------------------------------------------------------
# Depth
# ---------------------------------------------------------------------------


def depth_score(source: Any) -> int:
    content = getattr(source, "content", None)
    length = getattr(source, "content_length", None)

    if content and length:
        if length > 50000:
            score = 100
        elif length > 20000:
            score = 90
        elif length > 10000:
            score = 75
        elif length > 5000:
            score = 60
        elif length > 2000:
            score = 45
        elif length > 500:
            score = 30
        else:
            score = 15

        lowered = content.lower()
        score += 3 * sum(1 for ind in FINANCIAL_INDICATORS if ind in lowered)
        score += 2 * sum(1 for ind in STRATEGY_INDICATORS if ind in lowered)
        return max(0, min(100, score))

    url_lower = (getattr(source, "url", "") or "").lower()
    title_lower = (getattr(source, "title", "") or "").lower()
    category = _category(source)

    if url_lower.endswith(".pdf"):
        return 80
    if category is SourceCategory.EARNINGS_TRANSCRIPT:
        return 75
    if category is SourceCategory.INVESTOR_PRESENTATION:
        return 85
    if "presentation" in title_lower or "transcript" in title_lower:
        return 70
    if "earnings" in title_lower or "investor" in title_lower:
        return 65
    return 50


# ---------------------------------------------------------------------------
# Freshness
# ---------------------------------------------------------------------------

_MONTHS = ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec")
_QUARTER_RE = re.compile(r"Q([1-4])\s+(\d{4})", re.IGNORECASE)
_MONTH_RE = re.compile(r"\b(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\.?\s+(\d{4})", re.IGNORECASE)
_ISO_RE = re.compile(r"^\s*(\d{4})(?:-(\d{1,2})(?:-(\d{1,2}))?)?")
_URL_PATH_DATE_RE = re.compile(r"[/\-]((?:19|20)\d{2})[/\-]([0-1]?\d|Q[1-4])(?=[/\-]|$|\D)", re.IGNORECASE)
_URL_NAME_DATE_RE = re.compile(r"(?<!\d)((?:19|20)\d{2})(?!\d)[-_]?(q[1-4]|[0-1]?\d(?!\d))?", re.IGNORECASE)


def _quarter_start(year: int, quarter: int) -> date:
    return date(year, (quarter - 1) * 3 + 1, 1)


def _month_or_quarter(year: int, token: str | None) -> date | None:
    if not token:
        return date(year, 1, 1)
    if token.lower().startswith("q"):
        return _quarter_start(year, int(token[1:]))
    month = int(token)
    if not 1 <= month <= 12:
        return None
    return date(year, month, 1)


def parse_source_date(label: str | None) -> date | None:
    """
    Parse a free-text date label: "Q3 2025", "Oct 2025", "October 2025",
    "2025-06-30", "2025-06" or "2025". Period labels map to their first day.
    """
    if not label:
        return None

    match = _QUARTER_RE.search(label)
    if match:
        return _quarter_start(int(match.group(2)), int(match.group(1)))

    match = _MONTH_RE.search(label)
    if match:
        month = _MONTHS.index(match.group(1).lower()[:3]) + 1
        return date(int(match.group(2)), month, 1)

    match = _ISO_RE.match(label)
    if match:
        year = int(match.group(1))
        month = int(match.group(2) or 1)
        day = int(match.group(3) or 1)
        try:
            return date(year, month, day)
        except ValueError:
            return None
    return None


def extract_date_from_url(url: str | None) -> date | None:
    """
    Find a date in a URL: path segments first (/2025/06/, -2025-06-,
    /2025/Q2/), then file-name style (earnings-2025-q2, presentation_2024).
    """
    if not url:
        return None

    for match in _URL_PATH_DATE_RE.finditer(url):
        found = _month_or_quarter(int(match.group(1)), match.group(2))
        if found is not None:
            return found

    match = _URL_NAME_DATE_RE.search(url)
    if match:
        year = int(match.group(1))
        return _month_or_quarter(year, match.group(2)) or date(year, 1, 1)
    return None


def freshness_score(source: Any, now: datetime | None = None) -> int:
    found = parse_source_date(getattr(source, "date", None)) or extract_date_from_url(
        getattr(source, "url", None)
    )
    if found is None:
        return UNDATED_FRESHNESS

    today = (now or datetime.now(UTC)).date()
    age_days = (today - found).days
    for max_age, score in FRESHNESS_BANDS:
        if age_days <= max_age:
            return score
    return 10


# ---------------------------------------------------------------------------
# Total score
# ---------------------------------------------------------------------------


def score_source(source: Any, now: datetime | None = None) -> SourceScore:
    authority = authority_score(source)
    depth = depth_score(source)
    freshness = freshness_score(source, now)

    weighted = (
        authority * WEIGHTS["authority"]
        + depth * WEIGHTS["depth"]
        + freshness * WEIGHTS["freshness"]
    )
    category = _category(source)
    multiplier = CATEGORY_MULTIPLIERS.get(category, 1.0) if category else 1.0

    return SourceScore(
        total=round(min(100.0, weighted * multiplier)),
        breakdown={
            "authority": round(authority),
            "depth": round(depth),
            "freshness": round(freshness),
        },
        category_multiplier=multiplier,
    )


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------


def _category_key(source: Any) -> str:
    category = _category(source)
    if category is not None:
        return category.value
    return str(getattr(source, "category", None) or "uncategorized")


def rank_sources(
    sources: Sequence[Any],
    min_score_threshold: int | None = None,
    top_n_per_category: int | None = None,
    now: datetime | None = None,
) -> RankingResult:
    """
    Score every source, group by category, and recommend at most
    top_n_per_category sources per category scoring >= the threshold.
    Ties keep input order.
    """
    threshold = settings.source_min_score if min_score_threshold is None else min_score_threshold
    top_n = settings.source_top_n_per_category if top_n_per_category is None else top_n_per_category

    scored = [ScoredSource(source=s, score=score_source(s, now)) for s in sources]
    result = RankingResult(scored=scored)
    if not scored:
        return result

    groups: dict[str, list[ScoredSource]] = {}
    for item in scored:
        groups.setdefault(_category_key(item.source), []).append(item)

    for category, items in groups.items():
        ranked = sorted(items, key=lambda s: -s.score.total)
        winners = [s for s in ranked if s.score.total >= threshold][:top_n]
        for winner in winners:
            winner.recommended = True

        result.by_category[category] = CategorySummary(
            total_found=len(items),
            recommended=len(winners),
            average_score=round(sum(s.score.total for s in items) / len(items)),
            top_sources=[
                {
                    "source_id": getattr(s.source, "id", None),
                    "title": getattr(s.source, "title", ""),
                    "url": getattr(s.source, "url", ""),
                    "date": getattr(s.source, "date", None),
                    "score": s.score.total,
                    "breakdown": s.score.breakdown,
                }
                for s in winners
            ],
        )

    totals = [s.score.total for s in scored]
    result.summary = {
        "total_recommended": sum(c.recommended for c in result.by_category.values()),
        "average_score": round(sum(totals) / len(totals)),
        "highest_score": max(totals),
        "lowest_score": min(totals),
    }
    return result


async def rank_and_recommend(
    session_id: str,
    min_score_threshold: int | None = None,
    top_n_per_category: int | None = None,
    now: datetime | None = None,
    session_factory=async_session_factory,
) -> dict:
    """
    Rank a session's sources and persist score, breakdown, confidence and
    the recommended flag on EVERY source (winners and losers alike).
    """
    async with session_factory() as session:
        rows = (
            await session.execute(select(Source).where(Source.session_id == session_id))
        ).scalars().all()

        if not rows:
            return {
                "success": False,
                "message": "No sources found for this session",
                "session_id": session_id,
                "total_sources": 0,
            }

        logger.info("Scoring %d sources for session %s", len(rows), session_id)
        ranking = rank_sources(rows, min_score_threshold, top_n_per_category, now)

        for item in ranking.scored:
            item.source.score = item.score.total
            item.source.score_breakdown = dict(item.score.breakdown)
            item.source.confidence = item.score.total / 100
            item.source.recommended = item.recommended

        await session.commit()

    logger.info(
        "Ranked session %s: %d recommended of %d",
        session_id, ranking.summary["total_recommended"], len(rows),
    )
    return {
        "success": True,
        "session_id": session_id,
        "total_sources": len(rows),
        "recommendations": {
            category: {
                "total_found": c.total_found,
                "recommended": c.recommended,
                "average_score": c.average_score,
                "top_sources": c.top_sources,
            }
            for category, c in ranking.by_category.items()
        },
        "summary": ranking.summary,
    }


# ---------------------------------------------------------------------------
# LLM-judged quality gate
# ---------------------------------------------------------------------------

ASSESSMENT_PROMPT = """You are assessing whether the sources selected for a bank research report are sufficient to produce a high-quality report.

Context:
- Entity: {entity_id}
- Session: {session_id}
- Total sources selected: {total}

Sources by category:
{sources_json}

Assessment criteria:
1. Coverage: is there a sufficient diversity of source types? Ideal: investor presentations, earnings transcripts, strategy analysis, analyst reports. Minimum: at least 2 different types.
2. Authority: are the sources official or reputable (investor relations sites, official transcripts, major financial press)?
3. Depth: is there substantive content (long documents, PDF presentations) rather than snippets?
4. Freshness: ideally within the last 12 months, acceptable within 24 months.

Return ONLY a JSON object:
{{
  "decision": "approve" or "reject",
  "confidence": 0.0 to 1.0,
  "reasoning": "explanation",
  "strengths": ["2-4 strengths"],
  "weaknesses": ["2-4 weaknesses"],
  "recommendations": ["2-4 actionable recommendations"],
  "missing_categories": ["categories that should be added"]
}}

Approve if the sources meet the minimum bar for a decent report, even if not perfect. Reject if they are clearly insufficient, too old or not credible."""

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def _source_summary(sources: Iterable[Source]) -> dict[str, list[dict]]:
    grouped: dict[str, list[dict]] = {}
    for s in sources:
        breakdown = s.score_breakdown or {}
        grouped.setdefault(_category_key(s), []).append({
            "title": s.title,
            "url": s.url,
            "date": s.date,
            "score": s.score,
            "authority": breakdown.get("authority", "unknown"),
            "depth": breakdown.get("depth", "unknown"),
            "freshness": breakdown.get("freshness", "unknown"),
            "content_length": s.content_length,
            "content_type": s.content_type,
            "fetchable": s.fetchable,
        })
    return grouped


async def assess_source_quality(
    entity_id: str,
    session_id: str,
    llm,
    session_factory=async_session_factory,
) -> dict:
    """
    Ask the LLM whether the approved/recommended sources of a session are
    good enough to research from. Never raises: failures become a reject
    with confidence 0.
    """
    async with session_factory() as session:
        candidates = (
            await session.execute(
                select(Source).where(
                    Source.entity_id == entity_id,
                    Source.session_id == session_id,
                    or_(Source.status == SourceStatus.APPROVED, Source.recommended.is_(True)),
                )
            )
        ).scalars().all()

    if not candidates:
        return {
            "decision": "reject",
            "confidence": 1.0,
            "reasoning": (
                "No sources have been approved or recommended for this entity. "
                "Research cannot proceed without source material."
            ),
            "strengths": [],
            "weaknesses": ["No approved or recommended sources"],
            "recommendations": [
                "Run source gathering for this entity",
                "Review and approve sources found during gathering",
                "Broaden the search if no quality sources were found",
            ],
            "missing_categories": [c.value for c in SourceCategory],
        }

    prompt = ASSESSMENT_PROMPT.format(
        entity_id=entity_id,
        session_id=session_id,
        total=len(candidates),
        sources_json=json.dumps(_source_summary(candidates), indent=2, default=str),
    )

    try:
        response = await llm.complete(
            messages=[{"role": "user", "content": prompt}],
            temperature=0.3,
            max_tokens=4096,
        )
        match = _JSON_OBJECT_RE.search(response.content)
        if not match:
            raise ValueError("Could not parse assessment response")
        assessment = json.loads(match.group(0))
    except Exception as exc:
        logger.exception("Source quality assessment failed for session %s", session_id)
        return {
            "decision": "reject",
            "confidence": 0.0,
            "reasoning": f"Error during assessment: {exc}",
            "error": str(exc),
        }

    assessment.setdefault("missing_categories", assessment.pop("missingCategories", []))
    assessment["metadata"] = {
        "entity_id": entity_id,
        "session_id": session_id,
        "total_sources": len(candidates),
        "assessed_at": datetime.now(UTC).isoformat(),
    }
    logger.info(
        "Source quality for session %s: %s (confidence %.2f)",
        session_id, assessment.get("decision"), float(assessment.get("confidence", 0) or 0),
    )
    return assessment
