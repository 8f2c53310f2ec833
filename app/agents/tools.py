# =============================================================================
# Agent Tools — Closed Set of Actions the Model May Take
# =============================================================================
#
# Five tools, one enum. A model tool call is parsed into a typed input
# before anything runs:
#
#   analyze_data     metrics over recent quarters (trend / peers / anomalies)
#   search_web       provider-side web search with a focus area
#   query_documents  RAG over the corpus plus approved session sources
#   record_insight   append a finding to the run
#   complete         finish the run with a summary and confidence
#
# DESIGN DECISION: Parsing is strict. Missing fields, wrong types and
# values outside an enum raise ToolInputError, which the orchestrator
# turns into an is_error tool result so the model can correct itself.
# Unknown topic or category names are caught here, as tool-input errors,
# before they could reach RetrievalFilters (where they would be a
# data-integrity failure).
# =============================================================================

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

from typing_extensions import assert_never

from app.db.models import SourceCategory, Topic
from app.exceptions import ToolInputError
from app.services.llm import ToolSpec


class ToolKind(str, enum.Enum):
    ANALYZE_DATA = "analyze_data"
    SEARCH_WEB = "search_web"
    QUERY_DOCUMENTS = "query_documents"
    RECORD_INSIGHT = "record_insight"
    COMPLETE = "complete"


class AnalysisMode(str, enum.Enum):
    TREND = "trend"
    PEER_COMPARISON = "peer_comparison"
    DETAILED = "detailed"
    ANOMALY_DETECTION = "anomaly_detection"


class SearchFocus(str, enum.Enum):
    NEWS = "news"
    STRATEGY = "strategy"
    LEADERSHIP = "leadership"
    TECHNOLOGY = "technology"
    RISK = "risk"
    GENERAL = "general"


class InsightType(str, enum.Enum):
    FINANCIAL_TREND = "financial_trend"
    STRATEGIC_INITIATIVE = "strategic_initiative"
    RISK_FACTOR = "risk_factor"
    COMPETITIVE_POSITION = "competitive_position"
    LEADERSHIP_CHANGE = "leadership_change"
    TECHNOLOGY_INVESTMENT = "technology_investment"
    MARKET_OPPORTUNITY = "market_opportunity"


class Importance(str, enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Confidence(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class QueryScope(str, enum.Enum):
    ENTITY = "entity"
    GLOBAL = "global"


# ---------------------------------------------------------------------------
# Typed inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AnalyzeDataInput:
    metrics: tuple[str, ...]
    mode: AnalysisMode
    quarters: int = 8


@dataclass(frozen=True)
class SearchWebInput:
    query: str
    focus: SearchFocus


@dataclass(frozen=True)
class QueryDocumentsInput:
    question: str
    category: SourceCategory | None = None  # None = all categories
    topics: tuple[str, ...] | None = None
    scope: QueryScope = QueryScope.ENTITY

    @property
    def category_label(self) -> str:
        return self.category.value if self.category else "all"


@dataclass(frozen=True)
class RecordInsightInput:
    insight_type: InsightType
    title: str
    content: str
    importance: Importance
    evidence: tuple[str, ...] = ()


@dataclass(frozen=True)
class CompleteInput:
    summary: str
    confidence: Confidence


ToolInput = AnalyzeDataInput | SearchWebInput | QueryDocumentsInput | RecordInsightInput | CompleteInput


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _require_str(data: dict, name: str) -> str:
    value = data.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ToolInputError(f"'{name}' must be a non-empty string")
    return value.strip()


def _enum_value(enum_cls: type[enum.Enum], value: Any, name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ToolInputError(f"'{name}' must be one of: {allowed} (got {value!r})") from None


def _str_list(data: dict, name: str, required: bool = False) -> tuple[str, ...]:
    value = data.get(name)
    if value is None:
        if required:
            raise ToolInputError(f"'{name}' is required")
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ToolInputError(f"'{name}' must be a list of strings")
    items = tuple(v.strip() for v in value if v.strip())
    if required and not items:
        raise ToolInputError(f"'{name}' must not be empty")
    return items


def parse_tool_kind(name: str) -> ToolKind:
    try:
        return ToolKind(name)
    except ValueError:
        raise ToolInputError(f"Unknown tool: {name}") from None


def parse_category(value: Any) -> SourceCategory | None:
    if value is None or value == "all":
        return None
    return _enum_value(SourceCategory, value, "category")


def parse_tool_input(kind: ToolKind, data: dict) -> ToolInput:
    if not isinstance(data, dict):
        raise ToolInputError("Tool input must be a JSON object")

    match kind:
        case ToolKind.ANALYZE_DATA:
            quarters = data.get("quarters", 8)
            if isinstance(quarters, bool) or not isinstance(quarters, (int, float)) or quarters < 1:
                raise ToolInputError("'quarters' must be a positive number")
            return AnalyzeDataInput(
                metrics=_str_list(data, "metrics", required=True),
                mode=_enum_value(AnalysisMode, data.get("mode", data.get("analysis_type")), "mode"),
                quarters=int(quarters),
            )
        case ToolKind.SEARCH_WEB:
            return SearchWebInput(
                query=_require_str(data, "query"),
                focus=_enum_value(SearchFocus, data.get("focus", "general"), "focus"),
            )
        case ToolKind.QUERY_DOCUMENTS:
            topics = _str_list(data, "topics")
            for topic in topics:
                _enum_value(Topic, topic, "topics")
            return QueryDocumentsInput(
                question=_require_str(data, "question"),
                category=parse_category(data.get("category", "all")),
                topics=topics or None,
                scope=_enum_value(QueryScope, data.get("scope", "entity"), "scope"),
            )
        case ToolKind.RECORD_INSIGHT:
            return RecordInsightInput(
                insight_type=_enum_value(InsightType, data.get("insight_type"), "insight_type"),
                title=_require_str(data, "title"),
                content=_require_str(data, "content"),
                importance=_enum_value(Importance, data.get("importance"), "importance"),
                evidence=_str_list(data, "evidence"),
            )
        case ToolKind.COMPLETE:
            return CompleteInput(
                summary=_require_str(data, "summary"),
                confidence=_enum_value(Confidence, data.get("confidence"), "confidence"),
            )
        case _:
            assert_never(kind)


# ---------------------------------------------------------------------------
# Schemas sent to the model
# ---------------------------------------------------------------------------


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [m.value for m in enum_cls]


TOOL_SPECS: list[ToolSpec] = [
    ToolSpec(
        name=ToolKind.ANALYZE_DATA.value,
        description=(
            "Analyze specific financial metrics across recent quarters to identify trends, "
            "anomalies and peer gaps. Always analyze \"efficiencyRatio\" and "
            "\"operatingLeverage\" together when evaluating operational efficiency, cost "
            "management or technology investments."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "metrics": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": (
                        "Metrics to analyze, e.g. \"efficiencyRatio\" (lower is better), "
                        "\"operatingLeverage\", \"netInterestMargin\", \"returnOnAssets\", "
                        "\"returnOnEquity\", \"nonPerformingLoans\"."
                    ),
                },
                "quarters": {"type": "number", "description": "Recent quarters to analyze (default 8)"},
                "mode": {"type": "string", "enum": _enum_values(AnalysisMode)},
            },
            "required": ["metrics", "mode"],
        },
    ),
    ToolSpec(
        name=ToolKind.SEARCH_WEB.value,
        description=(
            "Search the web for recent news, strategic initiatives, management changes or "
            "market context about the bank. For investor presentations, first find the "
            "bank's investor relations site, then look for events or presentations PDFs. "
            "Returns a summary with source URLs."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Specific query including the bank name"},
                "focus": {"type": "string", "enum": _enum_values(SearchFocus)},
            },
            "required": ["query", "focus"],
        },
    ),
    ToolSpec(
        name=ToolKind.QUERY_DOCUMENTS.value,
        description=(
            "Ask a specific question of the ingested documents and approved sources "
            "(presentations, transcripts, reports). Query documents before searching the "
            "web; they often hold the most current strategy and management commentary. "
            "Returns a cited answer."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "question": {"type": "string"},
                "category": {"type": "string", "enum": [*_enum_values(SourceCategory), "all"]},
                "topics": {
                    "type": "array",
                    "items": {"type": "string", "enum": _enum_values(Topic)},
                    "description": "Optional: restrict to chunks tagged with any of these topics",
                },
                "scope": {
                    "type": "string",
                    "enum": _enum_values(QueryScope),
                    "description": "entity (default): this bank's documents; global: shared corpus",
                },
            },
            "required": ["question", "category"],
        },
    ),
    ToolSpec(
        name=ToolKind.RECORD_INSIGHT.value,
        description=(
            "Record a key finding for the final report. For strategic initiatives and "
            "technology investments include the financial metric assessment and the "
            "operating leverage impact."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "insight_type": {"type": "string", "enum": _enum_values(InsightType)},
                "title": {"type": "string", "description": "Brief title (1-10 words)"},
                "content": {"type": "string", "description": "Detailed insight with supporting evidence"},
                "evidence": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Source citations or data points",
                },
                "importance": {"type": "string", "enum": _enum_values(Importance)},
            },
            "required": ["insight_type", "title", "content", "importance"],
        },
    ),
    ToolSpec(
        name=ToolKind.COMPLETE.value,
        description="Signal that research is complete and ready for report synthesis.",
        input_schema={
            "type": "object",
            "properties": {
                "summary": {"type": "string", "description": "2-3 sentence summary of findings"},
                "confidence": {"type": "string", "enum": _enum_values(Confidence)},
            },
            "required": ["summary", "confidence"],
        },
    ),
]
