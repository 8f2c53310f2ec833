# =============================================================================
# Research Run State — Inputs, Per-Run State, Results
# =============================================================================
#
#   ResearchContext     what to research (entity, financials, session)
#   OrchestratorConfig  run budgets and the silent-stop policy
#   AgentRunState       mutable, owned by exactly one run
#   Insight             write-once finding (frozen)
#   ResearchResult      what run() returns, aborted or not
# =============================================================================

from __future__ import annotations

import enum
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from app.agents.tools import Confidence, Importance, InsightType
from app.config import settings
from app.exceptions import RunStatus
from app.services.entity_data import EntityProfile, FinancialStatement, PeerSet
from app.services.memory import MemoryContext, PatternRecord, entity_context


class SilentStopPolicy(str, enum.Enum):
    """What to do when the model answers without calling any tool."""

    COMPLETE = "complete"
    STALL_RETRY = "stall_retry"
    FAIL = "fail"


@dataclass(frozen=True)
class Insight:
    type: InsightType
    title: str
    content: str
    importance: Importance
    evidence: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "title": self.title,
            "content": self.content,
            "evidence": list(self.evidence),
            "importance": self.importance.value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ResearchContext:
    entity: EntityProfile
    financials: list[FinancialStatement] = field(default_factory=list)  # newest first
    peers: PeerSet | None = None
    session_id: str | None = None
    prompt: str | None = None

    @property
    def total_assets(self) -> float | None:
        if self.entity.total_assets is not None:
            return self.entity.total_assets
        if self.financials:
            return self.financials[0].total_assets
        return None

    @property
    def memory_context(self) -> MemoryContext:
        return entity_context(self.total_assets, self.entity.region or self.entity.state)


@dataclass
class OrchestratorConfig:
    max_iterations: int = field(default_factory=lambda: settings.agent_max_iterations)
    timeout_seconds: float = field(default_factory=lambda: settings.agent_timeout_seconds)
    silent_stop_policy: SilentStopPolicy = field(
        default_factory=lambda: SilentStopPolicy(settings.agent_silent_stop_policy)
    )
    max_stall_retries: int = field(default_factory=lambda: settings.agent_max_stall_retries)
    thinking_budget: int = field(default_factory=lambda: settings.llm_thinking_budget)
    retrieval_k: int = field(default_factory=lambda: settings.retrieval_top_k)
    clock: Callable[[], float] = time.monotonic

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self.silent_stop_policy = SilentStopPolicy(self.silent_stop_policy)


@dataclass
class MemoryState:
    loaded: bool = False
    patterns: list[PatternRecord] = field(default_factory=list)


@dataclass
class AgentRunState:
    started_at: float
    iterations: int = 0
    explored_areas: list[str] = field(default_factory=list)
    insights: list[Insight] = field(default_factory=list)
    web_searches: list[dict] = field(default_factory=list)
    queried_documents: list[dict] = field(default_factory=list)
    memory: MemoryState = field(default_factory=MemoryState)
    completed: bool = False
    completion_summary: str | None = None
    completion_confidence: Confidence | None = None
    stall_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    def explore(self, area: str) -> None:
        if area not in self.explored_areas:
            self.explored_areas.append(area)


@dataclass
class ResearchResult:
    insights: list[Insight]
    explored_areas: list[str]
    stats: dict
    status: RunStatus
    confidence: str
    summary: str | None = None
    error: str | None = None

    @property
    def aborted(self) -> bool:
        return self.status is not RunStatus.COMPLETED

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "aborted": self.aborted,
            "confidence": self.confidence,
            "summary": self.summary,
            "error": self.error,
            "insights": [i.to_dict() for i in self.insights],
            "explored_areas": list(self.explored_areas),
            "stats": dict(self.stats),
        }
