# =============================================================================
# Research Orchestrator — Bounded Tool-Driven Reasoning Loop
# =============================================================================
#
# GRAPH TOPOLOGY:
#
#   START ──▶ load_memory ──▶ reason ──┬──▶ tools ──┬──▶ reason
#                                ▲     │            └──▶ END
#                                └─────┤ (stall retry nudge)
#                                      └──▶ END
#
#   load_memory  relevant patterns for the entity's size tier / region;
#                a failure is logged and the run continues without memory
#   reason       cancel? → timeout? → iteration cap? → llm.converse()
#   tools        parse each call into a ToolKind and dispatch; the cap and
#                the clock are checked before every single call
#
# Routing is driven by `status` (RunStatus). Anything other than RUNNING
# ends the graph.
#
# ERROR CLASSES:
#   fatal            iteration cap, timeout, cancellation, LLM unreachable;
#                    run() returns a partial ResearchResult, never raises
#   tool-local       anything a tool raises becomes an is_error tool result
#   best-effort      memory writes (background) and retrieval counters
#   data-integrity   DataIntegrityError propagates out of run()
#
# DESIGN DECISION: The model answering without any tool call is governed
# by an explicit SilentStopPolicy (complete | stall_retry | fail) instead
# of being read as success.
#
# DESIGN DECISION: Plain TypedDict graph state holding a per-run
# _ResearchRun object (not JSON-serialisable; the graph has no
# checkpointer). The graph is compiled once at module level and shared by
# every run; all mutable state lives in the _ResearchRun.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict, assert_never

from app.agents.analysis import analyze_series
from app.agents.state import (
    AgentRunState,
    Insight,
    OrchestratorConfig,
    ResearchContext,
    ResearchResult,
    SilentStopPolicy,
)
from app.agents.tools import (
    TOOL_SPECS,
    AnalyzeDataInput,
    CompleteInput,
    Confidence,
    QueryDocumentsInput,
    QueryScope,
    RecordInsightInput,
    SearchWebInput,
    parse_tool_input,
    parse_tool_kind,
)
from app.db.models import FetchStatus, SourceCategory
from app.exceptions import (
    DataIntegrityError,
    IterationLimitExceeded,
    RunAbortedError,
    RunStatus,
    RunTimeoutExceeded,
)
from app.services.entity_data import EntityDataProvider, EntityProfile
from app.services.llm import LLMProvider, ToolCall, ToolResult, dump_tool_payload
from app.services.memory import MemoryService, build_memory_context
from app.services.retrieval import RetrievalFilters, RetrievalService
from app.services.sources import get_approved_sources
from app.services.web_search import WebSearchClient

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[dict], None]
ApprovedSourceLoader = Callable[[str, SourceCategory | None], Awaitable[list[Any]]]

MIN_SOURCE_CONTENT = 100
SOURCE_EXCERPT_CHARS = 3000
MEANINGFUL_ANSWER_CHARS = 50

RESEARCH_SYSTEM_PROMPT = (
    "You are a senior financial research analyst investigating a bank. You have tools "
    "to analyze its financial data, query ingested documents and approved sources, "
    "search the web, and record insights.\n\n"
    "Work iteratively: query documents before searching the web, analyze efficiency "
    "ratio and operating leverage together, and record each significant finding with "
    "record_insight as you go. When you have enough material for a comprehensive "
    "report, call complete with a short summary and your confidence. Always act "
    "through a tool call."
)

DOCUMENT_QA_SYSTEM_PROMPT = (
    "You are a financial document analyst. Answer using ONLY the provided sources. "
    "Cite sources by their bracketed number. Be precise with figures. If the sources "
    "do not contain the answer, say so."
)

STALL_NUDGE = (
    "You responded without calling a tool. Continue the research with the available "
    "tools, or call complete with a summary and confidence if you are finished."
)


def load_research_context(
    entity: EntityProfile,
    provider: EntityDataProvider,
    quarters: int = 8,
    session_id: str | None = None,
    prompt: str | None = None,
) -> ResearchContext:
    return ResearchContext(
        entity=entity,
        financials=provider.get_financial_series(entity.entity_id, quarters),
        peers=provider.get_peer_set(entity.entity_id),
        session_id=session_id,
        prompt=prompt,
    )


def build_initial_prompt(context: ResearchContext) -> str:
    entity = context.entity
    where = f" ({entity.location})" if entity.location else ""
    lines = [f"Research {entity.name}{where} and identify its key strategic, financial and risk themes."]

    if context.total_assets is not None:
        lines.append(f"Total assets: ${context.total_assets:,.0f}.")

    if context.financials:
        lines.append("")
        lines.append("Recent financial snapshot (newest first):")
        for statement in context.financials[:4]:
            ratios = ", ".join(f"{k}={v:.2f}" for k, v in sorted(statement.ratios.items())[:8])
            lines.append(f"- {statement.reporting_period}: {ratios or 'no ratios'}")

    if context.peers is not None and context.peers.count:
        lines.append(f"Peer group: {context.peers.count} banks.")

    if context.prompt:
        lines.append("")
        lines.append(context.prompt)

    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Graph state
# ---------------------------------------------------------------------------


class GraphState(TypedDict, total=False):
    run: _ResearchRun
    messages: list[dict]
    pending: list[ToolCall]
    status: RunStatus
    error: str | None


# ---------------------------------------------------------------------------
# One run
# ---------------------------------------------------------------------------


class _ResearchRun:
    def __init__(
        self,
        orchestrator: ResearchOrchestrator,
        context: ResearchContext,
        cancel_event: asyncio.Event | None,
    ) -> None:
        self.o = orchestrator
        self.config = orchestrator.config
        self.context = context
        self.cancel_event = cancel_event
        self.state = AgentRunState(started_at=self.config.clock())

    # -- helpers -------------------------------------------------------------

    def elapsed(self) -> float:
        return self.config.clock() - self.state.started_at

    def remaining(self) -> float:
        return self.config.timeout_seconds - self.elapsed()

    def emit(self, event: dict) -> None:
        if self.o.on_progress is None:
            return
        try:
            self.o.on_progress(event)
        except Exception:
            logger.exception("Progress callback failed for event %s", event.get("type"))

    def milestone(self, milestone: str, details: str | None = None) -> None:
        self.emit({"type": "milestone", "milestone": milestone, "details": details})

    def stats(self) -> dict:
        return {
            "iterations": self.state.iterations,
            "duration_seconds": round(self.elapsed(), 3),
            "web_searches": len(self.state.web_searches),
            "documents_queried": len(self.state.queried_documents),
            "insights": len(self.state.insights),
            "areas_explored": len(self.state.explored_areas),
            "input_tokens": self.state.input_tokens,
            "output_tokens": self.state.output_tokens,
        }

    def check_budget(self) -> None:
        if self.elapsed() >= self.config.timeout_seconds:
            raise RunTimeoutExceeded(
                f"Run exceeded {self.config.timeout_seconds:.0f}s wall-clock budget",
            )

    def check_iterations(self) -> None:
        if self.state.iterations >= self.config.max_iterations:
            raise IterationLimitExceeded(
                f"Reached iteration limit ({self.config.max_iterations})",
            )

    def remember(self, write: Callable[[MemoryService], Coroutine[Any, Any, Any]]) -> None:
        """Fire-and-forget memory write; only when memory loaded for this run."""
        if self.o.memory is None or not self.state.memory.loaded:
            return
        self.o.memory.record_in_background(write(self.o.memory))

    # -- nodes ---------------------------------------------------------------

    async def load_memory(self, graph_state: GraphState) -> dict:
        self.milestone("Loading research memory")
        memory_text = ""
        if self.o.memory is not None:
            try:
                patterns = await self.o.memory.get_relevant_memories(self.context.memory_context)
                self.state.memory.patterns = patterns
                self.state.memory.loaded = True
                memory_text = build_memory_context(patterns)
                logger.info(
                    "Loaded %d memory patterns for %s", len(patterns), self.context.entity.entity_id,
                )
            except Exception:
                logger.exception(
                    "Memory load failed for %s; continuing without memory",
                    self.context.entity.entity_id,
                )

        prompt = build_initial_prompt(self.context) + memory_text
        return {"messages": [{"role": "user", "content": prompt}], "status": RunStatus.RUNNING}

    async def reason(self, graph_state: GraphState) -> dict:
        try:
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise RunAbortedError("Run cancelled by caller", RunStatus.CANCELLED)
            self.check_budget()
            self.check_iterations()
            response = await asyncio.wait_for(
                self.o.llm.converse(
                    graph_state["messages"],
                    TOOL_SPECS,
                    system=RESEARCH_SYSTEM_PROMPT,
                    thinking_budget=self.config.thinking_budget,
                ),
                timeout=self.remaining(),
            )
        except RunAbortedError as exc:
            return {"status": exc.status, "error": str(exc), "pending": []}
        except DataIntegrityError:
            raise
        except Exception as exc:
            if isinstance(exc, TimeoutError) and self.remaining() <= 0:
                return {
                    "status": RunStatus.ABORTED_TIMEOUT,
                    "error": f"Run exceeded {self.config.timeout_seconds:.0f}s wall-clock budget",
                    "pending": [],
                }
            logger.exception("LLM step failed for %s", self.context.entity.entity_id)
            return {"status": RunStatus.FAILED, "error": f"LLM unavailable: {exc}", "pending": []}

        self.state.input_tokens += response.input_tokens
        self.state.output_tokens += response.output_tokens
        messages = [*graph_state["messages"], response.assistant_message]

        if response.tool_calls:
            return {"messages": messages, "pending": list(response.tool_calls)}

        outcome = self._silent_stop(response.text, messages)
        return {"messages": messages, "pending": [], **outcome}

    def _silent_stop(self, text: str, messages: list[dict]) -> dict:
        policy = self.config.silent_stop_policy
        match policy:
            case SilentStopPolicy.COMPLETE:
                self.state.completed = True
                self.state.completion_summary = text or None
                self.state.completion_confidence = Confidence.LOW
                return {"status": RunStatus.COMPLETED}
            case SilentStopPolicy.STALL_RETRY:
                if self.state.stall_count < self.config.max_stall_retries:
                    self.state.stall_count += 1
                    logger.info(
                        "Model returned no tool call; nudging (%d/%d)",
                        self.state.stall_count, self.config.max_stall_retries,
                    )
                    messages.append({"role": "user", "content": STALL_NUDGE})
                    return {"status": RunStatus.RUNNING}
                return {"status": RunStatus.STALLED, "error": "Model stopped calling tools"}
            case SilentStopPolicy.FAIL:
                return {"status": RunStatus.FAILED, "error": "Model returned no tool call"}
            case _:
                assert_never(policy)

    async def execute_tools(self, graph_state: GraphState) -> dict:
        results: list[ToolResult] = []
        status = RunStatus.RUNNING
        error: str | None = None

        for call in graph_state.get("pending", []):
            try:
                self.check_iterations()
                self.check_budget()
            except RunAbortedError as exc:
                status, error = exc.status, str(exc)
                break
            self.state.iterations += 1

            try:
                payload = await asyncio.wait_for(self.dispatch(call), timeout=self.remaining())
                results.append(ToolResult(call.id, dump_tool_payload(payload)))
            except DataIntegrityError:
                raise
            except TimeoutError as exc:
                if self.remaining() <= 0:
                    status = RunStatus.ABORTED_TIMEOUT
                    error = f"Run exceeded {self.config.timeout_seconds:.0f}s wall-clock budget"
                    break
                results.append(self._error_result(call, exc))
            except Exception as exc:
                results.append(self._error_result(call, exc))

            if self.state.completed:
                status = RunStatus.COMPLETED
                break

        self.emit({"type": "stats", "stats": self.stats()})
        messages = [*graph_state["messages"], *self.o.llm.tool_result_messages(results)]
        update: dict = {"messages": messages, "pending": [], "status": status}
        if error is not None:
            update["error"] = error
        return update

    def _error_result(self, call: ToolCall, exc: Exception) -> ToolResult:
        logger.warning("Tool %s failed: %s", call.name, exc)
        return ToolResult(
            call.id,
            dump_tool_payload({"success": False, "error": str(exc) or type(exc).__name__}),
            is_error=True,
        )

    # -- tools ---------------------------------------------------------------

    async def dispatch(self, call: ToolCall) -> dict:
        tool_input = parse_tool_input(parse_tool_kind(call.name), call.input)
        match tool_input:
            case AnalyzeDataInput():
                return self.analyze_data(tool_input)
            case SearchWebInput():
                return await self.search_web(tool_input)
            case QueryDocumentsInput():
                return await self.query_documents(tool_input)
            case RecordInsightInput():
                return self.record_insight(tool_input)
            case CompleteInput():
                return self.complete(tool_input)
            case _:
                assert_never(tool_input)

    def analyze_data(self, inp: AnalyzeDataInput) -> dict:
        self.milestone(
            f"Analyzing {', '.join(inp.metrics)} ({inp.mode.value})",
            f"Examining {inp.quarters} quarters of data",
        )
        if not self.context.financials:
            return {"success": False, "message": "No financial data available for this entity"}

        analysis = analyze_series(
            self.context.financials, list(inp.metrics), inp.mode, inp.quarters, self.context.peers,
        )
        self.state.explore(f"financial_analysis:{','.join(inp.metrics)}")

        entity = self.context.entity
        self.remember(lambda m: m.record_analysis_strategy(
            self.context.memory_context,
            f"Analyze {', '.join(inp.metrics)} with {inp.mode.value} approach",
            list(inp.metrics),
            len(self.state.insights),
            entity_id=entity.entity_id,
            entity_name=entity.name,
        ))

        return {
            "success": True,
            "analysis": analysis.to_dict(),
            "message": (
                f"Analyzed {len(inp.metrics)} metrics across {analysis.quarters_analyzed} quarters"
            ),
        }

    async def search_web(self, inp: SearchWebInput) -> dict:
        self.milestone(f"Web search: {inp.focus.value}", inp.query)
        result = await self.o.web_search.search(inp.query, inp.focus.value, self.context.entity)

        sources = [s.to_dict() for s in result.sources]
        self.state.web_searches.append({
            "query": inp.query, "focus": inp.focus.value, "summary": result.summary_text, "sources": sources,
        })
        self.state.explore(f"web_search:{inp.focus.value}")

        entity = self.context.entity
        self.remember(lambda m: m.record_search(
            self.context.memory_context,
            inp.query,
            inp.focus.value,
            len(sources),
            entity_id=entity.entity_id,
            entity_name=entity.name,
        ))

        return {
            "success": True,
            "summary": result.summary_text,
            "sources": sources,
            "message": f"Found {len(sources)} sources about {inp.focus.value}",
        }

    async def query_documents(self, inp: QueryDocumentsInput) -> dict:
        label = inp.category_label
        self.milestone(f"Querying {label} documents", inp.question)

        filters = RetrievalFilters(
            entity_id=self.context.entity.entity_id if inp.scope is QueryScope.ENTITY else None,
            topics=inp.topics,
            category=inp.category,
        )
        chunks = await self.o.retrieval.retrieve(inp.question, filters, k=self.config.retrieval_k)

        sources: list[Any] = []
        if self.context.session_id:
            approved = await self.o.approved_sources(self.context.session_id, inp.category)
            sources = [
                s for s in approved
                if s.fetch_status == FetchStatus.FETCHED
                and s.content
                and len(s.content) > MIN_SOURCE_CONTENT
            ]

        if not chunks and not sources:
            return {
                "success": False,
                "message": f"No documents or sources available for category: {label}",
                "answer": None,
            }

        citations: list[dict] = []
        blocks: list[str] = []
        for chunk in chunks:
            n = len(citations) + 1
            citations.append({
                "ref": n, "type": "document", "document_id": chunk.document_id,
                "chunk_id": chunk.chunk_id, "page_number": chunk.page_number,
                "similarity": round(chunk.similarity, 4),
            })
            blocks.append(f"[{n}] ({chunk.citation()})\n{chunk.content}")
        for source in sources:
            n = len(citations) + 1
            citations.append({
                "ref": n, "type": "source", "source_id": source.id,
                "title": source.title, "url": source.url,
                "category": source.category.value if source.category else None,
            })
            blocks.append(f"[{n}] {source.title} ({source.url})\n{source.content[:SOURCE_EXCERPT_CHARS]}")

        response = await self.o.llm.complete(
            messages=[{
                "role": "user",
                "content": (
                    f"Based on the following sources, answer this question:\n\n{inp.question}"
                    "\n\n---\n\n" + "\n\n".join(blocks) +
                    "\n\nProvide a detailed answer with specific citations to the sources "
                    "(reference by source number)."
                ),
            }],
            system=DOCUMENT_QA_SYSTEM_PROMPT,
        )
        answer = response.content
        self.state.input_tokens += response.input_tokens
        self.state.output_tokens += response.output_tokens

        self.state.queried_documents.append({
            "question": inp.question, "category": label, "scope": inp.scope.value, "citations": citations,
        })
        self.state.explore(f"document_query:{label}")

        entity = self.context.entity
        self.remember(lambda m: m.record_document_query(
            self.context.memory_context,
            inp.question,
            label,
            relevant_results=len(citations),
            succeeded=len(answer) > MEANINGFUL_ANSWER_CHARS,
            entity_id=entity.entity_id,
            entity_name=entity.name,
        ))

        return {
            "success": True,
            "answer": answer,
            "citations": citations,
            "message": (
                f"Queried {len(chunks)} document chunks and {len(sources)} sources ({label})"
            ),
        }

    def record_insight(self, inp: RecordInsightInput) -> dict:
        insight = Insight(
            type=inp.insight_type,
            title=inp.title,
            content=inp.content,
            importance=inp.importance,
            evidence=inp.evidence,
        )
        self.state.insights.append(insight)
        self.emit({"type": "insight", "insight": insight.to_dict()})
        return {
            "success": True,
            "message": f"Recorded {inp.importance.value} importance insight: {inp.title}",
            "insights_count": len(self.state.insights),
        }

    def complete(self, inp: CompleteInput) -> dict:
        self.state.completed = True
        self.state.completion_summary = inp.summary
        self.state.completion_confidence = inp.confidence
        self.milestone("Research phase complete", inp.summary)
        return {
            "success": True,
            "complete": True,
            "summary": inp.summary,
            "confidence": inp.confidence.value,
            "stats": self.stats(),
        }

    # -- exit ----------------------------------------------------------------

    def result(self, final: GraphState) -> ResearchResult:
        status = final.get("status", RunStatus.FAILED)
        if status is RunStatus.RUNNING:
            status = RunStatus.FAILED
        completed = status is RunStatus.COMPLETED
        confidence = (
            self.state.completion_confidence.value
            if completed and self.state.completion_confidence
            else Confidence.LOW.value
        )
        return ResearchResult(
            insights=list(self.state.insights),
            explored_areas=list(self.state.explored_areas),
            stats=self.stats(),
            status=status,
            confidence=confidence,
            summary=self.state.completion_summary,
            error=final.get("error"),
        )


# ---------------------------------------------------------------------------
# Graph assembly (compiled once)
# ---------------------------------------------------------------------------


async def load_memory_node(state: GraphState) -> dict:
    return await state["run"].load_memory(state)


async def reason_node(state: GraphState) -> dict:
    return await state["run"].reason(state)


async def tools_node(state: GraphState) -> dict:
    return await state["run"].execute_tools(state)


def _route_after_reason(state: GraphState) -> str:
    if state.get("status") is not RunStatus.RUNNING:
        return END
    return "tools" if state.get("pending") else "reason"


def _route_after_tools(state: GraphState) -> str:
    return "reason" if state.get("status") is RunStatus.RUNNING else END


_builder = StateGraph(GraphState)
_builder.add_node("load_memory", load_memory_node)
_builder.add_node("reason", reason_node)
_builder.add_node("tools", tools_node)

_builder.add_edge(START, "load_memory")
_builder.add_edge("load_memory", "reason")
_builder.add_conditional_edges("reason", _route_after_reason, ["tools", "reason", END])
_builder.add_conditional_edges("tools", _route_after_tools, ["reason", END])

graph = _builder.compile()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class ResearchOrchestrator:
    def __init__(
        self,
        llm: LLMProvider,
        retrieval: RetrievalService,
        web_search: WebSearchClient,
        memory: MemoryService | None = None,
        config: OrchestratorConfig | None = None,
        on_progress: ProgressCallback | None = None,
        approved_sources: ApprovedSourceLoader = get_approved_sources,
    ) -> None:
        self.llm = llm
        self.retrieval = retrieval
        self.web_search = web_search
        self.memory = memory
        self.config = config or OrchestratorConfig()
        self.on_progress = on_progress
        self.approved_sources = approved_sources

    def _recursion_limit(self) -> int:
        # load_memory + (reason, tools) per iteration + stall retries + final reason
        return 2 * (self.config.max_iterations + self.config.max_stall_retries + 2) + 5

    async def run(
        self,
        context: ResearchContext,
        cancel_event: asyncio.Event | None = None,
    ) -> ResearchResult:
        run = _ResearchRun(self, context, cancel_event)
        logger.info(
            "Starting research run for %s (max_iterations=%d, timeout=%.0fs, policy=%s)",
            context.entity.entity_id,
            self.config.max_iterations,
            self.config.timeout_seconds,
            self.config.silent_stop_policy.value,
        )

        final: GraphState = await graph.ainvoke(
            {"run": run, "messages": [], "pending": [], "status": RunStatus.RUNNING},
            config={"recursion_limit": self._recursion_limit()},
        )
        result = run.result(final)

        logger.info(
            "Research run for %s finished: status=%s, iterations=%d, insights=%d",
            context.entity.entity_id, result.status.value,
            result.stats["iterations"], len(result.insights),
        )
        return result
