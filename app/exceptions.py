# =============================================================================
# Error Taxonomy
# =============================================================================
#
# Four classes of failure, each with its own handling rule:
#
#   1. Fatal (RunAbortedError): iteration cap, wall-clock timeout, LLM
#      unreachable. The orchestrator converts these into a partial,
#      explicitly aborted ResearchResult.
#   2. Tool-local (ToolInputError and any other tool exception): fed back
#      to the model as an error tool result; the run continues.
#   3. Best-effort: memory writes and retrieval counters. Logged and
#      swallowed at the call site, so no class is needed here.
#   4. Data-integrity (DataIntegrityError): defects such as a wrong
#      embedding width. Never caught and degraded; always propagated.
# =============================================================================

from __future__ import annotations

import enum


class ResearchAgentError(Exception):
    """Base class for every error raised by this package."""


# ---------------------------------------------------------------------------
# External call limits
# ---------------------------------------------------------------------------


class RateLimitedError(ResearchAgentError):
    """A client-side rate limit window is full. Raised instead of queueing."""

    def __init__(self, name: str, limit: int, window_seconds: float, retry_after: float) -> None:
        super().__init__(
            f"Rate limit exceeded for '{name}': {limit} calls per "
            f"{window_seconds:g}s (retry after {retry_after:.1f}s)"
        )
        self.name = name
        self.limit = limit
        self.window_seconds = window_seconds
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# Data integrity
# ---------------------------------------------------------------------------


class DataIntegrityError(ResearchAgentError):
    """A defect in data or wiring. Must fail loudly, never be degraded."""


class EmbeddingDimensionError(DataIntegrityError):
    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class InvalidFilterError(DataIntegrityError):
    """A retrieval filter is malformed (empty topic list, unknown category)."""


# ---------------------------------------------------------------------------
# Run-aborting errors
# ---------------------------------------------------------------------------


class RunStatus(str, enum.Enum):
    """Terminal (and in-flight) states of one research run."""

    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED_ITERATION_LIMIT = "aborted_iteration_limit"
    ABORTED_TIMEOUT = "aborted_timeout"
    CANCELLED = "cancelled"
    STALLED = "stalled"
    FAILED = "failed"


class RunAbortedError(ResearchAgentError):
    """Fatal for the current run. Carries the terminal status to report."""

    status: RunStatus = RunStatus.FAILED

    def __init__(self, message: str, status: RunStatus | None = None) -> None:
        super().__init__(message)
        if status is not None:
            self.status = status


class IterationLimitExceeded(RunAbortedError):
    status = RunStatus.ABORTED_ITERATION_LIMIT


class RunTimeoutExceeded(RunAbortedError):
    status = RunStatus.ABORTED_TIMEOUT


# ---------------------------------------------------------------------------
# Recoverable, caller-facing errors
# ---------------------------------------------------------------------------


class ToolInputError(ResearchAgentError, ValueError):
    """The model called a tool with missing or malformed arguments."""


class DocumentNotFoundError(ResearchAgentError, LookupError):
    def __init__(self, document_id: int) -> None:
        super().__init__(f"Document {document_id} not found")
        self.document_id = document_id


class SourceNotFoundError(ResearchAgentError, LookupError):
    def __init__(self, source_id: int) -> None:
        super().__init__(f"Source {source_id} not found")
        self.source_id = source_id
