# =============================================================================
# Transient Retry — Bounded Exponential Backoff
# =============================================================================
#
# Every outbound call (embeddings, LLM, web search, page fetch) goes through
# one of the two helpers below. Only transient transport failures are
# retried:
#
#   - connection reset / aborted
#   - timeouts (SDK, httpx and builtin)
#   - SDK "could not connect" errors
#
# Everything else (4xx, validation errors, rate-limit rejections, data
# integrity errors) propagates on the first occurrence.
#
# Backoff: base * 2**attempt → 1s, 2s, 4s with the default settings.
# The SDK clients are built with max_retries=0 so retries never nest.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

import anthropic
import httpx
import openai

from app.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    openai.APIConnectionError,  # includes APITimeoutError
    anthropic.APIConnectionError,  # includes APITimeoutError
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    ConnectionResetError,
    ConnectionAbortedError,
    TimeoutError,
)


def is_transient(exc: BaseException) -> bool:
    """True if the error is a transport hiccup worth retrying."""
    return isinstance(exc, TRANSIENT_ERRORS)


def backoff_delay(attempt: int, base_delay: float | None = None) -> float:
    base = settings.transient_base_delay_seconds if base_delay is None else base_delay
    return base * (2 ** attempt)


def call_with_retry(
    fn: Callable[[], T],
    *,
    operation: str,
    max_retries: int | None = None,
    base_delay: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call `fn()` and retry it on transient errors.

    Args:
        fn: Zero-argument callable doing one external call.
        operation: Label for log lines ("embeddings", "llm.converse").
        max_retries: Retries after the first attempt (default from settings).
        base_delay: First backoff delay in seconds (default from settings).
        sleep: Injected for tests.
    """
    retries = settings.transient_max_retries if max_retries is None else max_retries
    attempt = 0
    while True:
        try:
            return fn()
        except TRANSIENT_ERRORS as exc:
            if attempt >= retries:
                logger.error(
                    "%s failed after %d retries: %s", operation, retries, exc,
                )
                raise
            delay = backoff_delay(attempt, base_delay)
            logger.warning(
                "%s transient failure (%s), retry %d/%d in %.1fs",
                operation, type(exc).__name__, attempt + 1, retries, delay,
            )
            sleep(delay)
            attempt += 1


async def acall_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    operation: str,
    max_retries: int | None = None,
    base_delay: float | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Async twin of call_with_retry. `fn` must build a fresh awaitable per call."""
    retries = settings.transient_max_retries if max_retries is None else max_retries
    attempt = 0
    while True:
        try:
            return await fn()
        except TRANSIENT_ERRORS as exc:
            if attempt >= retries:
                logger.error(
                    "%s failed after %d retries: %s", operation, retries, exc,
                )
                raise
            delay = backoff_delay(attempt, base_delay)
            logger.warning(
                "%s transient failure (%s), retry %d/%d in %.1fs",
                operation, type(exc).__name__, attempt + 1, retries, delay,
            )
            await sleep(delay)
            attempt += 1
