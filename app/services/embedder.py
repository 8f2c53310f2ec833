# =============================================================================
# Embedding Client — Batch Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Turns text into fixed-width vectors through any OpenAI-compatible
# embeddings endpoint (OpenAI, Azure, DashScope, local gateways).
#
# DESIGN DECISION: Sync API. The two callers are the Celery ingestion task
# (sync) and the retrieval service, which calls embed_query through
# asyncio.to_thread so the event loop never blocks on HTTP.
#
# DESIGN DECISION: Width check on every vector. The index is created with
# settings.embedding_dimensions columns; a provider or model swap that
# returns a different width must fail ingestion loudly
# (EmbeddingDimensionError) rather than be truncated or padded.
#
# Each API call takes a slot from the "embedding" rate limiter, then runs
# under the transient-retry policy (connection resets and timeouts only).
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence

from openai import OpenAI

from app.config import settings
from app.exceptions import EmbeddingDimensionError
from app.services.rate_limiter import get_rate_limiter
from app.services.retry import call_with_retry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Embedding Client — Lazy Singleton
# ---------------------------------------------------------------------------
# API key resolution order:
#   1. OPENAI_API_KEY (explicit embedding key)
#   2. LLM_API_KEY (one key shared by LLM and embeddings)
# ---------------------------------------------------------------------------

_client: OpenAI | None = None


def _get_client() -> OpenAI:
    global _client
    if _client is None:
        resolved_key = settings.openai_api_key or settings.llm_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for embeddings. "
                "Set OPENAI_API_KEY or LLM_API_KEY in .env"
            )

        client_kwargs: dict = {
            "api_key": resolved_key,
            "max_retries": 0,
            "timeout": settings.external_call_timeout_seconds,
        }
        if settings.embedding_base_url:
            client_kwargs["base_url"] = settings.embedding_base_url

        _client = OpenAI(**client_kwargs)

        logger.info(
            "Initialized embedding client (model=%s, dimensions=%d, base_url=%s)",
            settings.embedding_model,
            settings.embedding_dimensions,
            settings.embedding_base_url or "https://api.openai.com/v1",
        )
    return _client


def check_dimensions(vector: Sequence[float], expected: int | None = None) -> None:
    """Raise EmbeddingDimensionError unless `vector` has the configured width."""
    width = settings.embedding_dimensions if expected is None else expected
    if len(vector) != width:
        raise EmbeddingDimensionError(expected=width, actual=len(vector))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def embed_batch(
    texts: Sequence[str],
    batch_size: int | None = None,
) -> list[list[float]]:
    """
    Embed `texts`, returning vectors in the same order as the input.

    Args:
        texts: Strings to embed.
        batch_size: Texts per API call (default settings.embedding_batch_size).

    Raises:
        ValueError: No API key configured.
        RateLimitedError: The embedding window is full.
        EmbeddingDimensionError: The provider returned a vector of the wrong width.
        openai.APIError: Non-transient API failure, or transient failure
            after the retry budget is spent.

    Pipeline position: ingestion step 3 (parse → chunk → embed → store).
    """
    if not texts:
        return []

    client = _get_client()
    limiter = get_rate_limiter("embedding")
    _batch_size = batch_size or settings.embedding_batch_size

    all_embeddings: list[list[float]] = [[] for _ in texts]

    for i in range(0, len(texts), _batch_size):
        batch = list(texts[i : i + _batch_size])
        logger.info(
            "Embedding batch %d-%d of %d texts (model=%s)",
            i + 1,
            min(i + _batch_size, len(texts)),
            len(texts),
            settings.embedding_model,
        )

        create_kwargs: dict = {
            "model": settings.embedding_model,
            "input": batch,
            "dimensions": settings.embedding_dimensions,
        }

        limiter.acquire()
        response = call_with_retry(
            lambda: client.embeddings.create(**create_kwargs),
            operation="embeddings",
        )

        # Place by response index, not by arrival order
        for item in sorted(response.data, key=lambda x: x.index):
            check_dimensions(item.embedding)
            all_embeddings[i + item.index] = item.embedding

        logger.debug(
            "Batch complete: %d embeddings, %d prompt tokens",
            len(batch),
            response.usage.prompt_tokens if response.usage else 0,
        )

    missing = [n for n, vec in enumerate(all_embeddings) if not vec]
    if missing:
        raise EmbeddingDimensionError(expected=settings.embedding_dimensions, actual=0)

    logger.info(
        "Generated %d embeddings (model=%s, dimensions=%d)",
        len(texts),
        settings.embedding_model,
        settings.embedding_dimensions,
    )
    return all_embeddings


def embed_query(text: str) -> list[float]:
    """Embed a single query string (retrieval, memory-free path)."""
    return embed_batch([text], batch_size=1)[0]
