# =============================================================================
# Model Resolver — Explicit TTL Cache for the Current Model Name
# =============================================================================
#
# Picks the model the research agent talks to:
#
#   1. CLAUDE_MODEL (settings.claude_model) pins a model explicitly.
#   2. Otherwise the provider's model list is fetched and the newest model
#      of settings.llm_model_family ("sonnet") is chosen: newest
#      created_at first, then highest id.
#   3. Any failure, or an empty family, falls back to settings.llm_model.
#
# DESIGN DECISION: The cache is a plain CachedValue(value, fetched_at, ttl)
# owned by a ModelResolver instance, refreshed through refresh_if_stale().
# Whoever builds the resolver owns its lifetime; tests build their own
# with a fake clock and model lister.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime

from app.config import settings

logger = logging.getLogger(__name__)


@dataclass
class CachedValue:
    value: str
    fetched_at: float
    ttl: float

    def is_stale(self, now: float) -> bool:
        return now - self.fetched_at >= self.ttl


@dataclass
class ModelInfo:
    id: str
    display_name: str | None = None
    created_at: datetime | None = None


ModelLister = Callable[[], Awaitable[list[ModelInfo]]]


async def list_anthropic_models() -> list[ModelInfo]:
    from anthropic import AsyncAnthropic

    client = AsyncAnthropic(
        api_key=settings.llm_api_key or settings.anthropic_api_key,
        max_retries=0,
        timeout=settings.external_call_timeout_seconds,
    )
    models: list[ModelInfo] = []
    async for model in client.models.list():
        models.append(ModelInfo(
            id=model.id,
            display_name=getattr(model, "display_name", None),
            created_at=getattr(model, "created_at", None),
        ))
    return models


def select_latest(models: list[ModelInfo], family: str) -> str | None:
    family = family.lower()
    candidates = [
        m for m in models
        if family in m.id.lower() or (m.display_name and family in m.display_name.lower())
    ]
    if not candidates:
        return None
    candidates.sort(
        key=lambda m: (m.created_at.timestamp() if m.created_at else 0.0, m.id),
        reverse=True,
    )
    return candidates[0].id


class ModelResolver:
    def __init__(
        self,
        list_models: ModelLister = list_anthropic_models,
        family: str | None = None,
        fallback: str | None = None,
        override: str | None = None,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._list_models = list_models
        self.family = family or settings.llm_model_family
        self.fallback = fallback or settings.llm_model
        self.override = override if override is not None else settings.claude_model
        self.ttl_seconds = settings.model_resolver_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self.cached: CachedValue | None = None
        self._lock = asyncio.Lock()

    async def refresh_if_stale(self) -> str:
        """Return the current model name, refreshing the cache when expired."""
        if self.cached is not None and not self.cached.is_stale(self._clock()):
            return self.cached.value

        async with self._lock:
            # Another caller may have refreshed while we waited
            if self.cached is not None and not self.cached.is_stale(self._clock()):
                return self.cached.value
            value = await self._resolve()
            self.cached = CachedValue(value=value, fetched_at=self._clock(), ttl=self.ttl_seconds)
            return value

    async def _resolve(self) -> str:
        if self.override:
            logger.info("Using model from CLAUDE_MODEL override: %s", self.override)
            return self.override

        try:
            models = await self._list_models()
        except Exception as exc:
            logger.warning(
                "Could not list models (%s); using fallback %s", exc, self.fallback,
            )
            return self.fallback

        latest = select_latest(models, self.family)
        if latest is None:
            logger.warning(
                "No '%s' models among %d listed; using fallback %s",
                self.family, len(models), self.fallback,
            )
            return self.fallback

        logger.info("Resolved latest %s model: %s", self.family, latest)
        return latest

    def invalidate(self) -> None:
        self.cached = None


def fixed_model(name: str) -> Callable[[], Awaitable[str]]:
    """A resolver stand-in that always returns `name`."""

    async def _resolve() -> str:
        return name

    return _resolve


def as_model_source(resolver: ModelResolver | str | None) -> Callable[[], Awaitable[str]]:
    """Normalise a resolver, a fixed model name or None into an async getter."""
    if resolver is None:
        return fixed_model(settings.llm_model)
    if isinstance(resolver, str):
        return fixed_model(resolver)
    return resolver.refresh_if_stale
