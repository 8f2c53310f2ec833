# =============================================================================
# Web Search — Provider-Side Search Tool
# =============================================================================
#
# search(query, focus, entity) asks Claude to run its server-side
# web_search tool and summarise the top results. Source references are
# collected from three places and de-duplicated by URL:
#
#   1. web_search_tool_result blocks (structured url + title)
#   2. markdown links in the summary text       [Title](https://...)
#   3. "Title - https://..." lines in the summary text
#
# Each call takes a "web_search" rate-limit slot and runs under the
# shared transient-retry policy.
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from app.config import settings
from app.services.entity_data import EntityProfile
from app.services.llm import build_anthropic_client
from app.services.model_resolver import ModelResolver, as_model_source
from app.services.rate_limiter import get_rate_limiter
from app.services.retry import acall_with_retry

logger = logging.getLogger(__name__)

WEB_SEARCH_TOOL = {"type": "web_search_20250305", "name": "web_search"}

_MARKDOWN_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^\)]+)\)")
_TITLE_URL_RE = re.compile(r"([^-\n]+)\s*-\s*(https?://[^\s\n]+)")


@dataclass
class SourceReference:
    url: str
    title: str
    snippet: str | None = None

    def to_dict(self) -> dict:
        return {"url": self.url, "title": self.title, "snippet": self.snippet}


@dataclass
class WebSearchResult:
    query: str
    focus: str
    summary_text: str = ""
    sources: list[SourceReference] = field(default_factory=list)

    @property
    def urls(self) -> list[str]:
        return [s.url for s in self.sources]


class WebSearchClient(Protocol):
    async def search(self, query: str, focus: str, entity: EntityProfile) -> WebSearchResult:
        ...


def extract_source_references(text: str) -> list[SourceReference]:
    """Markdown links first, then "Title - URL" lines; http(s) only, unique by URL."""
    found: list[SourceReference] = []
    seen: set[str] = set()

    for pattern in (_MARKDOWN_LINK_RE, _TITLE_URL_RE):
        for match in pattern.finditer(text):
            title, url = match.group(1).strip(), match.group(2).strip()
            if not url.startswith("http") or url in seen:
                continue
            seen.add(url)
            found.append(SourceReference(url=url, title=title or url))
    return found


def merge_references(*groups: list[SourceReference]) -> list[SourceReference]:
    merged: list[SourceReference] = []
    seen: set[str] = set()
    for group in groups:
        for ref in group:
            if ref.url in seen:
                continue
            seen.add(ref.url)
            merged.append(ref)
    return merged


def _block_value(block: Any, name: str) -> Any:
    if isinstance(block, dict):
        return block.get(name)
    return getattr(block, name, None)


def references_from_blocks(content: list[Any]) -> tuple[str, list[SourceReference]]:
    """Split a response's content into summary text and structured references."""
    texts: list[str] = []
    structured: list[SourceReference] = []

    for block in content:
        block_type = _block_value(block, "type")
        if block_type == "text":
            texts.append(_block_value(block, "text") or "")
            for citation in _block_value(block, "citations") or []:
                url = _block_value(citation, "url")
                if url:
                    structured.append(SourceReference(
                        url=url,
                        title=_block_value(citation, "title") or url,
                        snippet=_block_value(citation, "cited_text"),
                    ))
        elif block_type == "web_search_tool_result":
            results = _block_value(block, "content")
            if not isinstance(results, list):
                continue  # error payload
            for item in results:
                url = _block_value(item, "url")
                if url:
                    structured.append(SourceReference(
                        url=url,
                        title=_block_value(item, "title") or url,
                        snippet=_block_value(item, "page_age"),
                    ))

    summary = "\n".join(t for t in texts if t)
    return summary, merge_references(structured, extract_source_references(summary))


class AnthropicWebSearch:
    def __init__(
        self,
        client=None,
        model: str | ModelResolver | None = None,
        thinking_budget: int | None = None,
        max_tokens: int | None = None,
    ) -> None:
        self._client = client or build_anthropic_client()
        self._model = as_model_source(model)
        self._thinking_budget = settings.llm_thinking_budget if thinking_budget is None else thinking_budget
        self._max_tokens = max_tokens or settings.llm_max_tokens

    async def search(self, query: str, focus: str, entity: EntityProfile) -> WebSearchResult:
        where = f" ({entity.location})" if entity.location else ""
        kwargs: dict[str, Any] = {
            "model": await self._model(),
            "max_tokens": self._max_tokens,
            "system": (
                "You are a financial research assistant. "
                f"Search for information about {entity.name}{where}."
            ),
            "messages": [{
                "role": "user",
                "content": (
                    f"Search the web for: {query}\n\nFocus area: {focus}\n\n"
                    "Provide a structured summary of the top 3-5 most relevant and "
                    "recent results with URLs."
                ),
            }],
            "tools": [WEB_SEARCH_TOOL],
        }
        if self._thinking_budget > 0:
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": self._thinking_budget}
            kwargs["max_tokens"] = max(self._max_tokens, self._thinking_budget + 2000)

        get_rate_limiter("web_search").acquire()
        response = await acall_with_retry(
            lambda: self._client.messages.create(**kwargs),
            operation="web_search",
        )

        summary, sources = references_from_blocks(response.content)
        logger.info("Web search '%s' (%s) found %d sources", query[:80], focus, len(sources))
        return WebSearchResult(query=query, focus=focus, summary_text=summary, sources=sources)


_client: AnthropicWebSearch | None = None


def get_web_search_client() -> AnthropicWebSearch:
    global _client
    if _client is None:
        _client = AnthropicWebSearch(model=ModelResolver())
    return _client
