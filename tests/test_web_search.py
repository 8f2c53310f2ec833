# =============================================================================
# Unit Tests — Web Search Client
# =============================================================================

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.services.entity_data import EntityProfile
from app.services.web_search import (
    AnthropicWebSearch,
    SourceReference,
    extract_source_references,
    merge_references,
    references_from_blocks,
)

ENTITY = EntityProfile(entity_id="480228", name="First Example Bank", city="Dayton", state="OH")


def _run(coro):
    return asyncio.run(coro)


class TestExtractSourceReferences:
    def test_markdown_and_title_lines(self):
        text = (
            "See [Q2 results](https://ir.example.com/q2) and\n"
            "Branch expansion - https://news.example.com/expansion\n"
            "Duplicate [again](https://ir.example.com/q2)\n"
            "[relative](/about)"
        )
        refs = extract_source_references(text)
        assert [r.url for r in refs] == ["https://ir.example.com/q2", "https://news.example.com/expansion"]
        assert refs[0].title == "Q2 results"

    def test_merge_keeps_first_occurrence(self):
        a = [SourceReference(url="https://a.com", title="structured")]
        b = [SourceReference(url="https://a.com", title="parsed"), SourceReference(url="https://b.com", title="B")]
        merged = merge_references(a, b)
        assert [(r.url, r.title) for r in merged] == [("https://a.com", "structured"), ("https://b.com", "B")]


class TestReferencesFromBlocks:
    def test_citations_results_and_text_links(self):
        content = [
            {"type": "server_tool_use", "name": "web_search"},
            {
                "type": "web_search_tool_result",
                "content": [{"url": "https://ir.example.com/deck.pdf", "title": "Deck", "page_age": "2 weeks"}],
            },
            SimpleNamespace(
                type="text",
                text="Summary with [a link](https://news.example.com/x).",
                citations=[SimpleNamespace(url="https://ir.example.com/deck.pdf", title="Deck", cited_text="NIM 3.4%")],
            ),
        ]
        summary, refs = references_from_blocks(content)

        assert summary == "Summary with [a link](https://news.example.com/x)."
        assert [r.url for r in refs] == ["https://ir.example.com/deck.pdf", "https://news.example.com/x"]
        assert refs[0].snippet == "NIM 3.4%"

    def test_error_payload_is_skipped(self):
        content = [{"type": "web_search_tool_result", "content": {"error_code": "max_uses_exceeded"}}]
        assert references_from_blocks(content) == ("", [])


class TestAnthropicWebSearch:
    @pytest.fixture(autouse=True)
    def no_rate_limit(self):
        with patch("app.services.web_search.get_rate_limiter") as limiter:
            yield limiter

    def _client(self, content):
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=SimpleNamespace(content=content))
        return client

    def test_search_builds_request_and_parses(self):
        client = self._client([{"type": "text", "text": "Growth plans - https://news.example.com/growth", "citations": None}])
        search = AnthropicWebSearch(client=client, model="claude-test", thinking_budget=0, max_tokens=1000)

        result = _run(search.search("First Example Bank growth", "strategy", ENTITY))

        kwargs = client.messages.create.await_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert "First Example Bank (Dayton, OH)" in kwargs["system"]
        assert kwargs["tools"][0]["name"] == "web_search"
        assert "thinking" not in kwargs
        assert result.urls == ["https://news.example.com/growth"]
        assert result.focus == "strategy"

    def test_thinking_budget_raises_max_tokens(self):
        client = self._client([])
        search = AnthropicWebSearch(client=client, model="claude-test", thinking_budget=4000, max_tokens=1000)

        _run(search.search("q", "news", ENTITY))

        kwargs = client.messages.create.await_args.kwargs
        assert kwargs["thinking"] == {"type": "enabled", "budget_tokens": 4000}
        assert kwargs["max_tokens"] == 6000
