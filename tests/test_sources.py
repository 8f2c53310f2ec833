# =============================================================================
# Unit Tests — Source Lifecycle
# =============================================================================
#
# A small in-memory stand-in for the async session keeps rows by id, so
# discovery, fetch state transitions and approval run without PostgreSQL.
# =============================================================================

import asyncio
from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.db.models import FetchStatus, SourceCategory, SourceStatus
from app.exceptions import SourceNotFoundError
from app.services.content_fetcher import ContentFetcher, FetchResult
from app.services.entity_data import EntityProfile
from app.services.sources import (
    fetch_session_sources,
    fetch_source,
    gather_sources,
    record_discovered_sources,
    set_source_status,
)
from app.services.web_search import SourceReference, WebSearchResult

ENTITY = EntityProfile(entity_id="480228", name="First Example Bank", city="Dayton", state="OH")


def _run(coro):
    return asyncio.run(coro)


class FakeDB:
    """Rows by id; `execute` answers with whatever `select_result` holds."""

    def __init__(self, rows=None, select_result=None):
        self.rows = {r.id: r for r in rows or []}
        self.select_result = select_result if select_result is not None else []
        self.added = []
        self.commits = 0

    def factory(self):
        db = self

        @asynccontextmanager
        async def _factory():
            session = MagicMock()

            async def get(_model, key):
                return db.rows.get(key)

            async def execute(_stmt):
                result = MagicMock()
                result.scalars.return_value.all.return_value = list(db.select_result)
                return result

            async def commit():
                db.commits += 1

            def add_all(rows):
                for row in rows:
                    row.id = 100 + len(db.added)
                    db.added.append(row)

            session.get = get
            session.execute = execute
            session.commit = commit
            session.add_all = add_all
            yield session

        return _factory


def _source(id, url="https://example.com/a", fetch_status=FetchStatus.NOT_FETCHED):
    return SimpleNamespace(
        id=id, url=url, status=SourceStatus.PENDING, fetch_status=fetch_status,
        fetch_error=None, fetchable=False, fetched_at=None, content=None,
        content_length=None, content_type=None, is_probably_paywalled=False,
        is_probably_truncated=False, requires_web_search=False,
    )


class TestRecordDiscoveredSources:
    def test_duplicate_urls_are_skipped(self):
        db = FakeDB(select_result=["https://example.com/already"])
        refs = [
            SourceReference(url="https://example.com/already", title="Old"),
            SourceReference(url="https://example.com/new", title="New", snippet="preview"),
            SourceReference(url="https://example.com/new", title="New again"),
        ]

        ids = _run(record_discovered_sources(
            "s1", ENTITY, SourceCategory.ANALYST_REPORTS, refs, session_factory=db.factory(),
        ))

        assert len(ids) == 1
        row = db.added[0]
        assert row.url == "https://example.com/new"
        assert row.status == SourceStatus.PENDING
        assert row.fetch_status == FetchStatus.NOT_FETCHED
        assert row.entity_name == "First Example Bank"
        assert row.preview == "preview"

    def test_no_references_touches_nothing(self):
        db = FakeDB()
        assert _run(record_discovered_sources(
            "s1", ENTITY, SourceCategory.ANALYST_REPORTS, [], session_factory=db.factory(),
        )) == []
        assert db.commits == 0


class TestGatherSources:
    def test_failed_category_counts_zero_and_others_run(self):
        db = FakeDB()
        web = MagicMock()

        async def search(query, focus, entity):
            if "transcript" in query:
                raise RuntimeError("search backend down")
            return WebSearchResult(
                query=query, focus=focus,
                sources=[SourceReference(url=f"https://example.com/{focus}/{len(query)}", title=query)],
            )

        web.search = AsyncMock(side_effect=search)

        found = _run(gather_sources(ENTITY, "s1", web, session_factory=db.factory()))

        assert found == {
            "investor_presentation": 1,
            "earnings_transcript": 0,
            "strategy_analysis": 1,
            "analyst_reports": 1,
        }
        assert web.search.await_count == 4
        assert "First Example Bank" in web.search.await_args_list[0].args[0]

    def test_category_subset(self):
        db = FakeDB()
        web = MagicMock()
        web.search = AsyncMock(return_value=WebSearchResult(query="q", focus="strategy"))

        found = _run(gather_sources(
            ENTITY, "s1", web, categories=[SourceCategory.STRATEGY_ANALYSIS], session_factory=db.factory(),
        ))

        assert found == {"strategy_analysis": 0}
        web.search.assert_awaited_once()


class TestFetchSource:
    def test_success_stores_content_and_flags(self):
        row = _source(1)
        db = FakeDB(rows=[row])
        fetcher = MagicMock()
        fetcher.fetch_and_parse = AsyncMock(return_value=FetchResult(
            url=row.url, content="Body text", content_length=9, content_type="html",
            fetchable=True, is_probably_truncated=True, requires_web_search=True,
        ))

        status = _run(fetch_source(1, fetcher, session_factory=db.factory()))

        assert status == FetchStatus.FETCHED
        assert row.fetch_status == FetchStatus.FETCHED
        assert row.content == "Body text"
        assert row.is_probably_truncated
        assert row.requires_web_search
        assert row.fetched_at is not None
        assert db.commits == 2

    def test_failure_records_error_and_keeps_row(self):
        row = _source(1)
        db = FakeDB(rows=[row])
        fetcher = MagicMock()
        fetcher.fetch_and_parse = AsyncMock(return_value=FetchResult(
            url=row.url, content=None, content_length=0, content_type="error",
            fetchable=False, error="Page not found - URL may be outdated", status_code=404,
        ))

        status = _run(fetch_source(1, fetcher, session_factory=db.factory()))

        assert status == FetchStatus.FETCH_FAILED
        assert row.fetch_error.startswith("Page not found")
        assert row.content is None
        assert 1 in db.rows

    def test_fetcher_exception_marks_row_failed(self):
        row = _source(1, "http://[bad-host/page")
        db = FakeDB(rows=[row])
        fetcher = MagicMock()
        fetcher.fetch_and_parse = AsyncMock(side_effect=ValueError("Invalid IPv6 URL"))

        status = _run(fetch_source(1, fetcher, session_factory=db.factory()))

        assert status == FetchStatus.FETCH_FAILED
        assert row.fetch_status == FetchStatus.FETCH_FAILED
        assert row.fetch_error == "ValueError: Invalid IPv6 URL"
        assert db.commits == 2

    def test_malformed_url_with_real_fetcher(self):
        row = _source(1, "http://[bad-host/page")
        db = FakeDB(rows=[row])

        status = _run(fetch_source(1, ContentFetcher(), session_factory=db.factory()))

        assert status == FetchStatus.FETCH_FAILED
        assert row.fetch_error.startswith("Invalid URL")

    def test_missing_source_raises(self):
        db = FakeDB()
        with pytest.raises(SourceNotFoundError):
            _run(fetch_source(9, MagicMock(), session_factory=db.factory()))


class TestFetchSessionSources:
    def test_counts_fetched_and_failed(self):
        rows = [_source(1, "https://ok.example.com"), _source(2, "https://bad.example.com"), _source(3, "https://ok2.example.com")]
        db = FakeDB(rows=rows, select_result=[1, 2, 3])

        async def fetch_and_parse(url):
            ok = "bad" not in url
            return FetchResult(
                url=url, content="x" if ok else None, content_length=1 if ok else 0,
                content_type="text" if ok else "error", fetchable=ok,
                error=None if ok else "Could not connect - site may be down",
            )

        fetcher = MagicMock()
        fetcher.fetch_and_parse = AsyncMock(side_effect=fetch_and_parse)

        summary = _run(fetch_session_sources("s1", concurrency=2, fetcher=fetcher, session_factory=db.factory()))

        assert summary == {"total": 3, "fetched": 2, "failed": 1}
        assert rows[1].fetch_status == FetchStatus.FETCH_FAILED

    def test_one_raising_source_does_not_abort_batch(self):
        rows = [_source(1, "https://ok.example.com"), _source(2, "https://gone.example.com")]
        db = FakeDB(rows=rows, select_result=[1, 2, 3])

        async def fetch_and_parse(url):
            return FetchResult(url=url, content="x", content_length=1, content_type="text", fetchable=True)

        fetcher = MagicMock()
        fetcher.fetch_and_parse = AsyncMock(side_effect=fetch_and_parse)

        # id 3 was deleted after selection
        summary = _run(fetch_session_sources("s1", fetcher=fetcher, session_factory=db.factory()))

        assert summary == {"total": 3, "fetched": 2, "failed": 1}
        assert [r.fetch_status for r in rows] == [FetchStatus.FETCHED, FetchStatus.FETCHED]

    def test_nothing_to_fetch(self):
        db = FakeDB(select_result=[])
        summary = _run(fetch_session_sources("s1", fetcher=MagicMock(), session_factory=db.factory()))
        assert summary == {"total": 0, "fetched": 0, "failed": 0}


class TestSetSourceStatus:
    def test_approve(self):
        row = _source(5)
        db = FakeDB(rows=[row])
        updated = _run(set_source_status(5, SourceStatus.APPROVED, session_factory=db.factory()))
        assert updated.status == SourceStatus.APPROVED
        assert db.commits == 1

    def test_missing(self):
        with pytest.raises(SourceNotFoundError):
            _run(set_source_status(5, SourceStatus.IGNORED, session_factory=FakeDB().factory()))
