# =============================================================================
# Unit Tests — Transient Retry Policy
# =============================================================================

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from app.exceptions import RateLimitedError
from app.services.retry import acall_with_retry, backoff_delay, call_with_retry, is_transient


class TestClassification:
    @pytest.mark.parametrize(
        "exc",
        [ConnectionResetError(), ConnectionAbortedError(), TimeoutError(), httpx.ReadTimeout("slow")],
    )
    def test_transient(self, exc):
        assert is_transient(exc)

    @pytest.mark.parametrize(
        "exc",
        [ValueError("bad"), KeyError("x"), RateLimitedError("llm", 5, 60.0, 3.0)],
    )
    def test_not_transient(self, exc):
        assert not is_transient(exc)

    def test_backoff_doubles(self):
        assert [backoff_delay(n, base_delay=1.0) for n in range(3)] == [1.0, 2.0, 4.0]


class TestCallWithRetry:
    def test_succeeds_after_transient_failures(self):
        fn = MagicMock(side_effect=[ConnectionResetError(), TimeoutError(), "ok"])
        sleep = MagicMock()

        assert call_with_retry(fn, operation="test", max_retries=3, base_delay=1.0, sleep=sleep) == "ok"
        assert fn.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    def test_gives_up_after_budget(self):
        fn = MagicMock(side_effect=ConnectionResetError())
        sleep = MagicMock()

        with pytest.raises(ConnectionResetError):
            call_with_retry(fn, operation="test", max_retries=3, base_delay=1.0, sleep=sleep)
        assert fn.call_count == 4
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0, 4.0]

    def test_non_transient_propagates_immediately(self):
        fn = MagicMock(side_effect=ValueError("bad request"))
        sleep = MagicMock()

        with pytest.raises(ValueError):
            call_with_retry(fn, operation="test", max_retries=3, sleep=sleep)
        assert fn.call_count == 1
        sleep.assert_not_called()


class TestAsyncCallWithRetry:
    def test_retries_transient(self):
        fn = AsyncMock(side_effect=[httpx.ConnectError("refused"), "ok"])
        sleep = AsyncMock()

        result = asyncio.run(acall_with_retry(fn, operation="test", max_retries=2, base_delay=0.5, sleep=sleep))

        assert result == "ok"
        sleep.assert_awaited_once_with(0.5)

    def test_rate_limited_is_not_retried(self):
        fn = AsyncMock(side_effect=RateLimitedError("llm", 5, 60.0, 3.0))
        sleep = AsyncMock()

        with pytest.raises(RateLimitedError):
            asyncio.run(acall_with_retry(fn, operation="test", max_retries=2, sleep=sleep))
        sleep.assert_not_awaited()
