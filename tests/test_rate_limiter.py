# =============================================================================
# Unit Tests — Client-Side Rate Limiter
# =============================================================================

from unittest.mock import MagicMock, patch

import pytest
import redis

from app.config import settings
from app.exceptions import RateLimitedError
from app.services.rate_limiter import (
    InMemoryRateLimiter,
    RedisRateLimiter,
    get_rate_limiter,
    reset_rate_limiters,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestInMemoryRateLimiter:
    def test_allows_up_to_limit_then_fails_fast(self):
        clock = FakeClock()
        limiter = InMemoryRateLimiter("llm", limit=3, window_seconds=60.0, clock=clock)

        for _ in range(3):
            limiter.acquire()

        with pytest.raises(RateLimitedError) as exc_info:
            limiter.acquire()
        assert exc_info.value.retry_after == pytest.approx(60.0)
        assert limiter.in_window == 3

    def test_window_slides(self):
        clock = FakeClock()
        limiter = InMemoryRateLimiter("llm", limit=2, window_seconds=10.0, clock=clock)

        limiter.acquire()
        clock.now += 6
        limiter.acquire()

        clock.now += 5  # first call is now outside the window
        limiter.acquire()

        with pytest.raises(RateLimitedError) as exc_info:
            limiter.acquire()
        assert exc_info.value.retry_after == pytest.approx(5.0)

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            InMemoryRateLimiter("llm", limit=0)


class TestRedisRateLimiter:
    def test_redis_outage_allows_call(self):
        client = MagicMock()
        client.pipeline.side_effect = redis.ConnectionError("down")
        limiter = RedisRateLimiter("web_search", limit=1, client=client)
        limiter.acquire()  # no exception

    def test_full_window_raises(self):
        client = MagicMock()
        pipe = MagicMock()
        pipe.execute.return_value = [0, 5, [("m", 100.0)]]
        client.pipeline.return_value = pipe
        limiter = RedisRateLimiter("web_search", limit=5, window_seconds=60.0, client=client)

        with patch("app.services.rate_limiter.time.time", return_value=130.0):
            with pytest.raises(RateLimitedError) as exc_info:
                limiter.acquire()
        assert exc_info.value.retry_after == pytest.approx(30.0)


class TestFactory:
    def setup_method(self):
        reset_rate_limiters()

    def teardown_method(self):
        reset_rate_limiters()

    def test_one_limiter_per_name(self):
        assert get_rate_limiter("llm") is get_rate_limiter("llm")
        assert get_rate_limiter("llm") is not get_rate_limiter("embedding")

    def test_limit_comes_from_settings(self):
        with patch.object(settings, "web_search_rate_limit", 7):
            assert get_rate_limiter("web_search").limit == 7

    def test_unknown_name(self):
        with pytest.raises(ValueError):
            get_rate_limiter("geocoding")
