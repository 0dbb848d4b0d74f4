"""Rate limiting through Redis and the per-process fallback.

The Redis script itself runs server side; these tests check what is sent to
it and how its reply is read.
"""
import hashlib
import threading
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from classifieds.service.runtime import Runtime, check_rate_limit
from classifieds.storage.redis_cache import RedisCache


@pytest.fixture
def cache():
    cache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://cache.invalid:6379/0"
    cache.client = MagicMock()
    cache.client.aclose = AsyncMock()
    cache._token_bucket = AsyncMock(return_value=[1, 4, 0])
    return cache


class TestRedisCache:
    def test_keys_are_hashed(self):
        key = RedisCache._normalize_rate_key("login:bob@example.com")

        assert key == "rate:" + hashlib.sha256(b"login:bob@example.com").hexdigest()
        assert "bob" not in key

    async def test_script_receives_refill_rate_and_capacity(self, cache):
        allowed = await cache.check_rate_limit("login:bob@example.com", 5, 60)

        assert allowed is True
        kwargs = cache._token_bucket.call_args.kwargs
        assert kwargs["keys"] == [RedisCache._normalize_rate_key("login:bob@example.com")]
        _, refill_rate, capacity, cost = kwargs["args"]
        assert refill_rate == pytest.approx(5 / 60)
        assert capacity == 5
        assert cost == 1

    async def test_denied_reply_is_unpacked(self, cache):
        # Replies may arrive as strings
        cache._token_bucket.return_value = ["0", "0", "12"]

        result = await cache.check_rate_limit("reset_confirm:1.2.3.4", 5, 60, return_remaining=True)

        assert result == (False, 0, 12)

    async def test_cost_never_below_one(self, cache):
        await cache.check_rate_limit("k", 5, 60, cost=0)
        assert cache._token_bucket.call_args.kwargs["args"][3] == 1

    def test_verify_connection_pings_with_sync_client(self, cache):
        sync_client = MagicMock()
        with patch("classifieds.storage.redis_cache.Redis.from_url", return_value=sync_client):
            cache.verify_connection()

        sync_client.ping.assert_called_once()
        sync_client.close.assert_called_once()

    async def test_close(self, cache):
        await cache.close()
        cache.client.aclose.assert_awaited_once()


class TestCheckRateLimit:
    @pytest.fixture
    def local_runtime(self):
        runtime = MagicMock(spec=Runtime)
        runtime.cache = None
        runtime._local_rate_limits = {}
        runtime._local_rate_limit_lock = threading.Lock()
        return runtime

    async def test_delegates_to_redis_when_configured(self, cache):
        runtime = MagicMock(spec=Runtime)
        runtime.cache = cache

        result = await check_rate_limit(runtime, "login:bob@example.com", 5, 60, return_remaining=True)

        assert result == (True, 4, 0)
        cache._token_bucket.assert_awaited_once()

    async def test_local_bucket_empties(self, local_runtime):
        results = [await check_rate_limit(local_runtime, "login:bob", 2, 60) for _ in range(3)]
        assert results == [True, True, False]

    async def test_non_positive_limit_disables_check(self, local_runtime):
        assert await check_rate_limit(local_runtime, "login:bob", 0, 60) is True
        assert local_runtime._local_rate_limits == {}

    async def test_invalid_window_logged(self, local_runtime):
        with patch("classifieds.service.runtime.logger") as mock_logger:
            await check_rate_limit(local_runtime, "login:bob", 10, 0)

        assert mock_logger.warning.call_args[0][0] == "rate_limit_invalid_window"
