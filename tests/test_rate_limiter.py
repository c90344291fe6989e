"""
Tests for hookledger/utils/rate_limiter.py - Redis admission counters.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hookledger.utils.rate_limiter import (
    INFLIGHT_TTL_SECONDS,
    RELEASE_SCRIPT,
    acquire_slot,
    admission_slot,
    check_rate_limit,
    check_webhook_rate_limits,
    release_slot,
)


def _counts(mock_redis, *counts):
    """Queue the INCR results the acquire pipeline will return."""
    mock_redis.pipeline.return_value.execute.side_effect = [[c, True] for c in counts]


class _CounterRedis:
    """In-memory stand-in for the counter commands, with manual key expiry."""

    def __init__(self):
        self.store = {}
        self.ttls = {}

    def pipeline(self):
        redis = self
        queued = []

        class _Pipe:
            def incr(self, key):
                queued.append(("incr", key))

            def expire(self, key, seconds):
                queued.append(("expire", key, seconds))

            async def execute(self):
                results = []
                for op in queued:
                    if op[0] == "incr":
                        redis.store[op[1]] = redis.store.get(op[1], 0) + 1
                        results.append(redis.store[op[1]])
                    else:
                        redis.ttls[op[1]] = op[2]
                        results.append(op[1] in redis.store)
                return results

        return _Pipe()

    async def eval(self, script, numkeys, key):
        assert script == RELEASE_SCRIPT
        current = self.store.get(key, 0)
        if current > 0:
            self.store[key] = current - 1
            return self.store[key]
        return 0

    def expire_now(self, key):
        self.store.pop(key, None)
        self.ttls.pop(key, None)


class TestAcquireSlot:
    async def test_expiry_set_with_increment(self, mock_redis):
        assert await acquire_slot("k", 5, 61) is True
        pipe = mock_redis.pipeline.return_value
        pipe.incr.assert_called_once_with("k")
        pipe.expire.assert_called_once_with("k", 61)
        mock_redis.eval.assert_not_awaited()

    async def test_expiry_refreshed_on_every_acquire(self, mock_redis):
        _counts(mock_redis, 1, 2, 3)
        for _ in range(3):
            await acquire_slot("k", 5, 61)
        assert mock_redis.pipeline.return_value.expire.call_count == 3

    async def test_over_limit_rolls_back(self, mock_redis):
        _counts(mock_redis, 6)
        assert await acquire_slot("k", 5, 61) is False
        mock_redis.eval.assert_awaited_once_with(RELEASE_SCRIPT, 1, "k")

    async def test_redis_down_fails_open(self, mock_redis):
        mock_redis.pipeline.return_value.execute.side_effect = ConnectionError("redis down")
        assert await acquire_slot("k", 5, 61) is None


class TestReleaseSlot:
    async def test_release_uses_floor_script(self, mock_redis):
        await release_slot("k")
        mock_redis.eval.assert_awaited_once_with(RELEASE_SCRIPT, 1, "k")

    def test_script_only_decrements_positive_counter(self):
        assert "current > 0" in RELEASE_SCRIPT
        assert 'redis.call("decr", KEYS[1])' in RELEASE_SCRIPT

    async def test_redis_error_swallowed(self, mock_redis):
        mock_redis.eval.side_effect = ConnectionError("redis down")
        await release_slot("k")


class TestCounterExpiry:
    async def test_expired_key_does_not_go_negative(self):
        redis = _CounterRedis()
        key = "hookledger:inflight:stripe"
        with patch("hookledger.utils.redis_client.get_redis", new=AsyncMock(return_value=redis)):
            assert await acquire_slot(key, 2, INFLIGHT_TTL_SECONDS) is True
            assert await acquire_slot(key, 2, INFLIGHT_TTL_SECONDS) is True
            redis.expire_now(key)  # TTL lapses while both slots are held
            await release_slot(key)
            await release_slot(key)
            assert redis.store.get(key, 0) == 0

            admitted = [await acquire_slot(key, 2, INFLIGHT_TTL_SECONDS) for _ in range(3)]

        assert admitted == [True, True, False]
        assert redis.store[key] == 2
        assert redis.ttls[key] == INFLIGHT_TTL_SECONDS


class TestCheckRateLimit:
    async def test_allowed(self, mock_redis):
        _counts(mock_redis, 3)
        assert await check_rate_limit("ip:1.2.3.4", 10) == (True, None)

    async def test_blocked_with_retry_after(self, mock_redis):
        _counts(mock_redis, 11)
        allowed, retry_after = await check_rate_limit("ip:1.2.3.4", 10, window=60)
        assert allowed is False
        assert 1 <= retry_after <= 60

    async def test_key_is_bucketed_per_ip(self, mock_redis):
        await check_rate_limit("ip:1.2.3.4", 10)
        key = mock_redis.pipeline.return_value.incr.call_args.args[0]
        assert key.startswith("hookledger:ratelimit:ip:1.2.3.4:")

    async def test_webhook_limit_from_settings(self, mock_redis, settings):
        settings.webhook_rate_limit_per_minute = 2
        _counts(mock_redis, 3)
        allowed, _ = await check_webhook_rate_limits("10.0.0.1")
        assert allowed is False


class TestAdmissionSlot:
    async def test_slot_released_after_block(self, mock_redis):
        async with admission_slot("stripe", limit=5) as admitted:
            assert admitted is True
            mock_redis.eval.assert_not_awaited()
        mock_redis.pipeline.return_value.expire.assert_called_once_with(
            "hookledger:inflight:stripe", INFLIGHT_TTL_SECONDS
        )
        mock_redis.eval.assert_awaited_once_with(RELEASE_SCRIPT, 1, "hookledger:inflight:stripe")

    async def test_slot_released_on_error(self, mock_redis):
        with pytest.raises(RuntimeError):
            async with admission_slot("resend", limit=5):
                raise RuntimeError("handler blew up")
        mock_redis.eval.assert_awaited_once_with(RELEASE_SCRIPT, 1, "hookledger:inflight:resend")

    async def test_at_capacity(self, mock_redis):
        _counts(mock_redis, 6)
        async with admission_slot("twilio", limit=5) as admitted:
            assert admitted is False
        # only the overflow rollback, no release
        assert mock_redis.eval.await_count == 1

    async def test_redis_down_admits_without_release(self, mock_redis):
        mock_redis.pipeline = MagicMock(side_effect=ConnectionError("redis down"))
        async with admission_slot("stripe", limit=5) as admitted:
            assert admitted is True
        mock_redis.eval.assert_not_awaited()
