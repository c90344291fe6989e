"""
Redis-based admission control for webhook endpoints.

Both limits use the same primitive as the idempotency ledger: increment first,
check after, roll back on overflow. There is never a read-then-write window
in which two workers can both see "one slot left". Every acquire refreshes the
key TTL in the same pipeline as the increment, and every decrement goes through
a Lua script that stops at zero, so an expired key can never come back negative.

- Per-IP request rate: fixed one-minute buckets.
- Per-provider in-flight limit: counter held for the duration of processing.

Redis failure fails open - a webhook is never rejected because Redis is down.
"""
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60
INFLIGHT_TTL_SECONDS = 300  # idle time after which a leaked counter disappears

# Decrement only an existing positive counter
RELEASE_SCRIPT = """
local current = tonumber(redis.call("get", KEYS[1]) or "0")
if current > 0 then
    return redis.call("decr", KEYS[1])
end
return 0
"""


async def acquire_slot(key: str, limit: int, ttl_seconds: int) -> Optional[bool]:
    """
    Atomically take one slot of `limit` under `key`.

    Returns True if a slot was taken, False if the limit is reached (the
    increment has been rolled back), None if Redis was unavailable.
    """
    try:
        from hookledger.utils.redis_client import get_redis
        redis = await get_redis()

        pipe = redis.pipeline()
        pipe.incr(key)
        pipe.expire(key, ttl_seconds)
        count, _ = await pipe.execute()

        if count > limit:
            await redis.eval(RELEASE_SCRIPT, 1, key)
            return False
        return True
    except Exception as e:
        logger.warning("Admission counter Redis error for %s: %s. Allowing request.", key, str(e))
        return None


async def release_slot(key: str) -> None:
    try:
        from hookledger.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.eval(RELEASE_SCRIPT, 1, key)
    except Exception as e:
        logger.warning("Failed to release admission slot %s: %s", key, str(e))


async def check_rate_limit(
    key: str,
    limit: int,
    window: int = WINDOW_SECONDS,
) -> tuple[bool, Optional[int]]:
    """
    Check if a request is within rate limits for the current window.

    Returns: (allowed: bool, retry_after_seconds: int | None)
    """
    from hookledger.utils.redis_client import KEY_PREFIX

    now = time.time()
    bucket = int(now // window)
    redis_key = f"{KEY_PREFIX}:ratelimit:{key}:{bucket}"

    acquired = await acquire_slot(redis_key, limit, window + 1)
    if acquired is False:
        retry_after = int((bucket + 1) * window - now)
        logger.warning("Rate limit exceeded: key=%s limit=%d", key, limit)
        return False, max(retry_after, 1)
    return True, None


async def check_webhook_rate_limits(client_ip: str) -> tuple[bool, Optional[int]]:
    """Per-IP request rate for all webhook endpoints."""
    from hookledger.config import get_settings
    limit = get_settings().webhook_rate_limit_per_minute
    return await check_rate_limit(f"ip:{client_ip}", limit)


@asynccontextmanager
async def admission_slot(provider: str, limit: Optional[int] = None) -> AsyncIterator[bool]:
    """
    Hold one in-flight processing slot for `provider` while the block runs.

    Yields False when the provider is at capacity; the caller should answer
    with a retryable status and must not process the event.
    """
    from hookledger.utils.redis_client import KEY_PREFIX

    if limit is None:
        from hookledger.config import get_settings
        limit = get_settings().webhook_max_inflight_per_provider

    key = f"{KEY_PREFIX}:inflight:{provider}"
    acquired = await acquire_slot(key, limit, INFLIGHT_TTL_SECONDS)
    if acquired is False:
        logger.warning("In-flight limit reached for provider=%s limit=%d", provider, limit)
        yield False
        return
    try:
        yield True
    finally:
        if acquired:
            await release_slot(key)
