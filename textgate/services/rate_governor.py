"""
Rate governor - token bucket per scope (campaign), sized by the brand's throughput tier.

Each scope has a bucket of `rate_capacity` tokens refilled at `refill_rate`
tokens/second. Refill is computed lazily from elapsed time on every access;
there is no background timer. Acquisition is an atomic decrement-if-positive:
- InMemoryBucketStore serialises per key with an asyncio.Lock (no global lock)
- RedisBucketStore runs the whole read-refill-decrement in one Lua script

Usage:
    governor = RateGovernor(registry)
    result = await governor.try_acquire(campaign_id)
    if not result.granted:
        retry in result.retry_after seconds
"""
import logging
import math
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from textgate.services.registry import CampaignRegistry, BrandTier
from textgate.utils.locks import KeyedLocks

logger = logging.getLogger(__name__)


class AcquireResult:
    """Outcome of a bucket access."""

    def __init__(self, granted: bool, retry_after: float = 0.0, tokens: float = 0.0):
        self.granted = granted
        self.retry_after = retry_after  # seconds until one token is available
        self.tokens = tokens  # tokens left after this access

    def __bool__(self) -> bool:
        return self.granted

    def __repr__(self) -> str:
        status = "GRANTED" if self.granted else f"DENIED retry_after={self.retry_after:.2f}s"
        return f"<AcquireResult {status} tokens={self.tokens:.2f}>"


class BucketState:
    def __init__(self, tokens: float, updated_at: float, capacity: int, refill_rate: float):
        self.tokens = tokens
        self.updated_at = updated_at
        self.capacity = capacity
        self.refill_rate = refill_rate

    def refill(self, now: float, capacity: int, refill_rate: float) -> None:
        elapsed = max(0.0, now - self.updated_at)
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = min(float(capacity), self.tokens + elapsed * refill_rate)
        self.updated_at = max(now, self.updated_at)


def _retry_after(tokens: float, refill_rate: float) -> float:
    return max(0.0, (1.0 - tokens) / refill_rate)


class BucketStore(ABC):

    @abstractmethod
    async def take(
        self,
        key: str,
        capacity: int,
        refill_rate: float,
        now: float,
        consume: bool = True,
    ) -> AcquireResult:
        """Refill the bucket for `now`, then take one token if consume and one is available."""

    @abstractmethod
    async def reset(self, key: str) -> None: ...


class InMemoryBucketStore(BucketStore):
    """Per-process buckets. Correct for a single worker; use Redis for a fleet."""

    def __init__(self) -> None:
        self._buckets: dict[str, BucketState] = {}
        self._locks = KeyedLocks("rate")

    async def take(
        self,
        key: str,
        capacity: int,
        refill_rate: float,
        now: float,
        consume: bool = True,
    ) -> AcquireResult:
        async with self._locks.hold(key):
            state = self._buckets.get(key)
            if state is None:
                state = BucketState(float(capacity), now, capacity, refill_rate)
                self._buckets[key] = state
            else:
                state.refill(now, capacity, refill_rate)

            if state.tokens >= 1.0:
                if consume:
                    state.tokens -= 1.0
                return AcquireResult(True, 0.0, state.tokens)
            return AcquireResult(False, _retry_after(state.tokens, refill_rate), state.tokens)

    async def reset(self, key: str) -> None:
        async with self._locks.hold(key):
            self._buckets.pop(key, None)

    def state(self, key: str) -> Optional[BucketState]:
        return self._buckets.get(key)


# KEYS[1] = bucket hash; ARGV = capacity, refill_rate, now, consume (0/1), ttl
_TAKE_SCRIPT = """
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local consume = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])

local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local tokens = tonumber(state[1])
local ts = tonumber(state[2])
if tokens == nil or ts == nil then
    tokens = capacity
    ts = now
end

local elapsed = now - ts
if elapsed < 0 then elapsed = 0 end
tokens = math.min(capacity, tokens + elapsed * rate)
if now > ts then ts = now end

local granted = 0
if tokens >= 1 then
    granted = 1
    if consume == 1 then
        tokens = tokens - 1
    end
end

if consume == 1 then
    redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'ts', tostring(ts))
    redis.call('EXPIRE', KEYS[1], ttl)
end
return {granted, tostring(tokens)}
"""


class RedisBucketStore(BucketStore):
    """
    Fleet-wide buckets in Redis. The Lua script makes refill + decrement atomic.
    If Redis is unreachable the store degrades to per-process buckets rather
    than blocking every send.
    """

    def __init__(self, redis=None, fallback: Optional[BucketStore] = None) -> None:
        self._redis = redis
        self._fallback = fallback or InMemoryBucketStore()

    async def _client(self):
        if self._redis is None:
            from textgate.utils.redis_client import get_redis
            self._redis = await get_redis()
        return self._redis

    @staticmethod
    def _key(key: str) -> str:
        from textgate.utils.redis_client import redis_key
        return redis_key("bucket", key)

    async def take(
        self,
        key: str,
        capacity: int,
        refill_rate: float,
        now: float,
        consume: bool = True,
    ) -> AcquireResult:
        ttl = int(math.ceil(capacity / refill_rate)) + 1
        try:
            redis = await self._client()
            granted, tokens = await redis.eval(
                _TAKE_SCRIPT, 1, self._key(key),
                capacity, refill_rate, now, 1 if consume else 0, ttl,
            )
        except Exception as e:
            logger.warning(
                "Rate bucket Redis error for %s: %s. Using in-process bucket.", key, str(e),
            )
            return await self._fallback.take(key, capacity, refill_rate, now, consume)

        tokens = float(tokens)
        if int(granted) == 1:
            return AcquireResult(True, 0.0, tokens)
        return AcquireResult(False, _retry_after(tokens, refill_rate), tokens)

    async def reset(self, key: str) -> None:
        await self._fallback.reset(key)
        redis = await self._client()
        await redis.delete(self._key(key))


class RateGovernor:

    def __init__(
        self,
        registry: CampaignRegistry,
        store: Optional[BucketStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.store = store or InMemoryBucketStore()
        self._clock = clock

    @classmethod
    def from_settings(cls, registry: CampaignRegistry) -> "RateGovernor":
        from textgate.config import get_settings
        if get_settings().rate_limit_backend == "redis":
            return cls(registry, RedisBucketStore())
        return cls(registry, InMemoryBucketStore())

    async def _tier(self, scope_id: str) -> BrandTier:
        return await self.registry.brand_tier_for_campaign(scope_id)

    async def try_acquire(self, scope_id: str) -> AcquireResult:
        """Take one token for scope_id. Denied results carry retry_after seconds."""
        tier = await self._tier(scope_id)
        result = await self.store.take(
            scope_id, tier.rate_capacity, tier.refill_rate, self._clock(), consume=True,
        )
        if not result.granted:
            logger.info(
                "Throughput limit reached for campaign %s, retry after %.2fs",
                scope_id, result.retry_after,
                extra={"campaign_id": scope_id},
            )
        return result

    async def peek(self, scope_id: str) -> AcquireResult:
        """Report whether a token is available without consuming it."""
        tier = await self._tier(scope_id)
        return await self.store.take(
            scope_id, tier.rate_capacity, tier.refill_rate, self._clock(), consume=False,
        )

    async def reset(self, scope_id: str) -> None:
        """Drop bucket state, e.g. after the brand's throughput tier changed."""
        await self.store.reset(scope_id)
        logger.info("Rate bucket reset for campaign %s", scope_id, extra={"campaign_id": scope_id})
