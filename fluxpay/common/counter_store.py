"""Redis-backed shared store for sliding-window counters, nonces and flags.

All services share one Redis; keys are namespaced by the caller
(`ratelimit:`, `antifraud:`, `nonce:`).
"""

from uuid import uuid4

import redis.asyncio as aioredis

from fluxpay.common.config import settings


class CounterStore:
    """Atomic primitives used by the rate limiter, antifraud engine and nonce checks."""

    def __init__(self, client: aioredis.Redis | None = None) -> None:
        self.rdb = client or aioredis.Redis.from_url(settings.redis_url, decode_responses=True)

    async def append_and_count(self, key: str, now_ms: int, window_ms: int) -> int:
        """Record one event at `now_ms` and return how many fall inside the trailing window.

        Prune, append, count and re-expire run in a single MULTI/EXEC so two
        callers near the limit cannot both observe a stale count.
        """

        member = f"{now_ms}-{uuid4().hex}"
        async with self.rdb.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, now_ms - window_ms)
            pipe.zadd(key, {member: now_ms})
            pipe.zcard(key)
            pipe.pexpire(key, window_ms)
            _, _, count, _ = await pipe.execute()
        return int(count)

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.rdb.set(key, value, ex=ttl_seconds)

    async def exists(self, key: str) -> bool:
        return bool(await self.rdb.exists(key))

    async def close(self) -> None:
        await self.rdb.aclose()


class NonceStore:
    """Per-principal single-use nonce registry."""

    def __init__(self, store: CounterStore, ttl_seconds: int | None = None) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds or settings.nonce_ttl_seconds

    @staticmethod
    def _key(principal: str, nonce: str) -> str:
        return f"nonce:{principal}:{nonce}"

    async def is_nonce_unique(self, principal: str, nonce: str) -> bool:
        return not await self.store.exists(self._key(principal, nonce))

    async def store_nonce(self, principal: str, nonce: str) -> None:
        await self.store.set_with_expiry(self._key(principal, nonce), "1", self.ttl_seconds)
