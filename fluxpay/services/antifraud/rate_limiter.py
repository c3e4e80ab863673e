"""Sliding-window rate limiter on the shared counter store."""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fluxpay.common.counter_store import CounterStore


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: datetime


class RateLimiter:
    """True sliding window: only events inside the trailing `window` count."""

    def __init__(self, store: CounterStore, clock=time.time) -> None:
        self.store = store
        self.clock = clock

    async def check_rate_limit(self, key: str, limit: int, window: timedelta) -> RateLimitResult:
        now_ms = int(self.clock() * 1000)
        window_ms = int(window.total_seconds() * 1000)
        count = await self.store.append_and_count(f"ratelimit:{key}", now_ms, window_ms)
        allowed = count <= limit
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - count),
            reset_time=datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc) + window,
        )
