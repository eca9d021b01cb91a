from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable

from .locks import KeyedLocks


@dataclass(slots=True)
class _Bucket:
    tokens: float
    updated_at: float = field(default_factory=time.monotonic)


class ChannelRateLimiter:
    """Token bucket per channel.

    Each channel refills ``rate_per_second`` tokens up to ``capacity``. A caller
    waiting for a token only holds its own channel's lock, so dispatches to other
    channels keep flowing.
    """

    def __init__(
        self,
        capacity: int,
        rate_per_second: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], object] = asyncio.sleep,
        idle_ttl_seconds: float = 300.0,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be > 0")
        self.capacity = float(capacity)
        self.rate_per_second = float(rate_per_second)
        self._clock = clock
        self._sleep = sleep
        self._idle_ttl_seconds = idle_ttl_seconds
        self._buckets: dict[str, _Bucket] = {}
        self._locks = KeyedLocks()

    def _refill(self, bucket: _Bucket, now: float) -> None:
        elapsed = max(0.0, now - bucket.updated_at)
        bucket.tokens = min(self.capacity, bucket.tokens + elapsed * self.rate_per_second)
        bucket.updated_at = now

    def available(self, channel_id: str) -> float:
        bucket = self._buckets.get(channel_id)
        if bucket is None:
            return self.capacity
        self._refill(bucket, self._clock())
        return bucket.tokens

    async def acquire(self, channel_id: str) -> float:
        """Take one token for ``channel_id``; returns the seconds spent waiting."""
        waited = 0.0
        async with self._locks.hold(channel_id):
            now = self._clock()
            bucket = self._buckets.get(channel_id)
            if bucket is None:
                bucket = _Bucket(tokens=self.capacity, updated_at=now)
                self._buckets[channel_id] = bucket
            self._refill(bucket, now)
            while bucket.tokens < 1.0:
                delay = (1.0 - bucket.tokens) / self.rate_per_second
                await self._sleep(delay)
                waited += delay
                self._refill(bucket, self._clock())
            bucket.tokens -= 1.0
        self._prune()
        return waited

    def _prune(self) -> None:
        if len(self._buckets) < 512:
            return
        cutoff = self._clock() - self._idle_ttl_seconds
        stale = [
            key
            for key, bucket in self._buckets.items()
            if bucket.updated_at < cutoff and not self._locks.locked(key)
        ]
        for key in stale:
            self._buckets.pop(key, None)
