"""Bounded concurrency and rate limiting for statistics queries.

Every provider call made during a build passes through one QueryLimiter:
- a semaphore caps the number of queries in flight (excess callers queue)
- an optional token bucket caps queries per minute (for metered warehouses)

The limiter is held only for the duration of a single query, never across a
join, so a parent node waiting on its children holds no slot. A timed-out
query keeps its slot until the provider has actually stopped it (providers
that run queries in worker threads wait for the worker on cancellation), so
retries never push the real number of running queries past the bound.

Usage:
    limiter = QueryLimiter(max_concurrent=8, qpm=600)
    async with limiter.slot():
        stats = await provider.node_stats(...)
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

logger = logging.getLogger(__name__)


# Conservative per-provider defaults; None = no per-minute cap.
_PROVIDER_QPM: dict[str, int | None] = {
    "sqlite": None,
    "memory": None,
}
_DEFAULT_QPM = 600


@dataclass
class TokenBucket:
    """Token bucket for rate limiting.

    Tokens refill continuously at `refill_rate` per second,
    up to `capacity`. Each acquire() consumes tokens.
    """

    capacity: float
    refill_rate: float  # tokens per second
    tokens: float = field(init=False)
    last_refill: float = field(init=False)

    def __post_init__(self):
        self.tokens = self.capacity
        self.last_refill = time.monotonic()

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def try_acquire(self, amount: float = 1.0) -> float:
        """Try to acquire tokens. Returns wait time in seconds if insufficient.

        Returns:
            0.0 if acquired, or positive float = seconds to wait
        """
        self._refill()
        if self.tokens >= amount:
            self.tokens -= amount
            return 0.0
        deficit = amount - self.tokens
        return deficit / self.refill_rate if self.refill_rate > 0 else 60.0


class QueryLimiter:
    """Caps in-flight statistics queries and, optionally, queries per minute."""

    def __init__(self, max_concurrent: int = 8, qpm: int | None = None, provider: str = ""):
        """Initialize the limiter.

        Args:
            max_concurrent: Maximum queries in flight at once (>= 1)
            qpm: Queries per minute cap, or None for no cap
            provider: Provider name (for logging)
        """
        self.provider = provider
        self.max_concurrent = max(1, min(int(max_concurrent), self.max_safe_concurrent()))
        self.qpm = qpm
        self._semaphore: asyncio.Semaphore | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._bucket = TokenBucket(capacity=float(qpm), refill_rate=qpm / 60.0) if qpm else None

        self.total_acquired = 0
        self.total_wait_time = 0.0
        self.in_flight = 0
        self.peak_in_flight = 0

        logger.info(
            f"[RATE_LIMIT] Initialized for {provider or 'provider'}: "
            f"max_concurrent={self.max_concurrent}, QPM={qpm or 'unlimited'}"
        )

    @staticmethod
    def max_safe_concurrent() -> int:
        """Ceiling on concurrent queries derived from the OS file descriptor limit.

        Each open connection needs ~2 fds; reserve 100 for runtime overhead.
        """
        try:
            import resource

            soft_limit, _ = resource.getrlimit(resource.RLIMIT_NOFILE)
        except (ImportError, ValueError, OSError):
            soft_limit = 256
        return max(1, (soft_limit - 100) // 2)

    def _get_semaphore(self) -> asyncio.Semaphore:
        # Created lazily so the semaphore binds to the running event loop;
        # a new loop (a second asyncio.run) gets a fresh one
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._loop is not loop:
            self._semaphore = asyncio.Semaphore(self.max_concurrent)
            self._loop = loop
        return self._semaphore

    async def _acquire_rate(self) -> float:
        if self._bucket is None:
            return 0.0
        total_wait = 0.0
        while True:
            wait_time = self._bucket.try_acquire(1.0)
            if wait_time == 0.0:
                return total_wait
            # Cap single wait to 30 seconds to stay responsive
            wait_time = min(wait_time, 30.0)
            total_wait += wait_time
            if total_wait > 0.5:
                logger.debug(
                    f"[RATE_LIMIT] {self.provider} waiting {wait_time:.1f}s "
                    f"(total_wait={total_wait:.1f}s)"
                )
            await asyncio.sleep(wait_time)

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one query slot for the duration of the ``async with`` block."""
        start = time.monotonic()
        semaphore = self._get_semaphore()
        async with semaphore:
            await self._acquire_rate()
            waited = time.monotonic() - start
            self.total_acquired += 1
            self.total_wait_time += waited
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                yield
            finally:
                self.in_flight -= 1

    @classmethod
    def for_provider(
        cls,
        provider: str,
        max_concurrent: int = 8,
        qpm_override: int | None = None,
    ) -> "QueryLimiter":
        """Factory with per-provider defaults.

        Args:
            provider: Provider name ('sqlite', 'memory', ...)
            max_concurrent: Maximum queries in flight
            qpm_override: Override the per-minute cap

        Returns:
            Configured QueryLimiter instance
        """
        qpm = qpm_override or _PROVIDER_QPM.get(provider, _DEFAULT_QPM)
        return cls(max_concurrent=max_concurrent, qpm=qpm, provider=provider)

    def stats(self) -> dict:
        """Return limiter statistics."""
        return {
            "provider": self.provider,
            "max_concurrent": self.max_concurrent,
            "qpm_limit": self.qpm,
            "total_acquired": self.total_acquired,
            "peak_in_flight": self.peak_in_flight,
            "total_wait_time_seconds": round(self.total_wait_time, 2),
        }


class NodeSlot:
    """One node evaluation's claim on a NodeLimiter. Releasing twice is a no-op."""

    __slots__ = ("_limiter", "_released")

    def __init__(self, limiter: "NodeLimiter"):
        self._limiter = limiter
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._limiter._release()


class NodeLimiter:
    """Caps the node evaluations of one build that are doing their own work.

    A parent acquires a slot before it spawns each child, so children beyond
    the bound wait here instead of becoming tasks. A node hands its slot back
    before spawning its own children: nodes blocked on a join hold no slot,
    and every slot holder finishes its queries without needing another slot.
    """

    def __init__(self, max_pending: int = 64):
        self.max_pending = max(1, int(max_pending))
        self._semaphore: asyncio.Semaphore | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

        self.total_acquired = 0
        self.active = 0
        self.peak_active = 0

    def _get_semaphore(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._loop is not loop:
            self._semaphore = asyncio.Semaphore(self.max_pending)
            self._loop = loop
            self.active = 0
        return self._semaphore

    async def acquire(self) -> NodeSlot:
        """Wait for room for one more node evaluation."""
        semaphore = self._get_semaphore()
        if semaphore.locked():
            logger.debug(
                f"[RATE_LIMIT] {self.active} node evaluations active, "
                f"next child queued (max_pending={self.max_pending})"
            )
        await semaphore.acquire()
        self.total_acquired += 1
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        return NodeSlot(self)

    def _release(self) -> None:
        self.active -= 1
        if self._semaphore is not None:
            self._semaphore.release()

    def stats(self) -> dict:
        return {
            "max_pending": self.max_pending,
            "total_acquired": self.total_acquired,
            "peak_active": self.peak_active,
        }
