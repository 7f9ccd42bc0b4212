"""Query execution for node evaluations: limits, timeouts, retries, cancellation.

Every provider call goes through ``QueryRunner.run``:
- waits for a slot on the shared QueryLimiter
- runs the query under ``asyncio.wait_for`` with the configured timeout
- retries timeouts and provider errors with capped exponential backoff
- raises a branch-scoped TransientQueryFailure once retries are exhausted
- checks the CancelToken before every attempt and during backoff
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Awaitable, Callable, TypeVar

from ..core.errors import BuildCancelled, TransientQueryFailure, VartreeError
from ..core.models import PartitionContext
from ..core.rate_limiter import QueryLimiter
from .progress import BuildProgress

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """Cooperative abort signal threaded through every node evaluation.

    ``cancel()`` may be called from any thread; evaluations observe it
    before their next query and the builder cancels all outstanding tasks.
    """

    def __init__(self):
        self._flag = threading.Event()
        self.reason: str | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._event: asyncio.Event | None = None

    def bind(self) -> None:
        """Attach to the running event loop. Called by the builder."""
        self._loop = asyncio.get_running_loop()
        self._event = asyncio.Event()
        if self._flag.is_set():
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._flag.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._flag.is_set():
            return
        self.reason = reason
        self._flag.set()
        if self._loop is None or self._event is None or self._loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._event.set()
        else:
            self._loop.call_soon_threadsafe(self._event.set)

    def raise_if_cancelled(self) -> None:
        if self._flag.is_set():
            raise BuildCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        """Block until cancelled. Requires ``bind()``."""
        if self._event is None:
            self.bind()
        await self._event.wait()


class QueryRunner:
    """Runs provider calls for one build with limits, timeouts and retries."""

    def __init__(
        self,
        limiter: QueryLimiter,
        progress: BuildProgress,
        token: CancelToken,
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
    ):
        self.limiter = limiter
        self.progress = progress
        self.token = token
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.max_delay = max_delay

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    async def _sleep(self, delay: float) -> None:
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self.token.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self.token.raise_if_cancelled()

    async def run(
        self,
        operation: str,
        ctx: PartitionContext,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        """Run one provider call for the node described by ``ctx``.

        Args:
            operation: Name of the provider operation (for logs and errors)
            ctx: Partition the query is for
            call: Zero-argument factory producing a fresh awaitable per attempt

        Returns:
            The provider's result

        Raises:
            TransientQueryFailure: All attempts failed or timed out
            BuildCancelled: The cancel token fired
        """
        last_error: BaseException | None = None
        for attempt in range(1, self.max_retries + 1):
            self.token.raise_if_cancelled()
            try:
                async with self.limiter.slot():
                    self.token.raise_if_cancelled()
                    result = await asyncio.wait_for(call(), timeout=self.timeout)
                self.progress.record_query()
                return result
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(
                    f"[QUERY] {operation} at {ctx.describe()} - attempt {attempt} "
                    f"timed out after {self.timeout:.1f}s"
                )
            except VartreeError:
                raise
            except Exception as e:
                last_error = e
                logger.warning(
                    f"[QUERY] {operation} at {ctx.describe()} - attempt {attempt} failed: {e}"
                )

            if attempt < self.max_retries:
                self.progress.record_retry()
                await self._sleep(self.backoff_delay(attempt))

        raise TransientQueryFailure(
            operation,
            last_error,
            attempts=self.max_retries,
            filter_columns=ctx.filter_columns,
            filter_bindings=ctx.filter_bindings,
        )
