"""Bounded-concurrency, rate-limited admission queue for CLI invocations."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Hashable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimiter:
    """Token bucket allowing ``capacity`` starts per ``interval`` seconds.

    Waiters are served in arrival order.
    """

    def __init__(
        self,
        capacity: int,
        interval: float,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self._capacity = float(capacity)
        self._rate = capacity / interval
        self._clock = clock or time.monotonic
        self._tokens = float(capacity)
        self._updated = self._clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._updated = now

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                await asyncio.sleep((1 - self._tokens) / self._rate)


@dataclass(slots=True)
class SchedulerStats:
    running: int
    waiting: int
    max_concurrency: int
    completed: int


class Scheduler:
    """Shared admission gate in front of the Claude runner.

    ``submit`` waits first for the per-key lock (strict FIFO per session id),
    then for a concurrency slot, then for a rate-limit token. Items without a
    key only compete for slots and tokens.
    """

    def __init__(
        self,
        *,
        max_concurrency: int = 5,
        rate_limit_count: int = 3,
        rate_limit_interval: float = 1.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._max_concurrency = max_concurrency
        self._slots = asyncio.Semaphore(max_concurrency)
        self._limiter = RateLimiter(rate_limit_count, rate_limit_interval, clock=clock)
        self._key_locks: dict[Hashable, asyncio.Lock] = {}
        self._key_users: dict[Hashable, int] = {}
        self._running = 0
        self._waiting = 0
        self._completed = 0

    @property
    def stats(self) -> SchedulerStats:
        return SchedulerStats(
            running=self._running,
            waiting=self._waiting,
            max_concurrency=self._max_concurrency,
            completed=self._completed,
        )

    def is_busy(self, key: Hashable) -> bool:
        """Return True when work for ``key`` is running or queued."""

        return self._key_users.get(key, 0) > 0

    async def submit(
        self,
        factory: Callable[[], Awaitable[T]],
        *,
        key: Hashable | None = None,
        on_admitted: Callable[[], None] | None = None,
    ) -> T:
        """Run ``factory()`` once admitted and return its result."""

        self._waiting += 1
        admitted = False
        held = False
        lock = self._acquire_key(key) if key is not None else None
        try:
            if lock is not None:
                await lock.acquire()
                held = True
            try:
                async with self._slots:
                    await self._limiter.acquire()
                    self._waiting -= 1
                    admitted = True
                    self._running += 1
                    logger.debug("Admitted invocation", extra={"key": key, "running": self._running})
                    try:
                        if on_admitted is not None:
                            on_admitted()
                        return await factory()
                    finally:
                        self._running -= 1
                        self._completed += 1
            finally:
                if held:
                    lock.release()
        finally:
            if not admitted:
                self._waiting -= 1
            if key is not None:
                self._release_key(key)

    def _acquire_key(self, key: Hashable) -> asyncio.Lock:
        self._key_users[key] = self._key_users.get(key, 0) + 1
        lock = self._key_locks.get(key)
        if lock is None:
            lock = self._key_locks[key] = asyncio.Lock()
        return lock

    def _release_key(self, key: Hashable) -> None:
        remaining = self._key_users.get(key, 1) - 1
        if remaining <= 0:
            self._key_users.pop(key, None)
            self._key_locks.pop(key, None)
        else:
            self._key_users[key] = remaining


__all__ = ["RateLimiter", "Scheduler", "SchedulerStats"]
