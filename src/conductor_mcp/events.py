"""Keyed publish/subscribe channels with explicit subscription handles."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Generic, Hashable, TypeVar

logger = logging.getLogger(__name__)

E = TypeVar("E")


class Subscription(Generic[E]):
    """Live, non-restartable event sequence for one channel key.

    Iteration ends after the first terminal event or once the subscription is
    closed. Use as an async context manager to unsubscribe deterministically.
    """

    def __init__(self, channel: "EventChannel[E]", key: Hashable) -> None:
        self._channel = channel
        self._key = key
        self._queue: asyncio.Queue[tuple[bool, E | None]] = asyncio.Queue()
        self._closed = False
        self._finished = False

    @property
    def key(self) -> Hashable:
        return self._key

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, event: E) -> None:
        if not self._closed:
            self._queue.put_nowait((False, event))

    def close(self) -> None:
        """Unsubscribe and wake any pending iteration."""

        if self._closed:
            return
        self._closed = True
        self._channel._remove(self)
        self._queue.put_nowait((True, None))

    def __aiter__(self) -> "Subscription[E]":
        return self

    async def __anext__(self) -> E:
        if self._finished:
            raise StopAsyncIteration
        stop, event = await self._queue.get()
        if stop:
            self._finished = True
            raise StopAsyncIteration
        if self._channel.is_terminal(event):
            self._finished = True
            self.close()
        return event  # type: ignore[return-value]

    async def next(self, timeout: float | None = None) -> E:
        """Return the next event, optionally bounded by ``timeout`` seconds."""

        return await asyncio.wait_for(self.__anext__(), timeout=timeout)

    async def __aenter__(self) -> "Subscription[E]":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class EventChannel(Generic[E]):
    """Registry of subscribers keyed by session, run or batch id."""

    def __init__(self, name: str, *, is_terminal: Callable[[E], bool] | None = None) -> None:
        self._name = name
        self._is_terminal = is_terminal or (lambda _event: False)
        self._subscribers: dict[Hashable, set[Subscription[E]]] = {}

    @property
    def name(self) -> str:
        return self._name

    def is_terminal(self, event: E | None) -> bool:
        return event is not None and self._is_terminal(event)

    def subscribe(self, key: Hashable, *, initial: E | None = None) -> Subscription[E]:
        """Register a subscriber; ``initial`` is delivered first when given."""

        subscription: Subscription[E] = Subscription(self, key)
        self._subscribers.setdefault(key, set()).add(subscription)
        if initial is not None:
            subscription._deliver(initial)
        logger.debug("Subscribed", extra={"channel": self._name, "key": key})
        return subscription

    def publish(self, key: Hashable, event: E) -> int:
        """Deliver ``event`` to every subscriber of ``key``; returns the count."""

        subscribers = list(self._subscribers.get(key, ()))
        for subscription in subscribers:
            subscription._deliver(event)
        return len(subscribers)

    def subscriber_count(self, key: Hashable | None = None) -> int:
        if key is not None:
            return len(self._subscribers.get(key, ()))
        return sum(len(subs) for subs in self._subscribers.values())

    def close_key(self, key: Hashable) -> None:
        """End every subscription for ``key``."""

        for subscription in list(self._subscribers.get(key, ())):
            subscription.close()

    def close_all(self) -> None:
        for key in list(self._subscribers):
            self.close_key(key)

    def _remove(self, subscription: Subscription[E]) -> None:
        subscribers = self._subscribers.get(subscription.key)
        if not subscribers:
            return
        subscribers.discard(subscription)
        if not subscribers:
            self._subscribers.pop(subscription.key, None)


__all__ = ["EventChannel", "Subscription"]
