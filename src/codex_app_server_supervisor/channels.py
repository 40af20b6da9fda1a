"""In-process message channels shared by the supervisor, transport and service.

Every channel is unbounded: publishing never blocks and never drops, so a slow
or wedged subscriber accumulates items in memory instead of stalling the
publisher (for example the stdout reader that feeds protocol parsing).
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Generic, TypeVar, cast

T = TypeVar("T")

_CLOSED = object()


class Subscription(Generic[T]):
    """One subscriber's FIFO view of a broadcast channel."""

    def __init__(self, channel: Broadcast[T]) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[T | object] = asyncio.Queue()
        self._finished = False

    def _push(self, item: T | object) -> None:
        self._queue.put_nowait(item)

    def pending(self) -> int:
        """Number of items published but not yet consumed."""
        return self._queue.qsize()

    async def get(self) -> T:
        """Wait for the next item; raise `StopAsyncIteration` once closed."""
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        return cast(T, item)

    def close(self) -> None:
        """Stop receiving items and end iteration for this subscriber."""
        self._channel._unsubscribe(self)
        self._push(_CLOSED)

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        return await self.get()


class Broadcast(Generic[T]):
    """Fan-out channel delivering every published item to every subscriber."""

    def __init__(self) -> None:
        self._subscribers: list[Subscription[T]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> Subscription[T]:
        """Register a new subscriber; a subscriber to a closed channel ends at once."""
        subscription: Subscription[T] = Subscription(self)
        if self._closed:
            subscription._push(_CLOSED)
        else:
            self._subscribers.append(subscription)
        return subscription

    def publish(self, item: T) -> None:
        """Deliver `item` to all current subscribers (no-op once closed)."""
        if self._closed:
            return
        for subscription in list(self._subscribers):
            subscription._push(item)

    def close(self) -> None:
        """End iteration for all subscribers."""
        if self._closed:
            return
        self._closed = True
        subscribers = self._subscribers
        self._subscribers = []
        for subscription in subscribers:
            subscription._push(_CLOSED)

    def _unsubscribe(self, subscription: Subscription[T]) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)


class StateChannel(Broadcast[T]):
    """Broadcast that remembers its latest value and replays it to new subscribers."""

    def __init__(self, initial: T) -> None:
        super().__init__()
        self._value = initial

    @property
    def value(self) -> T:
        return self._value

    def subscribe(self) -> Subscription[T]:
        subscription = super().subscribe()
        if not self._closed:
            subscription._push(self._value)
        return subscription

    def publish(self, item: T) -> None:
        self._value = item
        super().publish(item)
