"""Per-user publish/subscribe hub feeding live websocket connections."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict
from typing import Any, Dict, Set

LOGGER = logging.getLogger("coachnotify.notifications.realtime")

_CLOSED = object()


class Subscription:
    """One live connection's view of a user's notification stream.

    Messages are queued on the event loop that created the subscription, so
    a subscriber always sees a user's messages in publish order.
    """

    def __init__(self, hub: "RealtimeHub", user_id: str, loop: asyncio.AbstractEventLoop, max_pending: int) -> None:
        self.user_id = user_id
        self._hub = hub
        self._loop = loop
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max_pending)
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop receiving; anything already in flight is dropped."""

        if self._cancelled:
            return
        self._cancelled = True
        self._hub._remove(self)
        try:
            self._loop.call_soon_threadsafe(self._wake)
        except RuntimeError:
            # Loop already closed; nobody is waiting.
            pass

    def _offer(self, message: Dict[str, Any]) -> None:
        if self._cancelled:
            return
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            LOGGER.warning("realtime_subscriber_overflow", extra={"user_id": self.user_id})

    def _wake(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def _deliver(self, message: Dict[str, Any]) -> bool:
        try:
            self._loop.call_soon_threadsafe(self._offer, message)
        except RuntimeError:
            return False
        return True

    async def get(self) -> Dict[str, Any]:
        if self._cancelled:
            raise StopAsyncIteration
        message = await self._queue.get()
        if message is _CLOSED or self._cancelled:
            raise StopAsyncIteration
        return message

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Dict[str, Any]:
        return await self.get()


class RealtimeHub:
    """Owns the registry of live subscriptions.

    ``publish`` may be called from any thread (delivery workers, request
    threads); ``subscribe`` must be called from inside a running event loop.
    """

    def __init__(self, *, max_pending: int = 1000) -> None:
        self._max_pending = max_pending
        self._subscriptions: Dict[str, Set[Subscription]] = defaultdict(set)
        self._lock = threading.Lock()

    def subscribe(self, user_id: str) -> Subscription:
        loop = asyncio.get_running_loop()
        subscription = Subscription(self, user_id, loop, self._max_pending)
        with self._lock:
            self._subscriptions[user_id].add(subscription)
        LOGGER.debug("realtime_subscribed", extra={"user_id": user_id})
        return subscription

    def publish(self, user_id: str, message: Dict[str, Any]) -> int:
        """Queue ``message`` for every live subscription of ``user_id``.

        Returns the number of subscriptions reached; zero subscribers is a no-op.
        The hub lock is held while scheduling so two publishes for the same
        user reach every loop in the order they were made.
        """

        delivered = 0
        stale = []
        with self._lock:
            for subscription in self._subscriptions.get(user_id, ()):
                if subscription._deliver(message):
                    delivered += 1
                else:
                    stale.append(subscription)
            for subscription in stale:
                self._subscriptions[user_id].discard(subscription)
            if not self._subscriptions.get(user_id):
                self._subscriptions.pop(user_id, None)
        return delivered

    def subscriber_count(self, user_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(user_id, ()))

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscriptions = self._subscriptions.get(subscription.user_id)
            if subscriptions is None:
                return
            subscriptions.discard(subscription)
            if not subscriptions:
                self._subscriptions.pop(subscription.user_id, None)
        LOGGER.debug("realtime_unsubscribed", extra={"user_id": subscription.user_id})
