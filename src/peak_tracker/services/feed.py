"""In-process change feed broadcasting member deltas per session."""

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any
from uuid import UUID

from peak_tracker.domain.deltas import MemberDelta
from peak_tracker.domain.errors import SubscriptionClosed, SubscriptionError

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """A scoped stream of deltas for one session.

    Deltas are buffered in a bounded queue owned by the subscriber's event
    loop. A subscriber that falls behind the bound is closed with a
    SubscriptionError and is expected to resubscribe and reseed.
    """

    def __init__(
        self,
        feed: "ChangeFeed",
        session_id: UUID,
        max_pending: int,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self.session_id = session_id
        self._feed = feed
        self._loop = loop
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=max_pending + 1)
        self._max_pending = max_pending
        self._closed = False
        self._error: SubscriptionError | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def error(self) -> SubscriptionError | None:
        return self._error

    async def get(self) -> MemberDelta:
        """Return the next delta, raising SubscriptionError once closed."""
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise self._error or SubscriptionClosed("Subscription closed.")
        return item  # type: ignore[return-value]

    def close(self) -> None:
        """Stop delivery and release the subscription. Safe to call twice.

        Deltas already queued stay readable; the stream ends after them.
        """
        self._feed._discard(self)
        self._run_in_loop(self._terminate, None)

    def fail(self, error: SubscriptionError) -> None:
        """Close the subscription, surfacing error to the consumer."""
        self._feed._discard(self)
        self._run_in_loop(self._terminate, error)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> MemberDelta:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration from None

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _deliver(self, delta: MemberDelta) -> bool:
        """Schedule delta onto the subscriber loop. Returns False if gone."""
        return self._run_in_loop(self._enqueue, delta)

    def _enqueue(self, delta: MemberDelta) -> None:
        if self._closed:
            return
        if self._queue.qsize() >= self._max_pending:
            logger.warning(
                "Change feed subscriber fell behind",
                extra={"session_id": str(self.session_id)},
            )
            self._feed._discard(self)
            self._terminate(SubscriptionError("Change feed subscriber fell behind."))
            return
        self._queue.put_nowait(delta)

    def _terminate(self, error: SubscriptionError | None) -> None:
        if self._closed:
            return
        self._closed = True
        self._error = error
        if error is not None:
            while not self._queue.empty():
                self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def _run_in_loop(
        self, callback: Callable[[Any], None], argument: object
    ) -> bool:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            callback(argument)
            return True
        try:
            self._loop.call_soon_threadsafe(callback, argument)
        except RuntimeError:
            # The subscriber's loop is closed; nobody is left to read.
            self._closed = True
            return False
        return True


@dataclass
class ChangeFeed:
    """Fan-out of member deltas to the subscribers of each session."""

    max_pending: int = 256
    _subscribers: dict[UUID, list[Subscription]] = field(
        default_factory=dict, init=False, repr=False
    )
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False)

    def subscribe(self, session_id: UUID) -> Subscription:
        """Open a subscription bound to the running event loop."""
        subscription = Subscription(
            self, session_id, self.max_pending, asyncio.get_running_loop()
        )
        with self._lock:
            self._subscribers.setdefault(session_id, []).append(subscription)
        return subscription

    def publish(self, session_id: UUID, delta: MemberDelta) -> None:
        """Hand delta to every subscriber of the session without waiting."""
        with self._lock:
            subscribers = list(self._subscribers.get(session_id, ()))
            for subscription in subscribers:
                if not subscription._deliver(delta):
                    self._remove_locked(subscription)

    def end_session(self, session_id: UUID) -> None:
        """Close every subscription of a session that no longer exists."""
        with self._lock:
            subscribers = self._subscribers.pop(session_id, [])
        for subscription in subscribers:
            subscription.close()

    def subscriber_count(self, session_id: UUID) -> int:
        with self._lock:
            return len(self._subscribers.get(session_id, ()))

    def _discard(self, subscription: Subscription) -> None:
        with self._lock:
            self._remove_locked(subscription)

    def _remove_locked(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.session_id)
        if not subscribers:
            return
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._subscribers.pop(subscription.session_id, None)
