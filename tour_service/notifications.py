"""
In-process fan-out of booking change events to live subscribers.

Bookings are written from FastAPI's worker threads while subscribers live on
the event loop, so `publish` hands each event to the subscriber's loop with
`call_soon_threadsafe`. Callbacks run in the order they were scheduled, which
keeps one booking's events in commit order for every subscriber.

There is no replay buffer: a subscriber that disconnects misses what was
published in the meantime and is expected to re-fetch the current state.
"""
import asyncio
import logging
import threading
import uuid
from typing import Dict, Optional

from .config import settings
from .schemas import BookingEvent, ScopeFilter

logger = logging.getLogger("tour_service")

_CLOSED = object()


class Subscription:
    """An open-ended async stream of the events matching `scope`."""

    def __init__(self, hub: "NotificationHub", scope: ScopeFilter, subscriber_id: Optional[str],
                 loop: asyncio.AbstractEventLoop, max_pending: int):
        self.id = uuid.uuid4().hex
        self.subscriber_id = subscriber_id or self.id
        self.scope = scope
        self._hub = hub
        self._loop = loop
        self._max_pending = max_pending
        # Unbounded so the close marker always fits; the bound is enforced in _deliver
        self._queue: asyncio.Queue = asyncio.Queue()
        # Set by the hub on unsubscribe, from any thread
        self.closed = False
        # Set on the loop once nothing more may be queued
        self._ended = False

    def _deliver(self, event: BookingEvent) -> None:
        # Runs on the subscriber's loop. Deliveries scheduled before _close run
        # before it, so everything published while subscribed is still queued.
        if self._ended:
            return
        if self._queue.qsize() >= self._max_pending:
            self._ended = True
            logger.warning(f"Subscriber {self.subscriber_id} fell {self._max_pending} events behind. Dropping it.")
            self._hub.unsubscribe(self)
            return
        self._queue.put_nowait(event)

    def _close(self) -> None:
        self._ended = True
        self._queue.put_nowait(_CLOSED)

    def _schedule(self, callback, *args) -> bool:
        try:
            self._loop.call_soon_threadsafe(callback, *args)
            return True
        except RuntimeError:
            # The subscriber's loop is gone along with its connection
            return False

    async def get(self, timeout: Optional[float] = None) -> Optional[BookingEvent]:
        """
        Waits for the next event. Returns None if `timeout` elapses first.

        Raises StopAsyncIteration once the subscription is closed.
        """
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            # Leave the marker for any other waiter
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> BookingEvent:
        return await self.get()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._hub.unsubscribe(self)


class NotificationHub:
    def __init__(self, max_pending: Optional[int] = None):
        self.max_pending = max_pending or settings.SUBSCRIPTION_QUEUE_SIZE
        self._subscriptions: Dict[str, Subscription] = {}
        self._lock = threading.Lock()

    def subscribe(self, scope: ScopeFilter, subscriber_id: Optional[str] = None) -> Subscription:
        """Opens a subscription bound to the running event loop."""
        loop = asyncio.get_running_loop()
        subscription = Subscription(self, scope, subscriber_id, loop, self.max_pending)
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        logger.info(f"Subscriber {subscription.subscriber_id} subscribed to {scope.model_dump(exclude_none=True)}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Closes the subscription's stream. Safe to call more than once."""
        with self._lock:
            removed = self._subscriptions.pop(subscription.id, None)
            if subscription.closed:
                return
            subscription.closed = True
        if removed is not None:
            logger.info(f"Subscriber {subscription.subscriber_id} unsubscribed")
        subscription._schedule(subscription._close)

    def publish(self, event: BookingEvent) -> int:
        """
        Delivers `event` to every matching subscription.

        Returns the number of subscriptions the event was handed to.
        """
        with self._lock:
            targets = [s for s in self._subscriptions.values() if s.scope.matches(event)]

        delivered = 0
        for subscription in targets:
            if subscription._schedule(subscription._deliver, event):
                delivered += 1
            else:
                self.unsubscribe(subscription)
        logger.info(f"Published {event.type} for tour {event.booking_id} to {delivered} subscriber(s)")
        return delivered

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)


# Global hub instance
hub = NotificationHub()
