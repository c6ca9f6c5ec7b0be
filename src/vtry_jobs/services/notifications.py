"""In-process notification hub: the push half of the fan-out.

Workers run on plain threads while live connections are served by the
event loop, so delivery hops threads with ``call_soon_threadsafe``. Each
connection gets a bounded buffer; when a slow consumer falls behind, new
events for it are dropped. Delivery is best-effort by contract: a client
that misses events recovers the current state through the status endpoint.

Once a terminal event for a job has gone out, later non-terminal events for
that job (a claim or progress report that lost a race with cancellation)
are dropped, so the last event a client sees matches the stored status.
"""

import asyncio
import logging
import threading
from collections import OrderedDict, defaultdict
from typing import Callable

from vtry_jobs.models.job import TERMINAL_STATUSES
from vtry_jobs.services.events import GenerationEvent

logger = logging.getLogger(__name__)

Listener = Callable[[GenerationEvent], None]

# How many finished job ids the hub remembers for ordering checks
_FINISHED_MEMORY = 10_000


def channel_for(owner_id: str) -> str:
    return f"generation:{owner_id}"


class Subscription:
    """One live connection's subscription to an owner's channel."""

    def __init__(
        self, owner_id: str, loop: asyncio.AbstractEventLoop, buffer_size: int
    ) -> None:
        self.owner_id = owner_id
        self.channel = channel_for(owner_id)
        self.dropped = 0
        self.closed = False
        self._loop = loop
        self._queue: asyncio.Queue[GenerationEvent] = asyncio.Queue(maxsize=buffer_size)

    def deliver(self, event: GenerationEvent) -> None:
        """Hand ``event`` to the connection's loop. Safe from any thread."""
        if self.closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._put, event)
        except RuntimeError:
            # Event loop already closed; the connection is gone
            self.closed = True

    def _put(self, event: GenerationEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Dropping %s for job %s: subscriber buffer full",
                event.type, event.job_id,
                extra={"owner_id": self.owner_id, "dropped": self.dropped},
            )

    async def get(self) -> GenerationEvent:
        return await self._queue.get()


class NotificationHub:
    """Routes generation events to every subscription of the job's owner."""

    def __init__(self, buffer_size: int = 100) -> None:
        self._buffer_size = buffer_size
        # Re-entrant: delivery under the lock may unsubscribe a dead connection
        self._lock = threading.RLock()
        self._subscriptions: dict[str, set[Subscription]] = defaultdict(set)
        self._listeners: list[Listener] = []
        self._finished: OrderedDict[str, None] = OrderedDict()

    def subscribe(
        self, owner_id: str, loop: asyncio.AbstractEventLoop | None = None
    ) -> Subscription:
        """Register a subscription; must be called on (or given) the consumer's loop."""
        subscription = Subscription(owner_id, loop or asyncio.get_running_loop(), self._buffer_size)
        with self._lock:
            self._subscriptions[owner_id].add(subscription)
        logger.debug("Subscribed to %s", subscription.channel)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.closed = True
        with self._lock:
            subs = self._subscriptions.get(subscription.owner_id)
            if subs is not None:
                subs.discard(subscription)
                if not subs:
                    del self._subscriptions[subscription.owner_id]

    def add_listener(self, listener: Listener) -> None:
        """Register a synchronous callback invoked for every published event."""
        with self._lock:
            self._listeners.append(listener)

    def subscriber_count(self, owner_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(owner_id, ()))

    def _admit(self, event: GenerationEvent) -> bool:
        """Record terminal events; refuse non-terminal ones for finished jobs."""
        if event.status in TERMINAL_STATUSES:
            self._finished[event.job_id] = None
            self._finished.move_to_end(event.job_id)
            while len(self._finished) > _FINISHED_MEMORY:
                self._finished.popitem(last=False)
            return True
        return event.job_id not in self._finished

    def publish(self, event: GenerationEvent) -> int:
        """Deliver ``event`` to its owner's subscriptions; returns how many."""
        delivered = 0
        with self._lock:
            if not self._admit(event):
                logger.debug(
                    "Dropping stale %s for finished job %s", event.status.value, event.job_id,
                    extra={"job_id": event.job_id},
                )
                return 0
            listeners = list(self._listeners)
            # Hand-off happens under the lock so per-job order is the admission order
            for subscription in list(self._subscriptions.get(event.owner_id, ())):
                subscription.deliver(event)
                if subscription.closed:
                    self.unsubscribe(subscription)
                else:
                    delivered += 1

        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Notification listener failed for job %s", event.job_id)

        logger.debug(
            "Published %s for job %s to %d connection(s)",
            event.type, event.job_id, delivered,
            extra={"job_id": event.job_id, "event_status": event.status.value},
        )
        return delivered
