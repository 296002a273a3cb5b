"""
Status Broadcaster - Real-time fan-out of order status events

Handles:
- Per-order subscriptions with an immediate snapshot of the current status
- A global channel that only confirms the connection
- Cross-process delivery through a pluggable EventBus
- Keepalive pings and purging of dead subscribers

Delivery is at-most-once per subscriber and nothing is replayed.
Adding, removing and publishing for one order id are serialized by a
per-order lock; different orders proceed independently.
"""

import asyncio
import inspect
import itertools
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Any, Union

from loguru import logger

from .order_schemas import OrderStatus, StatusEvent
from .errors import OrderNotFoundError


GLOBAL_CHANNEL = "global"
LIFECYCLE_STATUSES = frozenset(status.value for status in OrderStatus)

MessageHandler = Callable[[Dict[str, Any]], Awaitable[None]]
SnapshotProvider = Callable[[str], Union[Optional[StatusEvent], Awaitable[Optional[StatusEvent]]]]


class EventBus(ABC):
    """Topic-based publish/subscribe transport"""

    @abstractmethod
    async def publish(self, topic: str, message: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        pass

    @abstractmethod
    async def unsubscribe(self, topic: str, handler: Optional[MessageHandler] = None) -> None:
        """Remove one handler, or every handler when `handler` is None"""
        pass


class InMemoryEventBus(EventBus):
    """
    In-process bus; publish awaits every handler before returning

    Handler failures are logged and isolated from the publisher.
    """

    def __init__(self):
        self._handlers: Dict[str, List[MessageHandler]] = {}
        self.messages_published = 0

    async def publish(self, topic: str, message: Dict[str, Any]) -> None:
        self.messages_published += 1
        for handler in list(self._handlers.get(topic, ())):
            try:
                await handler(message)
            except Exception as e:
                logger.error(f"Event bus handler failed on {topic}: {e}")

    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        handlers = self._handlers.setdefault(topic, [])
        if handler not in handlers:
            handlers.append(handler)

    async def unsubscribe(self, topic: str, handler: Optional[MessageHandler] = None) -> None:
        if handler is None:
            self._handlers.pop(topic, None)
            return
        handlers = self._handlers.get(topic)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                del self._handlers[topic]

    def topics(self) -> List[str]:
        return list(self._handlers)


@dataclass
class BroadcasterConfig:
    """Configuration for the status broadcaster"""

    max_queue_size: int = 100                # Undelivered events kept per subscriber
    heartbeat_timeout_seconds: float = 60.0  # Idle time before a subscriber counts as dead
    purge_interval_seconds: float = 30.0
    topic_prefix: str = "order:"

    def __post_init__(self):
        if self.max_queue_size < 1:
            raise ValueError("max_queue_size must be >= 1")
        if self.heartbeat_timeout_seconds <= 0:
            raise ValueError("heartbeat_timeout_seconds must be positive")


class Subscription:
    """
    One listener's event stream

    Iterate with `async for event in subscription` or call `get()`.
    The stream ends once the subscription is closed.
    """

    _ids = itertools.count(1)

    def __init__(self, channel: str, max_queue_size: int, clock: Callable[[], float]):
        self.subscription_id = f"sub_{next(self._ids)}"
        self.channel = channel
        self.closed = False
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size + 1)
        self._max_queue_size = max_queue_size
        self._clock = clock
        self._receiving = 0
        self._last_status: Optional[str] = None
        self.last_seen = clock()

    @property
    def order_id(self) -> Optional[str]:
        return None if self.channel == GLOBAL_CHANNEL else self.channel

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def touch(self) -> None:
        self.last_seen = self._clock()

    def deliver(self, event: StatusEvent) -> bool:
        """Queue an event without blocking; False when closed, duplicate or full"""
        if self.closed:
            return False
        lifecycle = event.status in LIFECYCLE_STATUSES
        # A snapshot may already carry the status of an in-flight transition
        if lifecycle and event.status == self._last_status:
            return False
        if self._queue.qsize() >= self._max_queue_size:
            self.dropped += 1
            logger.warning(f"Subscriber {self.subscription_id} on {self.channel} is full, "
                           f"dropping {event.status} event")
            return False
        self._queue.put_nowait(event)
        if lifecycle:
            self._last_status = event.status
        return True

    async def get(self, timeout: Optional[float] = None) -> Optional[StatusEvent]:
        """Next event, or None once the subscription is closed"""
        if self.closed and self._queue.empty():
            return None
        self._receiving += 1
        try:
            if timeout is None:
                event = await self._queue.get()
            else:
                event = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        finally:
            self._receiving -= 1
            self.touch()
        return event

    def is_stale(self, now: float, timeout: float) -> bool:
        if self.closed:
            return True
        return self._receiving == 0 and now - self.last_seen > timeout

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Sentinel wakes a pending get(); the reserved slot keeps it from failing
        self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> StatusEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class StatusBroadcaster:
    """
    Fan-out of order status events to any number of subscribers

    Construct one per process and hand it to whoever needs it.
    """

    def __init__(self, event_bus: Optional[EventBus] = None,
                 config: Optional[BroadcasterConfig] = None,
                 snapshot_provider: Optional[SnapshotProvider] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.event_bus = event_bus or InMemoryEventBus()
        self.config = config or BroadcasterConfig()
        self.clock = clock
        self._snapshot_provider = snapshot_provider

        self._subscribers: Dict[str, Dict[str, Subscription]] = {}
        self._locks: Dict[str, list] = {}

        self._reaper_task: Optional[asyncio.Task] = None
        self._running = False

        # Performance tracking
        self.events_published = 0
        self.events_delivered = 0
        self.subscribers_purged = 0

    def set_snapshot_provider(self, provider: SnapshotProvider) -> None:
        self._snapshot_provider = provider

    def topic(self, order_id: str) -> str:
        return f"{self.config.topic_prefix}{order_id}"

    @asynccontextmanager
    async def _locked(self, channel: str):
        entry = self._locks.get(channel)
        if entry is None:
            entry = self._locks[channel] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[channel]

    async def start(self) -> None:
        """Start the background dead-subscriber reaper"""
        if self._running:
            return
        self._running = True
        self._reaper_task = asyncio.create_task(self._reap_loop())
        logger.info("Status broadcaster started")

    async def stop(self) -> None:
        """Stop the reaper and close every subscription"""
        self._running = False
        if self._reaper_task:
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            self._reaper_task = None

        for channel in list(self._subscribers):
            for subscription in list(self._subscribers.get(channel, {}).values()):
                await self.unsubscribe(subscription)
        logger.info("Status broadcaster stopped")

    async def subscribe(self, order_id: str) -> Subscription:
        """
        Register a listener for one order

        The order's current status is queued before this returns.

        Raises:
            OrderNotFoundError: no snapshot is available for the order
        """
        async with self._locked(order_id):
            snapshot = await self._snapshot(order_id)
            if snapshot is None:
                raise OrderNotFoundError(order_id)

            subscription = Subscription(order_id, self.config.max_queue_size, self.clock)
            subscription.deliver(snapshot)

            first = order_id not in self._subscribers
            self._subscribers.setdefault(order_id, {})[subscription.subscription_id] = subscription
            if first:
                await self.event_bus.subscribe(self.topic(order_id), self._on_bus_message)

        logger.debug(f"Subscriber {subscription.subscription_id} joined order {order_id} "
                     f"at {snapshot.status}")
        return subscription

    async def subscribe_global(self) -> Subscription:
        """Register a monitoring listener; it receives a connection confirmation only"""
        async with self._locked(GLOBAL_CHANNEL):
            subscription = Subscription(GLOBAL_CHANNEL, self.config.max_queue_size, self.clock)
            subscription.deliver(StatusEvent(
                order_id=GLOBAL_CHANNEL,
                status="connected",
                data={'message': 'Connected to global order stream'}
            ))
            self._subscribers.setdefault(GLOBAL_CHANNEL, {})[subscription.subscription_id] = subscription
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> bool:
        """Remove a listener; the channel is dropped with its last listener"""
        channel = subscription.channel
        async with self._locked(channel):
            subscription.close()
            listeners = self._subscribers.get(channel)
            if not listeners or listeners.pop(subscription.subscription_id, None) is None:
                return False
            if not listeners:
                del self._subscribers[channel]
                if channel != GLOBAL_CHANNEL:
                    await self.event_bus.unsubscribe(self.topic(channel), self._on_bus_message)
        logger.debug(f"Subscriber {subscription.subscription_id} left {channel}")
        return True

    async def publish(self, order_id: str, event: StatusEvent) -> None:
        """Send an event to every subscriber of the order, on every process sharing the bus"""
        self.events_published += 1
        await self.event_bus.publish(self.topic(order_id), event.to_dict())

    async def _on_bus_message(self, message: Dict[str, Any]) -> None:
        event = StatusEvent.from_dict(message)
        await self._fan_out(event.order_id, event)

    async def _fan_out(self, order_id: str, event: StatusEvent) -> int:
        async with self._locked(order_id):
            listeners = list(self._subscribers.get(order_id, {}).values())
            delivered = sum(1 for subscription in listeners if subscription.deliver(event))
        self.events_delivered += delivered
        logger.debug(f"Order {order_id} {event.status} delivered to {delivered}/{len(listeners)} subscribers")
        return delivered

    def ping(self, subscription: Subscription) -> None:
        """Answer a keepalive ping and mark the subscriber alive"""
        subscription.touch()
        subscription.deliver(StatusEvent(
            order_id=subscription.order_id or GLOBAL_CHANNEL,
            status="pong"
        ))

    async def purge_stale(self) -> int:
        """Unsubscribe closed or idle listeners; returns how many were removed"""
        now = self.clock()
        timeout = self.config.heartbeat_timeout_seconds
        stale = [
            subscription
            for listeners in list(self._subscribers.values())
            for subscription in list(listeners.values())
            if subscription.is_stale(now, timeout)
        ]
        removed = 0
        for subscription in stale:
            if await self.unsubscribe(subscription):
                removed += 1
        if removed:
            self.subscribers_purged += removed
            logger.warning(f"Purged {removed} stale subscribers")
        return removed

    async def _reap_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.purge_interval_seconds)
            try:
                await self.purge_stale()
            except Exception as e:
                logger.error(f"Error purging subscribers: {e}")

    async def _snapshot(self, order_id: str) -> Optional[StatusEvent]:
        if self._snapshot_provider is None:
            return None
        snapshot = self._snapshot_provider(order_id)
        if inspect.isawaitable(snapshot):
            snapshot = await snapshot
        return snapshot

    def subscriber_count(self, order_id: Optional[str] = None) -> int:
        if order_id is None:
            return sum(len(listeners) for listeners in self._subscribers.values())
        return len(self._subscribers.get(order_id, {}))

    def get_connection_stats(self) -> Dict[str, Any]:
        per_order = {
            channel: len(listeners)
            for channel, listeners in self._subscribers.items()
            if channel != GLOBAL_CHANNEL
        }
        return {
            'total_connections': self.subscriber_count(),
            'active_orders': len(per_order),
            'global_connections': len(self._subscribers.get(GLOBAL_CHANNEL, {})),
            'connections_per_order': per_order
        }

    def health_check(self) -> Dict[str, Any]:
        return {
            'is_healthy': self._running or self._reaper_task is None,
            'stats': self.get_connection_stats(),
            'events_published': self.events_published,
            'events_delivered': self.events_delivered,
            'subscribers_purged': self.subscribers_purged
        }
