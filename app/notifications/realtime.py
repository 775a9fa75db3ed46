"""In-memory realtime pub/sub for dashboards and order-tracking views."""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Set
from uuid import UUID

from app.core.config import REALTIME_QUEUE_SIZE
from app.notifications.types import Notification
from app.schemas.order import AlertEntry, OrderSnapshot

log = logging.getLogger("notifications.realtime")


def restaurant_channel(restaurant_id: UUID) -> str:
    return f"restaurant:{restaurant_id}"


def order_channel(order_id: UUID) -> str:
    return f"order:{order_id}"


class RealtimeHub:
    """
    Dispatch messages to subscribers via bounded :class:`asyncio.Queue` instances.

    Fire-and-forget: nothing is persisted or replayed, and a subscriber whose
    queue is full misses the message.
    """

    def __init__(self, queue_size: int = REALTIME_QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self._subs: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    def subscribe(self, channel: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subs[channel].add(queue)
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue) -> None:
        subscribers = self._subs.get(channel)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subs[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._subs.get(channel, ()))

    def publish(self, channel: str, message: Dict[str, Any]) -> int:
        """Broadcast ``message`` to every subscriber of ``channel``; returns how many got it."""
        delivered = 0
        for queue in list(self._subs.get(channel, ())):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                log.warning(f"Dropping realtime message for slow subscriber on {channel}")
        return delivered


class RealtimeSink:
    name = "realtime"

    def __init__(self, hub: RealtimeHub):
        self.hub = hub

    async def send(self, notification: Notification) -> None:
        order = notification.order
        message = {
            "event": notification.event_type.realtime_event,
            "order": order.model_dump(mode="json"),
            "previous": notification.previous,
            "current": notification.current,
            "timestamp": notification.occurred_at.isoformat(),
        }
        # Restaurant-wide dashboards and the single order's tracking view
        self.hub.publish(restaurant_channel(order.restaurant_id), message)
        self.hub.publish(order_channel(order.id), message)

    async def send_alert(self, order: OrderSnapshot, alert: AlertEntry) -> None:
        message = {
            "event": "order_alert",
            "order_id": str(order.id),
            "order_number": order.order_number,
            "alert": alert.model_dump(mode="json"),
        }
        self.hub.publish(restaurant_channel(order.restaurant_id), message)
        self.hub.publish(order_channel(order.id), message)
