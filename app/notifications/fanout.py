"""
Notification fan-out.

After every committed order change the three sinks (realtime broadcast,
durable event log, partner webhook) run concurrently. Each one has its own
timeout and failure boundary: a failing or slow sink is logged and never
affects the other sinks or the order state that was already committed.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Protocol

from app.core.config import NOTIFICATION_SINK_TIMEOUT
from app.core.errors import NotificationSinkError
from app.notifications.event_sink import OutboxEventSink
from app.notifications.realtime import RealtimeSink
from app.notifications.types import Notification, OrderEventType
from app.notifications.webhook import PartnerWebhookSink
from app.schemas.order import AlertEntry, OrderSnapshot

log = logging.getLogger("notifications")


class NotificationSink(Protocol):
    name: str

    async def send(self, notification: Notification) -> None: ...


class Notifier:
    def __init__(
        self,
        realtime: RealtimeSink,
        events: NotificationSink,
        webhook: Optional[NotificationSink] = None,
        timeout: float = NOTIFICATION_SINK_TIMEOUT,
    ):
        self.realtime = realtime
        self.events = events
        self.webhook = webhook
        self.timeout = timeout

    @property
    def sinks(self) -> List[NotificationSink]:
        return [s for s in (self.realtime, self.events, self.webhook) if s is not None]

    async def notify(
        self,
        order: OrderSnapshot,
        event_type: OrderEventType,
        previous: Optional[str] = None,
        current: Optional[str] = None,
    ) -> Dict[str, bool]:
        """Delivers one change to every sink. Returns sink name -> delivered."""
        notification = Notification(event_type=event_type, order=order, previous=previous, current=current)
        sinks = self.sinks
        results = await asyncio.gather(*(self._deliver(sink, notification) for sink in sinks))
        return {sink.name: ok for sink, ok in zip(sinks, results)}

    async def alert(self, order: OrderSnapshot, alert: AlertEntry) -> bool:
        """Alerts are realtime only."""
        try:
            await asyncio.wait_for(self.realtime.send_alert(order, alert), timeout=self.timeout)
            return True
        except Exception as e:
            log.error(f"Realtime alert for order {order.id} failed: {e}")
            return False

    async def _deliver(self, sink: NotificationSink, notification: Notification) -> bool:
        order_id = notification.order.id
        try:
            await asyncio.wait_for(sink.send(notification), timeout=self.timeout)
            return True
        except asyncio.TimeoutError:
            log.warning(f"Sink {sink.name} timed out after {self.timeout}s for {notification.event_type.value} on order {order_id}")
        except NotificationSinkError as e:
            log.error(f"Sink {e.sink} failed for order {order_id}: {e.message}")
        except Exception as e:
            err = NotificationSinkError(sink.name, str(e) or type(e).__name__)
            log.exception(f"Sink {err.sink} failed for order {order_id}: {err.message}")
        return False


def build_notifier(realtime: RealtimeSink, timeout: float = NOTIFICATION_SINK_TIMEOUT) -> Notifier:
    return Notifier(realtime=realtime, events=OutboxEventSink(), webhook=PartnerWebhookSink(), timeout=timeout)
