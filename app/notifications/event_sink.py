from typing import Any, Dict

from app.events.outbox_utility import create_outbox_event
from app.notifications.types import Notification
from app.schemas.order import OrderSnapshot


def order_projection(order: OrderSnapshot) -> Dict[str, Any]:
    """Minimal order shape carried by durable events."""
    return {
        "id": str(order.id),
        "order_number": order.order_number,
        "restaurant_id": str(order.restaurant_id),
        "table_id": str(order.table_id) if order.table_id else None,
        "customer": order.customer.model_dump(mode="json"),
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "total": str(order.total),
        "version": order.version,
        "created_at": order.created_at.isoformat(),
    }


class OutboxEventSink:
    """Durable event publication: one outbox row per change, keyed by order id."""
    name = "event_log"

    async def send(self, notification: Notification) -> None:
        order = notification.order
        await create_outbox_event(
            aggregate_type="order",
            aggregate_id=order.id,
            event_type=notification.event_type.outbox_name,
            payload={
                "event_type": notification.event_type.value,
                "order_id": str(order.id),
                "restaurant_id": str(order.restaurant_id),
                "order": order_projection(order),
                "previous": notification.previous,
                "current": notification.current,
                "timestamp": notification.occurred_at.isoformat(),
            },
        )
