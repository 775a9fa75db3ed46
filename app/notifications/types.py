from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from app.schemas.order import OrderSnapshot


class OrderEventType(str, Enum):
    ORDER_CREATED = "OrderCreated"
    ORDER_UPDATED = "OrderUpdated"
    STATUS_CHANGED = "StatusChanged"
    PAYMENT_STATUS_CHANGED = "PaymentStatusChanged"
    ORDER_CANCELLED = "OrderCancelled"

    @property
    def outbox_name(self) -> str:
        return _OUTBOX_NAMES[self]

    @property
    def realtime_event(self) -> str:
        if self == OrderEventType.ORDER_CREATED:
            return "new_order"
        if self == OrderEventType.ORDER_CANCELLED:
            return "order_cancelled"
        return "order_updated"


_OUTBOX_NAMES = {
    OrderEventType.ORDER_CREATED: "order.created.v1",
    OrderEventType.ORDER_UPDATED: "order.updated.v1",
    OrderEventType.STATUS_CHANGED: "order.status_changed.v1",
    OrderEventType.PAYMENT_STATUS_CHANGED: "order.payment_status_changed.v1",
    OrderEventType.ORDER_CANCELLED: "order.cancelled.v1",
}


@dataclass(frozen=True)
class Notification:
    """One committed change of an order, as handed to every sink."""
    event_type: OrderEventType
    order: OrderSnapshot
    previous: Optional[str] = None
    current: Optional[str] = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
