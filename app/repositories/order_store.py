from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from tortoise import timezone

from app.core.errors import NotFound
from app.models.order import Order, OrderAlert, OrderItem, OrderStatus, OrderStatusEntry
from app.schemas.order import (
    AlertEntry,
    GuestCustomer,
    ModifierSelection,
    OrderItemSnapshot,
    OrderSnapshot,
    RegisteredCustomer,
    StatusHistoryEntry,
)
from app.services.pricing import PricedLine


def to_snapshot(order: Order) -> OrderSnapshot:
    """Builds the read model. `items`, `status_history` and `alerts` must be prefetched."""
    if order.customer_user_id:
        customer = RegisteredCustomer(user_id=order.customer_user_id)
    else:
        customer = GuestCustomer(token=order.guest_token)

    return OrderSnapshot(
        id=order.id,
        order_number=order.order_number,
        restaurant_id=order.restaurant_id,
        table_id=order.table_id,
        customer=customer,
        items=[
            OrderItemSnapshot(
                id=item.id,
                menu_item_id=item.menu_item_id,
                name=item.name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                modifiers=[ModifierSelection.model_validate(m) for m in item.modifiers or []],
                special_instructions=item.special_instructions,
                line_total=item.line_total,
                preparation_status=item.preparation_status,
            )
            for item in sorted(order.items, key=lambda i: i.position)
        ],
        status=order.status,
        payment_status=order.payment_status,
        subtotal=order.subtotal,
        tax=order.tax,
        tip=order.tip,
        service_charge=order.service_charge,
        loyalty_discount=order.loyalty_discount,
        total=order.total,
        special_instructions=order.special_instructions,
        estimated_preparation_minutes=order.estimated_preparation_minutes,
        cancellation_reason=order.cancellation_reason,
        completed_at=order.completed_at,
        status_history=[
            StatusHistoryEntry(status=h.status, timestamp=h.created_at, note=h.note, actor_id=h.actor_id)
            for h in sorted(order.status_history, key=lambda h: h.created_at)
        ],
        alerts=[
            AlertEntry(message=a.message, severity=a.severity, timestamp=a.created_at, actor_id=a.actor_id)
            for a in sorted(order.alerts, key=lambda a: a.created_at)
        ],
        version=order.version,
        created_at=order.created_at,
        updated_at=order.updated_at,
    )


class OrderStore:
    """Durable storage for orders, their items and the append-only history/alert logs."""

    async def get(self, order_id: UUID, conn: Any = None) -> Order:
        order = await Order.get_or_none(id=order_id).using_db(conn)
        if not order:
            raise NotFound("Order not found", order_id=str(order_id))
        return order

    async def snapshot(self, order_id: UUID) -> OrderSnapshot:
        # Pre-fetch related entities to minimize DB queries (N+1 avoidance)
        order = await Order.get_or_none(id=order_id).prefetch_related("items", "status_history", "alerts")
        if not order:
            raise NotFound("Order not found", order_id=str(order_id))
        return to_snapshot(order)

    async def create(self, fields: Dict[str, Any], lines: Sequence[PricedLine], note: Optional[str],
                     actor_id: Optional[str], conn: Any) -> Order:
        order = await Order.create(**fields, status=OrderStatus.PENDING, using_db=conn)
        await self.add_items(order.id, lines, conn)
        await self.append_history(order.id, OrderStatus.PENDING, note, actor_id, conn)
        return order

    async def compare_and_set(self, order: Order, changes: Dict[str, Any], conn: Any) -> bool:
        """
        Writes `changes` only if the row still has the version `order` was read
        with, and bumps the version. Returns False when another writer won.
        """
        now = timezone.now()
        updated = await Order.filter(id=order.id, version=order.version).using_db(conn).update(
            **changes, version=order.version + 1, updated_at=now
        )
        if updated != 1:
            return False
        for key, value in changes.items():
            setattr(order, key, value)
        order.version += 1
        order.updated_at = now
        return True

    async def add_items(self, order_id: UUID, lines: Sequence[PricedLine], conn: Any) -> None:
        for position, line in enumerate(lines):
            await OrderItem.create(
                order_id=order_id,
                menu_item_id=line.menu_item_id,
                name=line.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                modifiers=line.modifiers,
                special_instructions=line.special_instructions,
                line_total=line.line_total,
                position=position,
                using_db=conn,
            )

    async def replace_items(self, order_id: UUID, lines: Sequence[PricedLine], conn: Any) -> None:
        await OrderItem.filter(order_id=order_id).using_db(conn).delete()
        await self.add_items(order_id, lines, conn)

    async def list_items(self, order_id: UUID, conn: Any = None) -> List[OrderItem]:
        return await OrderItem.filter(order_id=order_id).using_db(conn).order_by("position")

    async def get_item(self, order_id: UUID, item_id: UUID, conn: Any = None) -> OrderItem:
        item = await OrderItem.get_or_none(id=item_id, order_id=order_id).using_db(conn)
        if not item:
            raise NotFound("Order item not found", order_id=str(order_id), item_id=str(item_id))
        return item

    async def append_history(self, order_id: UUID, status: OrderStatus, note: Optional[str],
                             actor_id: Optional[str], conn: Any) -> OrderStatusEntry:
        return await OrderStatusEntry.create(
            order_id=order_id, status=status, note=note, actor_id=actor_id, using_db=conn
        )

    async def append_alert(self, order_id: UUID, message: str, severity: str,
                           actor_id: Optional[str], conn: Any = None) -> OrderAlert:
        return await OrderAlert.create(
            order_id=order_id, message=message, severity=severity, actor_id=actor_id, using_db=conn
        )
