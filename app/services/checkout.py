import logging
import random
from decimal import Decimal

from tortoise import timezone
from tortoise.transactions import in_transaction

from app.core.errors import StorageError
from app.models.order import Order
from app.notifications.fanout import Notifier
from app.notifications.types import OrderEventType
from app.repositories.order_store import OrderStore
from app.schemas.actor import Actor
from app.schemas.order import OrderRequest, OrderSnapshot, RegisteredCustomer
from app.services.access import ensure_order_access
from app.services.pricing import compute_totals, load_restaurant, price_items

log = logging.getLogger("checkout")

ORDER_NUMBER_ATTEMPTS = 10


async def generate_order_number(conn=None) -> str:
    """YYMMDD-NNNN, unique across all orders."""
    prefix = timezone.now().strftime("%y%m%d")
    for _ in range(ORDER_NUMBER_ATTEMPTS):
        candidate = f"{prefix}-{random.randint(0, 9999):04d}"
        if not await Order.filter(order_number=candidate).using_db(conn).exists():
            return candidate
    raise StorageError(f"Could not allocate an order number for {prefix}")


class CheckoutService:
    """
    FAST PATH: prices the cart against the catalog and persists the order with
    its items and first history row atomically. Fan-out happens after commit.
    """

    def __init__(self, orders: OrderStore, notifier: Notifier):
        self.orders = orders
        self.notifier = notifier

    async def place_order(self, request: OrderRequest, actor: Actor) -> OrderSnapshot:
        customer = request.customer
        if isinstance(customer, RegisteredCustomer):
            user_id, guest_token = customer.user_id, None
        else:
            user_id, guest_token = None, customer.token
        ensure_order_access(actor, request.restaurant_id, user_id, guest_token)

        async with in_transaction() as conn:
            restaurant = await load_restaurant(request.restaurant_id, conn)
            lines = await price_items(restaurant.id, request.items, conn)
            subtotal = sum((line.line_total for line in lines), Decimal("0"))
            totals = compute_totals(subtotal, restaurant, request.tip, request.loyalty_discount)

            order = await self.orders.create(
                fields={
                    "order_number": await generate_order_number(conn),
                    "restaurant_id": restaurant.id,
                    "table_id": request.table_id,
                    "customer_user_id": user_id,
                    "guest_token": guest_token,
                    "special_instructions": request.special_instructions,
                    **totals.as_fields(),
                },
                lines=lines,
                note="Order placed",
                actor_id=actor.audit_id,
                conn=conn,
            )

        log.info(f"Order {order.order_number} ({order.id}) placed at restaurant {restaurant.id}, total {totals.total}")
        snapshot = await self.orders.snapshot(order.id)
        await self.notifier.notify(snapshot, OrderEventType.ORDER_CREATED, current=snapshot.status.value)
        return snapshot
