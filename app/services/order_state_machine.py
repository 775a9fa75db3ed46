"""
Order State Machine.

    PENDING -> ACCEPTED -> PREPARING -> READY -> DELIVERED -> COMPLETED
    CANCELLED / REJECTED from any non-terminal status except DELIVERED

COMPLETED, CANCELLED and REJECTED are final. A DELIVERED order can only be
completed. Every write is a compare-and-set on `Order.version`, so two
concurrent requests can never both succeed from the same starting state.

Completion deducts stock through the injected deduction collaborator. Its
failures are reported in the result and as an order alert, but never undo
the status change. Every committed change is handed to the Notifier.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol, Sequence, Tuple, Union
from uuid import UUID

from tortoise import timezone
from tortoise.transactions import in_transaction

from app.core.config import DEFAULT_PREPARATION_MINUTES
from app.core.errors import IllegalState, IllegalTransition, InvalidStatus, StorageError, TransitionConflict
from app.events.outbox_utility import create_outbox_event
from app.models.order import Order, OrderStatus, PaymentStatus, TERMINAL_STATUSES, ItemPreparationStatus
from app.notifications.fanout import Notifier
from app.notifications.types import OrderEventType
from app.repositories.order_store import OrderStore
from app.schemas.actor import Actor
from app.schemas.inventory import BatchResult, DeductionLine
from app.schemas.order import (
    AlertEntry,
    OrderDetailsPatch,
    OrderSnapshot,
    PaymentTransitionResult,
    TransitionResult,
)
from app.services.access import ensure_order_access
from app.services.pricing import compute_totals, load_restaurant, price_items

log = logging.getLogger("order_state_machine")


PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED},
    PaymentStatus.PARTIALLY_REFUNDED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}


class StockDeducter(Protocol):
    async def deduct(
        self,
        restaurant_id: UUID,
        lines: Sequence[DeductionLine],
        actor: Optional[Actor] = None,
        reference: Optional[str] = None,
    ) -> BatchResult: ...


def parse_status(value: Union[str, OrderStatus]) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(str(value).strip().upper())
    except ValueError:
        raise InvalidStatus(
            f"Invalid order status value: {value!r}", allowed=[s.value for s in OrderStatus]
        ) from None


def parse_payment_status(value: Union[str, PaymentStatus]) -> PaymentStatus:
    if isinstance(value, PaymentStatus):
        return value
    try:
        return PaymentStatus(str(value).strip().upper())
    except ValueError:
        raise InvalidStatus(
            f"Invalid payment status value: {value!r}", allowed=[s.value for s in PaymentStatus]
        ) from None


def check_transition(current: OrderStatus, requested: OrderStatus) -> None:
    if current in TERMINAL_STATUSES:
        raise IllegalTransition(
            f"Order is already in a final state: {current.value}. Status cannot be updated.",
            current=current.value, requested=requested.value,
        )
    if requested == current:
        raise IllegalTransition(f"Order is already {current.value}.", current=current.value)
    if current == OrderStatus.DELIVERED and requested != OrderStatus.COMPLETED:
        raise IllegalTransition(
            f"A delivered order can only be completed, not moved to {requested.value}.",
            current=current.value, requested=requested.value,
        )


def check_payment_transition(current: PaymentStatus, requested: PaymentStatus) -> None:
    if requested not in PAYMENT_TRANSITIONS[current]:
        raise IllegalTransition(
            f"Payment status cannot change from {current.value} to {requested.value}.",
            current=current.value, requested=requested.value,
        )


class OrderStateMachine:
    def __init__(
        self,
        orders: OrderStore,
        deduction: StockDeducter,
        notifier: Notifier,
        default_preparation_minutes: int = DEFAULT_PREPARATION_MINUTES,
    ):
        self.orders = orders
        self.deduction = deduction
        self.notifier = notifier
        self.default_preparation_minutes = default_preparation_minutes

    async def transition(
        self,
        order_id: UUID,
        requested_status: Union[str, OrderStatus],
        actor: Actor,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        new_status = parse_status(requested_status)

        async with in_transaction() as conn:
            order = await self.orders.get(order_id, conn)
            ensure_order_access(actor, order.restaurant_id, order.customer_user_id, order.guest_token)
            previous = order.status
            check_transition(previous, new_status)

            changes: Dict[str, Any] = {"status": new_status}
            if new_status == OrderStatus.PREPARING and order.estimated_preparation_minutes is None:
                changes["estimated_preparation_minutes"] = self.default_preparation_minutes
            if new_status == OrderStatus.COMPLETED:
                changes["completed_at"] = timezone.now()
            if new_status in (OrderStatus.CANCELLED, OrderStatus.REJECTED) and reason:
                changes["cancellation_reason"] = reason

            if not await self.orders.compare_and_set(order, changes, conn):
                raise TransitionConflict(
                    f"Order {order_id} was modified concurrently; status is no longer {previous.value}.",
                    expected=previous.value,
                )
            await self.orders.append_history(order.id, new_status, reason, actor.audit_id, conn)

        log.info(f"Order {order_id}: {previous.value} -> {new_status.value} by {actor.audit_id}")

        deduction, deduction_error = None, None
        if new_status == OrderStatus.COMPLETED:
            deduction, deduction_error = await self._deduct_stock(order, actor)

        snapshot = await self.orders.snapshot(order_id)
        event_type = (
            OrderEventType.ORDER_CANCELLED if new_status == OrderStatus.CANCELLED else OrderEventType.STATUS_CHANGED
        )
        await self.notifier.notify(snapshot, event_type, previous=previous.value, current=new_status.value)

        return TransitionResult(
            order=snapshot, previous_status=previous, deduction=deduction, deduction_error=deduction_error
        )

    async def cancel(self, order_id: UUID, actor: Actor, reason: Optional[str] = None) -> TransitionResult:
        return await self.transition(order_id, OrderStatus.CANCELLED, actor, reason)

    async def update_payment_status(
        self, order_id: UUID, requested: Union[str, PaymentStatus], actor: Actor
    ) -> PaymentTransitionResult:
        new_status = parse_payment_status(requested)

        async with in_transaction() as conn:
            order = await self.orders.get(order_id, conn)
            ensure_order_access(actor, order.restaurant_id, order.customer_user_id, order.guest_token)
            previous = order.payment_status
            check_payment_transition(previous, new_status)
            if not await self.orders.compare_and_set(order, {"payment_status": new_status}, conn):
                raise TransitionConflict(f"Order {order_id} was modified concurrently.", expected=previous.value)

        log.info(f"Order {order_id}: payment {previous.value} -> {new_status.value} by {actor.audit_id}")
        snapshot = await self.orders.snapshot(order_id)
        await self.notifier.notify(
            snapshot, OrderEventType.PAYMENT_STATUS_CHANGED, previous=previous.value, current=new_status.value
        )
        return PaymentTransitionResult(order=snapshot, previous_payment_status=previous)

    async def update_details(self, order_id: UUID, patch: OrderDetailsPatch, actor: Actor) -> OrderSnapshot:
        """Re-prices the patched items with the checkout derivation. Not allowed once final."""
        async with in_transaction() as conn:
            order = await self.orders.get(order_id, conn)
            ensure_order_access(actor, order.restaurant_id, order.customer_user_id, order.guest_token)
            if order.is_terminal:
                raise IllegalState(f"Cannot update {order.status.value} order", status=order.status.value)

            restaurant = await load_restaurant(order.restaurant_id, conn)
            priced = None
            subtotal = order.subtotal
            if patch.items is not None:
                priced = await price_items(order.restaurant_id, patch.items, conn)
                subtotal = sum((line.line_total for line in priced), Decimal("0"))
            tip = patch.tip if patch.tip is not None else order.tip
            totals = compute_totals(subtotal, restaurant, tip, order.loyalty_discount)

            changes: Dict[str, Any] = totals.as_fields()
            if patch.special_instructions is not None:
                changes["special_instructions"] = patch.special_instructions
            if not await self.orders.compare_and_set(order, changes, conn):
                raise TransitionConflict(f"Order {order_id} was modified concurrently.")
            if priced is not None:
                await self.orders.replace_items(order.id, priced, conn)

        snapshot = await self.orders.snapshot(order_id)
        await self.notifier.notify(snapshot, OrderEventType.ORDER_UPDATED, previous=order.status.value,
                                   current=order.status.value)
        return snapshot

    async def update_item_status(
        self, order_id: UUID, item_id: UUID, status: ItemPreparationStatus, actor: Actor
    ) -> OrderSnapshot:
        async with in_transaction() as conn:
            order = await self.orders.get(order_id, conn)
            ensure_order_access(actor, order.restaurant_id, order.customer_user_id, order.guest_token)
            if order.is_terminal:
                raise IllegalState(f"Cannot update items of {order.status.value} order", status=order.status.value)
            item = await self.orders.get_item(order_id, item_id, conn)
            previous = item.preparation_status
            # Version bump serializes item updates with status transitions
            if not await self.orders.compare_and_set(order, {}, conn):
                raise TransitionConflict(f"Order {order_id} was modified concurrently.")
            item.preparation_status = status
            await item.save(update_fields=["preparation_status"], using_db=conn)

        snapshot = await self.orders.snapshot(order_id)
        await self.notifier.notify(
            snapshot, OrderEventType.ORDER_UPDATED,
            previous=previous.value if previous else None, current=status.value,
        )
        return snapshot

    async def send_alert(self, order_id: UUID, message: str, actor: Actor, severity: str = "info") -> OrderSnapshot:
        order = await self.orders.get(order_id)
        ensure_order_access(actor, order.restaurant_id, order.customer_user_id, order.guest_token)
        alert = await self.orders.append_alert(order.id, message, severity, actor.audit_id)
        snapshot = await self.orders.snapshot(order_id)
        await self.notifier.alert(
            snapshot,
            AlertEntry(message=alert.message, severity=alert.severity, timestamp=alert.created_at,
                       actor_id=alert.actor_id),
        )
        return snapshot

    async def _deduct_stock(self, order: Order, actor: Actor) -> Tuple[Optional[BatchResult], Optional[str]]:
        """Best-effort deduction on completion; never raises."""
        try:
            items = await self.orders.list_items(order.id)
            lines = [
                DeductionLine(catalog_item_id=item.menu_item_id, quantity_sold=item.quantity)
                for item in items
            ]
            if not lines:
                return None, None
            result = await self.deduction.deduct(order.restaurant_id, lines, actor=actor, reference=str(order.id))
        except StorageError as e:
            log.error(f"Stock deduction for completed order {order.id} aborted: {e.message}")
            await self._record_deduction_issue(order, e.partial, e.message)
            return e.partial, e.message
        except Exception as e:
            # The status change is already committed and must still be reported
            error = f"{type(e).__name__}: {e}"
            log.exception(f"Unexpected failure deducting stock for completed order {order.id}")
            await self._record_deduction_issue(order, None, error)
            return None, error

        if result.degraded:
            await self._record_deduction_issue(order, result, None)
        return result, None

    async def _record_deduction_issue(self, order: Order, result: Optional[BatchResult], error: Optional[str]) -> None:
        """Inventory discrepancies go to the order's alert log and the reconciliation event stream."""
        failed = result.failed_lines if result else []
        skipped = result.skipped_lines if result else []
        summary = (
            f"Inventory deduction incomplete: {len(failed)} failed, {len(skipped)} skipped"
            + (f", aborted: {error}" if error else "")
        )
        log.warning(f"Order {order.id}: {summary}")
        try:
            async with in_transaction() as conn:
                await self.orders.append_alert(order.id, summary, "warning", None, conn)
                await create_outbox_event(
                    aggregate_type="order",
                    aggregate_id=order.id,
                    event_type="inventory.deduction.degraded.v1",
                    payload={
                        "order_id": str(order.id),
                        "restaurant_id": str(order.restaurant_id),
                        "failed_lines": [line.model_dump(mode="json") for line in failed],
                        "skipped_lines": [line.model_dump(mode="json") for line in skipped],
                        "error": error,
                    },
                    conn=conn,
                )
        except Exception as e:
            # The order is already completed; losing the alert must not fail the request
            log.error(f"Could not record deduction issue for order {order.id}: {e}")
