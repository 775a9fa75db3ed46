import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import httpx
import pytest

from app.core.errors import (
    Forbidden,
    IllegalState,
    IllegalTransition,
    InvalidStatus,
    NotFound,
    StorageError,
    TransitionConflict,
)
from app.models.inventory import InventoryItem
from app.models.order import ItemPreparationStatus, Order, OrderAlert, OrderStatus, PaymentStatus, ServiceChargeType
from app.models.outbox import OutboxEvent
from app.notifications.realtime import order_channel
from app.schemas.inventory import BatchResult
from app.schemas.order import OrderDetailsPatch, OrderItemRequest
from app.services.deduction_client import HttpDeductionClient
from app.services.order_state_machine import OrderStateMachine, check_transition
from tests.factories import (
    customer,
    make_ingredient,
    make_menu_item,
    make_recipe,
    make_restaurant,
    place,
    staff,
)


async def walk_to(machine, order_id, actor, *statuses):
    for status in statuses:
        await machine.transition(order_id, status, actor)


class TestTransitionRules:
    def test_delivered_only_moves_to_completed(self):
        check_transition(OrderStatus.DELIVERED, OrderStatus.COMPLETED)
        for requested in (OrderStatus.CANCELLED, OrderStatus.REJECTED, OrderStatus.PREPARING):
            with pytest.raises(IllegalTransition):
                check_transition(OrderStatus.DELIVERED, requested)

    def test_terminal_statuses_are_final(self):
        for terminal in (OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REJECTED):
            for requested in OrderStatus:
                with pytest.raises(IllegalTransition):
                    check_transition(terminal, requested)

    def test_same_status_is_rejected(self):
        with pytest.raises(IllegalTransition):
            check_transition(OrderStatus.PREPARING, OrderStatus.PREPARING)

    def test_non_terminal_moves_are_free(self):
        check_transition(OrderStatus.PENDING, OrderStatus.READY)
        check_transition(OrderStatus.READY, OrderStatus.PREPARING)
        check_transition(OrderStatus.ACCEPTED, OrderStatus.REJECTED)


@pytest.mark.asyncio
async def test_completed_order_cannot_go_back_to_preparing(db, machine, checkout, ledger):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    order = await place(checkout, restaurant, pizza)
    actor = staff(restaurant)
    await walk_to(machine, order.id, actor, "ACCEPTED", "PREPARING", "READY", "DELIVERED", "COMPLETED")

    with pytest.raises(IllegalTransition):
        await machine.transition(order.id, "PREPARING", actor)

    stored = await Order.get(id=order.id)
    assert stored.status == OrderStatus.COMPLETED


@pytest.mark.asyncio
async def test_transition_records_history_and_defaults(db, machine, checkout):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    order = await place(checkout, restaurant, pizza)

    result = await machine.transition(order.id, "preparing", staff(restaurant), reason="Kitchen started")

    assert result.previous_status == OrderStatus.PENDING
    assert result.order.status == OrderStatus.PREPARING
    assert result.order.estimated_preparation_minutes == 15
    assert result.order.version == order.version + 1
    assert [h.status for h in result.order.status_history] == [OrderStatus.PENDING, OrderStatus.PREPARING]
    assert result.order.status_history[-1].note == "Kitchen started"
    assert result.order.status_history[-1].actor_id == "staff-1"


@pytest.mark.asyncio
async def test_unknown_status_is_rejected_before_any_write(db, machine, checkout):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    order = await place(checkout, restaurant, pizza)

    with pytest.raises(InvalidStatus):
        await machine.transition(order.id, "OUT_FOR_DELIVERY", staff(restaurant))
    assert (await Order.get(id=order.id)).version == order.version


@pytest.mark.asyncio
async def test_missing_order(db, machine):
    restaurant = await make_restaurant()
    with pytest.raises(NotFound):
        await machine.transition(uuid4(), "ACCEPTED", staff(restaurant))


@pytest.mark.asyncio
async def test_staff_of_other_restaurant_is_forbidden(db, machine, checkout):
    restaurant = await make_restaurant()
    other = await make_restaurant("Other")
    pizza = await make_menu_item(restaurant)
    order = await place(checkout, restaurant, pizza)

    with pytest.raises(Forbidden):
        await machine.transition(order.id, "ACCEPTED", staff(other))


@pytest.mark.asyncio
async def test_customer_can_cancel_own_order(db, machine, checkout):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    order = await place(checkout, restaurant, pizza, user_id="user-7")

    with pytest.raises(Forbidden):
        await machine.cancel(order.id, customer("someone-else"))

    result = await machine.cancel(order.id, customer("user-7"), reason="Changed my mind")
    assert result.order.status == OrderStatus.CANCELLED
    assert result.order.cancellation_reason == "Changed my mind"
    assert await OutboxEvent.filter(event_type="order.cancelled.v1", aggregate_id=order.id).count() == 1


@pytest.mark.asyncio
async def test_cancelled_order_is_final(db, machine, checkout):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    order = await place(checkout, restaurant, pizza)
    actor = staff(restaurant)
    await machine.cancel(order.id, actor)

    for status in OrderStatus:
        with pytest.raises(IllegalTransition):
            await machine.transition(order.id, status, actor)


@pytest.mark.asyncio
async def test_completion_deducts_stock(db, machine, checkout, ledger):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    cheese = await make_ingredient(ledger, restaurant, "Cheese", "g", stock="500")
    await make_recipe(restaurant, pizza, [(cheese, "200", "g")])
    order = await place(checkout, restaurant, pizza, quantity=2)

    result = await machine.transition(order.id, "COMPLETED", staff(restaurant))

    assert result.order.completed_at is not None
    assert result.deduction.success is True
    assert result.deduction_error is None
    assert (await InventoryItem.get(id=cheese.id)).current_stock == Decimal("100")
    assert result.order.alerts == []


@pytest.mark.asyncio
async def test_failed_deduction_does_not_undo_completion(db, machine, checkout, ledger):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    cheese = await make_ingredient(ledger, restaurant, "Cheese", "g", stock="350")
    await make_recipe(restaurant, pizza, [(cheese, "200", "g")])
    order = await place(checkout, restaurant, pizza, quantity=2)

    result = await machine.transition(order.id, "COMPLETED", staff(restaurant))

    assert result.order.status == OrderStatus.COMPLETED
    assert result.deduction.success is False
    assert len(result.deduction.failed_lines) == 1
    assert (await InventoryItem.get(id=cheese.id)).current_stock == Decimal("350")
    assert await OrderAlert.filter(order_id=order.id, severity="warning").count() == 1
    reconcile = await OutboxEvent.get(event_type="inventory.deduction.degraded.v1")
    assert reconcile.payload["order_id"] == str(order.id)


@pytest.mark.asyncio
async def test_deduction_storage_error_is_reported(db, orders, notifier, checkout):
    deducter = AsyncMock()
    deducter.deduct.side_effect = StorageError("ledger down", partial=BatchResult())
    machine = OrderStateMachine(orders, deducter, notifier)
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    order = await place(checkout, restaurant, pizza)

    result = await machine.transition(order.id, "COMPLETED", staff(restaurant))

    assert result.order.status == OrderStatus.COMPLETED
    assert result.deduction_error == "ledger down"
    deducter.deduct.assert_awaited_once()
    assert deducter.deduct.await_args.kwargs["reference"] == str(order.id)


@pytest.mark.asyncio
async def test_unreadable_remote_deduction_still_completes_and_notifies(db, orders, notifier, checkout):
    deducter = HttpDeductionClient("http://inventory.local", transport=httpx.MockTransport(
        lambda request: httpx.Response(200, text="<html>gateway</html>")
    ))
    machine = OrderStateMachine(orders, deducter, notifier)
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    order = await place(checkout, restaurant, pizza)

    result = await machine.transition(order.id, "COMPLETED", staff(restaurant))

    assert result.order.status == OrderStatus.COMPLETED
    assert result.deduction is None
    assert "invalid response" in result.deduction_error
    assert (await Order.get(id=order.id)).status == OrderStatus.COMPLETED
    assert await OutboxEvent.filter(event_type="order.status_changed.v1", aggregate_id=order.id).count() == 1
    assert await OutboxEvent.filter(event_type="inventory.deduction.degraded.v1", aggregate_id=order.id).count() == 1
    assert await OrderAlert.filter(order_id=order.id, severity="warning").count() == 1


@pytest.mark.asyncio
async def test_unexpected_deduction_failure_is_reported_not_raised(db, orders, notifier, checkout, hub):
    deducter = AsyncMock()
    deducter.deduct.side_effect = RuntimeError("boom")
    machine = OrderStateMachine(orders, deducter, notifier)
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    order = await place(checkout, restaurant, pizza)
    tracker = hub.subscribe(order_channel(order.id))

    result = await machine.transition(order.id, "COMPLETED", staff(restaurant))

    assert result.order.status == OrderStatus.COMPLETED
    assert result.deduction_error == "RuntimeError: boom"
    assert tracker.get_nowait()["current"] == "COMPLETED"


@pytest.mark.asyncio
async def test_concurrent_completions_share_scarce_stock(db, machine, checkout, ledger):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    cheese = await make_ingredient(ledger, restaurant, "Cheese", "g", stock="80")
    await make_recipe(restaurant, pizza, [(cheese, "50", "g")])
    first = await place(checkout, restaurant, pizza)
    second = await place(checkout, restaurant, pizza, user_id="user-2")
    actor = staff(restaurant)

    results = await asyncio.gather(
        machine.transition(first.id, "COMPLETED", actor),
        machine.transition(second.id, "COMPLETED", actor),
    )

    assert all(r.order.status == OrderStatus.COMPLETED for r in results)
    assert sorted(r.deduction.success for r in results) == [False, True]
    assert (await InventoryItem.get(id=cheese.id)).current_stock == Decimal("30")


@pytest.mark.asyncio
async def test_stale_version_loses(db, machine, checkout, orders):
    """Two writers read the same version; only the first write lands."""
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    placed = await place(checkout, restaurant, pizza)

    mine = await orders.get(placed.id)
    theirs = await orders.get(placed.id)
    assert await orders.compare_and_set(theirs, {"status": OrderStatus.ACCEPTED}, None) is True
    assert await orders.compare_and_set(mine, {"status": OrderStatus.REJECTED}, None) is False
    assert (await Order.get(id=placed.id)).status == OrderStatus.ACCEPTED


@pytest.mark.asyncio
async def test_lost_race_raises_conflict(db, machine, checkout, orders):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    order = await place(checkout, restaurant, pizza)

    with patch.object(orders, "compare_and_set", AsyncMock(return_value=False)):
        with pytest.raises(TransitionConflict):
            await machine.transition(order.id, "ACCEPTED", staff(restaurant))

    stored = await Order.get(id=order.id).prefetch_related("status_history")
    assert stored.status == OrderStatus.PENDING
    assert len(stored.status_history) == 1


@pytest.mark.asyncio
async def test_concurrent_transitions_of_one_order(db, machine, checkout):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    order = await place(checkout, restaurant, pizza)
    actor = staff(restaurant)

    outcomes = await asyncio.gather(
        machine.transition(order.id, "ACCEPTED", actor),
        machine.transition(order.id, "ACCEPTED", actor),
        return_exceptions=True,
    )

    successes = [o for o in outcomes if not isinstance(o, Exception)]
    failures = [o for o in outcomes if isinstance(o, Exception)]
    assert len(successes) == 1
    assert isinstance(failures[0], IllegalTransition)
    assert (await Order.get(id=order.id)).version == order.version + 1


@pytest.mark.asyncio
async def test_payment_status_rules(db, machine, checkout):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    order = await place(checkout, restaurant, pizza)
    actor = staff(restaurant)

    with pytest.raises(IllegalTransition):
        await machine.update_payment_status(order.id, "REFUNDED", actor)
    with pytest.raises(InvalidStatus):
        await machine.update_payment_status(order.id, "BOUNCED", actor)

    result = await machine.update_payment_status(order.id, "paid", actor)
    assert result.previous_payment_status == PaymentStatus.PENDING
    assert result.order.payment_status == PaymentStatus.PAID
    assert await OutboxEvent.filter(event_type="order.payment_status_changed.v1").count() == 1


@pytest.mark.asyncio
async def test_update_details_reprices_and_keeps_total_invariant(db, machine, checkout):
    restaurant = await make_restaurant(charge_type=ServiceChargeType.PERCENTAGE, charge_value="10")
    pizza = await make_menu_item(restaurant, "Pizza", "40.00")
    soda = await make_menu_item(restaurant, "Soda", "5.50")
    order = await place(checkout, restaurant, pizza, tip=Decimal("2.00"), loyalty_discount=Decimal("3.00"))
    assert order.total == order.subtotal + order.service_charge + order.tip - order.loyalty_discount

    patch = OrderDetailsPatch(
        items=[OrderItemRequest(menu_item_id=pizza.id, quantity=2), OrderItemRequest(menu_item_id=soda.id, quantity=1)],
        special_instructions="No onions",
    )
    updated = await machine.update_details(order.id, patch, customer("user-1"))

    assert updated.subtotal == Decimal("85.50")
    assert updated.service_charge == Decimal("8.55")
    assert updated.total == updated.subtotal + updated.service_charge + updated.tip - updated.loyalty_discount
    assert updated.total == Decimal("93.05")
    assert [i.name for i in updated.items] == ["Pizza", "Soda"]
    assert updated.special_instructions == "No onions"


@pytest.mark.asyncio
async def test_update_details_blocked_once_final(db, machine, checkout):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    order = await place(checkout, restaurant, pizza)
    await machine.cancel(order.id, staff(restaurant))

    with pytest.raises(IllegalState):
        await machine.update_details(order.id, OrderDetailsPatch(special_instructions="late"), staff(restaurant))


@pytest.mark.asyncio
async def test_item_status_and_alerts(db, machine, checkout, hub):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    order = await place(checkout, restaurant, pizza)
    actor = staff(restaurant)
    queue = hub.subscribe(f"order:{order.id}")

    updated = await machine.update_item_status(order.id, order.items[0].id, ItemPreparationStatus.READY, actor)
    assert updated.items[0].preparation_status == ItemPreparationStatus.READY

    updated = await machine.send_alert(order.id, "Allergy: peanuts", actor, severity="critical")
    assert updated.alerts[-1].message == "Allergy: peanuts"

    events = [queue.get_nowait()["event"] for _ in range(queue.qsize())]
    assert events == ["order_updated", "order_alert"]
