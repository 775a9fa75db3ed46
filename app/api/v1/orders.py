from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status

from app.core.deps import get_actor, get_checkout, get_order_store, get_state_machine
from app.repositories.order_store import OrderStore
from app.schemas.actor import Actor
from app.schemas.order import (
    AlertRequest,
    CancelRequest,
    ItemStatusUpdate,
    OrderDetailsPatch,
    OrderRequest,
    OrderStatusUpdate,
    PaymentStatusUpdate,
)
from app.schemas.response import SuccessResponse
from app.services.access import ensure_order_access
from app.services.checkout import CheckoutService
from app.services.order_state_machine import OrderStateMachine

router = APIRouter()


@router.post("/", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse)
async def create_order_endpoint(
    request_data: OrderRequest,
    actor: Actor = Depends(get_actor),
    checkout: CheckoutService = Depends(get_checkout),
):
    """Places a new order from a cart, priced against the restaurant's catalog."""
    order = await checkout.place_order(request_data, actor)
    return SuccessResponse(data=order.model_dump(mode="json"))


@router.get("/{order_id}", response_model=SuccessResponse)
async def get_order_endpoint(
    order_id: UUID,
    actor: Actor = Depends(get_actor),
    orders: OrderStore = Depends(get_order_store),
):
    """Fetches details for a specific order, with its status history and alerts."""
    order = await orders.snapshot(order_id)
    customer = order.customer
    ensure_order_access(
        actor,
        order.restaurant_id,
        getattr(customer, "user_id", None),
        getattr(customer, "token", None),
    )
    return SuccessResponse(data=order.model_dump(mode="json"))


@router.patch("/{order_id}/status", response_model=SuccessResponse)
async def update_status_endpoint(
    order_id: UUID,
    payload: OrderStatusUpdate,
    actor: Actor = Depends(get_actor),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    """
    Moves the order through its lifecycle (e.g. 'ACCEPTED', 'PREPARING', 'COMPLETED').
    Completing an order deducts ingredient stock; the outcome is in `deduction`.
    """
    result = await machine.transition(order_id, payload.status, actor, payload.reason)
    return SuccessResponse(data=result.model_dump(mode="json"))


@router.patch("/{order_id}/payment-status", response_model=SuccessResponse)
async def update_payment_status_endpoint(
    order_id: UUID,
    payload: PaymentStatusUpdate,
    actor: Actor = Depends(get_actor),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    result = await machine.update_payment_status(order_id, payload.payment_status, actor)
    return SuccessResponse(data=result.model_dump(mode="json"))


@router.patch("/{order_id}", response_model=SuccessResponse)
async def update_details_endpoint(
    order_id: UUID,
    payload: OrderDetailsPatch,
    actor: Actor = Depends(get_actor),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    """Replaces items, instructions or tip. Status changes go through /status."""
    order = await machine.update_details(order_id, payload, actor)
    return SuccessResponse(data=order.model_dump(mode="json"))


@router.post("/{order_id}/cancel", response_model=SuccessResponse)
async def cancel_order_endpoint(
    order_id: UUID,
    payload: Optional[CancelRequest] = None,
    actor: Actor = Depends(get_actor),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    result = await machine.cancel(order_id, actor, payload.reason if payload else None)
    return SuccessResponse(data=result.model_dump(mode="json"))


@router.post("/{order_id}/alerts", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse)
async def send_alert_endpoint(
    order_id: UUID,
    payload: AlertRequest,
    actor: Actor = Depends(get_actor),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    """Appends a kitchen/service alert to the order and pushes it to live subscribers."""
    order = await machine.send_alert(order_id, payload.message, actor, payload.severity)
    return SuccessResponse(data=order.model_dump(mode="json"))


@router.patch("/{order_id}/items/{item_id}/status", response_model=SuccessResponse)
async def update_item_status_endpoint(
    order_id: UUID,
    item_id: UUID,
    payload: ItemStatusUpdate,
    actor: Actor = Depends(get_actor),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    order = await machine.update_item_status(order_id, item_id, payload.status, actor)
    return SuccessResponse(data=order.model_dump(mode="json"))
