import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.core.deps import get_actor, get_deduction_engine, get_ledger
from app.core.errors import Forbidden
from app.models.inventory import InventoryItem, MovementType, StockMovement
from app.repositories.ledger_store import LedgerStore
from app.schemas.actor import Actor
from app.schemas.inventory import (
    AvailabilityRequest,
    DeductionRequest,
    InventoryItemRequest,
    InventoryItemResponse,
    StockAdjustmentRequest,
    StockMovementResponse,
)
from app.schemas.response import SuccessResponse
from app.services.stock_deduction import StockDeductionEngine

log = logging.getLogger("api.inventory")

router = APIRouter()


def _require_staff(actor: Actor, restaurant_id: UUID) -> None:
    if not actor.can_manage(restaurant_id):
        raise Forbidden("Actor cannot manage inventory of this restaurant.", restaurant_id=str(restaurant_id))


def _item_response(item: InventoryItem) -> dict:
    return InventoryItemResponse(
        id=item.id,
        restaurant_id=item.restaurant_id,
        name=item.name,
        unit=item.unit,
        current_stock=item.current_stock,
        reorder_threshold=item.reorder_threshold,
        average_cost=item.average_cost,
        is_active=item.is_active,
        needs_reorder=item.needs_reorder,
    ).model_dump(mode="json")


def _movement_response(movement: StockMovement) -> dict:
    return StockMovementResponse(
        id=movement.id,
        inventory_item_id=movement.inventory_item_id,
        movement_type=movement.movement_type.value,
        quantity=movement.quantity,
        previous_balance=movement.previous_balance,
        new_balance=movement.new_balance,
        unit_cost=movement.unit_cost,
        total_cost=movement.total_cost,
        reason=movement.reason,
        reference=movement.reference,
        actor_id=movement.actor_id,
        created_at=movement.created_at,
    ).model_dump(mode="json")


@router.post("/deductions", response_model=SuccessResponse)
async def deduct_stock_endpoint(
    payload: DeductionRequest,
    actor: Actor = Depends(get_actor),
    engine: StockDeductionEngine = Depends(get_deduction_engine),
):
    """
    Deducts ingredient stock for sold catalog items. Lines are independent:
    the response lists processed, failed and skipped lines.
    """
    _require_staff(actor, payload.restaurant_id)
    reference = str(payload.order_id) if payload.order_id else None
    result = await engine.deduct(payload.restaurant_id, payload.items, actor=actor, reference=reference)
    return SuccessResponse(data=result.model_dump(mode="json"))


@router.post("/availability", response_model=SuccessResponse)
async def check_availability_endpoint(
    payload: AvailabilityRequest,
    actor: Actor = Depends(get_actor),
    engine: StockDeductionEngine = Depends(get_deduction_engine),
):
    """
    Read-only stock check for a cart before it is ordered. Stock levels are
    only shown to staff of the restaurant; everyone else sees the sufficient flags.
    """
    report = await engine.check_availability(payload.restaurant_id, payload.items)
    if not actor.can_manage(payload.restaurant_id):
        report = report.without_stock_levels()
    return SuccessResponse(data=report.model_dump(mode="json"))


@router.post("/items", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse)
async def create_inventory_item(
    item_data: InventoryItemRequest,
    actor: Actor = Depends(get_actor),
    ledger: LedgerStore = Depends(get_ledger),
):
    """Adds an ingredient to a restaurant's stock. Opening stock is booked as a RECEIVED movement."""
    _require_staff(actor, item_data.restaurant_id)
    item = await ledger.create_item(
        restaurant_id=item_data.restaurant_id,
        name=item_data.name,
        unit=item_data.unit,
        opening_stock=item_data.opening_stock,
        reorder_threshold=item_data.reorder_threshold,
        average_cost=item_data.average_cost,
        actor_id=actor.audit_id,
    )
    log.info(f"Inventory item '{item.name}' ({item.id}) created with {item.current_stock} {item.unit}")
    return SuccessResponse(data=_item_response(item))


@router.get("/items/{item_id}", response_model=SuccessResponse)
async def get_inventory_item(
    item_id: UUID,
    actor: Actor = Depends(get_actor),
    ledger: LedgerStore = Depends(get_ledger),
):
    item = await ledger.get_item(item_id)
    _require_staff(actor, item.restaurant_id)
    return SuccessResponse(data=_item_response(item))


@router.get("/items/{item_id}/movements", response_model=SuccessResponse)
async def list_item_movements(
    item_id: UUID,
    limit: int = Query(100, ge=1, le=1000),
    actor: Actor = Depends(get_actor),
    ledger: LedgerStore = Depends(get_ledger),
):
    """The item's stock ledger, oldest first."""
    item = await ledger.get_item(item_id)
    _require_staff(actor, item.restaurant_id)
    movements = await ledger.list_movements(item_id, limit)
    return SuccessResponse(data=[_movement_response(m) for m in movements])


@router.post("/items/{item_id}/movements", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse)
async def record_item_movement(
    item_id: UUID,
    payload: StockAdjustmentRequest,
    actor: Actor = Depends(get_actor),
    ledger: LedgerStore = Depends(get_ledger),
):
    """Receiving, waste and manual corrections. Sales go through /deductions."""
    if payload.movement_type == MovementType.SOLD:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Use /deductions to record sales.")
    if payload.quantity == 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Quantity must not be zero.")

    item = await ledger.get_item(item_id)
    _require_staff(actor, item.restaurant_id)
    movement = await ledger.adjust(
        item.restaurant_id, item_id, payload.quantity, payload.movement_type,
        reason=payload.reason, reference=payload.reference, actor_id=actor.audit_id,
    )
    return SuccessResponse(data=_movement_response(movement))
