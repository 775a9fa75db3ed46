from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from tortoise.transactions import in_transaction

from app.core.errors import IllegalState, NotFound
from app.core.locks import KeyedLocks
from app.models.inventory import InventoryItem, MovementType, StockMovement


class LedgerStore:
    """
    Durable storage for inventory items and their stock movement ledger.

    Every balance change goes through `record_movement`, which writes the new
    balance on the item and the matching immutable movement in one connection,
    so `InventoryItem.current_stock` always equals the sum of its movements.
    """

    def __init__(self, locks: Optional[KeyedLocks] = None):
        self.locks = locks or KeyedLocks()

    async def get_item(self, item_id: UUID) -> InventoryItem:
        item = await InventoryItem.get_or_none(id=item_id)
        if not item:
            raise NotFound(f"Inventory item {item_id} not found.")
        return item

    async def fetch_items(self, restaurant_id: UUID, item_ids: Iterable[UUID]) -> Dict[UUID, InventoryItem]:
        """Read-only lookup of active items of one restaurant."""
        items = await InventoryItem.filter(
            id__in=list(set(item_ids)), restaurant_id=restaurant_id, is_active=True
        )
        return {item.id: item for item in items}

    @asynccontextmanager
    async def locked_items(
        self, restaurant_id: UUID, item_ids: Iterable[UUID]
    ) -> AsyncIterator[Tuple[Any, Dict[UUID, InventoryItem]]]:
        """
        Critical section for a check-then-write on several items.

        Holds the in-process locks for `item_ids` and a DB transaction with the
        rows locked FOR UPDATE. Yields the connection and the freshly read items.
        Anything raised inside rolls the whole transaction back.
        """
        ids = list(set(item_ids))
        async with self.locks.hold(ids):
            async with in_transaction() as conn:
                items = await InventoryItem.filter(
                    id__in=ids, restaurant_id=restaurant_id, is_active=True
                ).using_db(conn).select_for_update()
                yield conn, {item.id: item for item in items}

    async def record_movement(
        self,
        item: InventoryItem,
        delta: Decimal,
        movement_type: MovementType,
        conn: Any,
        reason: Optional[str] = None,
        reference: Optional[str] = None,
        actor_id: Optional[str] = None,
        unit_cost: Optional[Decimal] = None,
    ) -> StockMovement:
        """Applies `delta` to the item's balance and appends the ledger entry."""
        previous = item.current_stock
        new_balance = previous + delta
        if new_balance < 0:
            raise IllegalState(
                f"Movement of {delta} {item.unit} would leave {item.name} negative ({new_balance}).",
                inventory_item_id=str(item.id),
            )

        item.current_stock = new_balance
        await item.save(update_fields=["current_stock", "updated_at"], using_db=conn)

        cost = item.average_cost if unit_cost is None else unit_cost
        return await StockMovement.create(
            inventory_item_id=item.id,
            restaurant_id=item.restaurant_id,
            movement_type=movement_type,
            quantity=delta,
            previous_balance=previous,
            new_balance=new_balance,
            unit_cost=cost,
            total_cost=abs(delta) * cost,
            reason=reason,
            reference=reference,
            actor_id=actor_id,
            using_db=conn,
        )

    async def adjust(
        self,
        restaurant_id: UUID,
        item_id: UUID,
        delta: Decimal,
        movement_type: MovementType,
        reason: Optional[str] = None,
        reference: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> StockMovement:
        """Stand-alone movement for receiving, waste and manual adjustment flows."""
        async with self.locked_items(restaurant_id, [item_id]) as (conn, items):
            item = items.get(item_id)
            if not item:
                raise NotFound(f"Inventory item {item_id} not found for restaurant {restaurant_id}.")
            return await self.record_movement(
                item, delta, movement_type, conn,
                reason=reason, reference=reference, actor_id=actor_id,
            )

    async def create_item(
        self,
        restaurant_id: UUID,
        name: str,
        unit: str,
        opening_stock: Decimal = Decimal("0"),
        reorder_threshold: Decimal = Decimal("0"),
        average_cost: Decimal = Decimal("0"),
        actor_id: Optional[str] = None,
    ) -> InventoryItem:
        """Creates an item; a non-zero opening stock is booked as a RECEIVED movement."""
        async with in_transaction() as conn:
            item = await InventoryItem.create(
                restaurant_id=restaurant_id,
                name=name,
                unit=unit,
                current_stock=Decimal("0"),
                reorder_threshold=reorder_threshold,
                average_cost=average_cost,
                using_db=conn,
            )
            if opening_stock > 0:
                await self.record_movement(
                    item, opening_stock, MovementType.RECEIVED, conn,
                    reason="Opening stock", actor_id=actor_id,
                )
        return item

    async def list_movements(self, item_id: UUID, limit: int = 100) -> List[StockMovement]:
        return await StockMovement.filter(inventory_item_id=item_id).order_by("created_at").limit(limit)
