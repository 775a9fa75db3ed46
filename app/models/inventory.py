from enum import Enum
from tortoise import fields, models
import uuid

from app.core.errors import IllegalState


class MovementType(str, Enum):
    RECEIVED = "RECEIVED"
    USED = "USED"
    WASTED = "WASTED"
    ADJUSTED = "ADJUSTED"
    SOLD = "SOLD"
    RETURNED = "RETURNED"
    TRANSFERRED = "TRANSFERRED"


class InventoryItem(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="inventory_items")
    name = fields.CharField(max_length=255)
    unit = fields.CharField(max_length=16)
    # Cache of the ledger: always equals the sum of this item's movement deltas
    current_stock = fields.DecimalField(max_digits=14, decimal_places=3, default=0)
    reorder_threshold = fields.DecimalField(max_digits=14, decimal_places=3, default=0) # For low stock alert
    average_cost = fields.DecimalField(max_digits=12, decimal_places=4, default=0)
    is_active = fields.BooleanField(default=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "inventory_items"
        indexes = [
            ("restaurant_id", "is_active"),
        ]

    @property
    def needs_reorder(self) -> bool:
        return self.current_stock <= self.reorder_threshold


class StockMovement(models.Model):
    """
    Immutable ledger entry. `new_balance = previous_balance + quantity` and
    `new_balance` equals the item's stock at commit time.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    inventory_item = fields.ForeignKeyField("models.InventoryItem", related_name="movements")
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="stock_movements")
    movement_type = fields.CharEnumField(MovementType, max_length=16)
    quantity = fields.DecimalField(max_digits=14, decimal_places=3)  # Signed delta
    previous_balance = fields.DecimalField(max_digits=14, decimal_places=3)
    new_balance = fields.DecimalField(max_digits=14, decimal_places=3)
    unit_cost = fields.DecimalField(max_digits=12, decimal_places=4, default=0)
    total_cost = fields.DecimalField(max_digits=14, decimal_places=4, default=0)
    reason = fields.TextField(null=True)
    reference = fields.CharField(max_length=64, null=True)  # order id / purchase order id / waste id
    actor_id = fields.CharField(max_length=128, null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "stock_movements"
        ordering = ["created_at"]
        indexes = [
            ("inventory_item_id", "created_at"),
            ("restaurant_id", "created_at"),
            ("reference",),
        ]

    async def save(self, *args, **kwargs) -> None:
        if self._saved_in_db:
            raise IllegalState("Stock movements are immutable once recorded.")
        await super().save(*args, **kwargs)

    async def delete(self, *args, **kwargs) -> None:
        raise IllegalState("Stock movements cannot be deleted.")
