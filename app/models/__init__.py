# app/models/__init__.py
from .inventory import InventoryItem, MovementType, StockMovement
from .order import (
    ItemPreparationStatus,
    MenuItem,
    Order,
    OrderAlert,
    OrderItem,
    OrderStatus,
    OrderStatusEntry,
    PaymentStatus,
    Restaurant,
    ServiceChargeType,
    TERMINAL_STATUSES,
)
from .outbox import OutboxEvent
from .recipe import Recipe, RecipeIngredient

# Export all models
__all__ = [
    "InventoryItem",
    "ItemPreparationStatus",
    "MenuItem",
    "MovementType",
    "Order",
    "OrderAlert",
    "OrderItem",
    "OrderStatus",
    "OrderStatusEntry",
    "OutboxEvent",
    "PaymentStatus",
    "Recipe",
    "RecipeIngredient",
    "Restaurant",
    "ServiceChargeType",
    "StockMovement",
    "TERMINAL_STATUSES",
]
