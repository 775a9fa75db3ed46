from enum import Enum
from tortoise import fields, models
import uuid


class OrderStatus(str, Enum):
    PENDING = "PENDING"      # Created by checkout, waiting for the restaurant
    ACCEPTED = "ACCEPTED"
    PREPARING = "PREPARING"
    READY = "READY"
    DELIVERED = "DELIVERED"  # Only COMPLETED may follow
    COMPLETED = "COMPLETED"  # Triggers stock deduction
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REJECTED})


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


class ItemPreparationStatus(str, Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    SERVED = "served"


class ServiceChargeType(str, Enum):
    PERCENTAGE = "percentage"
    FLAT = "flat"


class Restaurant(models.Model):
    id = fields.UUIDField(primary_key=True)
    name = fields.CharField(max_length=255)
    is_active = fields.BooleanField(default=True)
    service_charge_type = fields.CharEnumField(ServiceChargeType, max_length=16, null=True)
    service_charge_value = fields.DecimalField(max_digits=12, decimal_places=2, default=0)
    service_charge_min = fields.DecimalField(max_digits=12, decimal_places=2, null=True)
    service_charge_max = fields.DecimalField(max_digits=12, decimal_places=2, null=True)

    class Meta:
        table = "restaurants"
        indexes = [
            ("is_active",),  # For filtering active restaurants
        ]


class MenuItem(models.Model):
    id = fields.UUIDField(primary_key=True)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="menu_items")
    name = fields.CharField(max_length=255)
    price = fields.DecimalField(max_digits=12, decimal_places=2)
    is_active = fields.BooleanField(default=True)

    class Meta:
        table = "menu_items"
        indexes = [
            ("restaurant_id",),  # Fast restaurant menu queries
            ("restaurant_id", "is_active"),  # Composite: restaurant's active items
        ]


class Order(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    order_number = fields.CharField(max_length=32, unique=True)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="orders")
    table_id = fields.UUIDField(null=True)
    # Customer identity: exactly one of the two is set (see schemas.order.CustomerIdentity)
    customer_user_id = fields.CharField(max_length=64, null=True)
    guest_token = fields.CharField(max_length=128, null=True)
    status = fields.CharEnumField(OrderStatus, max_length=16, default=OrderStatus.PENDING)
    payment_status = fields.CharEnumField(PaymentStatus, max_length=24, default=PaymentStatus.PENDING)
    subtotal = fields.DecimalField(max_digits=14, decimal_places=2, default=0)
    tax = fields.DecimalField(max_digits=14, decimal_places=2, default=0)
    tip = fields.DecimalField(max_digits=14, decimal_places=2, default=0)
    service_charge = fields.DecimalField(max_digits=14, decimal_places=2, default=0)
    loyalty_discount = fields.DecimalField(max_digits=14, decimal_places=2, default=0)
    total = fields.DecimalField(max_digits=14, decimal_places=2, default=0)
    special_instructions = fields.TextField(null=True)
    estimated_preparation_minutes = fields.IntField(null=True)
    cancellation_reason = fields.TextField(null=True)
    completed_at = fields.DatetimeField(null=True)
    # Optimistic lock: every write is conditional on the version that was read
    version = fields.IntField(default=0)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "orders"
        indexes = [
            ("restaurant_id",),          # Restaurant order queries
            ("status",),                 # Status-based filtering
            ("customer_user_id",),       # User order history
            ("restaurant_id", "status"), # Live dashboards
            ("created_at",),             # Time-based queries
        ]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class OrderItem(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    order = fields.ForeignKeyField("models.Order", related_name="items")
    menu_item = fields.ForeignKeyField("models.MenuItem", related_name="order_items")
    name = fields.CharField(max_length=255)  # Snapshot of the catalog name at checkout
    quantity = fields.IntField()
    unit_price = fields.DecimalField(max_digits=12, decimal_places=2)
    # [{"option_id", "name", "quantity", "price"}]
    modifiers = fields.JSONField(default=list)
    special_instructions = fields.TextField(null=True)
    line_total = fields.DecimalField(max_digits=14, decimal_places=2)
    preparation_status = fields.CharEnumField(ItemPreparationStatus, max_length=16, null=True)
    position = fields.IntField(default=0)

    class Meta:
        table = "order_items"
        ordering = ["position"]
        indexes = [
            ("order_id",),              # Order line items
            ("menu_item_id",),          # Menu item popularity
        ]


class OrderStatusEntry(models.Model):
    """Append-only status history. Rows are inserted, never updated."""
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    order = fields.ForeignKeyField("models.Order", related_name="status_history")
    status = fields.CharEnumField(OrderStatus, max_length=16)
    note = fields.TextField(null=True)
    actor_id = fields.CharField(max_length=128, null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "order_status_history"
        ordering = ["created_at"]
        indexes = [
            ("order_id",),
        ]


class OrderAlert(models.Model):
    """Append-only alert log (kitchen alerts, inventory discrepancies)."""
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    order = fields.ForeignKeyField("models.Order", related_name="alerts")
    message = fields.TextField()
    severity = fields.CharField(max_length=16, default="info")
    actor_id = fields.CharField(max_length=128, null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "order_alerts"
        ordering = ["created_at"]
        indexes = [
            ("order_id",),
        ]
