from datetime import datetime
from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union
import uuid

from pydantic import BaseModel, Field

from app.models.order import ItemPreparationStatus, OrderStatus, PaymentStatus
from app.schemas.inventory import BatchResult


class RegisteredCustomer(BaseModel):
    kind: Literal["registered"] = "registered"
    user_id: str = Field(..., min_length=1)


class GuestCustomer(BaseModel):
    kind: Literal["guest"] = "guest"
    token: str = Field(..., min_length=1)


# Exactly one identity per order: a registered user or an ephemeral guest/device token.
CustomerIdentity = Annotated[Union[RegisteredCustomer, GuestCustomer], Field(discriminator="kind")]


class ModifierSelection(BaseModel):
    option_id: str
    name: str = ""
    quantity: int = Field(1, ge=1)
    price: Decimal = Field(Decimal("0"), ge=0)


class OrderItemRequest(BaseModel):
    """Schema for a single item in the order request."""
    menu_item_id: uuid.UUID
    quantity: int
    modifiers: List[ModifierSelection] = Field(default_factory=list)
    special_instructions: Optional[str] = None


class OrderRequest(BaseModel):
    """Schema for the full checkout request body."""
    restaurant_id: uuid.UUID
    customer: CustomerIdentity
    items: List[OrderItemRequest]
    table_id: Optional[uuid.UUID] = None
    tip: Decimal = Field(Decimal("0"), ge=0)
    loyalty_discount: Decimal = Field(Decimal("0"), ge=0)
    special_instructions: Optional[str] = None


class OrderDetailsPatch(BaseModel):
    """Bounded update path: items and instructions only, never status."""
    items: Optional[List[OrderItemRequest]] = None
    special_instructions: Optional[str] = None
    tip: Optional[Decimal] = Field(None, ge=0)


class OrderStatusUpdate(BaseModel):
    """Raw status value; validated against OrderStatus by the state machine."""
    status: str
    reason: Optional[str] = None


class PaymentStatusUpdate(BaseModel):
    payment_status: str


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class AlertRequest(BaseModel):
    message: str = Field(..., min_length=1)
    severity: Literal["info", "warning", "critical"] = "info"


class ItemStatusUpdate(BaseModel):
    status: ItemPreparationStatus


class OrderItemSnapshot(BaseModel):
    id: uuid.UUID
    menu_item_id: uuid.UUID
    name: str
    quantity: int
    unit_price: Decimal
    modifiers: List[ModifierSelection] = Field(default_factory=list)
    special_instructions: Optional[str] = None
    line_total: Decimal
    preparation_status: Optional[ItemPreparationStatus] = None


class StatusHistoryEntry(BaseModel):
    status: OrderStatus
    timestamp: datetime
    note: Optional[str] = None
    actor_id: Optional[str] = None


class AlertEntry(BaseModel):
    message: str
    severity: str
    timestamp: datetime
    actor_id: Optional[str] = None


class OrderSnapshot(BaseModel):
    """Read model of an order, handed to API responses and notification sinks."""
    id: uuid.UUID
    order_number: str
    restaurant_id: uuid.UUID
    table_id: Optional[uuid.UUID] = None
    customer: CustomerIdentity
    items: List[OrderItemSnapshot]
    status: OrderStatus
    payment_status: PaymentStatus
    subtotal: Decimal
    tax: Decimal
    tip: Decimal
    service_charge: Decimal
    loyalty_discount: Decimal
    total: Decimal
    special_instructions: Optional[str] = None
    estimated_preparation_minutes: Optional[int] = None
    cancellation_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    alerts: List[AlertEntry] = Field(default_factory=list)
    version: int
    created_at: datetime
    updated_at: datetime


class TransitionResult(BaseModel):
    order: OrderSnapshot
    previous_status: OrderStatus
    deduction: Optional[BatchResult] = None
    deduction_error: Optional[str] = None


class PaymentTransitionResult(BaseModel):
    order: OrderSnapshot
    previous_payment_status: PaymentStatus
