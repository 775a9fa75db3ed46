from decimal import Decimal
from enum import Enum
from typing import List, Optional
import uuid
from datetime import datetime

from pydantic import BaseModel, Field, computed_field

from app.models.inventory import MovementType


class DeductionLine(BaseModel):
    """N units of one catalog item sold."""
    catalog_item_id: uuid.UUID
    quantity_sold: int = Field(..., gt=0)


class DeductionRequest(BaseModel):
    """Inter-service stock-deduction trigger."""
    restaurant_id: uuid.UUID
    items: List[DeductionLine] = Field(..., min_length=1)
    order_id: Optional[uuid.UUID] = None


class AvailabilityRequest(BaseModel):
    restaurant_id: uuid.UUID
    items: List[DeductionLine] = Field(..., min_length=1)


class LineOutcome(str, Enum):
    COMMITTED = "committed"
    SKIPPED = "skipped"
    FAILED = "failed"


class LineOutcomeReason(str, Enum):
    NO_RECIPE = "no-recipe"
    EMPTY_RECIPE = "empty-recipe"
    INSUFFICIENT_STOCK = "insufficient-stock"
    UNIT_MISMATCH = "unit-mismatch"


class IngredientDeduction(BaseModel):
    inventory_item_id: uuid.UUID
    name: str
    unit: str
    quantity_deducted: Decimal
    previous_stock: Decimal
    new_stock: Decimal


class IngredientShortage(BaseModel):
    inventory_item_id: uuid.UUID
    name: str
    unit: str
    required: Decimal
    available: Decimal


class LineResult(BaseModel):
    catalog_item_id: uuid.UUID
    quantity_sold: int
    outcome: LineOutcome
    reason: Optional[LineOutcomeReason] = None
    recipe_name: Optional[str] = None
    deductions: List[IngredientDeduction] = Field(default_factory=list)
    shortages: List[IngredientShortage] = Field(default_factory=list)
    detail: Optional[str] = None


class BatchResult(BaseModel):
    processed_lines: List[LineResult] = Field(default_factory=list)
    failed_lines: List[LineResult] = Field(default_factory=list)
    skipped_lines: List[LineResult] = Field(default_factory=list)

    @computed_field
    @property
    def success(self) -> bool:
        # Partial success: at least one line committed. Callers inspect the failed/skipped lists.
        return len(self.processed_lines) > 0

    @property
    def degraded(self) -> bool:
        return bool(self.failed_lines or self.skipped_lines)

    def add(self, line: LineResult) -> None:
        if line.outcome == LineOutcome.COMMITTED:
            self.processed_lines.append(line)
        elif line.outcome == LineOutcome.SKIPPED:
            self.skipped_lines.append(line)
        else:
            self.failed_lines.append(line)


class IngredientAvailability(BaseModel):
    inventory_item_id: uuid.UUID
    name: str
    unit: str
    required: Decimal
    available: Optional[Decimal] = None
    sufficient: bool


class LineAvailability(BaseModel):
    catalog_item_id: uuid.UUID
    quantity_sold: int
    available: bool
    reason: Optional[LineOutcomeReason] = None
    recipe_name: Optional[str] = None
    ingredients: List[IngredientAvailability] = Field(default_factory=list)


class AvailabilityReport(BaseModel):
    available: bool
    lines: List[LineAvailability]

    def without_stock_levels(self) -> "AvailabilityReport":
        """Copy for callers outside the restaurant: only the sufficient flags remain."""
        lines = [
            line.model_copy(update={
                "ingredients": [i.model_copy(update={"available": None}) for i in line.ingredients]
            })
            for line in self.lines
        ]
        return self.model_copy(update={"lines": lines})


class InventoryItemRequest(BaseModel):
    restaurant_id: uuid.UUID
    name: str = Field(..., description="Name of the ingredient (e.g. Mozzarella).")
    unit: str = Field(..., description="Unit of measure the stock is counted in (g, ml, pcs...).")
    opening_stock: Decimal = Field(Decimal("0"), ge=0, description="Initial stock, recorded as a RECEIVED movement.")
    reorder_threshold: Decimal = Field(Decimal("0"), ge=0, description="Stock level at or below which a low stock alert is emitted.")
    average_cost: Decimal = Field(Decimal("0"), ge=0)


class InventoryItemResponse(BaseModel):
    id: uuid.UUID
    restaurant_id: uuid.UUID
    name: str
    unit: str
    current_stock: Decimal
    reorder_threshold: Decimal
    average_cost: Decimal
    is_active: bool
    needs_reorder: bool


class StockMovementResponse(BaseModel):
    id: uuid.UUID
    inventory_item_id: uuid.UUID
    movement_type: str
    quantity: Decimal
    previous_balance: Decimal
    new_balance: Decimal
    unit_cost: Decimal
    total_cost: Decimal
    reason: Optional[str] = None
    reference: Optional[str] = None
    actor_id: Optional[str] = None
    created_at: datetime


class StockAdjustmentRequest(BaseModel):
    """Receiving, waste and manual corrections. `quantity` is the signed change in stock."""
    movement_type: MovementType
    quantity: Decimal
    reason: Optional[str] = None
    reference: Optional[str] = None
