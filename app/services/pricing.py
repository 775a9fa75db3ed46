from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from app.core.config import MONEY_QUANT
from app.core.errors import InvalidOrder, NotFound
from app.models.order import MenuItem, Restaurant, ServiceChargeType
from app.schemas.order import ModifierSelection, OrderItemRequest


def quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def line_total(unit_price: Decimal, quantity: int, modifiers: Sequence[ModifierSelection]) -> Decimal:
    """quantity x (unit price + every modifier price x modifier quantity)"""
    modifier_total = sum((m.price * m.quantity for m in modifiers), Decimal("0"))
    return quantize_money((unit_price + modifier_total) * quantity)


@dataclass
class PricedLine:
    menu_item_id: UUID
    name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    modifiers: List[Dict[str, Any]] = field(default_factory=list)
    special_instructions: Optional[str] = None


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    service_charge: Decimal
    tip: Decimal
    loyalty_discount: Decimal
    tax: Decimal
    total: Decimal

    def as_fields(self) -> Dict[str, Decimal]:
        return {
            "subtotal": self.subtotal,
            "service_charge": self.service_charge,
            "tip": self.tip,
            "loyalty_discount": self.loyalty_discount,
            "tax": self.tax,
            "total": self.total,
        }


def service_charge_for(restaurant: Restaurant, subtotal: Decimal) -> Decimal:
    if restaurant.service_charge_type is None:
        return Decimal("0.00")
    if restaurant.service_charge_type == ServiceChargeType.PERCENTAGE:
        charge = subtotal * restaurant.service_charge_value / Decimal("100")
    else:
        charge = restaurant.service_charge_value
    if restaurant.service_charge_min is not None:
        charge = max(charge, restaurant.service_charge_min)
    if restaurant.service_charge_max is not None:
        charge = min(charge, restaurant.service_charge_max)
    return quantize_money(charge)


def compute_totals(
    subtotal: Decimal, restaurant: Restaurant, tip: Decimal = Decimal("0"), loyalty_discount: Decimal = Decimal("0")
) -> OrderTotals:
    """
    total = subtotal + service charge + tip - loyalty discount. Tax is always 0.
    The discount is clamped so the total never goes negative.
    """
    subtotal = quantize_money(subtotal)
    service_charge = service_charge_for(restaurant, subtotal)
    tip = quantize_money(tip)
    gross = subtotal + service_charge + tip
    discount = min(max(quantize_money(loyalty_discount), Decimal("0.00")), gross)
    return OrderTotals(
        subtotal=subtotal,
        service_charge=service_charge,
        tip=tip,
        loyalty_discount=discount,
        tax=Decimal("0.00"),
        total=gross - discount,
    )


async def load_restaurant(restaurant_id: UUID, conn: Any = None) -> Restaurant:
    restaurant = await Restaurant.get_or_none(id=restaurant_id).using_db(conn)
    if not restaurant or not restaurant.is_active:
        raise NotFound("Restaurant not found or is inactive.", restaurant_id=str(restaurant_id))
    return restaurant


async def price_items(restaurant_id: UUID, items: Sequence[OrderItemRequest], conn: Any = None) -> List[PricedLine]:
    """Resolves every requested item against the restaurant's active catalog and prices it."""
    if not items:
        raise InvalidOrder("Order must contain items.")
    for it in items:
        if it.quantity < 1:
            raise InvalidOrder(f"Quantity for menu item {it.menu_item_id} must be at least 1.")

    menu_item_ids = list({it.menu_item_id for it in items})
    menu_items = await MenuItem.filter(
        id__in=menu_item_ids, restaurant_id=restaurant_id, is_active=True
    ).using_db(conn)
    menu_map = {m.id: m for m in menu_items}

    priced = []
    for it in items:
        menu = menu_map.get(it.menu_item_id)
        if not menu:
            raise NotFound(f"Menu item {it.menu_item_id} not found or inactive.")
        priced.append(PricedLine(
            menu_item_id=menu.id,
            name=menu.name,
            quantity=it.quantity,
            unit_price=menu.price,
            line_total=line_total(menu.price, it.quantity, it.modifiers),
            modifiers=[m.model_dump(mode="json") for m in it.modifiers],
            special_instructions=it.special_instructions,
        ))
    return priced
