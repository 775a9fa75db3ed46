"""Outbound delivery of new orders to the external delivery platform."""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

import httpx

from app.core.config import (
    PARTNER_CURRENCY,
    PARTNER_SOURCE_NAME,
    PARTNER_WEBHOOK_API_KEY,
    PARTNER_WEBHOOK_TIMEOUT,
    PARTNER_WEBHOOK_URL,
)
from app.core.errors import NotificationSinkError
from app.notifications.types import Notification, OrderEventType
from app.schemas.order import OrderItemSnapshot, OrderSnapshot, RegisteredCustomer

log = logging.getLogger("notifications.webhook")


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def money(amount: Decimal, currency: str, type_name: str) -> Dict[str, Any]:
    return {
        "amount": to_minor_units(amount),
        "currencyCode": currency,
        "formattedAmount": f"{currency}{Decimal(amount):.2f}",
        "$type": type_name,
    }


def _price(unit_price: Decimal, total: Decimal, currency: str) -> Dict[str, Any]:
    return {
        "unitPrice": money(unit_price, currency, "UnitPrice"),
        "discountAmount": money(Decimal("0"), currency, "DiscountAmount"),
        "taxAmount": money(Decimal("0"), currency, "TaxAmount"),
        "totalPrice": money(total, currency, "TotalPrice"),
        "$type": "Price",
    }


def _items(items: List[OrderItemSnapshot], currency: str) -> List[Dict[str, Any]]:
    return [
        {
            "id": str(item.menu_item_id),
            "name": item.name,
            "quantity": item.quantity,
            "price": _price(item.unit_price, item.line_total, currency),
            "modifiers": [
                {
                    "id": mod.option_id,
                    "name": mod.name,
                    "quantity": mod.quantity,
                    "price": _price(mod.price, mod.price * mod.quantity, currency),
                    "$type": "Modifier",
                }
                for mod in item.modifiers
            ],
            "instructions": item.special_instructions,
            "$type": "Item",
        }
        for item in items
    ]


def build_partner_payload(order: OrderSnapshot, currency: str = PARTNER_CURRENCY,
                          source_name: str = PARTNER_SOURCE_NAME) -> Dict[str, Any]:
    """Transforms an order into the delivery platform's schema. Amounts are in minor units."""
    if isinstance(order.customer, RegisteredCustomer):
        customer = {"name": order.customer.user_id, "externalId": order.customer.user_id, "$type": "Customer"}
    else:
        customer = {"name": "Guest", "externalId": None, "$type": "Customer"}

    return {
        "id": str(order.id),
        "storeId": str(order.restaurant_id),
        "displayId": order.order_number,
        "type": "DINE_IN" if order.table_id else "PICK_UP",
        "instructions": order.special_instructions,
        "customer": customer,
        "items": _items(order.items, currency),
        "payment": {
            "status": order.payment_status.value,
            "charges": {
                "subTotal": money(order.subtotal, currency, "SubTotal"),
                "serviceCharge": money(order.service_charge, currency, "ServiceCharge"),
                "tip": money(order.tip, currency, "Tip"),
                "discount": money(order.loyalty_discount, currency, "Discount"),
                "tax": money(order.tax, currency, "Tax"),
                "total": money(order.total, currency, "Total"),
                "$type": "Charges",
            },
            "$type": "Payment",
        },
        "source": {
            "name": source_name,
            "uniqueOrderId": str(order.id),
            "channel": source_name,
            "$type": "Source",
        },
        "status": "OrderAccepted",
        "placedAt": order.created_at.isoformat(),
        "externalReferenceId": str(order.id),
        "$type": "WebhookPayload",
    }


class PartnerWebhookSink:
    """
    Delivers brand-new orders to the partner webhook. Only fires for
    OrderCreated and only when a URL is configured. No automatic retry.
    """
    name = "partner_webhook"

    def __init__(
        self,
        url: str = PARTNER_WEBHOOK_URL,
        api_key: str = PARTNER_WEBHOOK_API_KEY,
        timeout: float = PARTNER_WEBHOOK_TIMEOUT,
        currency: str = PARTNER_CURRENCY,
        source_name: str = PARTNER_SOURCE_NAME,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.currency = currency
        self.source_name = source_name
        self.transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def send(self, notification: Notification) -> None:
        if notification.event_type != OrderEventType.ORDER_CREATED or not self.enabled:
            return

        order = notification.order
        payload = build_partner_payload(order, self.currency, self.source_name)
        headers = {"Content-Type": "application/json", "User-Agent": f"{self.source_name}-Webhook/1.0"}
        if self.api_key:
            headers["X-API-KEY"] = self.api_key

        log.info(f"Sending order {order.order_number} ({order.id}) to delivery platform")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationSinkError(self.name, f"delivery failed: {e}", order_id=str(order.id)) from e
        log.info(f"Delivery platform accepted order {order.id} (HTTP {response.status_code})")
