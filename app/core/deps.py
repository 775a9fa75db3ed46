"""
Collaborators are built once at startup and stored on `app.state.container`.
Routes receive them through `Depends`, which is also where tests swap them out.
"""
from dataclasses import dataclass
from typing import List, Optional
import uuid

from fastapi import Depends, Header, HTTPException, Request, status

from app.core.config import DEDUCTION_SERVICE_URL, DEFAULT_PREPARATION_MINUTES, NOTIFICATION_SINK_TIMEOUT
from app.notifications.fanout import Notifier, build_notifier
from app.notifications.realtime import RealtimeHub, RealtimeSink
from app.repositories.ledger_store import LedgerStore
from app.repositories.order_store import OrderStore
from app.schemas.actor import Actor, ActorRole
from app.services.checkout import CheckoutService
from app.services.deduction_client import HttpDeductionClient
from app.services.order_state_machine import OrderStateMachine, StockDeducter
from app.services.recipe_resolver import RecipeResolver
from app.services.stock_deduction import StockDeductionEngine


@dataclass
class Container:
    hub: RealtimeHub
    notifier: Notifier
    orders: OrderStore
    ledger: LedgerStore
    engine: StockDeductionEngine
    state_machine: OrderStateMachine
    checkout: CheckoutService


def build_container(
    deduction_service_url: str = DEDUCTION_SERVICE_URL,
    notifier: Optional[Notifier] = None,
) -> Container:
    hub = RealtimeHub()
    notifier = notifier or build_notifier(RealtimeSink(hub), timeout=NOTIFICATION_SINK_TIMEOUT)
    orders = OrderStore()
    ledger = LedgerStore()
    engine = StockDeductionEngine(ledger, RecipeResolver())
    # Completion deducts in-process unless inventory is served by another deployment
    deducter: StockDeducter = HttpDeductionClient(deduction_service_url) if deduction_service_url else engine
    return Container(
        hub=hub,
        notifier=notifier,
        orders=orders,
        ledger=ledger,
        engine=engine,
        state_machine=OrderStateMachine(orders, deducter, notifier, DEFAULT_PREPARATION_MINUTES),
        checkout=CheckoutService(orders, notifier),
    )


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_state_machine(container: Container = Depends(get_container)) -> OrderStateMachine:
    return container.state_machine


def get_checkout(container: Container = Depends(get_container)) -> CheckoutService:
    return container.checkout


def get_order_store(container: Container = Depends(get_container)) -> OrderStore:
    return container.orders


def get_deduction_engine(container: Container = Depends(get_container)) -> StockDeductionEngine:
    return container.engine


def get_ledger(container: Container = Depends(get_container)) -> LedgerStore:
    return container.ledger


def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_guest_token: Optional[str] = Header(None),
    x_actor_role: ActorRole = Header(ActorRole.CUSTOMER),
    x_restaurant_scope: Optional[str] = Header(None, description="Comma-separated restaurant ids"),
) -> Actor:
    """The authentication layer in front of this service resolves these headers."""
    restaurant_ids: List[uuid.UUID] = []
    if x_restaurant_scope:
        try:
            restaurant_ids = [uuid.UUID(part.strip()) for part in x_restaurant_scope.split(",") if part.strip()]
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="X-Restaurant-Scope must be a comma-separated list of UUIDs.",
            ) from None
    return Actor(
        actor_id=x_actor_id,
        guest_token=x_guest_token,
        role=x_actor_role,
        restaurant_ids=restaurant_ids,
    )
