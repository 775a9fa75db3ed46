import pytest
import pytest_asyncio
from tortoise import Tortoise

from app.core.db import MODELS_MODULES
from app.notifications.event_sink import OutboxEventSink
from app.notifications.fanout import Notifier
from app.notifications.realtime import RealtimeHub, RealtimeSink
from app.notifications.webhook import PartnerWebhookSink
from app.repositories.ledger_store import LedgerStore
from app.repositories.order_store import OrderStore
from app.services.checkout import CheckoutService
from app.services.order_state_machine import OrderStateMachine
from app.services.recipe_resolver import RecipeResolver
from app.services.stock_deduction import StockDeductionEngine


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory SQLite database per test."""
    await Tortoise.init(db_url="sqlite://:memory:", modules={"models": MODELS_MODULES})
    await Tortoise.generate_schemas()
    yield
    await Tortoise.close_connections()


@pytest.fixture
def ledger():
    return LedgerStore()


@pytest.fixture
def engine(ledger):
    return StockDeductionEngine(ledger, RecipeResolver())


@pytest.fixture
def hub():
    return RealtimeHub(queue_size=10)


@pytest.fixture
def notifier(hub):
    # Webhook URL left empty: the partner sink is wired but disabled
    return Notifier(RealtimeSink(hub), OutboxEventSink(), PartnerWebhookSink(url=""), timeout=1)


@pytest.fixture
def orders():
    return OrderStore()


@pytest.fixture
def machine(orders, engine, notifier):
    return OrderStateMachine(orders, engine, notifier, default_preparation_minutes=15)


@pytest.fixture
def checkout(orders, notifier):
    return CheckoutService(orders, notifier)
