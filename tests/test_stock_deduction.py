import asyncio
from decimal import Decimal
from unittest.mock import patch

import pytest
from tortoise.exceptions import OperationalError

from app.core.errors import IllegalState, StorageError
from app.models.inventory import InventoryItem, MovementType, StockMovement
from app.models.outbox import OutboxEvent
from app.schemas.inventory import DeductionLine, LineOutcome, LineOutcomeReason
from tests.factories import make_ingredient, make_menu_item, make_recipe, make_restaurant


async def ledger_sum(item_id) -> Decimal:
    movements = await StockMovement.filter(inventory_item_id=item_id)
    return sum((m.quantity for m in movements), Decimal("0"))


@pytest.mark.asyncio
async def test_insufficient_stock_leaves_stock_unchanged(db, ledger, engine):
    """Pizza x2 needs 400g cheese but only 350g are on hand."""
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    cheese = await make_ingredient(ledger, restaurant, "Cheese", "g", stock="350")
    await make_recipe(restaurant, pizza, [(cheese, "200", "g")])

    result = await engine.deduct(restaurant.id, [DeductionLine(catalog_item_id=pizza.id, quantity_sold=2)])

    assert result.success is False
    assert len(result.failed_lines) == 1
    line = result.failed_lines[0]
    assert line.reason == LineOutcomeReason.INSUFFICIENT_STOCK
    assert line.shortages[0].required == Decimal("400")
    assert line.shortages[0].available == Decimal("350")

    refreshed = await InventoryItem.get(id=cheese.id)
    assert refreshed.current_stock == Decimal("350")
    assert await StockMovement.filter(inventory_item_id=cheese.id, movement_type=MovementType.SOLD).count() == 0


@pytest.mark.asyncio
async def test_successful_deduction_records_one_movement(db, ledger, engine):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    cheese = await make_ingredient(ledger, restaurant, "Cheese", "g", stock="500")
    await make_recipe(restaurant, pizza, [(cheese, "200", "g")])

    result = await engine.deduct(
        restaurant.id, [DeductionLine(catalog_item_id=pizza.id, quantity_sold=2)], reference="order-1"
    )

    assert result.success is True
    assert len(result.processed_lines) == 1
    assert result.processed_lines[0].deductions[0].new_stock == Decimal("100")

    refreshed = await InventoryItem.get(id=cheese.id)
    assert refreshed.current_stock == Decimal("100")

    sold = await StockMovement.filter(inventory_item_id=cheese.id, movement_type=MovementType.SOLD)
    assert len(sold) == 1
    assert sold[0].previous_balance == Decimal("500")
    assert sold[0].new_balance == Decimal("100")
    assert sold[0].quantity == Decimal("-400")
    assert sold[0].reference == "order-1"


@pytest.mark.asyncio
async def test_line_is_all_or_nothing(db, ledger, engine):
    """Dough is sufficient but cheese is not: neither is deducted."""
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    dough = await make_ingredient(ledger, restaurant, "Dough", "pcs", stock="10")
    cheese = await make_ingredient(ledger, restaurant, "Cheese", "g", stock="100")
    await make_recipe(restaurant, pizza, [(dough, "1", "pcs"), (cheese, "200", "g")])

    result = await engine.deduct(restaurant.id, [DeductionLine(catalog_item_id=pizza.id, quantity_sold=1)])

    assert result.failed_lines[0].reason == LineOutcomeReason.INSUFFICIENT_STOCK
    assert [s.name for s in result.failed_lines[0].shortages] == ["Cheese"]
    assert (await InventoryItem.get(id=dough.id)).current_stock == Decimal("10")
    assert await StockMovement.filter(movement_type=MovementType.SOLD).count() == 0


@pytest.mark.asyncio
async def test_lines_are_independent(db, ledger, engine):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant, "Pizza")
    pasta = await make_menu_item(restaurant, "Pasta")
    drink = await make_menu_item(restaurant, "Soda")
    cheese = await make_ingredient(ledger, restaurant, "Cheese", "g", stock="300")
    penne = await make_ingredient(ledger, restaurant, "Penne", "g", stock="50")
    await make_recipe(restaurant, pizza, [(cheese, "200", "g")])
    await make_recipe(restaurant, pasta, [(penne, "150", "g")])

    result = await engine.deduct(restaurant.id, [
        DeductionLine(catalog_item_id=pasta.id, quantity_sold=1),
        DeductionLine(catalog_item_id=pizza.id, quantity_sold=1),
        DeductionLine(catalog_item_id=drink.id, quantity_sold=3),
    ])

    assert result.success is True
    assert result.degraded is True
    assert [line.catalog_item_id for line in result.processed_lines] == [pizza.id]
    assert result.failed_lines[0].catalog_item_id == pasta.id
    assert result.skipped_lines[0].reason == LineOutcomeReason.NO_RECIPE
    assert (await InventoryItem.get(id=cheese.id)).current_stock == Decimal("100")


@pytest.mark.asyncio
async def test_empty_recipe_is_skipped(db, engine):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    await make_recipe(restaurant, pizza, [])

    result = await engine.deduct(restaurant.id, [DeductionLine(catalog_item_id=pizza.id, quantity_sold=1)])

    assert result.success is False
    assert result.skipped_lines[0].outcome == LineOutcome.SKIPPED
    assert result.skipped_lines[0].reason == LineOutcomeReason.EMPTY_RECIPE


@pytest.mark.asyncio
async def test_recipe_units_are_converted(db, ledger, engine):
    restaurant = await make_restaurant()
    pasta = await make_menu_item(restaurant, "Pasta")
    penne = await make_ingredient(ledger, restaurant, "Penne", "kg", stock="2")
    await make_recipe(restaurant, pasta, [(penne, "250", "g")])

    result = await engine.deduct(restaurant.id, [DeductionLine(catalog_item_id=pasta.id, quantity_sold=2)])

    assert result.processed_lines[0].deductions[0].quantity_deducted == Decimal("0.5")
    assert (await InventoryItem.get(id=penne.id)).current_stock == Decimal("1.5")


@pytest.mark.asyncio
async def test_unit_mismatch_fails_line(db, ledger, engine):
    restaurant = await make_restaurant()
    soup = await make_menu_item(restaurant, "Soup")
    stock = await make_ingredient(ledger, restaurant, "Stock", "ml", stock="1000")
    await make_recipe(restaurant, soup, [(stock, "200", "g")])

    result = await engine.deduct(restaurant.id, [DeductionLine(catalog_item_id=soup.id, quantity_sold=1)])

    assert result.failed_lines[0].reason == LineOutcomeReason.UNIT_MISMATCH
    assert (await InventoryItem.get(id=stock.id)).current_stock == Decimal("1000")


@pytest.mark.asyncio
async def test_highest_active_recipe_version_is_used(db, ledger, engine):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    cheese = await make_ingredient(ledger, restaurant, "Cheese", "g", stock="1000")
    await make_recipe(restaurant, pizza, [(cheese, "200", "g")], version=1)
    await make_recipe(restaurant, pizza, [(cheese, "150", "g")], version=2)

    result = await engine.deduct(restaurant.id, [DeductionLine(catalog_item_id=pizza.id, quantity_sold=1)])

    assert result.processed_lines[0].deductions[0].quantity_deducted == Decimal("150")


@pytest.mark.asyncio
async def test_concurrent_deductions_never_oversell(db, ledger, engine):
    """Two sales needing 50 each against 80 on hand: exactly one wins."""
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    cheese = await make_ingredient(ledger, restaurant, "Cheese", "g", stock="80")
    await make_recipe(restaurant, pizza, [(cheese, "50", "g")])
    line = DeductionLine(catalog_item_id=pizza.id, quantity_sold=1)

    first, second = await asyncio.gather(
        engine.deduct(restaurant.id, [line], reference="order-a"),
        engine.deduct(restaurant.id, [line], reference="order-b"),
    )

    outcomes = sorted([first.success, second.success])
    assert outcomes == [False, True]
    loser = first if not first.success else second
    assert loser.failed_lines[0].reason == LineOutcomeReason.INSUFFICIENT_STOCK
    assert (await InventoryItem.get(id=cheese.id)).current_stock == Decimal("30")


@pytest.mark.asyncio
async def test_ledger_matches_current_stock(db, ledger, engine):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    cheese = await make_ingredient(ledger, restaurant, "Cheese", "g", stock="1000")
    await make_recipe(restaurant, pizza, [(cheese, "120", "g")])

    for quantity in (1, 3, 9, 2):
        await engine.deduct(restaurant.id, [DeductionLine(catalog_item_id=pizza.id, quantity_sold=quantity)])
    await ledger.adjust(restaurant.id, cheese.id, Decimal("-15"), MovementType.WASTED, reason="Dropped")

    item = await InventoryItem.get(id=cheese.id)
    assert item.current_stock == await ledger_sum(cheese.id)
    # 9 x 120g exceeded the remaining 520g and was refused
    assert item.current_stock == Decimal("265")


@pytest.mark.asyncio
async def test_low_stock_alert_is_emitted(db, ledger, engine):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant)
    cheese = await make_ingredient(ledger, restaurant, "Cheese", "g", stock="500", threshold="200")
    await make_recipe(restaurant, pizza, [(cheese, "200", "g")])

    await engine.deduct(restaurant.id, [DeductionLine(catalog_item_id=pizza.id, quantity_sold=1)])
    assert await OutboxEvent.filter(event_type="inventory.low_stock_alert.v1").count() == 0

    await engine.deduct(restaurant.id, [DeductionLine(catalog_item_id=pizza.id, quantity_sold=1)], reference="o-2")
    alerts = await OutboxEvent.filter(event_type="inventory.low_stock_alert.v1")
    assert len(alerts) == 1
    assert alerts[0].aggregate_id == cheese.id
    assert alerts[0].payload["triggered_by"] == "o-2"


@pytest.mark.asyncio
async def test_storage_failure_carries_partial_result(db, ledger, engine):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant, "Pizza")
    pasta = await make_menu_item(restaurant, "Pasta")
    cheese = await make_ingredient(ledger, restaurant, "Cheese", "g", stock="1000")
    penne = await make_ingredient(ledger, restaurant, "Penne", "g", stock="1000")
    await make_recipe(restaurant, pizza, [(cheese, "100", "g")])
    await make_recipe(restaurant, pasta, [(penne, "100", "g")])

    original = ledger.record_movement

    async def flaky(item, *args, **kwargs):
        if item.id == penne.id:
            raise OperationalError("database is locked")
        return await original(item, *args, **kwargs)

    with patch.object(ledger, "record_movement", side_effect=flaky):
        with pytest.raises(StorageError) as exc_info:
            await engine.deduct(restaurant.id, [
                DeductionLine(catalog_item_id=pizza.id, quantity_sold=1),
                DeductionLine(catalog_item_id=pasta.id, quantity_sold=1),
            ])

    partial = exc_info.value.partial
    assert [line.catalog_item_id for line in partial.processed_lines] == [pizza.id]
    # The committed line stays committed, the failed one rolled back
    assert (await InventoryItem.get(id=cheese.id)).current_stock == Decimal("900")
    assert (await InventoryItem.get(id=penne.id)).current_stock == Decimal("1000")


@pytest.mark.asyncio
async def test_availability_check_is_read_only(db, ledger, engine):
    restaurant = await make_restaurant()
    pizza = await make_menu_item(restaurant, "Pizza")
    drink = await make_menu_item(restaurant, "Soda")
    cheese = await make_ingredient(ledger, restaurant, "Cheese", "g", stock="300")
    await make_recipe(restaurant, pizza, [(cheese, "200", "g")])

    report = await engine.check_availability(restaurant.id, [
        DeductionLine(catalog_item_id=pizza.id, quantity_sold=2),
        DeductionLine(catalog_item_id=drink.id, quantity_sold=1),
    ])

    assert report.available is False
    assert report.lines[0].reason == LineOutcomeReason.INSUFFICIENT_STOCK
    assert report.lines[0].ingredients[0].sufficient is False
    assert report.lines[1].available is True
    assert (await InventoryItem.get(id=cheese.id)).current_stock == Decimal("300")


@pytest.mark.asyncio
async def test_movements_are_immutable(db, ledger):
    restaurant = await make_restaurant()
    cheese = await make_ingredient(ledger, restaurant, "Cheese", "g", stock="100")
    movement = await StockMovement.get(inventory_item_id=cheese.id)

    movement.reason = "edited"
    with pytest.raises(IllegalState):
        await movement.save()
    with pytest.raises(IllegalState):
        await movement.delete()


@pytest.mark.asyncio
async def test_movement_cannot_drive_stock_negative(db, ledger):
    restaurant = await make_restaurant()
    cheese = await make_ingredient(ledger, restaurant, "Cheese", "g", stock="100")

    with pytest.raises(IllegalState):
        await ledger.adjust(restaurant.id, cheese.id, Decimal("-150"), MovementType.WASTED)
    assert (await InventoryItem.get(id=cheese.id)).current_stock == Decimal("100")
