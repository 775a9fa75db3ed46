# scripts/seed_data.py
import asyncio
from decimal import Decimal
from tortoise.transactions import in_transaction
from app.core.db import close_db, init_db
from app.models.order import MenuItem, Restaurant, ServiceChargeType
from app.models.inventory import InventoryItem
from app.models.recipe import Recipe, RecipeIngredient
from app.repositories.ledger_store import LedgerStore


async def ingredient(ledger: LedgerStore, rest: Restaurant, name: str, unit: str, stock: str,
                     threshold: str, cost: str) -> InventoryItem:
    existing = await InventoryItem.get_or_none(restaurant=rest, name=name)
    if existing:
        return existing
    return await ledger.create_item(
        restaurant_id=rest.id, name=name, unit=unit, opening_stock=Decimal(stock),
        reorder_threshold=Decimal(threshold), average_cost=Decimal(cost), actor_id="seed",
    )


async def recipe(rest: Restaurant, menu_item: MenuItem, lines):
    """Active recipe v1 for `menu_item`; `lines` is [(inventory item, quantity, unit)]."""
    if await Recipe.filter(menu_item=menu_item, is_active=True).exists():
        return
    async with in_transaction() as conn:
        r = await Recipe.create(restaurant=rest, menu_item=menu_item, name=menu_item.name, version=1,
                                using_db=conn)
        for position, (item, quantity, unit) in enumerate(lines):
            await RecipeIngredient.create(recipe=r, inventory_item=item, quantity=Decimal(quantity),
                                          unit=unit, position=position, using_db=conn)


async def seed():
    ledger = LedgerStore()

    # Create one restaurant
    rest, _ = await Restaurant.get_or_create(
        name="Demo Restaurant",
        defaults={"service_charge_type": ServiceChargeType.PERCENTAGE, "service_charge_value": Decimal("10")},
    )
    print("Restaurant:", rest.id)

    # Create menu items
    pizza, _ = await MenuItem.get_or_create(restaurant=rest, name="Margherita Pizza", defaults={"price": "42.00", "is_active": True})
    pasta, _ = await MenuItem.get_or_create(restaurant=rest, name="Penne Arrabbiata", defaults={"price": "36.00", "is_active": True})
    drink, _ = await MenuItem.get_or_create(restaurant=rest, name="Cold Drink", defaults={"price": "9.00", "is_active": True})
    print("Menu items:", str(pizza.id), str(pasta.id), str(drink.id))

    # Ingredients with opening stock (booked as RECEIVED movements)
    cheese = await ingredient(ledger, rest, "Mozzarella", "g", "5000", "1000", "0.04")
    dough = await ingredient(ledger, rest, "Pizza Dough", "pcs", "40", "10", "1.50")
    tomato = await ingredient(ledger, rest, "Tomato Sauce", "ml", "4000", "500", "0.01")
    penne = await ingredient(ledger, rest, "Penne", "kg", "5", "1", "6.00")

    await recipe(rest, pizza, [(dough, "1", "pcs"), (cheese, "200", "g"), (tomato, "80", "ml")])
    await recipe(rest, pasta, [(penne, "150", "g"), (tomato, "120", "ml")])
    # Cold Drink has no recipe: its sales are skipped by stock deduction

    print("Inventory and recipes seeded.")


async def main():
    await init_db()
    await seed()
    await close_db()

if __name__ == "__main__":
    asyncio.run(main())
