from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Tuple
from uuid import UUID

from app.models.recipe import Recipe


@dataclass(frozen=True)
class IngredientRequirement:
    inventory_item_id: UUID
    name: str
    quantity_per_serving: Decimal
    unit: str


@dataclass(frozen=True)
class ResolvedRecipe:
    id: UUID
    name: str
    version: int
    serving_size: Decimal
    ingredients: Tuple[IngredientRequirement, ...]


class RecipeResolver:
    """Maps a (restaurant, catalog item) pair to its active ingredient list. Read-only."""

    async def resolve(self, restaurant_id: UUID, catalog_item_id: UUID) -> Optional[ResolvedRecipe]:
        # Highest active version wins when a recipe has been revised
        recipe = await Recipe.filter(
            restaurant_id=restaurant_id, menu_item_id=catalog_item_id, is_active=True
        ).order_by("-version").prefetch_related("ingredients__inventory_item").first()
        if not recipe:
            return None

        ingredients = sorted(recipe.ingredients, key=lambda ing: ing.position)
        return ResolvedRecipe(
            id=recipe.id,
            name=recipe.name,
            version=recipe.version,
            serving_size=recipe.serving_size,
            ingredients=tuple(
                IngredientRequirement(
                    inventory_item_id=ing.inventory_item_id,
                    name=ing.inventory_item.name,
                    quantity_per_serving=ing.quantity,
                    unit=ing.unit,
                )
                for ing in ingredients
            ),
        )
