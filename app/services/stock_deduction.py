"""
Stock Deduction Engine.

Turns "N units of catalog item X sold" into ledger movements:

1. resolve the active recipe of each line (none -> skipped/no-recipe,
   no ingredients -> skipped/empty-recipe);
2. compute `quantity_per_serving * quantity_sold` for every ingredient and
   check all of them against the locked stock rows before touching any;
3. commit one SOLD movement per ingredient, or nothing at all for the line.

Lines are independent. A business-rule failure on one line never stops the
batch; only storage failures abort it, and lines committed before the failure
stay committed.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Sequence
from uuid import UUID

from tortoise.exceptions import BaseORMException

from app.core.errors import StorageError
from app.events.outbox_utility import create_outbox_event
from app.models.inventory import InventoryItem, MovementType
from app.repositories.ledger_store import LedgerStore
from app.schemas.actor import Actor
from app.schemas.inventory import (
    AvailabilityReport,
    BatchResult,
    DeductionLine,
    IngredientAvailability,
    IngredientDeduction,
    IngredientShortage,
    LineAvailability,
    LineOutcome,
    LineOutcomeReason,
    LineResult,
)
from app.services.recipe_resolver import IngredientRequirement, RecipeResolver, ResolvedRecipe
from app.services.units import QUANTITY_QUANT, IncompatibleUnits, convert_quantity

log = logging.getLogger("stock_deduction")


@dataclass
class _Requirement:
    ingredient: IngredientRequirement
    item: Optional[InventoryItem]
    required: Decimal


@dataclass
class _LinePlan:
    requirements: List[_Requirement] = field(default_factory=list)
    shortages: List[IngredientShortage] = field(default_factory=list)
    unit_error: Optional[str] = None


def _plan_line(
    line: DeductionLine, recipe: ResolvedRecipe, items: Dict[UUID, InventoryItem]
) -> _LinePlan:
    """Computes per-ingredient requirements and every shortage against `items`."""
    plan = _LinePlan()
    totals: "OrderedDict[UUID, Decimal]" = OrderedDict()

    for ingredient in recipe.ingredients:
        item = items.get(ingredient.inventory_item_id)
        quantity = ingredient.quantity_per_serving
        if item is not None:
            try:
                quantity = convert_quantity(quantity, ingredient.unit, item.unit)
            except IncompatibleUnits as exc:
                plan.unit_error = f"{ingredient.name}: {exc}"
                return plan
        required = (quantity * line.quantity_sold).quantize(QUANTITY_QUANT, rounding=ROUND_HALF_UP)
        plan.requirements.append(_Requirement(ingredient=ingredient, item=item, required=required))
        totals[ingredient.inventory_item_id] = totals.get(ingredient.inventory_item_id, Decimal("0")) + required

    # A recipe may list the same inventory item twice; sufficiency is checked on the total
    for item_id, required in totals.items():
        item = items.get(item_id)
        available = item.current_stock if item is not None else Decimal("0")
        if available < required:
            ingredient = next(r.ingredient for r in plan.requirements if r.ingredient.inventory_item_id == item_id)
            plan.shortages.append(IngredientShortage(
                inventory_item_id=item_id,
                name=item.name if item is not None else ingredient.name,
                unit=item.unit if item is not None else ingredient.unit,
                required=required,
                available=available,
            ))
    return plan


class StockDeductionEngine:
    def __init__(self, ledger: LedgerStore, recipes: RecipeResolver):
        self.ledger = ledger
        self.recipes = recipes

    async def deduct(
        self,
        restaurant_id: UUID,
        lines: Sequence[DeductionLine],
        actor: Optional[Actor] = None,
        reference: Optional[str] = None,
    ) -> BatchResult:
        """
        Processes every line independently and returns the per-line outcomes.

        Raises StorageError (carrying the partial result) if the store fails;
        lines committed before the failure are not rolled back.
        """
        result = BatchResult()
        actor_id = actor.audit_id if actor else None
        log.info(f"Deducting stock for {len(lines)} line(s) of restaurant {restaurant_id} (ref={reference})")

        for index, line in enumerate(lines):
            try:
                outcome = await self._deduct_line(restaurant_id, line, actor_id, reference)
            except BaseORMException as e:
                log.error(
                    f"Storage failure on item {line.catalog_item_id} (ref={reference}); "
                    f"aborting {len(lines) - index} unprocessed line(s): {e}"
                )
                raise StorageError(f"Stock ledger unavailable: {e}", partial=result) from e
            result.add(outcome)

        if result.degraded:
            log.warning(
                f"Partial deduction for ref={reference}: {len(result.processed_lines)} committed, "
                f"{len(result.failed_lines)} failed, {len(result.skipped_lines)} skipped"
            )
        else:
            log.info(f"Stock deduction completed for {len(result.processed_lines)} line(s) (ref={reference})")
        return result

    async def _deduct_line(
        self, restaurant_id: UUID, line: DeductionLine, actor_id: Optional[str], reference: Optional[str]
    ) -> LineResult:
        recipe = await self.recipes.resolve(restaurant_id, line.catalog_item_id)
        if recipe is None:
            return self._line(line, LineOutcome.SKIPPED, LineOutcomeReason.NO_RECIPE,
                              detail="No active recipe found for catalog item")
        if not recipe.ingredients:
            return self._line(line, LineOutcome.SKIPPED, LineOutcomeReason.EMPTY_RECIPE,
                              recipe=recipe, detail="Recipe has no ingredients defined")

        item_ids = [ing.inventory_item_id for ing in recipe.ingredients]
        async with self.ledger.locked_items(restaurant_id, item_ids) as (conn, items):
            plan = _plan_line(line, recipe, items)
            if plan.unit_error:
                return self._line(line, LineOutcome.FAILED, LineOutcomeReason.UNIT_MISMATCH,
                                  recipe=recipe, detail=plan.unit_error)
            if plan.shortages:
                log.info(f"Insufficient stock for {recipe.name} x{line.quantity_sold}: "
                         + ", ".join(f"{s.name} {s.available}/{s.required} {s.unit}" for s in plan.shortages))
                return self._line(line, LineOutcome.FAILED, LineOutcomeReason.INSUFFICIENT_STOCK,
                                  recipe=recipe, shortages=plan.shortages)

            deductions = []
            for requirement in plan.requirements:
                item = requirement.item
                movement = await self.ledger.record_movement(
                    item, -requirement.required, MovementType.SOLD, conn,
                    reason=f"Sale deduction: {line.quantity_sold} x {recipe.name}",
                    reference=reference,
                    actor_id=actor_id,
                )
                deductions.append(IngredientDeduction(
                    inventory_item_id=item.id,
                    name=item.name,
                    unit=item.unit,
                    quantity_deducted=requirement.required,
                    previous_stock=movement.previous_balance,
                    new_stock=movement.new_balance,
                ))

            for item in {r.item.id: r.item for r in plan.requirements}.values():
                await self._check_for_low_stock(item, reference, conn)

        return self._line(line, LineOutcome.COMMITTED, recipe=recipe, deductions=deductions)

    async def _check_for_low_stock(self, item: InventoryItem, reference: Optional[str], conn) -> None:
        """Emits a low stock alert in the same transaction when the item reaches its threshold."""
        if not item.needs_reorder:
            return
        log.warning(f"Low stock detected for {item.name} ({item.id}): {item.current_stock} {item.unit}")
        await create_outbox_event(
            aggregate_type="inventory_item",
            aggregate_id=item.id,
            event_type="inventory.low_stock_alert.v1",
            payload={
                "inventory_item_id": str(item.id),
                "restaurant_id": str(item.restaurant_id),
                "name": item.name,
                "current_stock": str(item.current_stock),
                "reorder_threshold": str(item.reorder_threshold),
                "unit": item.unit,
                "triggered_by": reference,
            },
            conn=conn,
        )

    async def check_availability(
        self, restaurant_id: UUID, lines: Sequence[DeductionLine]
    ) -> AvailabilityReport:
        """Read-only pre-check of a cart. Lines without a (non-empty) recipe never block."""
        report_lines = []
        for line in lines:
            recipe = await self.recipes.resolve(restaurant_id, line.catalog_item_id)
            if recipe is None or not recipe.ingredients:
                reason = LineOutcomeReason.NO_RECIPE if recipe is None else LineOutcomeReason.EMPTY_RECIPE
                report_lines.append(LineAvailability(
                    catalog_item_id=line.catalog_item_id,
                    quantity_sold=line.quantity_sold,
                    available=True,
                    reason=reason,
                    recipe_name=recipe.name if recipe else None,
                ))
                continue

            items = await self.ledger.fetch_items(restaurant_id, [ing.inventory_item_id for ing in recipe.ingredients])
            plan = _plan_line(line, recipe, items)
            short_ids = {s.inventory_item_id for s in plan.shortages}
            if plan.unit_error:
                reason = LineOutcomeReason.UNIT_MISMATCH
            elif plan.shortages:
                reason = LineOutcomeReason.INSUFFICIENT_STOCK
            else:
                reason = None
            report_lines.append(LineAvailability(
                catalog_item_id=line.catalog_item_id,
                quantity_sold=line.quantity_sold,
                available=reason is None,
                reason=reason,
                recipe_name=recipe.name,
                ingredients=[
                    IngredientAvailability(
                        inventory_item_id=r.ingredient.inventory_item_id,
                        name=r.item.name if r.item else r.ingredient.name,
                        unit=r.item.unit if r.item else r.ingredient.unit,
                        required=r.required,
                        available=r.item.current_stock if r.item else Decimal("0"),
                        sufficient=r.ingredient.inventory_item_id not in short_ids,
                    )
                    for r in plan.requirements
                ],
            ))
        return AvailabilityReport(available=all(entry.available for entry in report_lines), lines=report_lines)

    @staticmethod
    def _line(
        line: DeductionLine,
        outcome: LineOutcome,
        reason: Optional[LineOutcomeReason] = None,
        recipe: Optional[ResolvedRecipe] = None,
        deductions: Optional[List[IngredientDeduction]] = None,
        shortages: Optional[List[IngredientShortage]] = None,
        detail: Optional[str] = None,
    ) -> LineResult:
        return LineResult(
            catalog_item_id=line.catalog_item_id,
            quantity_sold=line.quantity_sold,
            outcome=outcome,
            reason=reason,
            recipe_name=recipe.name if recipe else None,
            deductions=deductions or [],
            shortages=shortages or [],
            detail=detail,
        )
