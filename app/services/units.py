from decimal import Decimal

# Conversion factors to the base unit of each dimension (g, ml, pcs)
UNIT_CONVERSIONS = {
    "kg": Decimal("1000"),
    "g": Decimal("1"),
    "mg": Decimal("0.001"),
    "lb": Decimal("453.592"),
    "oz": Decimal("28.3495"),
    "l": Decimal("1000"),
    "ml": Decimal("1"),
    "cl": Decimal("10"),
    "pcs": Decimal("1"),
    "ea": Decimal("1"),
    "unit": Decimal("1"),
    "dozen": Decimal("12"),
}

WEIGHT_UNITS = {"kg", "g", "mg", "lb", "oz"}
VOLUME_UNITS = {"l", "ml", "cl"}
COUNT_UNITS = {"pcs", "ea", "unit", "dozen"}

QUANTITY_QUANT = Decimal("0.001")


class IncompatibleUnits(ValueError):
    def __init__(self, from_unit: str, to_unit: str):
        super().__init__(f"Cannot convert '{from_unit}' to '{to_unit}'")
        self.from_unit = from_unit
        self.to_unit = to_unit


def _dimension(unit: str):
    for group in (WEIGHT_UNITS, VOLUME_UNITS, COUNT_UNITS):
        if unit in group:
            return group
    return None


def convert_quantity(quantity: Decimal, from_unit: str, to_unit: str) -> Decimal:
    """Converts `quantity` from a recipe unit into the unit the stock is counted in."""
    source, target = from_unit.strip().lower(), to_unit.strip().lower()
    if source == target:
        return quantity
    dimension = _dimension(source)
    if dimension is None or target not in dimension:
        raise IncompatibleUnits(from_unit, to_unit)
    return quantity * UNIT_CONVERSIONS[source] / UNIT_CONVERSIONS[target]
