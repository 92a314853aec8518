"""Two-level unit conversion between an item's base and secondary unit.

One secondary unit equals ``conversion_factor`` base units. Quantities scale
by the factor going secondary -> base; prices scale by the factor going
base -> secondary, since a secondary unit carries more base units.

Units that are neither the base unit nor a secondary unit with a factor are
passed through 1:1 unless strict mode is requested.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from . import log
from .constants import LEGACY_SECONDARY_FACTOR
from .errors import ValidationError


ONE = Decimal("1")
_NO_SECONDARY = {"", "none", "null"}


@dataclass(frozen=True)
class UnitDefinition:
    """Canonical unit description of a stock item."""

    base_unit: str
    secondary_unit: Optional[str] = None
    conversion_factor: Optional[Decimal] = None

    @property
    def label(self) -> str:
        if self.secondary_unit:
            return f"{self.base_unit} / {self.secondary_unit}"
        return self.base_unit


def _same_unit(left: Optional[str], right: Optional[str]) -> bool:
    if left is None or right is None:
        return False
    return left.strip().casefold() == right.strip().casefold()


def _clean_secondary(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if text.casefold() in _NO_SECONDARY:
        return None
    return text


def _parse_factor(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        factor = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid conversion factor: {value!r}", field="conversion_factor") from exc
    if factor <= 0:
        raise ValidationError(f"Conversion factor must be positive, got {factor}", field="conversion_factor")
    return factor


def parse_unit(raw: Any, *, conversion_factor: Any = None) -> UnitDefinition:
    """Normalise any accepted unit representation into a :class:`UnitDefinition`.

    Accepted forms are an existing definition, a mapping using the
    ``base``/``secondary``/``conversionFactor`` keys (``"custom"`` entries
    resolve through ``customBase``/``customSecondary``), a legacy
    ``"Base / Secondary"`` string whose factor defaults to 12, and a plain
    base-unit string. ``conversion_factor`` overrides whatever the raw form
    implies.
    """

    override = _parse_factor(conversion_factor)

    if isinstance(raw, UnitDefinition):
        if override is None:
            return raw
        return UnitDefinition(raw.base_unit, raw.secondary_unit, override)

    if isinstance(raw, Mapping):
        base = raw.get("base") or raw.get("base_unit")
        if base == "custom":
            base = raw.get("customBase")
        secondary = raw.get("secondary", raw.get("secondary_unit"))
        if secondary == "custom":
            secondary = raw.get("customSecondary")
        factor = override
        if factor is None:
            factor = _parse_factor(raw.get("conversionFactor", raw.get("conversion_factor")))
        if not base:
            raise ValidationError("Unit definition requires a base unit", field="unit")
        secondary = _clean_secondary(secondary)
        return UnitDefinition(str(base).strip(), secondary, factor if secondary else None)

    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            raise ValidationError("Unit definition requires a base unit", field="unit")
        if " / " in text:
            base, secondary = (part.strip() for part in text.split(" / ", 1))
            secondary = _clean_secondary(secondary)
            factor = override if override is not None else LEGACY_SECONDARY_FACTOR
            return UnitDefinition(base, secondary, factor if secondary else None)
        return UnitDefinition(text, None, None)

    raise ValidationError(f"Unsupported unit definition: {raw!r}", field="unit")


def unit_factor(definition: UnitDefinition, unit: Optional[str], *, strict: bool = False) -> Decimal:
    """Return how many base units one ``unit`` represents."""

    if unit is None or _same_unit(unit, definition.base_unit):
        return ONE
    if _same_unit(unit, definition.secondary_unit) and definition.conversion_factor:
        return definition.conversion_factor
    if strict:
        raise ValidationError(
            f"Unit '{unit}' is not convertible for '{definition.label}'",
            field="unit",
        )
    log.debug("Unit '%s' not recognised for '%s'; treating as 1:1", unit, definition.label)
    return ONE


def to_base_quantity(
    definition: UnitDefinition,
    quantity: Decimal,
    unit: Optional[str],
    *,
    strict: bool = False,
) -> Decimal:
    """Convert ``quantity`` expressed in ``unit`` into base units."""

    return quantity * unit_factor(definition, unit, strict=strict)


def from_base_quantity(
    definition: UnitDefinition,
    base_quantity: Decimal,
    unit: Optional[str],
    *,
    strict: bool = False,
) -> Decimal:
    """Express a base-unit quantity in ``unit``."""

    return base_quantity / unit_factor(definition, unit, strict=strict)


def convert_price(
    definition: UnitDefinition,
    price: Decimal,
    from_unit: Optional[str],
    to_unit: Optional[str],
    *,
    strict: bool = False,
) -> Decimal:
    """Restate a per-unit price from ``from_unit`` to ``to_unit``.

    A price per secondary unit equals the base price times the factor, so
    going base -> secondary multiplies and secondary -> base divides.
    """

    per_base = price / unit_factor(definition, from_unit, strict=strict)
    return per_base * unit_factor(definition, to_unit, strict=strict)


__all__ = [
    "UnitDefinition",
    "parse_unit",
    "unit_factor",
    "to_base_quantity",
    "from_base_quantity",
    "convert_price",
]
