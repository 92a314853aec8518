"""Inventory valuation engine: stock quantities and FIFO lot costing.

Every stock effect a transaction has on an item is expressed through
:func:`adjust`, which moves an item from the quantity a transaction
previously applied to the quantity it should apply now in a single step.
Applying is adjusting from nothing, reversing is adjusting to zero, and an
edit is adjusting by the net difference, so stock never passes through a
transient state that reflects both the old and the new document.

Outbound movements consume batches oldest-first and record exactly which lots
they took. Giving quantity back restores it into the original batch, or
re-inserts that batch at its original acquisition position with its original
unit cost, so FIFO order is never rewritten by an edit. A purchase that is
shrunk or removed after its lot was sold records the uncovered quantity in
``Item.withdrawn``; giving those sales back settles it rather than bringing
the lot back.
"""

from __future__ import annotations

import copy
from datetime import UTC, datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from . import log
from .constants import ZERO, StockDirection
from .errors import ValidationError
from .models import Batch, ConsumedLot, Item, StockEffect
from .units import convert_price, to_base_quantity


def _now() -> datetime:
    return datetime.now(UTC)


def _find_batch(item: Item, batch_id: Optional[str]) -> Optional[Batch]:
    for batch in item.batches:
        if batch.batch_id == batch_id:
            return batch
    return None


def _insert_batch(item: Item, batch: Batch) -> None:
    """Insert ``batch`` keeping the list ordered by acquisition sequence."""

    for index, existing in enumerate(item.batches):
        if existing.sequence > batch.sequence:
            item.batches.insert(index, batch)
            return
    item.batches.append(batch)


def _consume(item: Item, quantity: Decimal) -> Tuple[List[ConsumedLot], Decimal]:
    """Take ``quantity`` from the oldest batches; return lots taken and shortfall."""

    remaining = quantity
    consumed: List[ConsumedLot] = []
    kept: List[Batch] = []
    for batch in item.batches:
        if remaining > 0 and batch.quantity > 0:
            take = min(remaining, batch.quantity)
            consumed.append(
                ConsumedLot(
                    batch_id=batch.batch_id,
                    sequence=batch.sequence,
                    quantity=take,
                    unit_cost=batch.unit_cost,
                    acquired_at=batch.acquired_at,
                )
            )
            batch.quantity -= take
            remaining -= take
        if batch.quantity > 0:
            kept.append(batch)
    item.batches = kept
    return consumed, remaining


def _settle_withdrawal(item: Item, batch_id: str, quantity: Decimal) -> Decimal:
    """Pay down what was withdrawn from ``batch_id``; return the unsettled rest."""

    owed = item.withdrawn.get(batch_id, ZERO)
    settled = min(quantity, owed)
    if settled <= 0:
        return quantity
    if owed == settled:
        del item.withdrawn[batch_id]
    else:
        item.withdrawn[batch_id] = owed - settled
    return quantity - settled


def _restore_lot(item: Item, lot: ConsumedLot, quantity: Decimal) -> None:
    quantity = _settle_withdrawal(item, lot.batch_id, quantity)
    if quantity <= 0:
        return
    batch = _find_batch(item, lot.batch_id)
    if batch is not None:
        batch.quantity += quantity
        return
    _insert_batch(
        item,
        Batch(
            batch_id=lot.batch_id,
            sequence=lot.sequence,
            quantity=quantity,
            unit_cost=lot.unit_cost,
            acquired_at=lot.acquired_at,
        ),
    )


def _release(item: Item, effect: StockEffect, quantity: Decimal) -> None:
    """Give back ``quantity`` of an outbound effect, last consumed first."""

    remaining = quantity
    from_shortfall = min(remaining, effect.shortfall)
    effect.shortfall -= from_shortfall
    remaining -= from_shortfall

    while remaining > 0 and effect.consumed:
        lot = effect.consumed[-1]
        give = min(remaining, lot.quantity)
        _restore_lot(item, lot, give)
        lot.quantity -= give
        remaining -= give
        if lot.quantity <= 0:
            effect.consumed.pop()


def _adjust_outbound(item: Item, previous: Optional[StockEffect], base_quantity: Decimal) -> StockEffect:
    if previous is None:
        effect = StockEffect(item_id=item.item_id, direction=StockDirection.OUTBOUND, base_quantity=ZERO)
    else:
        effect = copy.deepcopy(previous)

    delta = base_quantity - effect.base_quantity
    if delta > 0:
        consumed, shortfall = _consume(item, delta)
        effect.consumed.extend(consumed)
        effect.shortfall += shortfall
        if shortfall > 0:
            log.info(
                "Item '%s' ran out of batches; %s base units leave stock without lot cost",
                item.item_id,
                shortfall,
            )
    elif delta < 0:
        _release(item, effect, -delta)

    item.stock -= delta
    effect.base_quantity = base_quantity
    return effect


def _adjust_inbound(
    item: Item,
    previous: Optional[StockEffect],
    base_quantity: Decimal,
    unit_cost: Decimal,
    at: datetime,
) -> StockEffect:
    if previous is None:
        sequence = item.allocate_batch_sequence()
        batch = Batch(
            batch_id=f"{item.item_id}-B{sequence}",
            sequence=sequence,
            quantity=base_quantity,
            unit_cost=unit_cost,
            acquired_at=at,
        )
        _insert_batch(item, batch)
        item.stock += base_quantity
        return StockEffect(
            item_id=item.item_id,
            direction=StockDirection.INBOUND,
            base_quantity=base_quantity,
            batch_id=batch.batch_id,
            batch_sequence=sequence,
            unit_cost=unit_cost,
        )

    effect = copy.deepcopy(previous)
    delta = base_quantity - effect.base_quantity
    batch_id = effect.batch_id or f"{item.item_id}-B{effect.batch_sequence}"
    batch = _find_batch(item, batch_id)
    if batch is not None:
        batch.unit_cost = unit_cost

    if delta < 0:
        taken = min(-delta, batch.quantity) if batch is not None else ZERO
        if batch is not None:
            batch.quantity -= taken
            if batch.quantity == 0:
                item.batches.remove(batch)
        # Whatever the lot can no longer cover is held by the sales that consumed it.
        if -delta > taken:
            item.withdrawn[batch_id] = item.withdrawn.get(batch_id, ZERO) + (-delta - taken)
    elif delta > 0:
        extra = _settle_withdrawal(item, batch_id, delta)
        if extra > 0 and batch is not None:
            batch.quantity += extra
        elif extra > 0:
            # The original lot was consumed in the meantime; the extra quantity
            # rejoins FIFO order at the lot's original position.
            _insert_batch(
                item,
                Batch(
                    batch_id=batch_id,
                    sequence=effect.batch_sequence,
                    quantity=extra,
                    unit_cost=unit_cost,
                    acquired_at=at,
                ),
            )

    item.stock += delta
    effect.base_quantity = base_quantity
    effect.unit_cost = unit_cost
    return effect


def adjust(
    item: Item,
    previous: Optional[StockEffect],
    base_quantity: Decimal,
    *,
    direction: StockDirection,
    unit_cost: Decimal = ZERO,
    at: Optional[datetime] = None,
) -> Optional[StockEffect]:
    """Move ``item`` from the effect ``previous`` to ``base_quantity`` in one step.

    Args:
        item (Item): Staged item to mutate.
        previous (StockEffect | None): Effect the owning transaction currently
            applies, or ``None`` when it applies nothing yet.
        base_quantity (Decimal): Base-unit quantity the transaction should
            apply after the call. Zero reverses ``previous`` entirely.
        direction (StockDirection): Inbound or outbound.
        unit_cost (Decimal): Base-unit cost of an inbound lot.
        at (datetime | None): Acquisition time for a new inbound lot.

    Returns:
        StockEffect | None: The effect now applied, or ``None`` when the
            transaction no longer moves this item.

    Raises:
        ValueError: If ``previous`` moves stock in the other direction.
    """

    if base_quantity < 0:
        raise ValidationError(f"Stock quantity cannot be negative: {base_quantity}", field="quantity")
    if previous is not None and previous.direction is not direction:
        raise ValueError(
            f"Cannot adjust {previous.direction.value} effect as {direction.value} for item '{item.item_id}'"
        )
    if previous is None and base_quantity == 0:
        return None
    if direction is StockDirection.OUTBOUND:
        effect = _adjust_outbound(item, previous, base_quantity)
    else:
        effect = _adjust_inbound(item, previous, base_quantity, unit_cost, at or _now())
    return effect if base_quantity != 0 else None


def _positive_base_quantity(item: Item, quantity: Decimal, unit: Optional[str], strict: bool) -> Decimal:
    if quantity <= 0:
        raise ValidationError("Quantity must be greater than zero", field="quantity")
    base_quantity = to_base_quantity(item.unit, quantity, unit, strict=strict)
    if base_quantity <= 0:
        raise ValidationError(f"Quantity {quantity} is zero in base units", field="quantity")
    return base_quantity


def apply_outbound(item: Item, quantity: Decimal, unit: Optional[str], *, strict: bool = False) -> StockEffect:
    """Remove ``quantity`` of ``unit`` from stock, consuming batches FIFO."""

    base_quantity = _positive_base_quantity(item, quantity, unit, strict)
    return _adjust_outbound(item, None, base_quantity)


def apply_inbound(
    item: Item,
    quantity: Decimal,
    unit: Optional[str],
    unit_cost: Decimal,
    *,
    at: Optional[datetime] = None,
    strict: bool = False,
) -> StockEffect:
    """Add ``quantity`` of ``unit`` to stock as a new newest batch.

    ``unit_cost`` is the cost per ``unit``; the batch stores it per base unit.
    """

    base_quantity = _positive_base_quantity(item, quantity, unit, strict)
    base_cost = convert_price(item.unit, unit_cost, unit, item.unit.base_unit, strict=strict)
    return _adjust_inbound(item, None, base_quantity, base_cost, at or _now())


def reverse(item: Item, effect: StockEffect) -> None:
    """Undo ``effect`` exactly, restoring stock and batch state."""

    adjust(item, effect, ZERO, direction=effect.direction, unit_cost=effect.unit_cost)


def cost_of_goods_sold(item: Item, net_quantity_sold: Decimal) -> Decimal:
    """Simulate FIFO consumption of ``net_quantity_sold`` over the current batches.

    The item is not modified. When the batches cannot cover the quantity the
    whole quantity is costed at ``item.purchase_price`` instead; with no sales
    the result is zero.
    """

    if net_quantity_sold <= 0:
        return ZERO

    remaining = net_quantity_sold
    cost = ZERO
    for batch in item.batches:
        if remaining <= 0:
            break
        take = min(remaining, batch.quantity)
        cost += take * batch.unit_cost
        remaining -= take

    if remaining > 0:
        return net_quantity_sold * item.purchase_price
    return cost


def stock_value(item: Item) -> Decimal:
    """Value the units on hand; under FIFO these are the newest batches."""

    remaining = max(item.stock, ZERO)
    value = ZERO
    for batch in reversed(item.batches):
        if remaining <= 0:
            break
        take = min(remaining, batch.quantity)
        value += take * batch.unit_cost
        remaining -= take
    if remaining > 0:
        value += remaining * item.purchase_price
    return value


__all__ = [
    "adjust",
    "apply_outbound",
    "apply_inbound",
    "reverse",
    "cost_of_goods_sold",
    "stock_value",
]
