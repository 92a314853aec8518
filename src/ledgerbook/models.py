"""Domain records owned by the ledger core.

The records are plain mutable dataclasses. They are only ever mutated on the
staged copies held by a :class:`~ledgerbook.store.UnitOfWork`; the copies kept
by the store are replaced wholesale on commit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from .constants import (
    ZERO,
    AdjustmentType,
    CreditNoteAgainst,
    PaymentType,
    StockDirection,
    TransactionKind,
)
from .units import UnitDefinition


@dataclass
class Party:
    """A customer, supplier, or both, carrying one signed running balance.

    Positive balances are receivables (the party owes the business), negative
    balances are payables.
    """

    party_id: str
    tenant_id: str
    name: str
    opening_balance: Decimal = ZERO
    balance: Decimal = ZERO
    created_at: Optional[datetime] = None


@dataclass
class Batch:
    """A lot of stock acquired at one unit cost; ``sequence`` orders FIFO."""

    batch_id: str
    sequence: int
    quantity: Decimal
    unit_cost: Decimal
    acquired_at: datetime


@dataclass
class Item:
    """A stockable good. ``stock`` is in base units and may go negative.

    ``withdrawn`` maps a batch id to the quantity its purchase took back after
    sales had already consumed it; giving those sales back settles the debt
    instead of recreating the lot.
    """

    item_id: str
    tenant_id: str
    name: str
    unit: UnitDefinition
    stock: Decimal = ZERO
    purchase_price: Decimal = ZERO
    sale_price: Decimal = ZERO
    batches: List[Batch] = field(default_factory=list)
    next_batch_sequence: int = 1
    withdrawn: Dict[str, Decimal] = field(default_factory=dict)

    def allocate_batch_sequence(self) -> int:
        sequence = self.next_batch_sequence
        self.next_batch_sequence += 1
        return sequence


@dataclass
class LineItem:
    """One priced line of a transaction, stated in the unit it was entered in."""

    item_id: Optional[str]
    quantity: Decimal
    unit_price: Decimal
    unit: Optional[str] = None
    discount_type: AdjustmentType = AdjustmentType.PERCENT
    discount: Decimal = ZERO
    description: Optional[str] = None
    base_quantity: Decimal = ZERO

    @property
    def gross(self) -> Decimal:
        return self.quantity * self.unit_price

    @property
    def discount_value(self) -> Decimal:
        if self.discount_type is AdjustmentType.PERCENT:
            return self.gross * self.discount / Decimal("100")
        return self.discount

    @property
    def amount(self) -> Decimal:
        return self.gross - self.discount_value


@dataclass
class ConsumedLot:
    """Quantity taken from one batch by an outbound movement."""

    batch_id: str
    sequence: int
    quantity: Decimal
    unit_cost: Decimal
    acquired_at: datetime

    @property
    def cost(self) -> Decimal:
        return self.quantity * self.unit_cost


@dataclass
class StockEffect:
    """Net stock movement a transaction currently applies to one item.

    Inbound effects own the batch they created (``batch_id``). Outbound
    effects remember exactly which lots they consumed and how much of the
    quantity found no batch at all (``shortfall``), so they can be given back.
    """

    item_id: str
    direction: StockDirection
    base_quantity: Decimal
    batch_id: Optional[str] = None
    batch_sequence: int = 0
    unit_cost: Decimal = ZERO
    consumed: List[ConsumedLot] = field(default_factory=list)
    shortfall: Decimal = ZERO

    @property
    def cost(self) -> Decimal:
        return sum((lot.cost for lot in self.consumed), ZERO)


@dataclass
class Allocation:
    """Portion of a payment settled against one open Sale or Purchase."""

    target_id: str
    amount: Decimal


@dataclass
class Transaction:
    """One of the six transaction variants with its computed totals.

    ``amount_paid`` is what was settled when the document was written;
    ``allocated`` accumulates later payments allocated to it. ``ledger_delta``
    is the signed amount this transaction contributes to its party's balance.
    """

    transaction_id: str
    tenant_id: str
    kind: TransactionKind
    document_number: str
    party_id: Optional[str]
    created_at: datetime
    line_items: List[LineItem] = field(default_factory=list)
    payment_type: PaymentType = PaymentType.CREDIT
    credit_note_against: Optional[CreditNoteAgainst] = None
    discount_type: AdjustmentType = AdjustmentType.PERCENT
    discount: Decimal = ZERO
    tax_type: AdjustmentType = AdjustmentType.PERCENT
    tax: Decimal = ZERO
    subtotal: Decimal = ZERO
    discount_value: Decimal = ZERO
    tax_value: Decimal = ZERO
    grand_total: Decimal = ZERO
    amount_paid: Decimal = ZERO
    allocated: Decimal = ZERO
    ledger_delta: Decimal = ZERO
    stock_effects: List[StockEffect] = field(default_factory=list)
    allocations: List[Allocation] = field(default_factory=list)
    updated_at: Optional[datetime] = None
    notes: Optional[str] = None

    @property
    def paid_or_received(self) -> Decimal:
        return self.amount_paid + self.allocated

    @property
    def balance(self) -> Decimal:
        return self.grand_total - self.paid_or_received

    def effect_for(self, item_id: str) -> Optional[StockEffect]:
        for effect in self.stock_effects:
            if effect.item_id == item_id:
                return effect
        return None


__all__ = [
    "Party",
    "Batch",
    "Item",
    "LineItem",
    "ConsumedLot",
    "StockEffect",
    "Allocation",
    "Transaction",
]
