"""Counterparty ledger: one signed running balance per party.

Positive balances are receivables and negative balances payables. Every
transaction kind expresses its effect on a party as a single signed delta
computed by :func:`ledger_delta_for`; :func:`apply_delta` is the only place a
balance changes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from . import log
from .constants import ZERO, CreditNoteAgainst, PaymentType, TransactionKind
from .errors import OverpaymentError
from .models import Allocation, Party, Transaction


# Open documents a payment of each kind settles.
PAYMENT_TARGET_KIND: Dict[TransactionKind, TransactionKind] = {
    TransactionKind.PAYMENT_IN: TransactionKind.SALE,
    TransactionKind.PAYMENT_OUT: TransactionKind.PURCHASE,
}


@dataclass
class AllocationPlan:
    """Result of distributing a payment over open documents oldest-first."""

    amount: Decimal
    outstanding: Decimal
    allocations: List[Allocation] = field(default_factory=list)
    unallocated: Decimal = ZERO

    @property
    def allocated(self) -> Decimal:
        return sum((allocation.amount for allocation in self.allocations), ZERO)


@dataclass(frozen=True)
class BalanceComponents:
    """Party balance split by the side of the business that produced it."""

    sales_balance: Decimal
    purchases_balance: Decimal
    opening_balance: Decimal

    @property
    def total(self) -> Decimal:
        return self.sales_balance + self.purchases_balance + self.opening_balance


def apply_delta(party: Party, amount: Decimal) -> None:
    """Add ``amount`` to ``party.balance``."""

    if amount == 0:
        return
    before = party.balance
    party.balance = before + amount
    log.debug("Party '%s' balance %s -> %s (delta %s)", party.party_id, before, party.balance, amount)


def ledger_delta_for(transaction: Transaction) -> Decimal:
    """Return the signed amount ``transaction`` contributes to its party balance.

    Only the amount settled on the document itself is considered. Later
    payments allocated to a Sale or Purchase carry their own delta on the
    payment transaction, so the document's contribution never changes after
    the fact.
    """

    kind = transaction.kind
    open_amount = transaction.grand_total - transaction.amount_paid

    if kind is TransactionKind.SALE:
        if transaction.payment_type is PaymentType.CASH:
            return open_amount if open_amount > 0 else ZERO
        return open_amount
    if kind is TransactionKind.PURCHASE:
        return -open_amount
    if kind is TransactionKind.CREDIT_NOTE:
        if transaction.credit_note_against is CreditNoteAgainst.PURCHASE:
            return open_amount
        return -open_amount
    if kind is TransactionKind.EXPENSE:
        if transaction.payment_type is PaymentType.CREDIT:
            return open_amount
        return ZERO
    if kind is TransactionKind.PAYMENT_IN:
        return -transaction.grand_total
    if kind is TransactionKind.PAYMENT_OUT:
        return transaction.grand_total
    raise ValueError(f"Unsupported transaction kind: {kind}")


def is_sales_side(transaction: Transaction) -> bool:
    """Return ``True`` when the transaction belongs to the receivables side."""

    if transaction.kind in (TransactionKind.SALE, TransactionKind.PAYMENT_IN):
        return True
    if transaction.kind is TransactionKind.CREDIT_NOTE:
        return transaction.credit_note_against is not CreditNoteAgainst.PURCHASE
    return False


def open_documents(
    transactions: Iterable[Transaction],
    party_id: str,
    kind: TransactionKind,
) -> List[Transaction]:
    """Return the party's documents of ``kind`` with a positive balance, oldest first."""

    candidates = [
        transaction
        for transaction in transactions
        if transaction.party_id == party_id and transaction.kind is kind and transaction.balance > 0
    ]
    candidates.sort(key=lambda transaction: (transaction.created_at, transaction.transaction_id))
    return candidates


def plan_allocation(
    targets: Sequence[Transaction],
    amount: Decimal,
    *,
    allow_advance: bool = False,
) -> AllocationPlan:
    """Distribute ``amount`` over ``targets`` oldest-first.

    The total outstanding balance is computed before anything is allocated,
    so an overpayment rejects the whole payment rather than part of it.

    Args:
        targets (Sequence[Transaction]): Open documents in allocation order.
        amount (Decimal): Payment amount to distribute.
        allow_advance (bool): Keep any remainder beyond the outstanding total
            as ``unallocated`` instead of rejecting the payment.

    Returns:
        AllocationPlan: Allocations per document plus the unallocated remainder.

    Raises:
        OverpaymentError: If ``amount`` exceeds the outstanding total and
            ``allow_advance`` is false.
    """

    outstanding = sum((max(target.balance, ZERO) for target in targets), ZERO)
    if amount > outstanding and not allow_advance:
        log.warning("Rejected payment of %s against outstanding %s", amount, outstanding)
        raise OverpaymentError(amount, outstanding)

    plan = AllocationPlan(amount=amount, outstanding=outstanding)
    remaining = amount
    for target in targets:
        if remaining <= 0:
            break
        share = min(remaining, target.balance)
        if share <= 0:
            continue
        plan.allocations.append(Allocation(target_id=target.transaction_id, amount=share))
        remaining -= share
    plan.unallocated = remaining
    return plan


def apply_allocations(targets: Dict[str, Transaction], allocations: Iterable[Allocation], *, sign: int = 1) -> None:
    """Record (``sign=1``) or withdraw (``sign=-1``) allocations on their documents.

    Missing documents are skipped; a deleted Sale or Purchase no longer has a
    balance to settle.
    """

    for allocation in allocations:
        target = targets.get(allocation.target_id)
        if target is None:
            log.debug("Allocation target '%s' no longer exists; skipping", allocation.target_id)
            continue
        target.allocated += sign * allocation.amount


def balance_components(party: Party, transactions: Iterable[Transaction]) -> BalanceComponents:
    """Decompose the party balance by recomputing it from live transactions."""

    sales = ZERO
    purchases = ZERO
    for transaction in transactions:
        if transaction.party_id != party.party_id:
            continue
        if is_sales_side(transaction):
            sales += transaction.ledger_delta
        else:
            purchases += transaction.ledger_delta
    return BalanceComponents(
        sales_balance=sales,
        purchases_balance=purchases,
        opening_balance=party.opening_balance,
    )


def expected_balance(party: Party, transactions: Iterable[Transaction]) -> Decimal:
    """Recompute the balance from scratch using :func:`ledger_delta_for`."""

    total = party.opening_balance
    for transaction in transactions:
        if transaction.party_id == party.party_id:
            total += ledger_delta_for(transaction)
    return total


def describe_balance(balance: Decimal) -> Optional[str]:
    if balance > 0:
        return "receivable"
    if balance < 0:
        return "payable"
    return None


__all__ = [
    "PAYMENT_TARGET_KIND",
    "AllocationPlan",
    "BalanceComponents",
    "apply_delta",
    "ledger_delta_for",
    "is_sales_side",
    "open_documents",
    "plan_allocation",
    "apply_allocations",
    "balance_components",
    "expected_balance",
    "describe_balance",
]
