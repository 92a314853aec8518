"""Read-only reports computed from store snapshots.

Reports take no locks. They read a snapshot of the store, so a concurrent
mutation is either fully visible or not visible at all, and results are
cached per tenant until the coordinator invalidates them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Dict, Optional

from . import ledger, log, valuation
from .cache import CacheKey
from .constants import ZERO, CreditNoteAgainst, QueryKind, StockDirection, TransactionKind
from .errors import InsufficientAuthorizationError, MissingReferenceError
from .ledger import BalanceComponents
from .store import StoreSnapshot

if TYPE_CHECKING:
    from .core_logic import RuntimeContext


@dataclass(frozen=True)
class Period:
    """Inclusive ``start``, exclusive ``end``; either bound may be open."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def contains(self, moment: Optional[datetime]) -> bool:
        if moment is None:
            return self.start is None and self.end is None
        if self.start is not None and moment < self.start:
            return False
        if self.end is not None and moment >= self.end:
            return False
        return True


ALL_TIME = Period()


@dataclass(frozen=True)
class PartyBalance:
    party_id: str
    name: str
    balance: Decimal
    components: BalanceComponents


@dataclass(frozen=True)
class StockSummary:
    item_id: str
    name: str
    unit: str
    stock_quantity: Decimal
    stock_value: Decimal


@dataclass(frozen=True)
class ProfitAndLoss:
    sales: Decimal
    sale_returns: Decimal
    purchases: Decimal
    purchase_returns: Decimal
    expenses: Decimal
    cost_of_goods_sold: Decimal

    @property
    def net_sales(self) -> Decimal:
        return self.sales - self.sale_returns

    @property
    def gross_profit(self) -> Decimal:
        return self.net_sales - self.cost_of_goods_sold

    @property
    def net_profit(self) -> Decimal:
        return self.gross_profit - self.expenses


def _check_tenant(record_tenant: str, tenant_id: str, description: str) -> None:
    if record_tenant != tenant_id:
        log.warning("Tenant '%s' denied report on %s", tenant_id, description)
        raise InsufficientAuthorizationError(f"{description} does not belong to tenant {tenant_id}")


def get_party_balance(context: "RuntimeContext", tenant_id: str, party_id: str) -> PartyBalance:
    """Return the party's balance with its sales, purchases and opening components."""

    key = CacheKey(tenant_id, QueryKind.PARTY_BALANCE)

    def compute() -> PartyBalance:
        snapshot = context.store.snapshot()
        party = snapshot.parties.get(party_id)
        if party is None:
            raise MissingReferenceError(f"Unknown party id: {party_id}")
        _check_tenant(party.tenant_id, tenant_id, f"Party {party_id}")
        components = ledger.balance_components(party, snapshot.transactions_for(tenant_id, party_id=party_id))
        return PartyBalance(party_id=party_id, name=party.name, balance=party.balance, components=components)

    return context.cache.get_or_compute(key, party_id, compute)


def _summarise_item(snapshot: StoreSnapshot, tenant_id: str, item_id: str) -> StockSummary:
    item = snapshot.items.get(item_id)
    if item is None:
        raise MissingReferenceError(f"Unknown item id: {item_id}")
    _check_tenant(item.tenant_id, tenant_id, f"Item {item_id}")
    return StockSummary(
        item_id=item_id,
        name=item.name,
        unit=item.unit.base_unit,
        stock_quantity=item.stock,
        stock_value=valuation.stock_value(item),
    )


def get_item_stock_summary(context: "RuntimeContext", tenant_id: str, item_id: str) -> StockSummary:
    """Return the base-unit stock quantity and its FIFO value."""

    key = CacheKey(tenant_id, QueryKind.STOCK_SUMMARY)
    return context.cache.get_or_compute(key, item_id, lambda: _summarise_item(context.store.snapshot(), tenant_id, item_id))


def list_stock_summaries(context: "RuntimeContext", tenant_id: str) -> list[StockSummary]:
    snapshot = context.store.snapshot()
    items = sorted(
        (item for item in snapshot.items.values() if item.tenant_id == tenant_id),
        key=lambda item: item.name.casefold(),
    )
    return [_summarise_item(snapshot, tenant_id, item.item_id) for item in items]


def net_quantity_sold(snapshot: StoreSnapshot, tenant_id: str, item_id: str, period: Period = ALL_TIME) -> Decimal:
    """Base units shipped by sales minus units returned on sale credit notes."""

    sold = ZERO
    for transaction in snapshot.transactions_for(
        tenant_id, kinds=(TransactionKind.SALE, TransactionKind.CREDIT_NOTE)
    ):
        if not period.contains(transaction.created_at):
            continue
        effect = transaction.effect_for(item_id)
        if effect is None:
            continue
        if transaction.kind is TransactionKind.SALE and effect.direction is StockDirection.OUTBOUND:
            sold += effect.base_quantity
        elif (
            transaction.credit_note_against is CreditNoteAgainst.SALE
            and effect.direction is StockDirection.INBOUND
        ):
            sold -= effect.base_quantity
    return sold


def _cost_of_goods_sold(snapshot: StoreSnapshot, tenant_id: str, item_id: str, period: Period) -> Decimal:
    item = snapshot.items.get(item_id)
    if item is None:
        raise MissingReferenceError(f"Unknown item id: {item_id}")
    _check_tenant(item.tenant_id, tenant_id, f"Item {item_id}")
    return valuation.cost_of_goods_sold(item, net_quantity_sold(snapshot, tenant_id, item_id, period))


def get_cost_of_goods_sold(
    context: "RuntimeContext",
    tenant_id: str,
    item_id: str,
    period: Optional[Period] = None,
) -> Decimal:
    """FIFO cost of the item's net sales within ``period`` (all time when omitted)."""

    period = period or ALL_TIME
    key = CacheKey(tenant_id, QueryKind.COST_OF_GOODS_SOLD)
    return context.cache.get_or_compute(
        key,
        (item_id, period),
        lambda: _cost_of_goods_sold(context.store.snapshot(), tenant_id, item_id, period),
    )


def _profit_and_loss(snapshot: StoreSnapshot, tenant_id: str, period: Period) -> ProfitAndLoss:
    totals: Dict[str, Decimal] = {
        "sales": ZERO,
        "sale_returns": ZERO,
        "purchases": ZERO,
        "purchase_returns": ZERO,
        "expenses": ZERO,
    }
    for transaction in snapshot.transactions_for(tenant_id):
        if not period.contains(transaction.created_at):
            continue
        if transaction.kind is TransactionKind.SALE:
            totals["sales"] += transaction.grand_total
        elif transaction.kind is TransactionKind.PURCHASE:
            totals["purchases"] += transaction.grand_total
        elif transaction.kind is TransactionKind.EXPENSE:
            totals["expenses"] += transaction.grand_total
        elif transaction.kind is TransactionKind.CREDIT_NOTE:
            if transaction.credit_note_against is CreditNoteAgainst.PURCHASE:
                totals["purchase_returns"] += transaction.grand_total
            else:
                totals["sale_returns"] += transaction.grand_total

    cogs = ZERO
    for item in snapshot.items.values():
        if item.tenant_id == tenant_id:
            cogs += _cost_of_goods_sold(snapshot, tenant_id, item.item_id, period)

    return ProfitAndLoss(cost_of_goods_sold=cogs, **totals)


def get_profit_and_loss(context: "RuntimeContext", tenant_id: str, period: Optional[Period] = None) -> ProfitAndLoss:
    """Sales, returns, purchases, expenses and FIFO cost of goods sold for ``period``."""

    period = period or ALL_TIME
    key = CacheKey(tenant_id, QueryKind.PROFIT_AND_LOSS)
    return context.cache.get_or_compute(
        key,
        period,
        lambda: _profit_and_loss(context.store.snapshot(), tenant_id, period),
    )


__all__ = [
    "Period",
    "ALL_TIME",
    "PartyBalance",
    "StockSummary",
    "ProfitAndLoss",
    "get_party_balance",
    "get_item_stock_summary",
    "list_stock_summaries",
    "net_quantity_sold",
    "get_cost_of_goods_sold",
    "get_profit_and_loss",
]
