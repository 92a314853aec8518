"""Transaction lifecycle: create, update and delete with all-or-nothing effects.

Every operation follows the same shape:

1. Normalise and validate the command. Nothing is locked or staged yet, so a
   :class:`~ledgerbook.errors.ValidationError` leaves no trace.
2. Resolve references and check tenant ownership.
3. Open a :class:`~ledgerbook.store.UnitOfWork`, lock the transaction, the
   document counter, the parties and the items involved, in global order.
4. Compute totals, then apply stock effects and the ledger delta to staged
   copies only.
5. Commit. Any exception before the commit discards the staged copies, so
   stock, balances, counters and the document change together or not at all.
6. Invalidate the report cache for the tenant.

Updates apply one net stock adjustment per item and one net ledger delta, so
no intermediate state reflects the old and the new document at once.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence, Set

from . import ledger, log, valuation
from .constants import (
    DOCUMENT_TYPE_BY_KIND,
    PAYMENT_KINDS,
    STOCK_KINDS,
    ZERO,
    AdjustmentType,
    CreditNoteAgainst,
    PaymentType,
    QueryKind,
    StockDirection,
    TransactionKind,
)
from .errors import InsufficientAuthorizationError, MissingReferenceError, OverpaymentError, ValidationError
from .locks import item_key, item_name_key, party_key, party_name_key, sequence_key, transaction_key
from .models import Item, LineItem, Party, StockEffect, Transaction
from .store import UnitOfWork
from .units import parse_unit, to_base_quantity, unit_factor

if TYPE_CHECKING:
    from .core_logic import RuntimeContext


HUNDRED = Decimal("100")


@dataclass(frozen=True)
class LineItemInput:
    """One requested line; numeric fields may be given as text or numbers."""

    item_id: Optional[str]
    quantity: Any
    unit_price: Any
    unit: Optional[str] = None
    discount: Any = ZERO
    discount_type: AdjustmentType = AdjustmentType.PERCENT
    description: Optional[str] = None


@dataclass(frozen=True)
class TransactionCommand:
    """User intent for creating or fully replacing a transaction.

    Sales, purchases and credit notes need ``line_items``. Payments need
    ``amount`` and may name ``target_transaction_id``; without one they are
    allocated across the party's open documents oldest-first. Expenses take
    either line items without items or a plain ``amount``.
    """

    party_id: Optional[str] = None
    party_name: Optional[str] = None
    line_items: Sequence[LineItemInput] = ()
    discount: Any = ZERO
    discount_type: AdjustmentType = AdjustmentType.PERCENT
    tax: Any = ZERO
    tax_type: AdjustmentType = AdjustmentType.PERCENT
    amount_paid: Any = None
    payment_type: PaymentType = PaymentType.CREDIT
    credit_note_against: Optional[CreditNoteAgainst] = None
    amount: Any = None
    target_transaction_id: Optional[str] = None
    allow_advance: bool = False
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class RegisterPartyCommand:
    name: str
    opening_balance: Any = ZERO


@dataclass(frozen=True)
class RegisterItemCommand:
    """Register a stock item; ``opening_quantity`` is in base units."""

    name: str
    unit: Any
    conversion_factor: Any = None
    opening_quantity: Any = ZERO
    purchase_price: Any = ZERO
    sale_price: Any = ZERO


@dataclass(frozen=True)
class CreateResult:
    document: Transaction
    number_issued: str
    unallocated: Decimal = ZERO


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    discount_value: Decimal
    tax_value: Decimal
    grand_total: Decimal


@dataclass
class _StockPlan:
    item_id: str
    direction: StockDirection
    base_quantity: Decimal = ZERO
    cost_total: Decimal = ZERO

    @property
    def unit_cost(self) -> Decimal:
        if self.base_quantity == 0:
            return ZERO
        return self.cost_total / self.base_quantity


@dataclass
class _Normalised:
    kind: TransactionKind
    lines: List[LineItem] = field(default_factory=list)
    discount: Decimal = ZERO
    tax: Decimal = ZERO
    amount_paid: Optional[Decimal] = None
    amount: Decimal = ZERO
    credit_note_against: Optional[CreditNoteAgainst] = None


def _now() -> datetime:
    return datetime.now(UTC)


def generate_id(prefix: str, when: Optional[datetime] = None) -> str:
    """Return a sortable identifier ``{prefix}{YYYYMMDDHHMMSSffffff}-{random}``."""

    when = when or _now()
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:8]}"


def _decimal(value: Any, field_name: str) -> Decimal:
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} must be numeric, got {value!r}", field=field_name)
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValidationError(f"{field_name} must be numeric, got {value!r}", field=field_name) from exc
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be a finite number, got {value!r}", field=field_name)
    return result


def _non_negative(value: Any, field_name: str) -> Decimal:
    result = _decimal(value, field_name)
    if result < 0:
        raise ValidationError(f"{field_name} cannot be negative, got {result}", field=field_name)
    return result


def _adjustment(value: Decimal, kind: AdjustmentType, base: Decimal) -> Decimal:
    if kind is AdjustmentType.PERCENT:
        return base * value / HUNDRED
    return value


def compute_totals(
    lines: Sequence[LineItem],
    *,
    discount: Decimal = ZERO,
    discount_type: AdjustmentType = AdjustmentType.PERCENT,
    tax: Decimal = ZERO,
    tax_type: AdjustmentType = AdjustmentType.PERCENT,
) -> Totals:
    """Price a document.

    ``discount_value`` is the sum of the line discounts and the document
    discount (percent of the subtotal or absolute). Tax is a percent of the
    discounted subtotal or absolute, and the grand total never goes below zero.
    """

    subtotal = sum((line.gross for line in lines), ZERO)
    line_discounts = sum((line.discount_value for line in lines), ZERO)
    discount_value = line_discounts + _adjustment(discount, discount_type, subtotal)
    tax_value = _adjustment(tax, tax_type, subtotal - discount_value)
    grand_total = max(ZERO, subtotal - discount_value + tax_value)
    return Totals(subtotal=subtotal, discount_value=discount_value, tax_value=tax_value, grand_total=grand_total)


def stock_direction(kind: TransactionKind, against: Optional[CreditNoteAgainst]) -> Optional[StockDirection]:
    """Sales and returns to suppliers ship stock out; purchases and customer returns bring it in."""

    if kind is TransactionKind.SALE:
        return StockDirection.OUTBOUND
    if kind is TransactionKind.PURCHASE:
        return StockDirection.INBOUND
    if kind is TransactionKind.CREDIT_NOTE:
        if against is CreditNoteAgainst.PURCHASE:
            return StockDirection.OUTBOUND
        return StockDirection.INBOUND
    return None


def _normalise(kind: TransactionKind, command: TransactionCommand) -> _Normalised:
    """Validate ``command`` for ``kind`` without touching any record."""

    normalised = _Normalised(kind=kind)
    if not (command.party_id or (command.party_name and command.party_name.strip())):
        if not (kind in PAYMENT_KINDS and command.target_transaction_id):
            raise ValidationError("A counterparty is required", field="party")

    normalised.discount = _non_negative(command.discount, "discount")
    normalised.tax = _non_negative(command.tax, "tax")
    if command.amount_paid is not None:
        normalised.amount_paid = _non_negative(command.amount_paid, "amount_paid")

    for position, line in enumerate(command.line_items, start=1):
        quantity = _decimal(line.quantity, f"line_items[{position}].quantity")
        if quantity <= 0:
            raise ValidationError(
                f"Quantity must be greater than zero on line {position}",
                field=f"line_items[{position}].quantity",
            )
        normalised.lines.append(
            LineItem(
                item_id=line.item_id,
                quantity=quantity,
                unit_price=_non_negative(line.unit_price, f"line_items[{position}].unit_price"),
                unit=line.unit,
                discount_type=line.discount_type,
                discount=_non_negative(line.discount, f"line_items[{position}].discount"),
                description=line.description,
            )
        )

    if kind in STOCK_KINDS:
        if not normalised.lines:
            raise ValidationError("At least one line item is required", field="line_items")
        for position, line in enumerate(normalised.lines, start=1):
            if not line.item_id:
                raise ValidationError(f"Line {position} must reference an item", field=f"line_items[{position}].item_id")
        if kind is TransactionKind.CREDIT_NOTE:
            normalised.credit_note_against = command.credit_note_against or CreditNoteAgainst.SALE
    elif kind in PAYMENT_KINDS:
        if normalised.lines:
            raise ValidationError("Payments do not carry line items", field="line_items")
        if command.amount is None:
            raise ValidationError("Payment amount is required", field="amount")
        normalised.amount = _decimal(command.amount, "amount")
        if normalised.amount <= 0:
            raise ValidationError("Payment amount must be greater than zero", field="amount")
    elif kind is TransactionKind.EXPENSE:
        if any(line.item_id for line in normalised.lines):
            raise ValidationError("Expense lines cannot reference stock items", field="line_items")
        if not normalised.lines:
            if command.amount is None:
                raise ValidationError("An expense needs line items or an amount", field="amount")
            normalised.amount = _non_negative(command.amount, "amount")
            normalised.lines.append(
                LineItem(item_id=None, quantity=Decimal("1"), unit_price=normalised.amount, description=command.notes)
            )
    return normalised


def _ensure_tenant(record_tenant: str, tenant_id: str, description: str) -> None:
    if record_tenant != tenant_id:
        log.warning("Tenant '%s' denied access to %s owned by '%s'", tenant_id, description, record_tenant)
        raise InsufficientAuthorizationError(f"{description} does not belong to tenant {tenant_id}")


def _stored_party(context: "RuntimeContext", tenant_id: str, party_id: str) -> Party:
    party = context.store.get_party(party_id)
    _ensure_tenant(party.tenant_id, tenant_id, f"Party {party_id}")
    return party


def _stored_item(context: "RuntimeContext", tenant_id: str, item_id: str) -> Item:
    item = context.store.get_item(item_id)
    _ensure_tenant(item.tenant_id, tenant_id, f"Item {item_id}")
    return item


def _stored_transaction(context: "RuntimeContext", tenant_id: str, transaction_id: str) -> Transaction:
    transaction = context.store.get_transaction(transaction_id)
    _ensure_tenant(transaction.tenant_id, tenant_id, f"Transaction {transaction_id}")
    return transaction


def _unit_of_work(context: "RuntimeContext") -> UnitOfWork:
    return UnitOfWork(context.store, context.locks, timeout=context.settings.lock_timeout)


def _lock_party_by_name(uow: UnitOfWork, context: "RuntimeContext", tenant_id: str, name: str) -> Optional[str]:
    """Hold the name lock and return the id of the party with that name, if any."""

    uow.lock(party_name_key(tenant_id, name))
    existing = context.store.find_party_by_name(tenant_id, name)
    return existing.party_id if existing is not None else None


def _resolve_party(
    uow: UnitOfWork,
    tenant_id: str,
    party_id: Optional[str],
    party_name: Optional[str],
    when: datetime,
) -> Party:
    """Return the staged party, creating it by name when it does not exist yet."""

    if party_id is not None:
        return uow.party(party_id)
    if not party_name:
        raise ValidationError("A counterparty is required", field="party")
    party = Party(
        party_id=generate_id("P", when),
        tenant_id=tenant_id,
        name=party_name.strip(),
        created_at=when,
    )
    log.info("Auto-created party '%s' ('%s') for tenant '%s'", party.party_id, party.name, tenant_id)
    return uow.add_party(party)


def _build_stock_plans(
    kind: TransactionKind,
    against: Optional[CreditNoteAgainst],
    lines: Sequence[LineItem],
    items: Dict[str, Item],
    *,
    strict: bool,
) -> Dict[str, _StockPlan]:
    """Aggregate lines into one base-unit movement per item.

    Inbound lots are costed at the quantity-weighted base-unit price of their
    lines; customer returns are costed at the item's purchase price when it
    has one.
    """

    direction = stock_direction(kind, against)
    plans: Dict[str, _StockPlan] = {}
    if direction is None:
        return plans
    for line in lines:
        item = items[line.item_id]
        factor = unit_factor(item.unit, line.unit, strict=strict)
        line.base_quantity = to_base_quantity(item.unit, line.quantity, line.unit, strict=strict)
        base_price = line.unit_price / factor
        if kind is TransactionKind.CREDIT_NOTE and direction is StockDirection.INBOUND and item.purchase_price > 0:
            base_price = item.purchase_price
        plan = plans.setdefault(line.item_id, _StockPlan(item_id=line.item_id, direction=direction))
        plan.base_quantity += line.base_quantity
        plan.cost_total += line.base_quantity * base_price
    return plans


def _apply_stock_plans(
    transaction: Transaction,
    previous: Sequence[StockEffect],
    plans: Dict[str, _StockPlan],
    items: Dict[str, Item],
    at: datetime,
) -> List[StockEffect]:
    """Move every touched item from its previous effect to its planned quantity in one step."""

    previous_by_item = {effect.item_id: effect for effect in previous}
    effects: List[StockEffect] = []
    for item_id in _ordered_union(previous_by_item, plans):
        item = items[item_id]
        prior = previous_by_item.get(item_id)
        plan = plans.get(item_id)
        if plan is None:
            valuation.reverse(item, prior)
            continue
        if prior is not None and prior.direction is not plan.direction:
            valuation.reverse(item, prior)
            prior = None
        effect = valuation.adjust(
            item,
            prior,
            plan.base_quantity,
            direction=plan.direction,
            unit_cost=plan.unit_cost,
            at=at,
        )
        if effect is not None:
            effects.append(effect)
        if transaction.kind is TransactionKind.PURCHASE and plan.base_quantity > 0:
            item.purchase_price = plan.unit_cost
    return effects


def _ordered_union(first: Iterable[str], second: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    ordered: List[str] = []
    for key in (*first, *second):
        if key not in seen:
            seen.add(key)
            ordered.append(key)
    return ordered


def _stage_items(uow: UnitOfWork, item_ids: Iterable[str]) -> Dict[str, Item]:
    return {item_id: uow.item(item_id) for item_id in item_ids}


def _payment_targets(
    uow: UnitOfWork,
    context: "RuntimeContext",
    transaction: Transaction,
    target_id: Optional[str],
) -> List[Transaction]:
    """Stage the open documents a payment settles, oldest first."""

    target_kind = ledger.PAYMENT_TARGET_KIND[transaction.kind]
    if target_id is not None:
        target = uow.transaction(target_id)
        if target.kind is not target_kind:
            raise ValidationError(
                f"{transaction.kind.value} cannot settle a {target.kind.value}",
                field="target_transaction_id",
            )
        if target.party_id != transaction.party_id:
            raise ValidationError("Payment party does not match the target document", field="target_transaction_id")
        return [target]
    if transaction.party_id is None:
        return []
    candidates = context.store.list_transactions(
        transaction.tenant_id, party_id=transaction.party_id, kinds=(target_kind,)
    )
    staged = [uow.transaction(candidate.transaction_id) for candidate in candidates]
    return ledger.open_documents(staged, transaction.party_id, target_kind)


def _allocate_payment(
    uow: UnitOfWork,
    context: "RuntimeContext",
    transaction: Transaction,
    target_id: Optional[str],
    allow_advance: bool,
) -> ledger.AllocationPlan:
    targets = _payment_targets(uow, context, transaction, target_id)
    plan = ledger.plan_allocation(targets, transaction.grand_total, allow_advance=allow_advance)
    ledger.apply_allocations({target.transaction_id: target for target in targets}, plan.allocations)
    transaction.allocations = list(plan.allocations)
    return plan


def _withdraw_allocations(uow: UnitOfWork, context: "RuntimeContext", transaction: Transaction) -> None:
    live: Dict[str, Transaction] = {}
    for allocation in transaction.allocations:
        if allocation.target_id in uow.deleted:
            continue
        try:
            context.store.get_transaction(allocation.target_id)
        except MissingReferenceError:
            continue
        live[allocation.target_id] = uow.transaction(allocation.target_id)
    ledger.apply_allocations(live, transaction.allocations, sign=-1)
    transaction.allocations = []


def _affected_queries(kind: TransactionKind) -> tuple[QueryKind, ...]:
    if kind in STOCK_KINDS:
        return tuple(QueryKind)
    if kind is TransactionKind.EXPENSE:
        return (QueryKind.PARTY_BALANCE, QueryKind.PROFIT_AND_LOSS)
    return (QueryKind.PARTY_BALANCE,)


def _fill_transaction(
    transaction: Transaction,
    command: TransactionCommand,
    normalised: _Normalised,
) -> None:
    """Copy the command's inputs and computed totals onto ``transaction``."""

    transaction.line_items = normalised.lines
    transaction.payment_type = command.payment_type
    transaction.credit_note_against = normalised.credit_note_against
    transaction.discount_type = command.discount_type
    transaction.discount = normalised.discount
    transaction.tax_type = command.tax_type
    transaction.tax = normalised.tax
    transaction.notes = command.notes

    if normalised.kind in PAYMENT_KINDS:
        transaction.line_items = []
        transaction.subtotal = normalised.amount
        transaction.discount_value = ZERO
        transaction.tax_value = ZERO
        transaction.grand_total = normalised.amount
        transaction.amount_paid = normalised.amount
        return

    totals = compute_totals(
        normalised.lines,
        discount=normalised.discount,
        discount_type=command.discount_type,
        tax=normalised.tax,
        tax_type=command.tax_type,
    )
    transaction.subtotal = totals.subtotal
    transaction.discount_value = totals.discount_value
    transaction.tax_value = totals.tax_value
    transaction.grand_total = totals.grand_total
    if normalised.amount_paid is not None:
        transaction.amount_paid = normalised.amount_paid
    elif command.payment_type is PaymentType.CASH:
        # Cash documents without an explicit amount are settled in full.
        transaction.amount_paid = totals.grand_total
    else:
        transaction.amount_paid = ZERO


def _check_allocated_cover(transaction: Transaction) -> None:
    """Refuse an edit that leaves less open on a document than payments already cover."""

    open_amount = transaction.grand_total - transaction.amount_paid
    if transaction.allocated > 0 and open_amount < transaction.allocated:
        log.warning(
            "Rejected edit of %s: %s already allocated, only %s would remain open",
            transaction.document_number,
            transaction.allocated,
            open_amount,
        )
        raise OverpaymentError(transaction.allocated, max(open_amount, ZERO))


def _resolve_payment_party(
    context: "RuntimeContext",
    tenant_id: str,
    kind: TransactionKind,
    command: TransactionCommand,
) -> Optional[str]:
    """A payment aimed at one document may take its party from that document."""

    if kind not in PAYMENT_KINDS or command.target_transaction_id is None:
        return command.party_id
    target = _stored_transaction(context, tenant_id, command.target_transaction_id)
    if command.party_id is not None and command.party_id != target.party_id:
        raise ValidationError("Payment party does not match the target document", field="target_transaction_id")
    return target.party_id


def create_transaction(
    context: "RuntimeContext",
    kind: TransactionKind,
    tenant_id: str,
    command: TransactionCommand,
) -> CreateResult:
    """Create a transaction of ``kind`` for ``tenant_id``.

    Args:
        context (RuntimeContext): Runtime services (store, locks, sequencer,
            cache, settings).
        kind (TransactionKind): One of the six transaction variants.
        tenant_id (str): Tenant issuing the request.
        command (TransactionCommand): Requested contents.

    Returns:
        CreateResult: A copy of the persisted document, the number issued
            and, for payments, the amount left unallocated.

    Raises:
        ValidationError: If the command is malformed.
        MissingReferenceError: If a referenced party, item or document is unknown.
        InsufficientAuthorizationError: If a reference belongs to another tenant.
        OverpaymentError: If a payment exceeds the outstanding balance.
        LockTimeoutError: If a lock could not be acquired in time.
        SequenceConflictError: If no unique document number could be issued.
        ConsistencyError: If storage rejected the write; nothing was applied.
    """

    kind = TransactionKind(kind)
    normalised = _normalise(kind, command)
    when = command.timestamp or _now()
    strict = context.settings.strict_units

    party_id = _resolve_payment_party(context, tenant_id, kind, command)
    if party_id is not None:
        _stored_party(context, tenant_id, party_id)
    item_ids = _ordered_union((), (line.item_id for line in normalised.lines if line.item_id))
    for item_id in item_ids:
        _stored_item(context, tenant_id, item_id)

    document_type = DOCUMENT_TYPE_BY_KIND[kind]
    with _unit_of_work(context) as uow:
        uow.lock(sequence_key(tenant_id, document_type.value))
        if party_id is None:
            party_id = _lock_party_by_name(uow, context, tenant_id, command.party_name)
        party_keys = [party_key(tenant_id, party_id)] if party_id is not None else []
        uow.lock(*party_keys, *(item_key(tenant_id, item_id) for item_id in item_ids))

        party = _resolve_party(uow, tenant_id, party_id, command.party_name, when)
        items = _stage_items(uow, item_ids)

        transaction = Transaction(
            transaction_id=generate_id("T", when),
            tenant_id=tenant_id,
            kind=kind,
            document_number="",
            party_id=party.party_id,
            created_at=when,
        )
        _fill_transaction(transaction, command, normalised)

        unallocated = ZERO
        if kind in PAYMENT_KINDS:
            plan = _allocate_payment(uow, context, transaction, command.target_transaction_id, command.allow_advance)
            unallocated = plan.unallocated

        plans = _build_stock_plans(kind, normalised.credit_note_against, transaction.line_items, items, strict=strict)
        transaction.document_number = context.sequencer.next_number(uow, tenant_id, document_type)
        transaction.stock_effects = _apply_stock_plans(transaction, (), plans, items, when)

        transaction.ledger_delta = ledger.ledger_delta_for(transaction)
        ledger.apply_delta(party, transaction.ledger_delta)

        uow.put_transaction(transaction)
        uow.commit()

    context.cache.invalidate(tenant_id, *_affected_queries(kind))
    log.info(
        "Created %s '%s' (%s) for party '%s': total=%s delta=%s",
        kind.value,
        transaction.document_number,
        transaction.transaction_id,
        transaction.party_id,
        transaction.grand_total,
        transaction.ledger_delta,
    )
    return CreateResult(
        document=copy.deepcopy(transaction),
        number_issued=transaction.document_number,
        unallocated=unallocated,
    )


def update_transaction(
    context: "RuntimeContext",
    tenant_id: str,
    transaction_id: str,
    command: TransactionCommand,
) -> Transaction:
    """Replace the contents of an existing transaction in place.

    The kind, document number and creation time are kept. Stock moves by the
    net difference per item and the party balance by ``new_delta - old_delta``;
    when the party changes the old party gives back its delta and the new
    party takes the new one.

    Raises:
        ValidationError, MissingReferenceError, InsufficientAuthorizationError,
        OverpaymentError, LockTimeoutError, ConsistencyError: As for
            :func:`create_transaction`.
    """

    stored = _stored_transaction(context, tenant_id, transaction_id)
    kind = stored.kind
    normalised = _normalise(kind, command)
    strict = context.settings.strict_units
    when = _now()

    new_party_id = _resolve_payment_party(context, tenant_id, kind, command)
    if new_party_id is not None:
        _stored_party(context, tenant_id, new_party_id)
    new_item_ids = _ordered_union((), (line.item_id for line in normalised.lines if line.item_id))
    for item_id in new_item_ids:
        _stored_item(context, tenant_id, item_id)

    with _unit_of_work(context) as uow:
        uow.lock(transaction_key(tenant_id, transaction_id))
        # Re-read under the transaction lock; party and items may have changed.
        stored = _stored_transaction(context, tenant_id, transaction_id)
        if new_party_id is None:
            new_party_id = _lock_party_by_name(uow, context, tenant_id, command.party_name)
        if new_party_id is not None and new_party_id != stored.party_id and stored.allocated > 0:
            raise ValidationError(
                "A document with allocated payments cannot move to another party",
                field="party",
            )

        party_ids = {party_id for party_id in (stored.party_id, new_party_id) if party_id is not None}
        item_ids = _ordered_union((effect.item_id for effect in stored.stock_effects), new_item_ids)
        uow.lock(
            *(party_key(tenant_id, party_id) for party_id in party_ids),
            *(item_key(tenant_id, item_id) for item_id in item_ids),
        )

        old = uow.transaction(transaction_id)
        old_party_id = old.party_id
        old_delta = old.ledger_delta
        previous_effects = list(old.stock_effects)
        new_party = _resolve_party(uow, tenant_id, new_party_id, command.party_name, when)
        items = _stage_items(uow, item_ids)

        if kind in PAYMENT_KINDS:
            _withdraw_allocations(uow, context, old)

        transaction = old
        transaction.party_id = new_party.party_id
        transaction.updated_at = when
        _fill_transaction(transaction, command, normalised)

        if kind in PAYMENT_KINDS:
            _allocate_payment(uow, context, transaction, command.target_transaction_id, command.allow_advance)
        else:
            _check_allocated_cover(transaction)

        plans = _build_stock_plans(kind, normalised.credit_note_against, transaction.line_items, items, strict=strict)
        transaction.stock_effects = _apply_stock_plans(transaction, previous_effects, plans, items, transaction.created_at)

        new_delta = ledger.ledger_delta_for(transaction)
        if old_party_id == new_party.party_id:
            ledger.apply_delta(new_party, new_delta - old_delta)
        else:
            if old_party_id is not None:
                ledger.apply_delta(uow.party(old_party_id), -old_delta)
            ledger.apply_delta(new_party, new_delta)
        transaction.ledger_delta = new_delta

        uow.put_transaction(transaction)
        uow.commit()

    context.cache.invalidate(tenant_id, *_affected_queries(kind))
    log.info(
        "Updated %s '%s' (%s): total=%s delta %s -> %s",
        kind.value,
        transaction.document_number,
        transaction_id,
        transaction.grand_total,
        old_delta,
        new_delta,
    )
    return copy.deepcopy(transaction)


def delete_transaction(context: "RuntimeContext", tenant_id: str, transaction_id: str) -> Transaction:
    """Delete a transaction after reversing its stock effects and ledger delta.

    The document counter is left as is; deleted numbers are never reissued.

    Returns:
        Transaction: A copy of the deleted document as it was stored.
    """

    stored = _stored_transaction(context, tenant_id, transaction_id)
    with _unit_of_work(context) as uow:
        uow.lock(transaction_key(tenant_id, transaction_id))
        stored = _stored_transaction(context, tenant_id, transaction_id)
        party_keys = [party_key(tenant_id, stored.party_id)] if stored.party_id is not None else []
        uow.lock(*party_keys, *(item_key(tenant_id, effect.item_id) for effect in stored.stock_effects))

        old = uow.transaction(transaction_id)
        removed = copy.deepcopy(old)
        for effect in old.stock_effects:
            valuation.reverse(uow.item(effect.item_id), effect)
        if old.kind in PAYMENT_KINDS:
            _withdraw_allocations(uow, context, old)
        if old.party_id is not None:
            ledger.apply_delta(uow.party(old.party_id), -old.ledger_delta)

        uow.delete_transaction(transaction_id)
        uow.commit()

    context.cache.invalidate(tenant_id, *_affected_queries(removed.kind))
    log.info(
        "Deleted %s '%s' (%s); reversed delta %s",
        removed.kind.value,
        removed.document_number,
        transaction_id,
        removed.ledger_delta,
    )
    return removed


def register_party(context: "RuntimeContext", tenant_id: str, command: RegisterPartyCommand) -> Party:
    """Register a named party; its balance starts at the opening balance."""

    name = (command.name or "").strip()
    if not name:
        raise ValidationError("Party name is required", field="name")
    opening = _decimal(command.opening_balance, "opening_balance")

    with _unit_of_work(context) as uow:
        if _lock_party_by_name(uow, context, tenant_id, name) is not None:
            log.warning("Duplicate party name '%s' for tenant '%s'", name, tenant_id)
            raise ValidationError(f"Party '{name}' already exists", field="name")
        when = _now()
        party = uow.add_party(
            Party(
                party_id=generate_id("P", when),
                tenant_id=tenant_id,
                name=name,
                opening_balance=opening,
                balance=opening,
                created_at=when,
            )
        )
        uow.commit()

    context.cache.invalidate(tenant_id, QueryKind.PARTY_BALANCE)
    log.info("Registered party '%s' ('%s') for tenant '%s'", party.party_id, name, tenant_id)
    return copy.deepcopy(party)


def register_item(context: "RuntimeContext", tenant_id: str, command: RegisterItemCommand) -> Item:
    """Register a stock item; a positive opening quantity seeds the first batch at the purchase price."""

    name = (command.name or "").strip()
    if not name:
        raise ValidationError("Item name is required", field="name")
    unit = parse_unit(command.unit, conversion_factor=command.conversion_factor)
    opening = _non_negative(command.opening_quantity, "opening_quantity")
    purchase_price = _non_negative(command.purchase_price, "purchase_price")
    sale_price = _non_negative(command.sale_price, "sale_price")

    with _unit_of_work(context) as uow:
        uow.lock(item_name_key(tenant_id, name))
        if context.store.find_item_by_name(tenant_id, name) is not None:
            log.warning("Duplicate item name '%s' for tenant '%s'", name, tenant_id)
            raise ValidationError(f"Item '{name}' already exists", field="name")

        when = _now()
        item = Item(
            item_id=generate_id("I", when),
            tenant_id=tenant_id,
            name=name,
            unit=unit,
            purchase_price=purchase_price,
            sale_price=sale_price,
        )
        uow.lock(item_key(tenant_id, item.item_id))
        uow.add_item(item)
        if opening > 0:
            valuation.adjust(
                item,
                None,
                opening,
                direction=StockDirection.INBOUND,
                unit_cost=purchase_price,
                at=when,
            )
        uow.commit()

    context.cache.invalidate(tenant_id, QueryKind.STOCK_SUMMARY, QueryKind.COST_OF_GOODS_SOLD, QueryKind.PROFIT_AND_LOSS)
    log.info(
        "Registered item '%s' ('%s', %s) with opening stock %s",
        item.item_id,
        name,
        unit.label,
        opening,
    )
    return copy.deepcopy(item)


__all__ = [
    "LineItemInput",
    "TransactionCommand",
    "RegisterPartyCommand",
    "RegisterItemCommand",
    "CreateResult",
    "Totals",
    "compute_totals",
    "stock_direction",
    "generate_id",
    "create_transaction",
    "update_transaction",
    "delete_transaction",
    "register_party",
    "register_item",
]
