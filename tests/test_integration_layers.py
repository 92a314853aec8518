"""Integration tests describing the end-to-end ledger workflows.

These scenarios run the business logic over a real workbook on disk,
persisting and reloading between steps the way separate CLI invocations do.
"""

from __future__ import annotations

from decimal import Decimal

from ledgerbook import core_logic
from ledgerbook.constants import CreditNoteAgainst, PaymentType, TransactionKind


def _create(context, kind, **options):
    tenant = context.settings.default_tenant
    return core_logic.create_transaction(context, kind, tenant, core_logic.TransactionCommand(**options))


def _line(item_id, quantity, price, unit=None):
    return core_logic.LineItemInput(item_id=item_id, quantity=quantity, unit_price=price, unit=unit)


def _cycle(context):
    """Persist and reload so every step starts from what is on disk."""

    core_logic.persist_context(context)
    return core_logic.refresh_context(context)


def test_trading_lifecycle_flow(runtime_context):
    """Walk through stocking, trading, settling and reporting across reloads."""

    context = runtime_context
    tenant = context.settings.default_tenant

    customer = core_logic.register_party(context, tenant, core_logic.RegisterPartyCommand(name="Alice"))
    supplier = core_logic.register_party(context, tenant, core_logic.RegisterPartyCommand(name="Bolt Supplies"))
    widget = core_logic.register_item(
        context,
        tenant,
        core_logic.RegisterItemCommand(
            name="Widget",
            unit="Piece",
            conversion_factor=None,
            opening_quantity="10",
            purchase_price="8",
            sale_price="15",
        ),
    )
    context = _cycle(context)

    purchase = _create(
        context,
        TransactionKind.PURCHASE,
        party_id=supplier.party_id,
        line_items=[_line(widget.item_id, "20", "10")],
        amount_paid="50",
    )
    assert purchase.number_issued == "PO001"
    context = _cycle(context)

    sale = _create(context, TransactionKind.SALE, party_id=customer.party_id, line_items=[_line(widget.item_id, "15", "15")])
    assert sale.number_issued == "INV001"
    context = _cycle(context)

    # The opening lot is used up, so the cost comes from the purchased lot.
    assert core_logic.get_cost_of_goods_sold(context, tenant, widget.item_id) == Decimal("150")

    receipt = _create(context, TransactionKind.PAYMENT_IN, party_id=customer.party_id, amount="100")
    assert [allocation.target_id for allocation in receipt.document.allocations] == [sale.document.transaction_id]
    _create(
        context,
        TransactionKind.CREDIT_NOTE,
        party_id=customer.party_id,
        line_items=[_line(widget.item_id, "2", "15")],
        credit_note_against=CreditNoteAgainst.SALE,
    )
    _create(context, TransactionKind.EXPENSE, party_id=supplier.party_id, amount="20", payment_type=PaymentType.CASH)
    context = _cycle(context)

    assert core_logic.get_party_balance(context, tenant, customer.party_id).balance == Decimal("95")
    assert core_logic.get_party_balance(context, tenant, supplier.party_id).balance == Decimal("-150")

    summary = core_logic.get_item_stock_summary(context, tenant, widget.item_id)
    assert summary.stock_quantity == Decimal("17")

    statement = core_logic.get_profit_and_loss(context, tenant)
    assert statement.sales == Decimal("225")
    assert statement.sale_returns == Decimal("30")
    assert statement.expenses == Decimal("20")


def test_edit_and_delete_survive_reload(runtime_context):
    """Edits and deletions are written back; deleted numbers are not reissued."""

    context = runtime_context
    tenant = context.settings.default_tenant
    customer = core_logic.register_party(context, tenant, core_logic.RegisterPartyCommand(name="Alice"))
    widget = core_logic.register_item(
        context,
        tenant,
        core_logic.RegisterItemCommand(
            name="Widget",
            unit="Piece / Dozen",
            conversion_factor="12",
            opening_quantity="100",
            purchase_price="10",
            sale_price="15",
        ),
    )
    first = _create(context, TransactionKind.SALE, party_id=customer.party_id, line_items=[_line(widget.item_id, "1", "180", "Dozen")])
    second = _create(context, TransactionKind.SALE, party_id=customer.party_id, line_items=[_line(widget.item_id, "5", "15")])
    context = _cycle(context)

    core_logic.update_transaction(
        context,
        tenant,
        first.document.transaction_id,
        core_logic.TransactionCommand(party_id=customer.party_id, line_items=[_line(widget.item_id, "2", "180", "Dozen")]),
    )
    core_logic.delete_transaction(context, tenant, second.document.transaction_id)
    context = _cycle(context)

    assert core_logic.get_item(context, tenant, widget.item_id).stock == Decimal("76")
    assert core_logic.get_party(context, tenant, customer.party_id).balance == Decimal("360")
    numbers = [transaction.document_number for transaction in core_logic.list_transactions(context, tenant)]
    assert numbers == ["INV001"]

    third = _create(context, TransactionKind.SALE, party_id=customer.party_id, line_items=[_line(widget.item_id, "1", "15")])
    assert third.number_issued == "INV003"
