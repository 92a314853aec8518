"""Tests for the workbook-backed store and its unit of work."""

from __future__ import annotations

from decimal import Decimal

import pytest

from ledgerbook import core_logic, data_manager
from ledgerbook.constants import DocumentType, SheetName, TransactionKind
from ledgerbook.errors import ConsistencyError, MissingReferenceError, SequenceConflictError
from ledgerbook.locks import LockManager, party_key, transaction_key
from ledgerbook.models import Party, Transaction
from ledgerbook.store import LedgerStore, UnitOfWork


def _transaction(transaction_id, number, moment, tenant="acme"):
    return Transaction(
        transaction_id=transaction_id,
        tenant_id=tenant,
        kind=TransactionKind.SALE,
        document_number=number,
        party_id=None,
        created_at=moment(),
    )


@pytest.fixture
def stocked(runtime_context):
    """A workbook-backed context with one customer and one item."""

    tenant = runtime_context.settings.default_tenant
    party = core_logic.register_party(runtime_context, tenant, core_logic.RegisterPartyCommand(name="Alice"))
    item = core_logic.register_item(
        runtime_context,
        tenant,
        core_logic.RegisterItemCommand(name="Widget", unit="Piece / Dozen", opening_quantity="100", purchase_price="10"),
    )
    return runtime_context, tenant, party, item


def test_commit_writes_rows_and_records(stocked):
    """Committed records are visible in the store and on their sheets."""

    context, tenant, party, item = stocked
    workbook = context.workbook

    assert context.store.get_party(party.party_id).name == "Alice"
    parties = list(data_manager.iter_sheet(workbook, SheetName.PARTIES))
    assert [row[0] for row in parties] == [party.party_id]
    batches = list(data_manager.iter_sheet(workbook, SheetName.BATCHES))
    assert [(row[0], row[1], row[3]) for row in batches] == [(item.item_id, f"{item.item_id}-B1", "100")]


def test_sale_writes_every_transaction_sheet(stocked, line):
    context, tenant, party, item = stocked
    result = core_logic.create_transaction(
        context,
        TransactionKind.SALE,
        tenant,
        core_logic.TransactionCommand(party_id=party.party_id, line_items=[line(item.item_id, "2", "180", "Dozen")]),
    )
    workbook = context.workbook
    transaction_id = result.document.transaction_id

    def owned(sheet):
        return [row for row in data_manager.iter_sheet(workbook, sheet) if row[0] == transaction_id]

    assert len(owned(SheetName.TRANSACTIONS)) == 1
    assert len(owned(SheetName.LINE_ITEMS)) == 1
    assert owned(SheetName.STOCK_MOVES)[0][2] == "OUT"
    assert owned(SheetName.LOT_CONSUMPTIONS)[0][5] == "24"
    counters = list(data_manager.iter_sheet(workbook, SheetName.COUNTERS))
    assert counters == [(f"{tenant}:INVOICE", tenant, "INVOICE", 1)]


def test_withdrawn_lot_quantity_survives_reload(stocked, line):
    """A purchase deleted after its lot was sold leaves a Withdrawals row until the sale goes."""

    context, tenant, party, item = stocked
    purchase = core_logic.create_transaction(
        context,
        TransactionKind.PURCHASE,
        tenant,
        core_logic.TransactionCommand(party_id=party.party_id, line_items=[line(item.item_id, "10", "12")]),
    )
    sale = core_logic.create_transaction(
        context,
        TransactionKind.SALE,
        tenant,
        core_logic.TransactionCommand(party_id=party.party_id, line_items=[line(item.item_id, "105", "15")]),
    )
    core_logic.delete_transaction(context, tenant, purchase.document.transaction_id)

    withdrawals = list(data_manager.iter_sheet(context.workbook, SheetName.WITHDRAWALS))
    assert withdrawals == [(item.item_id, f"{item.item_id}-B2", "5")]

    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)
    assert context.store.get_item(item.item_id).withdrawn == {f"{item.item_id}-B2": Decimal("5")}

    core_logic.delete_transaction(context, tenant, sale.document.transaction_id)
    reloaded = context.store.get_item(item.item_id)
    assert reloaded.stock == Decimal("100")
    assert [(batch.batch_id, batch.quantity) for batch in reloaded.batches] == [(f"{item.item_id}-B1", Decimal("100"))]
    assert list(data_manager.iter_sheet(context.workbook, SheetName.WITHDRAWALS)) == []


def test_failed_write_restores_sheets_and_store(stocked, line, monkeypatch):
    """A storage failure mid-commit leaves neither sheets nor records changed."""

    context, tenant, party, item = stocked
    workbook = context.workbook
    before = data_manager.capture_sheets(workbook, list(SheetName))
    original = data_manager.replace_owned_rows

    def _failing(target, sheet, owner_id, rows):
        if sheet is SheetName.LINE_ITEMS:
            raise OSError("disk full")
        return original(target, sheet, owner_id, rows)

    monkeypatch.setattr(data_manager, "replace_owned_rows", _failing)
    with pytest.raises(ConsistencyError):
        core_logic.create_transaction(
            context,
            TransactionKind.SALE,
            tenant,
            core_logic.TransactionCommand(party_id=party.party_id, line_items=[line(item.item_id, "30", "15")]),
        )

    assert data_manager.capture_sheets(workbook, list(SheetName)) == before
    assert context.store.get_party(party.party_id).balance == Decimal("0")
    assert context.store.get_item(item.item_id).stock == Decimal("100")
    assert context.store.list_transactions(tenant) == []
    assert context.store.counter(tenant, DocumentType.INVOICE) == 0


def test_duplicate_document_number_is_refused(moment):
    """Two live documents of one tenant never share a number."""

    store = LedgerStore()
    locks = LockManager(timeout=0.1)
    with UnitOfWork(store, locks) as uow:
        uow.put_transaction(_transaction("T1", "INV001", moment))
        uow.commit()

    with UnitOfWork(store, locks) as uow:
        uow.put_transaction(_transaction("T2", "INV001", moment))
        with pytest.raises(SequenceConflictError):
            uow.commit()

    assert store.document_number_exists("acme", "INV001")
    with pytest.raises(MissingReferenceError):
        store.get_transaction("T2")


def test_same_number_allowed_for_other_tenant(moment):
    store = LedgerStore()
    locks = LockManager(timeout=0.1)
    with UnitOfWork(store, locks) as uow:
        uow.put_transaction(_transaction("T1", "INV001", moment))
        uow.put_transaction(_transaction("T2", "INV001", moment, tenant="globex"))
        uow.commit()
    assert store.highest_document_number("acme", "INV") == 1
    assert store.highest_document_number("globex", "INV") == 1
    assert store.highest_document_number("globex", "PO") == 0


def test_deleting_frees_document_number(moment):
    store = LedgerStore()
    locks = LockManager(timeout=0.1)
    with UnitOfWork(store, locks) as uow:
        uow.put_transaction(_transaction("T1", "INV007", moment))
        uow.commit()
    with UnitOfWork(store, locks) as uow:
        uow.lock(transaction_key("acme", "T1"))
        uow.delete_transaction("T1")
        uow.commit()
    assert not store.document_number_exists("acme", "INV007")
    assert store.highest_document_number("acme", "INV") == 0


def test_uncommitted_changes_are_discarded():
    """Leaving the block without committing drops staged copies."""

    store = LedgerStore()
    locks = LockManager(timeout=0.1)
    with UnitOfWork(store, locks) as uow:
        uow.lock(party_key("acme", "P1"))
        uow.add_party(Party(party_id="P1", tenant_id="acme", name="Alice"))
        uow.commit()

    with pytest.raises(KeyError):
        with UnitOfWork(store, locks) as uow:
            uow.lock(party_key("acme", "P1"))
            uow.party("P1").balance = Decimal("99")
            raise KeyError("abandon")

    assert store.get_party("P1").balance == Decimal("0")


def test_staging_requires_lock():
    store = LedgerStore()
    locks = LockManager(timeout=0.1)
    with UnitOfWork(store, locks) as uow:
        uow.lock(party_key("acme", "P1"))
        uow.add_party(Party(party_id="P1", tenant_id="acme", name="Alice"))
        uow.commit()

    with UnitOfWork(store, locks) as uow:
        with pytest.raises(RuntimeError):
            uow.party("P1")


def test_commit_twice_is_an_error():
    store = LedgerStore()
    with UnitOfWork(store, LockManager(timeout=0.1)) as uow:
        uow.commit()
        with pytest.raises(RuntimeError):
            uow.commit()


def test_snapshot_is_isolated_from_later_commits():
    """Readers holding a snapshot never observe a later commit."""

    store = LedgerStore()
    locks = LockManager(timeout=0.1)
    snapshot = store.snapshot()
    with UnitOfWork(store, locks) as uow:
        uow.lock(party_key("acme", "P1"))
        uow.add_party(Party(party_id="P1", tenant_id="acme", name="Alice"))
        uow.commit()
    assert snapshot.parties == {}
    assert "P1" in store.snapshot().parties


def test_reload_rebuilds_records_from_workbook(stocked, line, moment):
    """A new store over the same workbook sees identical records."""

    context, tenant, party, item = stocked
    sale = core_logic.create_transaction(
        context,
        TransactionKind.SALE,
        tenant,
        core_logic.TransactionCommand(party_id=party.party_id, line_items=[line(item.item_id, "30", "15")]),
    )
    receipt = core_logic.create_transaction(
        context,
        TransactionKind.PAYMENT_IN,
        tenant,
        core_logic.TransactionCommand(party_id=party.party_id, amount="100"),
    )

    reloaded = LedgerStore(context.workbook)
    assert reloaded.get_transaction(sale.document.transaction_id) == context.store.get_transaction(
        sale.document.transaction_id
    )
    assert reloaded.get_transaction(receipt.document.transaction_id).allocations == receipt.document.allocations
    assert reloaded.get_item(item.item_id) == context.store.get_item(item.item_id)
    assert reloaded.get_party(party.party_id).balance == Decimal("350")
    assert reloaded.counter(tenant, DocumentType.INVOICE) == 1
    assert reloaded.document_number_exists(tenant, "RCV001")
