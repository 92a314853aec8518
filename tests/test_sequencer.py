"""Tests for document number issuance."""

from __future__ import annotations

import threading
from dataclasses import replace
from unittest.mock import Mock

import pytest

from ledgerbook import core_logic, ledger
from ledgerbook.constants import DocumentType, TransactionKind
from ledgerbook.errors import SequenceConflictError
from ledgerbook.locks import LockManager, sequence_key
from ledgerbook.sequencer import DocumentSequencer, format_document_number
from ledgerbook.store import LedgerStore, UnitOfWork


@pytest.mark.parametrize(
    ("value", "expected"),
    [(1, "INV001"), (42, "INV042"), (999, "INV999"), (1000, "INV1000"), (12345, "INV12345")],
)
def test_format_document_number_pads_and_widens(value, expected):
    """Numbers are zero-padded to three digits and never truncated."""

    assert format_document_number("INV", value) == expected


def test_next_number_starts_at_one_and_stages_counter():
    """The first document is number one; the counter is staged, not committed."""

    store = LedgerStore()
    sequencer = DocumentSequencer(retries=3, backoff=0)
    with UnitOfWork(store, LockManager(timeout=0.1)) as uow:
        assert sequencer.next_number(uow, "acme", DocumentType.INVOICE) == "INV001"
        assert uow.holds(sequence_key("acme", DocumentType.INVOICE.value))
        assert uow.counters == {("acme", DocumentType.INVOICE): 1}
    assert store.counter("acme", DocumentType.INVOICE) == 0


def test_next_number_continues_after_999(context, tenant):
    """The thousandth invoice widens to four digits."""

    with UnitOfWork(context.store, context.locks) as uow:
        uow.lock(sequence_key(tenant, DocumentType.INVOICE.value))
        uow.set_counter(tenant, DocumentType.INVOICE, 999)
        uow.commit()
    with UnitOfWork(context.store, context.locks) as uow:
        assert context.sequencer.next_number(uow, tenant, DocumentType.INVOICE) == "INV1000"


def test_counter_space_is_per_tenant_and_type(context, tenant, customer, supplier, party_factory, line, widget):
    """Each (tenant, document type) pair counts on its own."""

    create = core_logic.create_transaction
    sale = core_logic.TransactionCommand(party_id=customer.party_id, line_items=[line(widget.item_id, "1", "15")])
    purchase = core_logic.TransactionCommand(party_id=supplier.party_id, line_items=[line(widget.item_id, "1", "10")])
    assert create(context, TransactionKind.SALE, tenant, sale).number_issued == "INV001"
    assert create(context, TransactionKind.SALE, tenant, sale).number_issued == "INV002"
    assert create(context, TransactionKind.PURCHASE, tenant, purchase).number_issued == "PO001"

    other = party_factory("Zed", tenant_id="globex")
    receipt = core_logic.TransactionCommand(party_id=other.party_id, amount="5", allow_advance=True)
    assert create(context, TransactionKind.PAYMENT_IN, "globex", receipt).number_issued == "RCV001"


def test_numbers_are_not_reused_after_delete(context, tenant, customer, line, widget):
    """Deleting the newest document does not give its number back."""

    command = core_logic.TransactionCommand(party_id=customer.party_id, line_items=[line(widget.item_id, "1", "15")])
    core_logic.create_transaction(context, TransactionKind.SALE, tenant, command)
    second = core_logic.create_transaction(context, TransactionKind.SALE, tenant, command)
    core_logic.delete_transaction(context, tenant, second.document.transaction_id)
    third = core_logic.create_transaction(context, TransactionKind.SALE, tenant, command)
    assert third.number_issued == "INV003"


def test_failed_operation_leaves_no_gap(context, tenant, customer, line, widget, monkeypatch):
    """A number drawn by a failed operation is issued to the next one."""

    command = core_logic.TransactionCommand(party_id=customer.party_id, line_items=[line(widget.item_id, "1", "15")])
    core_logic.create_transaction(context, TransactionKind.SALE, tenant, command)
    with monkeypatch.context() as patch:
        patch.setattr(ledger, "apply_delta", Mock(side_effect=RuntimeError("ledger unavailable")))
        with pytest.raises(RuntimeError):
            core_logic.create_transaction(context, TransactionKind.SALE, tenant, command)
    assert core_logic.create_transaction(context, TransactionKind.SALE, tenant, command).number_issued == "INV002"


def test_retry_skips_colliding_numbers(monkeypatch):
    """A number already on file is skipped after a backoff."""

    store = LedgerStore()
    taken = {"INV001", "INV002"}
    monkeypatch.setattr(store, "document_number_exists", lambda tenant, number: number in taken)
    sleep = Mock()
    sequencer = DocumentSequencer(retries=5, backoff=0.01, sleep=sleep)
    with UnitOfWork(store, LockManager(timeout=0.1)) as uow:
        assert sequencer.next_number(uow, "acme", DocumentType.INVOICE) == "INV003"
        assert uow.counters[("acme", DocumentType.INVOICE)] == 3
    assert [call.args[0] for call in sleep.call_args_list] == [0.01, 0.02]


def test_exhausted_retries_raise_sequence_conflict(monkeypatch):
    """When every candidate collides the caller gets a terminal error."""

    store = LedgerStore()
    monkeypatch.setattr(store, "document_number_exists", lambda tenant, number: True)
    sequencer = DocumentSequencer(retries=3, backoff=0, sleep=Mock())
    with UnitOfWork(store, LockManager(timeout=0.1)) as uow:
        with pytest.raises(SequenceConflictError):
            sequencer.next_number(uow, "acme", DocumentType.BILL)


def test_sequencer_requires_at_least_one_attempt():
    with pytest.raises(ValueError):
        DocumentSequencer(retries=0)


def test_concurrent_creation_issues_unique_gapless_numbers(settings, tenant, line):
    """Parallel sales for one tenant never share or skip a number."""

    context = core_logic.build_runtime_context(replace(settings, lock_timeout=10.0))
    customer = core_logic.register_party(context, tenant, core_logic.RegisterPartyCommand(name="Alice"))
    widget = core_logic.register_item(
        context, tenant, core_logic.RegisterItemCommand(name="Widget", unit="Piece", opening_quantity="100")
    )
    command = core_logic.TransactionCommand(party_id=customer.party_id, line_items=[line(widget.item_id, "1", "15")])
    issued = []
    errors = []
    guard = threading.Lock()

    def _worker() -> None:
        for _ in range(5):
            try:
                result = core_logic.create_transaction(context, TransactionKind.SALE, tenant, command)
            except Exception as exc:  # collected for the assertion below
                with guard:
                    errors.append(exc)
                continue
            with guard:
                issued.append(result.number_issued)

    threads = [threading.Thread(target=_worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert sorted(issued) == [format_document_number("INV", value) for value in range(1, 21)]
