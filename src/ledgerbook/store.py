"""In-memory record store backed by the master workbook, plus the unit of work.

:class:`LedgerStore` is the single writer of the workbook. It keeps typed
records in dictionaries that are only ever replaced wholesale by
:meth:`LedgerStore.commit`, so a record obtained from the store is never
mutated afterwards and readers may share it freely.

:class:`UnitOfWork` is how every mutation reaches the store: it holds the
locks of the records it touches, stages deep copies of them, and hands the
staged copies to the store in one commit. Leaving the block without
committing, or with an exception, discards everything that was staged.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import DocumentType, SheetName, TransactionKind
from .errors import ConsistencyError, MissingReferenceError, SequenceConflictError
from .locks import (
    LockKey,
    LockManager,
    item_key,
    item_name_key,
    party_key,
    party_name_key,
    sequence_key,
    transaction_key,
)
from .models import Item, Party, Transaction


CounterKey = Tuple[str, DocumentType]

_TRANSACTION_SHEETS = (
    SheetName.TRANSACTIONS,
    SheetName.LINE_ITEMS,
    SheetName.STOCK_MOVES,
    SheetName.LOT_CONSUMPTIONS,
    SheetName.ALLOCATIONS,
)


def _document_suffix(number: str, prefix: str) -> Optional[int]:
    if not number.startswith(prefix):
        return None
    digits = number[len(prefix):]
    return int(digits) if digits.isdigit() else None


@dataclass(frozen=True)
class StoreSnapshot:
    """Point-in-time view of the store used by read-only reports."""

    parties: Dict[str, Party]
    items: Dict[str, Item]
    transactions: Dict[str, Transaction]

    def transactions_for(
        self,
        tenant_id: str,
        *,
        party_id: Optional[str] = None,
        kinds: Optional[Iterable[TransactionKind]] = None,
    ) -> List[Transaction]:
        wanted = set(kinds) if kinds is not None else None
        selected = [
            transaction
            for transaction in self.transactions.values()
            if transaction.tenant_id == tenant_id
            and (party_id is None or transaction.party_id == party_id)
            and (wanted is None or transaction.kind in wanted)
        ]
        selected.sort(key=lambda transaction: (transaction.created_at, transaction.transaction_id))
        return selected


class LedgerStore:
    """Typed records loaded from, and written back to, the master workbook.

    ``workbook`` may be ``None`` for a purely in-memory store.
    """

    def __init__(self, workbook: Optional[Workbook] = None) -> None:
        self.workbook = workbook
        self._lock = threading.RLock()
        self._parties: Dict[str, Party] = {}
        self._items: Dict[str, Item] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._counters: Dict[CounterKey, int] = {}
        # (tenant, document number) -> transaction id
        self._document_index: Dict[Tuple[str, str], str] = {}
        if workbook is not None:
            self._load(workbook)

    def _load(self, workbook: Workbook) -> None:
        for raw in data_manager.iter_sheet(workbook, SheetName.PARTIES):
            party = data_manager.deserialize_party(raw)
            self._parties[party.party_id] = party

        for raw in data_manager.iter_sheet(workbook, SheetName.ITEMS):
            item = data_manager.deserialize_item(raw)
            self._items[item.item_id] = item

        for raw in data_manager.iter_sheet(workbook, SheetName.BATCHES):
            item_id, batch = data_manager.deserialize_batch(raw)
            self._items[item_id].batches.append(batch)
        for item in self._items.values():
            item.batches.sort(key=lambda batch: batch.sequence)

        for raw in data_manager.iter_sheet(workbook, SheetName.WITHDRAWALS):
            item_id, batch_id, quantity = data_manager.deserialize_withdrawal(raw)
            self._items[item_id].withdrawn[batch_id] = quantity

        for raw in data_manager.iter_sheet(workbook, SheetName.TRANSACTIONS):
            transaction = data_manager.deserialize_transaction(raw)
            self._transactions[transaction.transaction_id] = transaction

        positioned_lines: Dict[str, List[Tuple[int, object]]] = {}
        for raw in data_manager.iter_sheet(workbook, SheetName.LINE_ITEMS):
            transaction_id, position, line = data_manager.deserialize_line_item(raw)
            positioned_lines.setdefault(transaction_id, []).append((position, line))
        for transaction_id, lines in positioned_lines.items():
            lines.sort(key=lambda pair: pair[0])
            self._transactions[transaction_id].line_items = [line for _position, line in lines]

        for raw in data_manager.iter_sheet(workbook, SheetName.STOCK_MOVES):
            transaction_id, effect = data_manager.deserialize_stock_move(raw)
            self._transactions[transaction_id].stock_effects.append(effect)

        positioned_lots: Dict[Tuple[str, str], List[Tuple[int, object]]] = {}
        for raw in data_manager.iter_sheet(workbook, SheetName.LOT_CONSUMPTIONS):
            transaction_id, item_id, position, lot = data_manager.deserialize_lot_consumption(raw)
            positioned_lots.setdefault((transaction_id, item_id), []).append((position, lot))
        for (transaction_id, item_id), lots in positioned_lots.items():
            lots.sort(key=lambda pair: pair[0])
            effect = self._transactions[transaction_id].effect_for(item_id)
            if effect is None:
                raise ValueError(f"Lot consumption without stock move: {transaction_id}/{item_id}")
            effect.consumed = [lot for _position, lot in lots]

        for raw in data_manager.iter_sheet(workbook, SheetName.ALLOCATIONS):
            transaction_id, allocation = data_manager.deserialize_allocation(raw)
            self._transactions[transaction_id].allocations.append(allocation)

        for raw in data_manager.iter_sheet(workbook, SheetName.COUNTERS):
            tenant_id, document_type, value = data_manager.deserialize_counter(raw)
            self._counters[(tenant_id, document_type)] = value

        for transaction in self._transactions.values():
            self._document_index[(transaction.tenant_id, transaction.document_number)] = transaction.transaction_id

        log.debug(
            "Loaded %d parties, %d items, %d transactions from workbook",
            len(self._parties),
            len(self._items),
            len(self._transactions),
        )

    def get_party(self, party_id: str) -> Party:
        with self._lock:
            try:
                return self._parties[party_id]
            except KeyError as exc:
                raise MissingReferenceError(f"Unknown party id: {party_id}") from exc

    def get_item(self, item_id: str) -> Item:
        with self._lock:
            try:
                return self._items[item_id]
            except KeyError as exc:
                raise MissingReferenceError(f"Unknown item id: {item_id}") from exc

    def get_transaction(self, transaction_id: str) -> Transaction:
        with self._lock:
            try:
                return self._transactions[transaction_id]
            except KeyError as exc:
                raise MissingReferenceError(f"Unknown transaction id: {transaction_id}") from exc

    def find_party_by_name(self, tenant_id: str, name: str) -> Optional[Party]:
        wanted = name.strip().casefold()
        with self._lock:
            for party in self._parties.values():
                if party.tenant_id == tenant_id and party.name.strip().casefold() == wanted:
                    return party
        return None

    def find_item_by_name(self, tenant_id: str, name: str) -> Optional[Item]:
        wanted = name.strip().casefold()
        with self._lock:
            for item in self._items.values():
                if item.tenant_id == tenant_id and item.name.strip().casefold() == wanted:
                    return item
        return None

    def list_parties(self, tenant_id: str) -> List[Party]:
        with self._lock:
            return [party for party in self._parties.values() if party.tenant_id == tenant_id]

    def list_items(self, tenant_id: str) -> List[Item]:
        with self._lock:
            return [item for item in self._items.values() if item.tenant_id == tenant_id]

    def list_transactions(
        self,
        tenant_id: str,
        *,
        party_id: Optional[str] = None,
        kinds: Optional[Iterable[TransactionKind]] = None,
    ) -> List[Transaction]:
        return self.snapshot().transactions_for(tenant_id, party_id=party_id, kinds=kinds)

    def counter(self, tenant_id: str, document_type: DocumentType) -> int:
        with self._lock:
            return self._counters.get((tenant_id, document_type), 0)

    def highest_document_number(self, tenant_id: str, prefix: str) -> int:
        """Largest numeric suffix among the tenant's live documents with ``prefix``."""

        highest = 0
        with self._lock:
            for tenant, number in self._document_index:
                if tenant != tenant_id:
                    continue
                suffix = _document_suffix(number, prefix)
                if suffix is not None and suffix > highest:
                    highest = suffix
        return highest

    def document_number_exists(self, tenant_id: str, number: str) -> bool:
        with self._lock:
            return (tenant_id, number) in self._document_index

    def exclusive(self) -> threading.RLock:
        """Lock held while the workbook must not change, e.g. during a save."""

        return self._lock

    def snapshot(self) -> StoreSnapshot:
        with self._lock:
            return StoreSnapshot(
                parties=dict(self._parties),
                items=dict(self._items),
                transactions=dict(self._transactions),
            )

    def commit(self, unit: "UnitOfWork") -> None:
        """Apply everything staged in ``unit`` or nothing at all.

        Raises:
            SequenceConflictError: If a staged document number is already
                used by another live transaction of the same tenant.
            ConsistencyError: If writing the workbook rows failed. The rows
                written so far are restored before raising.
        """

        with self._lock:
            self._check_document_numbers(unit)
            if self.workbook is not None:
                self._write_rows(unit)

            self._parties.update(unit.parties)
            self._items.update(unit.items)
            for transaction_id in unit.deleted:
                removed = self._transactions.pop(transaction_id, None)
                if removed is not None:
                    self._document_index.pop((removed.tenant_id, removed.document_number), None)
            for transaction in unit.transactions.values():
                previous = self._transactions.get(transaction.transaction_id)
                if previous is not None:
                    self._document_index.pop((previous.tenant_id, previous.document_number), None)
                self._transactions[transaction.transaction_id] = transaction
                self._document_index[(transaction.tenant_id, transaction.document_number)] = transaction.transaction_id
            self._counters.update(unit.counters)

    def _check_document_numbers(self, unit: "UnitOfWork") -> None:
        for transaction in unit.transactions.values():
            owner = self._document_index.get((transaction.tenant_id, transaction.document_number))
            if owner is not None and owner != transaction.transaction_id and owner not in unit.deleted:
                log.error(
                    "Document number '%s' for tenant '%s' already belongs to '%s'",
                    transaction.document_number,
                    transaction.tenant_id,
                    owner,
                )
                raise SequenceConflictError(
                    f"Document number {transaction.document_number} is already in use"
                )

    def _write_rows(self, unit: "UnitOfWork") -> None:
        touched: Set[SheetName] = set()
        if unit.parties:
            touched.add(SheetName.PARTIES)
        if unit.items:
            touched.update((SheetName.ITEMS, SheetName.BATCHES, SheetName.WITHDRAWALS))
        if unit.transactions or unit.deleted:
            touched.update(_TRANSACTION_SHEETS)
        if unit.counters:
            touched.add(SheetName.COUNTERS)

        captured = data_manager.capture_sheets(self.workbook, sorted(touched, key=lambda sheet: sheet.value))
        try:
            self._write_staged(unit)
        except Exception as exc:
            log.exception(
                "Workbook write failed; restoring %s (parties=%s items=%s transactions=%s deleted=%s)",
                ", ".join(sheet.value for sheet in captured),
                sorted(unit.parties),
                sorted(unit.items),
                sorted(unit.transactions),
                sorted(unit.deleted),
            )
            data_manager.restore_sheets(self.workbook, captured)
            raise ConsistencyError() from exc

    def _write_staged(self, unit: "UnitOfWork") -> None:
        workbook = self.workbook
        for party in unit.parties.values():
            data_manager.replace_owned_rows(
                workbook, SheetName.PARTIES, party.party_id, [data_manager.serialize_party(party)]
            )
        for item in unit.items.values():
            data_manager.replace_owned_rows(workbook, SheetName.ITEMS, item.item_id, [data_manager.serialize_item(item)])
            data_manager.replace_owned_rows(
                workbook,
                SheetName.BATCHES,
                item.item_id,
                [data_manager.serialize_batch(item.item_id, batch) for batch in item.batches],
            )
            data_manager.replace_owned_rows(
                workbook,
                SheetName.WITHDRAWALS,
                item.item_id,
                [
                    data_manager.serialize_withdrawal(item.item_id, batch_id, quantity)
                    for batch_id, quantity in sorted(item.withdrawn.items())
                ],
            )
        for transaction_id in unit.deleted:
            for sheet in _TRANSACTION_SHEETS:
                data_manager.replace_owned_rows(workbook, sheet, transaction_id, [])
        for transaction in unit.transactions.values():
            self._write_transaction(transaction)
        for (tenant_id, document_type), value in unit.counters.items():
            data_manager.replace_owned_rows(
                workbook,
                SheetName.COUNTERS,
                data_manager.counter_key(tenant_id, document_type),
                [data_manager.serialize_counter(tenant_id, document_type, value)],
            )

    def _write_transaction(self, transaction: Transaction) -> None:
        workbook = self.workbook
        transaction_id = transaction.transaction_id
        data_manager.replace_owned_rows(
            workbook, SheetName.TRANSACTIONS, transaction_id, [data_manager.serialize_transaction(transaction)]
        )
        data_manager.replace_owned_rows(
            workbook,
            SheetName.LINE_ITEMS,
            transaction_id,
            [
                data_manager.serialize_line_item(transaction_id, position, line)
                for position, line in enumerate(transaction.line_items, start=1)
            ],
        )
        data_manager.replace_owned_rows(
            workbook,
            SheetName.STOCK_MOVES,
            transaction_id,
            [data_manager.serialize_stock_move(transaction_id, effect) for effect in transaction.stock_effects],
        )
        data_manager.replace_owned_rows(
            workbook,
            SheetName.LOT_CONSUMPTIONS,
            transaction_id,
            [
                data_manager.serialize_lot_consumption(transaction_id, effect.item_id, position, lot)
                for effect in transaction.stock_effects
                for position, lot in enumerate(effect.consumed, start=1)
            ],
        )
        data_manager.replace_owned_rows(
            workbook,
            SheetName.ALLOCATIONS,
            transaction_id,
            [data_manager.serialize_allocation(transaction_id, allocation) for allocation in transaction.allocations],
        )


class UnitOfWork:
    """Stage copies of locked records and commit them to the store together.

    Usage::

        with UnitOfWork(store, locks) as uow:
            uow.lock(party_key(tenant, party_id))
            party = uow.party(party_id)
            ...
            uow.commit()
    """

    def __init__(self, store: LedgerStore, locks: LockManager, *, timeout: Optional[float] = None) -> None:
        self.store = store
        self.locks = locks
        self.timeout = timeout
        self.parties: Dict[str, Party] = {}
        self.items: Dict[str, Item] = {}
        self.transactions: Dict[str, Transaction] = {}
        self.deleted: Set[str] = set()
        self.counters: Dict[CounterKey, int] = {}
        self.committed = False
        self._held: List[LockKey] = []

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if not self.committed and self._has_staged():
                log.debug("Discarding staged changes (error=%s)", exc_type.__name__ if exc_type else None)
            self._discard()
        finally:
            self.locks.release(self._held)
            self._held = []
        return False

    def _has_staged(self) -> bool:
        return bool(self.parties or self.items or self.transactions or self.deleted or self.counters)

    def _discard(self) -> None:
        self.parties = {}
        self.items = {}
        self.transactions = {}
        self.deleted = set()
        self.counters = {}

    def lock(self, *keys: LockKey) -> None:
        """Acquire ``keys`` in addition to the locks already held.

        New keys must all sort after the keys already held so the global
        acquisition order is preserved across calls.
        """

        new = sorted(set(keys) - set(self._held))
        if not new:
            return
        if self._held and new[0] < self._held[-1]:
            raise RuntimeError(f"Lock {new[0]} requested after {self._held[-1]}")
        self._held.extend(self.locks.acquire(new, timeout=self.timeout))

    def holds(self, key: LockKey) -> bool:
        return key in self._held

    def _require(self, *candidates: LockKey) -> None:
        if not any(key in self._held for key in candidates):
            raise RuntimeError(f"Record accessed without holding any of {candidates}")

    def party(self, party_id: str) -> Party:
        staged = self.parties.get(party_id)
        if staged is not None:
            return staged
        stored = self.store.get_party(party_id)
        self._require(party_key(stored.tenant_id, party_id))
        staged = copy.deepcopy(stored)
        self.parties[party_id] = staged
        return staged

    def add_party(self, party: Party) -> Party:
        self._require(party_name_key(party.tenant_id, party.name), party_key(party.tenant_id, party.party_id))
        self.parties[party.party_id] = party
        return party

    def item(self, item_id: str) -> Item:
        staged = self.items.get(item_id)
        if staged is not None:
            return staged
        stored = self.store.get_item(item_id)
        self._require(item_key(stored.tenant_id, item_id))
        staged = copy.deepcopy(stored)
        self.items[item_id] = staged
        return staged

    def add_item(self, item: Item) -> Item:
        self._require(item_name_key(item.tenant_id, item.name), item_key(item.tenant_id, item.item_id))
        self.items[item.item_id] = item
        return item

    def transaction(self, transaction_id: str) -> Transaction:
        """Stage a copy of a stored transaction.

        Holding either the transaction's own lock or its party's lock is
        enough; allocations by payments are serialised through the party.
        """

        staged = self.transactions.get(transaction_id)
        if staged is not None:
            return staged
        if transaction_id in self.deleted:
            raise MissingReferenceError(f"Unknown transaction id: {transaction_id}")
        stored = self.store.get_transaction(transaction_id)
        candidates = [transaction_key(stored.tenant_id, transaction_id)]
        if stored.party_id is not None:
            candidates.append(party_key(stored.tenant_id, stored.party_id))
        self._require(*candidates)
        staged = copy.deepcopy(stored)
        self.transactions[transaction_id] = staged
        return staged

    def put_transaction(self, transaction: Transaction) -> None:
        self.deleted.discard(transaction.transaction_id)
        self.transactions[transaction.transaction_id] = transaction

    def delete_transaction(self, transaction_id: str) -> None:
        self.transactions.pop(transaction_id, None)
        self.deleted.add(transaction_id)

    def counter(self, tenant_id: str, document_type: DocumentType) -> int:
        staged = self.counters.get((tenant_id, document_type))
        if staged is not None:
            return staged
        return self.store.counter(tenant_id, document_type)

    def set_counter(self, tenant_id: str, document_type: DocumentType, value: int) -> None:
        self._require(sequence_key(tenant_id, document_type.value))
        self.counters[(tenant_id, document_type)] = value

    def commit(self) -> None:
        if self.committed:
            raise RuntimeError("Unit of work already committed")
        self.store.commit(self)
        self.committed = True


__all__ = ["StoreSnapshot", "LedgerStore", "UnitOfWork"]
