"""Tests for ordered per-record locking and the unit of work lock discipline."""

from __future__ import annotations

import threading
import time

import pytest

from ledgerbook.errors import LockTimeoutError
from ledgerbook.locks import (
    LockManager,
    item_key,
    item_name_key,
    party_key,
    party_name_key,
    sequence_key,
    transaction_key,
)
from ledgerbook.store import LedgerStore, UnitOfWork


def test_keys_sort_by_rank_then_tenant_then_name():
    """Transaction < sequence < party name < party < item name < item, whatever the ids."""

    keys = [
        item_key("acme", "A"),
        item_name_key("acme", "Zed"),
        party_key("acme", "Z"),
        party_name_key("acme", "Zed"),
        sequence_key("acme", "INVOICE"),
        transaction_key("acme", "T9"),
        party_key("acme", "B"),
    ]
    assert sorted(keys) == [
        transaction_key("acme", "T9"),
        sequence_key("acme", "INVOICE"),
        party_name_key("acme", "Zed"),
        party_key("acme", "B"),
        party_key("acme", "Z"),
        item_name_key("acme", "Zed"),
        item_key("acme", "A"),
    ]


def test_party_name_key_is_case_insensitive():
    assert party_name_key("acme", " Alice ") == party_name_key("acme", "ALICE")


def test_acquire_returns_sorted_keys_and_release_frees_them():
    """Acquired keys come back in global order and are released together."""

    manager = LockManager(timeout=0.1)
    keys = [item_key("acme", "I1"), party_key("acme", "P1")]
    held = manager.acquire(keys)
    assert held == sorted(keys)
    assert all(manager.is_locked(key) for key in keys)
    manager.release(held)
    assert not any(manager.is_locked(key) for key in keys)


def test_acquire_times_out_and_releases_partial_locks():
    """A contended key fails fast and leaves nothing held."""

    manager = LockManager(timeout=0.05)
    blocker = manager.acquire([item_key("acme", "I1")])
    with pytest.raises(LockTimeoutError) as excinfo:
        manager.acquire([party_key("acme", "P1"), item_key("acme", "I1")])
    assert excinfo.value.retryable is True
    assert not manager.is_locked(party_key("acme", "P1"))
    manager.release(blocker)


def test_disjoint_keys_do_not_block_each_other():
    """Different tenants and different records proceed concurrently."""

    manager = LockManager(timeout=0.05)
    first = manager.acquire([party_key("acme", "P1")])
    second = manager.acquire([party_key("globex", "P1"), party_key("acme", "P2")])
    manager.release(first)
    manager.release(second)


def test_waiter_proceeds_once_lock_is_released():
    """A second caller waits for, then obtains, a released lock."""

    manager = LockManager(timeout=1.0)
    key = party_key("acme", "P1")
    held = manager.acquire([key])
    acquired = threading.Event()

    def _worker() -> None:
        taken = manager.acquire([key])
        acquired.set()
        manager.release(taken)

    thread = threading.Thread(target=_worker)
    thread.start()
    time.sleep(0.05)
    assert not acquired.is_set()
    manager.release(held)
    thread.join(timeout=2)
    assert acquired.is_set()


def test_unit_of_work_refuses_out_of_order_locking():
    """Keys requested later must rank after the keys already held."""

    store = LedgerStore()
    manager = LockManager(timeout=0.1)
    with UnitOfWork(store, manager) as uow:
        uow.lock(party_key("acme", "P1"))
        with pytest.raises(RuntimeError):
            uow.lock(sequence_key("acme", "INVOICE"))


def test_unit_of_work_releases_locks_on_exit_even_after_error():
    """Leaving the block, normally or not, frees every lock taken."""

    store = LedgerStore()
    manager = LockManager(timeout=0.1)
    key = item_key("acme", "I1")
    with pytest.raises(ValueError):
        with UnitOfWork(store, manager) as uow:
            uow.lock(key)
            assert uow.holds(key)
            raise ValueError("boom")
    assert not manager.is_locked(key)


def test_unit_of_work_relocking_held_key_is_noop():
    store = LedgerStore()
    manager = LockManager(timeout=0.1)
    key = party_key("acme", "P1")
    with UnitOfWork(store, manager) as uow:
        uow.lock(key)
        uow.lock(key)
        assert uow.holds(key)
