"""Per-record locks acquired in a fixed global order.

A mutation locks the transaction it edits, the document counter it draws
from, the party (or party name it is about to create) and every item its
line items touch. Registering an item also locks its name. Keys sort by rank
first, then tenant, then identifier, so two operations needing overlapping
keys always request them in the same order and cannot deadlock. Acquisition
never waits longer than the configured timeout.
"""

from __future__ import annotations

import threading
import time
from typing import Dict, Iterable, List, NamedTuple

from . import log
from .errors import LockTimeoutError


RANK_TRANSACTION = 0
RANK_SEQUENCE = 1
RANK_PARTY_NAME = 2
RANK_PARTY = 3
RANK_ITEM_NAME = 4
RANK_ITEM = 5


class LockKey(NamedTuple):
    rank: int
    tenant_id: str
    name: str


def transaction_key(tenant_id: str, transaction_id: str) -> LockKey:
    return LockKey(RANK_TRANSACTION, tenant_id, transaction_id)


def sequence_key(tenant_id: str, document_type: str) -> LockKey:
    return LockKey(RANK_SEQUENCE, tenant_id, document_type)


def party_name_key(tenant_id: str, name: str) -> LockKey:
    return LockKey(RANK_PARTY_NAME, tenant_id, name.strip().casefold())


def party_key(tenant_id: str, party_id: str) -> LockKey:
    return LockKey(RANK_PARTY, tenant_id, party_id)


def item_name_key(tenant_id: str, name: str) -> LockKey:
    return LockKey(RANK_ITEM_NAME, tenant_id, name.strip().casefold())


def item_key(tenant_id: str, item_id: str) -> LockKey:
    return LockKey(RANK_ITEM, tenant_id, item_id)


class LockManager:
    """Hand out one :class:`threading.Lock` per key and acquire them in order."""

    def __init__(self, timeout: float = 2.0) -> None:
        self.timeout = timeout
        self._registry_lock = threading.Lock()
        self._locks: Dict[LockKey, threading.Lock] = {}

    def _lock_for(self, key: LockKey) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def acquire(self, keys: Iterable[LockKey], *, timeout: float | None = None) -> List[LockKey]:
        """Acquire every key in global order within ``timeout`` seconds overall.

        Returns:
            list[LockKey]: The keys now held, sorted, for :meth:`release`.

        Raises:
            LockTimeoutError: If any key could not be acquired in time. Keys
                taken before the failure are released first.
        """

        ordered = sorted(set(keys))
        budget = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + budget
        held: List[LockKey] = []
        for key in ordered:
            remaining = max(0.0, deadline - time.monotonic())
            if not self._lock_for(key).acquire(timeout=remaining):
                self.release(held)
                log.warning("Timed out after %.2fs waiting for lock %s", budget, key)
                raise LockTimeoutError(
                    f"Could not acquire lock on {key.name!r} for tenant {key.tenant_id!r}; retry the operation"
                )
            held.append(key)
        return held

    def release(self, keys: Iterable[LockKey]) -> None:
        for key in reversed(list(keys)):
            self._lock_for(key).release()

    def is_locked(self, key: LockKey) -> bool:
        return self._lock_for(key).locked()


__all__ = [
    "LockKey",
    "LockManager",
    "transaction_key",
    "sequence_key",
    "party_name_key",
    "party_key",
    "item_name_key",
    "item_key",
]
