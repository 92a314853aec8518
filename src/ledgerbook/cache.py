"""Report cache keyed by tenant and query kind.

Each :class:`CacheKey` owns a bucket of results keyed by the query
parameters. The coordinator evicts whole buckets after every committed
mutation that feeds the query, so entries never outlive the data they were
computed from.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Hashable, NamedTuple, TypeVar

from . import log
from .constants import QueryKind


T = TypeVar("T")


class CacheKey(NamedTuple):
    tenant_id: str
    kind: QueryKind


class ReportCache:
    """Thread-safe store of computed report results."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: Dict[CacheKey, Dict[Hashable, Any]] = {}
        self._generations: Dict[CacheKey, int] = {}

    def get_or_compute(self, key: CacheKey, params: Hashable, compute: Callable[[], T]) -> T:
        """Return the cached result for ``params`` or compute and store it.

        ``compute`` runs outside the cache lock. A result computed while the
        bucket was invalidated is returned to the caller but not stored.
        """

        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is not None and params in bucket:
                return bucket[params]
            generation = self._generations.get(key, 0)

        result = compute()
        with self._lock:
            if self._generations.get(key, 0) == generation:
                self._buckets.setdefault(key, {})[params] = result
        return result

    def invalidate(self, tenant_id: str, *kinds: QueryKind) -> None:
        """Evict the buckets of ``kinds`` for ``tenant_id``; no kinds means all."""

        targets = kinds or tuple(QueryKind)
        log.debug(
            "Invalidating report cache for tenant '%s': %s",
            tenant_id,
            ", ".join(kind.value for kind in targets),
        )
        with self._lock:
            for kind in targets:
                key = CacheKey(tenant_id, kind)
                self._buckets.pop(key, None)
                self._generations[key] = self._generations.get(key, 0) + 1


__all__ = ["CacheKey", "ReportCache"]
