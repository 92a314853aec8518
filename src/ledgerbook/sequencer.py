"""Document number issuance per tenant and document type.

Numbers come from a persisted counter per ``(tenant, document type)``. The
counter is never lowered, so numbers of deleted documents are not reused,
and it is seeded from the highest number already on file so that documents
imported without a counter never collide.

A number is drawn inside the caller's unit of work while the sequence lock
is held, and the advanced counter is staged there: a failed operation leaves
the counter untouched and the next operation reuses the number, so no gaps
appear other than from deletes.
"""

from __future__ import annotations

import time
from typing import Callable

from . import log
from .constants import DOCUMENT_NUMBER_WIDTH, DOCUMENT_PREFIXES, DocumentType
from .errors import SequenceConflictError
from .locks import sequence_key
from .store import UnitOfWork


def format_document_number(prefix: str, value: int, width: int = DOCUMENT_NUMBER_WIDTH) -> str:
    """Render ``value`` zero-padded to ``width``; larger values simply grow wider."""

    return f"{prefix}{value:0{width}d}"


class DocumentSequencer:
    """Issue ``<PREFIX><number>`` strings, retrying on collisions with backoff."""

    def __init__(
        self,
        *,
        retries: int = 5,
        backoff: float = 0.01,
        width: int = DOCUMENT_NUMBER_WIDTH,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if retries < 1:
            raise ValueError("retries must be at least 1")
        self.retries = retries
        self.backoff = backoff
        self.width = width
        self._sleep = sleep

    def next_number(self, uow: UnitOfWork, tenant_id: str, document_type: DocumentType) -> str:
        """Return the next unused number and stage the advanced counter in ``uow``.

        The sequence lock for ``(tenant_id, document_type)`` is acquired on
        ``uow`` if it is not already held.

        Raises:
            SequenceConflictError: If every attempt produced a number that is
                already in use.
            LockTimeoutError: If the sequence lock could not be acquired.
        """

        key = sequence_key(tenant_id, document_type.value)
        if not uow.holds(key):
            uow.lock(key)

        prefix = DOCUMENT_PREFIXES[document_type]
        store = uow.store
        for attempt in range(self.retries):
            seed = max(uow.counter(tenant_id, document_type), store.highest_document_number(tenant_id, prefix))
            candidate = seed + 1
            number = format_document_number(prefix, candidate, self.width)
            if not store.document_number_exists(tenant_id, number):
                uow.set_counter(tenant_id, document_type, candidate)
                log.debug("Issued document number '%s' for tenant '%s'", number, tenant_id)
                return number

            delay = self.backoff * (2 ** attempt)
            log.warning(
                "Document number '%s' already in use for tenant '%s' (attempt %d/%d); retrying in %.3fs",
                number,
                tenant_id,
                attempt + 1,
                self.retries,
                delay,
            )
            # Skip past the collision before the next attempt.
            uow.set_counter(tenant_id, document_type, candidate)
            self._sleep(delay)

        log.error(
            "Exhausted %d attempts issuing a %s number for tenant '%s'",
            self.retries,
            document_type.value,
            tenant_id,
        )
        raise SequenceConflictError(
            f"Could not issue a unique {document_type.value} number for tenant {tenant_id}"
        )


__all__ = ["format_document_number", "DocumentSequencer"]
