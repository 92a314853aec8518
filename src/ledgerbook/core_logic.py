"""Business logic façade for ledgerbook.

This module wires configuration, the workbook-backed store and the
concurrency services into a :class:`RuntimeContext`, and exposes the
operations the CLI and any other front-end call. The rules themselves live in
:mod:`ledgerbook.coordinator` (mutations) and :mod:`ledgerbook.reports`
(read models).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from openpyxl.workbook import Workbook

from . import coordinator, data_manager, log, reports
from .cache import ReportCache
from .constants import EXPECTED_SCHEMA_VERSION, TransactionKind
from .coordinator import (
    CreateResult,
    LineItemInput,
    RegisterItemCommand,
    RegisterPartyCommand,
    TransactionCommand,
)
from .errors import InsufficientAuthorizationError, MissingReferenceError
from .locks import LockManager
from .models import Item, Party, Transaction
from .reports import PartyBalance, Period, ProfitAndLoss, StockSummary
from .sequencer import DocumentSequencer
from .store import LedgerStore


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, storage and the shared concurrency services."""

    settings: data_manager.ConfigSettings
    workbook: Optional[Workbook]
    store: LedgerStore
    locks: LockManager
    sequencer: DocumentSequencer
    cache: ReportCache = field(default_factory=ReportCache, repr=False, compare=False)


def build_runtime_context(settings: data_manager.ConfigSettings, workbook: Optional[Workbook] = None) -> RuntimeContext:
    """Assemble a context around ``workbook``; ``None`` gives an in-memory ledger."""

    return RuntimeContext(
        settings=settings,
        workbook=workbook,
        store=LedgerStore(workbook),
        locks=LockManager(timeout=settings.lock_timeout),
        sequencer=DocumentSequencer(retries=settings.sequence_retries, backoff=settings.sequence_backoff),
    )


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context whose store has loaded every workbook sheet.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options or sheets are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_runtime_context(settings, workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to run against a workbook declared for another schema version.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Save the workbook to the configured data file.

    Commits are blocked for the duration of the save so the file always holds
    whole transactions.
    """

    if context.workbook is None:
        log.debug("In-memory context; nothing to persist")
        return
    with context.store.exclusive():
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook, discarding unsaved changes and cached reports.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return build_runtime_context(context.settings, workbook)


def get_party(context: RuntimeContext, tenant_id: str, party_id: str) -> Party:
    party = context.store.get_party(party_id)
    if party.tenant_id != tenant_id:
        raise InsufficientAuthorizationError(f"Party {party_id} does not belong to tenant {tenant_id}")
    return party


def get_item(context: RuntimeContext, tenant_id: str, item_id: str) -> Item:
    item = context.store.get_item(item_id)
    if item.tenant_id != tenant_id:
        raise InsufficientAuthorizationError(f"Item {item_id} does not belong to tenant {tenant_id}")
    return item


def get_transaction(context: RuntimeContext, tenant_id: str, transaction_id: str) -> Transaction:
    transaction = context.store.get_transaction(transaction_id)
    if transaction.tenant_id != tenant_id:
        raise InsufficientAuthorizationError(
            f"Transaction {transaction_id} does not belong to tenant {tenant_id}"
        )
    return transaction


def resolve_party_id(context: RuntimeContext, tenant_id: str, reference: str) -> Optional[str]:
    """Return the id of the party whose id or name is ``reference``, or ``None``."""

    try:
        return get_party(context, tenant_id, reference).party_id
    except MissingReferenceError:
        party = context.store.find_party_by_name(tenant_id, reference)
        return party.party_id if party is not None else None


def resolve_item_id(context: RuntimeContext, tenant_id: str, reference: str) -> str:
    """Return the id of the item whose id or name is ``reference``.

    Raises:
        MissingReferenceError: If no item matches.
    """

    try:
        return get_item(context, tenant_id, reference).item_id
    except MissingReferenceError:
        item = context.store.find_item_by_name(tenant_id, reference)
        if item is None:
            log.warning("Item lookup failed for '%s'", reference)
            raise
        return item.item_id


def list_parties(context: RuntimeContext, tenant_id: str) -> List[Party]:
    return sorted(context.store.list_parties(tenant_id), key=lambda party: party.name.casefold())


def list_transactions(context: RuntimeContext, tenant_id: str) -> List[Transaction]:
    return context.store.list_transactions(tenant_id)


def register_party(context: RuntimeContext, tenant_id: str, command: RegisterPartyCommand) -> Party:
    return coordinator.register_party(context, tenant_id, command)


def register_item(context: RuntimeContext, tenant_id: str, command: RegisterItemCommand) -> Item:
    return coordinator.register_item(context, tenant_id, command)


def create_transaction(
    context: RuntimeContext,
    kind: TransactionKind,
    tenant_id: str,
    command: TransactionCommand,
) -> CreateResult:
    return coordinator.create_transaction(context, kind, tenant_id, command)


def update_transaction(
    context: RuntimeContext,
    tenant_id: str,
    transaction_id: str,
    command: TransactionCommand,
) -> Transaction:
    return coordinator.update_transaction(context, tenant_id, transaction_id, command)


def delete_transaction(context: RuntimeContext, tenant_id: str, transaction_id: str) -> Transaction:
    return coordinator.delete_transaction(context, tenant_id, transaction_id)


def get_party_balance(context: RuntimeContext, tenant_id: str, party_id: str) -> PartyBalance:
    return reports.get_party_balance(context, tenant_id, party_id)


def get_item_stock_summary(context: RuntimeContext, tenant_id: str, item_id: str) -> StockSummary:
    return reports.get_item_stock_summary(context, tenant_id, item_id)


def list_stock_summaries(context: RuntimeContext, tenant_id: str) -> List[StockSummary]:
    return reports.list_stock_summaries(context, tenant_id)


def get_cost_of_goods_sold(
    context: RuntimeContext,
    tenant_id: str,
    item_id: str,
    period: Optional[Period] = None,
) -> Decimal:
    return reports.get_cost_of_goods_sold(context, tenant_id, item_id, period)


def get_profit_and_loss(context: RuntimeContext, tenant_id: str, period: Optional[Period] = None) -> ProfitAndLoss:
    return reports.get_profit_and_loss(context, tenant_id, period)


__all__ = [
    "RuntimeContext",
    "LineItemInput",
    "TransactionCommand",
    "RegisterPartyCommand",
    "RegisterItemCommand",
    "CreateResult",
    "build_runtime_context",
    "load_runtime_context",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
    "get_party",
    "get_item",
    "get_transaction",
    "resolve_party_id",
    "resolve_item_id",
    "list_parties",
    "list_transactions",
    "register_party",
    "register_item",
    "create_transaction",
    "update_transaction",
    "delete_transaction",
    "get_party_balance",
    "get_item_stock_summary",
    "list_stock_summaries",
    "get_cost_of_goods_sold",
    "get_profit_and_loss",
]
