"""Data access layer for ledgerbook.

This module provides low-level helpers that read from and write to the
master workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading typed records and replacing the rows that belong
   to a single record, plus capturing and restoring sheets so a failed write
   can be compensated.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    ZERO,
    AdjustmentType,
    CreditNoteAgainst,
    DocumentType,
    PaymentType,
    SheetName,
    StockDirection,
    TransactionKind,
)
from .models import Allocation, Batch, ConsumedLot, Item, LineItem, Party, StockEffect, Transaction
from .units import UnitDefinition


CONFIG_FILE_NAME = "config.ini"

DEFAULT_LOCK_TIMEOUT = 2.0
DEFAULT_SEQUENCE_RETRIES = 5
DEFAULT_SEQUENCE_BACKOFF = 0.01

SHEET_HEADERS: Dict[SheetName, List[str]] = {
    SheetName.PARTIES: ["PartyID", "TenantID", "Name", "OpeningBalance", "Balance", "CreatedAt"],
    SheetName.ITEMS: [
        "ItemID",
        "TenantID",
        "Name",
        "BaseUnit",
        "SecondaryUnit",
        "ConversionFactor",
        "Stock",
        "PurchasePrice",
        "SalePrice",
        "NextBatchSequence",
    ],
    SheetName.BATCHES: ["ItemID", "BatchID", "Sequence", "Quantity", "UnitCost", "AcquiredAt"],
    SheetName.TRANSACTIONS: [
        "TransactionID",
        "TenantID",
        "Kind",
        "DocumentNumber",
        "PartyID",
        "CreatedAt",
        "UpdatedAt",
        "PaymentType",
        "CreditNoteAgainst",
        "DiscountType",
        "Discount",
        "TaxType",
        "Tax",
        "Subtotal",
        "DiscountValue",
        "TaxValue",
        "GrandTotal",
        "AmountPaid",
        "Allocated",
        "LedgerDelta",
        "Notes",
    ],
    SheetName.LINE_ITEMS: [
        "TransactionID",
        "Position",
        "ItemID",
        "Description",
        "Quantity",
        "Unit",
        "UnitPrice",
        "DiscountType",
        "Discount",
        "BaseQuantity",
    ],
    SheetName.STOCK_MOVES: [
        "TransactionID",
        "ItemID",
        "Direction",
        "BaseQuantity",
        "BatchID",
        "BatchSequence",
        "UnitCost",
        "Shortfall",
    ],
    SheetName.LOT_CONSUMPTIONS: [
        "TransactionID",
        "ItemID",
        "Position",
        "BatchID",
        "Sequence",
        "Quantity",
        "UnitCost",
        "AcquiredAt",
    ],
    SheetName.ALLOCATIONS: ["TransactionID", "TargetID", "Amount"],
    SheetName.COUNTERS: ["CounterKey", "TenantID", "DocumentType", "Value"],
    SheetName.WITHDRAWALS: ["ItemID", "BatchID", "Quantity"],
}

# Column holding the owning record id on each sheet.
OWNER_COLUMN: Dict[SheetName, str] = {
    SheetName.PARTIES: "PartyID",
    SheetName.ITEMS: "ItemID",
    SheetName.BATCHES: "ItemID",
    SheetName.TRANSACTIONS: "TransactionID",
    SheetName.LINE_ITEMS: "TransactionID",
    SheetName.STOCK_MOVES: "TransactionID",
    SheetName.LOT_CONSUMPTIONS: "TransactionID",
    SheetName.ALLOCATIONS: "TransactionID",
    SheetName.COUNTERS: "CounterKey",
    SheetName.WITHDRAWALS: "ItemID",
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    default_tenant: str
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    sequence_retries: int = DEFAULT_SEQUENCE_RETRIES
    sequence_backoff: float = DEFAULT_SEQUENCE_BACKOFF
    strict_units: bool = False


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the
    current working directory toward the filesystem root looking for a file
    named ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` and ``[Defaults]`` are required. ``[Concurrency]`` and
    ``[Units]`` are optional and fall back to the module defaults. Relative
    ``DataFile`` entries are anchored at ``base_path`` (or the working
    directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If an optional numeric or boolean option is malformed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
        default_tenant = parser.get("Defaults", "DefaultTenant")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    lock_timeout = parser.getfloat("Concurrency", "LockTimeout", fallback=DEFAULT_LOCK_TIMEOUT)
    sequence_retries = parser.getint("Concurrency", "SequenceRetries", fallback=DEFAULT_SEQUENCE_RETRIES)
    sequence_backoff = parser.getfloat("Concurrency", "SequenceBackoff", fallback=DEFAULT_SEQUENCE_BACKOFF)
    strict_units = parser.getboolean("Units", "StrictUnits", fallback=False)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        default_tenant=default_tenant,
        lock_timeout=lock_timeout,
        sequence_retries=sequence_retries,
        sequence_backoff=sequence_backoff,
        strict_units=strict_units,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook and verify it carries every ledger sheet.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        KeyError: If one of the sheets in :data:`SHEET_HEADERS` is missing.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    validate_workbook(wb)
    return wb


def validate_workbook(workbook: Workbook) -> None:
    missing = [sheet.value for sheet in SHEET_HEADERS if sheet.value not in workbook.sheetnames]
    if missing:
        raise KeyError(f"Workbook is missing sheets: {', '.join(missing)}")


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def header_map(workbook: Workbook, sheet_name: str) -> Dict[str, int]:
    """Map header titles to 1-based column indices."""

    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def iter_sheet(workbook: Workbook, sheet: SheetName) -> Iterator[Tuple[Any, ...]]:
    """Yield raw value tuples for every non-empty data row of ``sheet``."""

    width = len(SHEET_HEADERS[sheet])
    for raw in workbook[sheet.value].iter_rows(min_row=2, max_col=width, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield tuple(raw) + (None,) * (width - len(raw))


def locate_rows(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> List[int]:
    """Return the 1-based indices of every row whose ``key_column`` equals ``key_value``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    columns = header_map(workbook, sheet_name)
    if key_column not in columns:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = columns[key_column]
    sheet = workbook[sheet_name]
    matches = []
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1] if len(row) >= key_col_index else None
        if cell_value is not None and str(cell_value) == key_value:
            matches.append(row_idx)
    return matches


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find the first row matching ``key_value`` in ``key_column``, or ``None``."""

    matches = locate_rows(workbook, sheet_name, key_column, key_value)
    return matches[0] if matches else None


def replace_owned_rows(workbook: Workbook, sheet: SheetName, owner_id: str, rows: Sequence[Sequence[object]]) -> None:
    """Replace every row owned by ``owner_id`` on ``sheet`` with ``rows``.

    Passing an empty ``rows`` deletes the owner's rows. Rows are deleted
    bottom-up so earlier indices stay valid.
    """

    worksheet = workbook[sheet.value]
    for row_idx in reversed(locate_rows(workbook, sheet.value, OWNER_COLUMN[sheet], owner_id)):
        worksheet.delete_rows(row_idx)
    for row in rows:
        worksheet.append(list(row))


def capture_sheets(workbook: Workbook, sheets: Iterable[SheetName]) -> Dict[SheetName, List[Tuple[Any, ...]]]:
    """Copy the data rows of ``sheets`` so they can be restored after a failed write."""

    return {
        sheet: [tuple(row) for row in workbook[sheet.value].iter_rows(min_row=2, values_only=True)]
        for sheet in sheets
    }


def restore_sheets(workbook: Workbook, captured: Dict[SheetName, List[Tuple[Any, ...]]]) -> None:
    """Rewrite each captured sheet with exactly the rows it held when captured."""

    for sheet, rows in captured.items():
        worksheet = workbook[sheet.value]
        if worksheet.max_row > 1:
            worksheet.delete_rows(2, worksheet.max_row - 1)
        for row in rows:
            worksheet.append(list(row))
    log.debug("Restored sheets: %s", ", ".join(sheet.value for sheet in captured))


def _decimal(raw: object, default: Decimal = ZERO) -> Decimal:
    if raw is None or raw == "":
        return default
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid numeric cell value: {raw!r}") from exc


def _optional_decimal(raw: object) -> Optional[Decimal]:
    if raw is None or raw == "":
        return None
    return _decimal(raw)


def _text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None and raw != "" else None


def _money(value: Decimal) -> str:
    # Decimals are stored as text so fractional lot costs keep full precision.
    return str(value)


def _timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_timestamp(raw: object) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


def serialize_party(record: Party) -> list[object]:
    return [
        record.party_id,
        record.tenant_id,
        record.name,
        _money(record.opening_balance),
        _money(record.balance),
        _timestamp(record.created_at),
    ]


def deserialize_party(raw_row: Sequence[object]) -> Party:
    party_id, tenant_id, name, opening_raw, balance_raw, created_raw = raw_row[:6]
    return Party(
        party_id=str(party_id),
        tenant_id=str(tenant_id),
        name=str(name) if name is not None else "",
        opening_balance=_decimal(opening_raw),
        balance=_decimal(balance_raw),
        created_at=_parse_timestamp(created_raw),
    )


def serialize_item(record: Item) -> list[object]:
    """Convert an item into the ``Items`` column ordering; batches live on their own sheet."""

    factor = record.unit.conversion_factor
    return [
        record.item_id,
        record.tenant_id,
        record.name,
        record.unit.base_unit,
        record.unit.secondary_unit,
        _money(factor) if factor is not None else None,
        _money(record.stock),
        _money(record.purchase_price),
        _money(record.sale_price),
        record.next_batch_sequence,
    ]


def deserialize_item(raw_row: Sequence[object]) -> Item:
    (
        item_id,
        tenant_id,
        name,
        base_unit,
        secondary_unit,
        factor_raw,
        stock_raw,
        purchase_raw,
        sale_raw,
        next_sequence_raw,
    ) = raw_row[:10]
    return Item(
        item_id=str(item_id),
        tenant_id=str(tenant_id),
        name=str(name) if name is not None else "",
        unit=UnitDefinition(
            base_unit=str(base_unit),
            secondary_unit=_text(secondary_unit),
            conversion_factor=_optional_decimal(factor_raw),
        ),
        stock=_decimal(stock_raw),
        purchase_price=_decimal(purchase_raw),
        sale_price=_decimal(sale_raw),
        next_batch_sequence=int(next_sequence_raw) if next_sequence_raw is not None else 1,
    )


def serialize_batch(item_id: str, record: Batch) -> list[object]:
    return [
        item_id,
        record.batch_id,
        record.sequence,
        _money(record.quantity),
        _money(record.unit_cost),
        _timestamp(record.acquired_at),
    ]


def deserialize_batch(raw_row: Sequence[object]) -> Tuple[str, Batch]:
    item_id, batch_id, sequence, quantity_raw, cost_raw, acquired_raw = raw_row[:6]
    return str(item_id), Batch(
        batch_id=str(batch_id),
        sequence=int(sequence),
        quantity=_decimal(quantity_raw),
        unit_cost=_decimal(cost_raw),
        acquired_at=_parse_timestamp(acquired_raw),
    )


def serialize_withdrawal(item_id: str, batch_id: str, quantity: Decimal) -> list[object]:
    return [item_id, batch_id, _money(quantity)]


def deserialize_withdrawal(raw_row: Sequence[object]) -> Tuple[str, str, Decimal]:
    """Return ``(item_id, batch_id, quantity)`` for one ``Withdrawals`` row."""

    item_id, batch_id, quantity_raw = raw_row[:3]
    return str(item_id), str(batch_id), _decimal(quantity_raw)


def serialize_transaction(record: Transaction) -> list[object]:
    """Convert a transaction header into the ``Transactions`` column ordering.

    Line items, stock moves, lot consumptions and allocations are written by
    their own serializers to their own sheets.
    """

    return [
        record.transaction_id,
        record.tenant_id,
        record.kind.value,
        record.document_number,
        record.party_id,
        _timestamp(record.created_at),
        _timestamp(record.updated_at),
        record.payment_type.value,
        record.credit_note_against.value if record.credit_note_against else None,
        record.discount_type.value,
        _money(record.discount),
        record.tax_type.value,
        _money(record.tax),
        _money(record.subtotal),
        _money(record.discount_value),
        _money(record.tax_value),
        _money(record.grand_total),
        _money(record.amount_paid),
        _money(record.allocated),
        _money(record.ledger_delta),
        record.notes,
    ]


def deserialize_transaction(raw_row: Sequence[object]) -> Transaction:
    (
        transaction_id,
        tenant_id,
        kind,
        document_number,
        party_id,
        created_raw,
        updated_raw,
        payment_type,
        against,
        discount_type,
        discount_raw,
        tax_type,
        tax_raw,
        subtotal_raw,
        discount_value_raw,
        tax_value_raw,
        grand_total_raw,
        amount_paid_raw,
        allocated_raw,
        ledger_delta_raw,
        notes,
    ) = raw_row[:21]
    return Transaction(
        transaction_id=str(transaction_id),
        tenant_id=str(tenant_id),
        kind=TransactionKind(str(kind)),
        document_number=str(document_number),
        party_id=_text(party_id),
        created_at=_parse_timestamp(created_raw),
        updated_at=_parse_timestamp(updated_raw),
        payment_type=PaymentType(str(payment_type)) if payment_type else PaymentType.CREDIT,
        credit_note_against=CreditNoteAgainst(str(against)) if against else None,
        discount_type=AdjustmentType(str(discount_type)) if discount_type else AdjustmentType.PERCENT,
        discount=_decimal(discount_raw),
        tax_type=AdjustmentType(str(tax_type)) if tax_type else AdjustmentType.PERCENT,
        tax=_decimal(tax_raw),
        subtotal=_decimal(subtotal_raw),
        discount_value=_decimal(discount_value_raw),
        tax_value=_decimal(tax_value_raw),
        grand_total=_decimal(grand_total_raw),
        amount_paid=_decimal(amount_paid_raw),
        allocated=_decimal(allocated_raw),
        ledger_delta=_decimal(ledger_delta_raw),
        notes=_text(notes),
    )


def serialize_line_item(transaction_id: str, position: int, record: LineItem) -> list[object]:
    return [
        transaction_id,
        position,
        record.item_id,
        record.description,
        _money(record.quantity),
        record.unit,
        _money(record.unit_price),
        record.discount_type.value,
        _money(record.discount),
        _money(record.base_quantity),
    ]


def deserialize_line_item(raw_row: Sequence[object]) -> Tuple[str, int, LineItem]:
    (
        transaction_id,
        position,
        item_id,
        description,
        quantity_raw,
        unit,
        price_raw,
        discount_type,
        discount_raw,
        base_quantity_raw,
    ) = raw_row[:10]
    return str(transaction_id), int(position), LineItem(
        item_id=_text(item_id),
        quantity=_decimal(quantity_raw),
        unit_price=_decimal(price_raw),
        unit=_text(unit),
        discount_type=AdjustmentType(str(discount_type)) if discount_type else AdjustmentType.PERCENT,
        discount=_decimal(discount_raw),
        description=_text(description),
        base_quantity=_decimal(base_quantity_raw),
    )


def serialize_stock_move(transaction_id: str, record: StockEffect) -> list[object]:
    return [
        transaction_id,
        record.item_id,
        record.direction.value,
        _money(record.base_quantity),
        record.batch_id,
        record.batch_sequence,
        _money(record.unit_cost),
        _money(record.shortfall),
    ]


def deserialize_stock_move(raw_row: Sequence[object]) -> Tuple[str, StockEffect]:
    (
        transaction_id,
        item_id,
        direction,
        base_quantity_raw,
        batch_id,
        batch_sequence,
        cost_raw,
        shortfall_raw,
    ) = raw_row[:8]
    return str(transaction_id), StockEffect(
        item_id=str(item_id),
        direction=StockDirection(str(direction)),
        base_quantity=_decimal(base_quantity_raw),
        batch_id=_text(batch_id),
        batch_sequence=int(batch_sequence) if batch_sequence is not None else 0,
        unit_cost=_decimal(cost_raw),
        shortfall=_decimal(shortfall_raw),
    )


def serialize_lot_consumption(transaction_id: str, item_id: str, position: int, record: ConsumedLot) -> list[object]:
    return [
        transaction_id,
        item_id,
        position,
        record.batch_id,
        record.sequence,
        _money(record.quantity),
        _money(record.unit_cost),
        _timestamp(record.acquired_at),
    ]


def deserialize_lot_consumption(raw_row: Sequence[object]) -> Tuple[str, str, int, ConsumedLot]:
    transaction_id, item_id, position, batch_id, sequence, quantity_raw, cost_raw, acquired_raw = raw_row[:8]
    return str(transaction_id), str(item_id), int(position), ConsumedLot(
        batch_id=str(batch_id),
        sequence=int(sequence),
        quantity=_decimal(quantity_raw),
        unit_cost=_decimal(cost_raw),
        acquired_at=_parse_timestamp(acquired_raw),
    )


def serialize_allocation(transaction_id: str, record: Allocation) -> list[object]:
    return [transaction_id, record.target_id, _money(record.amount)]


def deserialize_allocation(raw_row: Sequence[object]) -> Tuple[str, Allocation]:
    transaction_id, target_id, amount_raw = raw_row[:3]
    return str(transaction_id), Allocation(target_id=str(target_id), amount=_decimal(amount_raw))


def counter_key(tenant_id: str, document_type: DocumentType) -> str:
    return f"{tenant_id}:{document_type.value}"


def serialize_counter(tenant_id: str, document_type: DocumentType, value: int) -> list[object]:
    return [counter_key(tenant_id, document_type), tenant_id, document_type.value, value]


def deserialize_counter(raw_row: Sequence[object]) -> Tuple[str, DocumentType, int]:
    _key, tenant_id, document_type, value = raw_row[:4]
    return str(tenant_id), DocumentType(str(document_type)), int(value or 0)


__all__ = [
    "CONFIG_FILE_NAME",
    "SHEET_HEADERS",
    "OWNER_COLUMN",
    "ConfigSettings",
    "find_config_file",
    "read_config",
    "parse_settings",
    "open_workbook",
    "validate_workbook",
    "save_workbook",
    "refresh_workbook",
    "header_map",
    "iter_sheet",
    "locate_rows",
    "locate_row",
    "replace_owned_rows",
    "capture_sheets",
    "restore_sheets",
    "serialize_party",
    "deserialize_party",
    "serialize_item",
    "deserialize_item",
    "serialize_batch",
    "deserialize_batch",
    "serialize_withdrawal",
    "deserialize_withdrawal",
    "serialize_transaction",
    "deserialize_transaction",
    "serialize_line_item",
    "deserialize_line_item",
    "serialize_stock_move",
    "deserialize_stock_move",
    "serialize_lot_consumption",
    "deserialize_lot_consumption",
    "serialize_allocation",
    "deserialize_allocation",
    "counter_key",
    "serialize_counter",
    "deserialize_counter",
]
