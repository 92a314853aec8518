"""Enumerations shared across the ledgerbook modules.

Centralises domain constants so that the storage layer, the ledger and
valuation engines, and the CLI rely on a single source of truth for
transaction kinds, document prefixes, and workbook sheet names.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.1.0"

ZERO = Decimal("0")
MONEY_QUANTUM = Decimal("0.01")

# Minimum width of the numeric part of a document number. Wider numbers are
# never truncated.
DOCUMENT_NUMBER_WIDTH = 3

# Conversion factor implied by the legacy "Base / Secondary" unit strings.
LEGACY_SECONDARY_FACTOR = Decimal("12")


class TransactionKind(str, Enum):
    """Enumerate the six transaction variants handled by the coordinator."""

    SALE = "SALE"
    PURCHASE = "PURCHASE"
    CREDIT_NOTE = "CREDIT_NOTE"
    PAYMENT_IN = "PAYMENT_IN"
    PAYMENT_OUT = "PAYMENT_OUT"
    EXPENSE = "EXPENSE"


class PaymentType(str, Enum):
    """Enumerate how the document total is settled at creation time."""

    CASH = "Cash"
    CREDIT = "Credit"


class AdjustmentType(str, Enum):
    """Discount and tax inputs are either a percentage or an absolute amount."""

    PERCENT = "%"
    AMOUNT = "AMOUNT"


class CreditNoteAgainst(str, Enum):
    """Which side of the business a credit note reverses."""

    SALE = "SALE"
    PURCHASE = "PURCHASE"


class StockDirection(str, Enum):
    """Direction of a stock movement relative to the business."""

    INBOUND = "IN"
    OUTBOUND = "OUT"


class DocumentType(str, Enum):
    """Document counter spaces; every transaction kind owns one."""

    INVOICE = "INVOICE"
    BILL = "BILL"
    CREDIT_NOTE = "CREDIT_NOTE"
    RECEIPT = "RECEIPT"
    PAYMENT = "PAYMENT"
    EXPENSE = "EXPENSE"


DOCUMENT_PREFIXES: dict[DocumentType, str] = {
    DocumentType.INVOICE: "INV",
    DocumentType.BILL: "PO",
    DocumentType.CREDIT_NOTE: "CN",
    DocumentType.RECEIPT: "RCV",
    DocumentType.PAYMENT: "PAY",
    DocumentType.EXPENSE: "EXP",
}

DOCUMENT_TYPE_BY_KIND: dict[TransactionKind, DocumentType] = {
    TransactionKind.SALE: DocumentType.INVOICE,
    TransactionKind.PURCHASE: DocumentType.BILL,
    TransactionKind.CREDIT_NOTE: DocumentType.CREDIT_NOTE,
    TransactionKind.PAYMENT_IN: DocumentType.RECEIPT,
    TransactionKind.PAYMENT_OUT: DocumentType.PAYMENT,
    TransactionKind.EXPENSE: DocumentType.EXPENSE,
}

# Kinds whose line items reference stock items.
STOCK_KINDS = frozenset(
    {TransactionKind.SALE, TransactionKind.PURCHASE, TransactionKind.CREDIT_NOTE}
)
PAYMENT_KINDS = frozenset({TransactionKind.PAYMENT_IN, TransactionKind.PAYMENT_OUT})


class QueryKind(str, Enum):
    """Read-model queries whose results are cached per tenant."""

    PARTY_BALANCE = "PARTY_BALANCE"
    STOCK_SUMMARY = "STOCK_SUMMARY"
    COST_OF_GOODS_SOLD = "COST_OF_GOODS_SOLD"
    PROFIT_AND_LOSS = "PROFIT_AND_LOSS"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    PARTIES = "Parties"
    ITEMS = "Items"
    BATCHES = "Batches"
    TRANSACTIONS = "Transactions"
    LINE_ITEMS = "LineItems"
    STOCK_MOVES = "StockMoves"
    LOT_CONSUMPTIONS = "LotConsumptions"
    ALLOCATIONS = "Allocations"
    COUNTERS = "Counters"
    WITHDRAWALS = "Withdrawals"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "ZERO",
    "MONEY_QUANTUM",
    "DOCUMENT_NUMBER_WIDTH",
    "LEGACY_SECONDARY_FACTOR",
    "TransactionKind",
    "PaymentType",
    "AdjustmentType",
    "CreditNoteAgainst",
    "StockDirection",
    "DocumentType",
    "DOCUMENT_PREFIXES",
    "DOCUMENT_TYPE_BY_KIND",
    "STOCK_KINDS",
    "PAYMENT_KINDS",
    "QueryKind",
    "SheetName",
]
