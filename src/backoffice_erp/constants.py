"""Enumerations shared across the back-office ledger modules.

Keeps sheet names, expense categories, and payment identifiers in one place so
the data access layer (DAL), the business logic layer (BLL), the settlement
engine, and the CLI agree on the exact strings stored in the workbook.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class PaymentMode(str, Enum):
    """Enumerate the ways an end customer can pay against a sale."""

    CASH = "cash"
    ONLINE = "online"
    CHEQUE = "cheque"


class PaymentStatus(str, Enum):
    """Enumerate the derived collection state of a sale."""

    PAID = "paid"
    PARTIAL = "partial"
    UNPAID = "unpaid"


class ExpenseCategory(str, Enum):
    """Enumerate the expense categories recorded in the ``Expenses`` sheet."""

    DISTRIBUTOR_PAYMENT = "Distributor Payment"
    DISTRIBUTOR_PAYOUT = "Distributor Payout"


class CounterName(str, Enum):
    """Enumerate the monotonic counters persisted in the ``Counters`` sheet."""

    INVOICE = "invoice"
    EXPENSE = "expense"
    PAYMENT = "payment"
    CUSTOMER = "customer"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    CUSTOMERS = "Customers"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"
    SALE_PAYMENTS = "SalePayments"
    EXPENSES = "Expenses"
    SETTLEMENTS = "Settlements"
    COUNTERS = "Counters"


# Separator used when a list of identifiers shares a single worksheet cell.
ID_LIST_SEPARATOR = ";"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "PaymentMode",
    "PaymentStatus",
    "ExpenseCategory",
    "CounterName",
    "SheetName",
    "ID_LIST_SEPARATOR",
]
