"""Enumerations and fixed values shared across the POS engine.

The data access layer, the sale processor, the reporting layer, and the CLI
all read their sheet names, error kinds, and monetary precision from here.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Workbook layout version the code expects to find in ``config.ini``.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Currency amounts are kept at two fractional digits.
MONEY_QUANTUM = Decimal("0.01")
ZERO_MONEY = Decimal("0.00")

DEFAULT_PAYMENT_METHOD = "cash"
DEFAULT_LOW_STOCK_THRESHOLD = 5


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    SALES = "Sales"
    SALE_LINES = "SaleLines"


class SaleState(str, Enum):
    """Lifecycle of a single sale submission."""

    DRAFT = "DRAFT"
    VALIDATING = "VALIDATING"
    REJECTED = "REJECTED"
    COMMITTING = "COMMITTING"
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"


class SaleErrorKind(str, Enum):
    """Reasons a sale submission can fail."""

    EMPTY_CART = "EMPTY_CART"
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    INVALID_PRICE = "INVALID_PRICE"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"
    UNEXPECTED_FAILURE = "UNEXPECTED_FAILURE"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MONEY_QUANTUM",
    "ZERO_MONEY",
    "DEFAULT_PAYMENT_METHOD",
    "DEFAULT_LOW_STOCK_THRESHOLD",
    "SheetName",
    "SaleState",
    "SaleErrorKind",
]
