"""Data access layer for the POS engine.

This module reads from and writes to the master workbook that acts as the
catalog store and the sale repository. Business rules live in
:mod:`pos_engine.core_logic`; nothing here decides whether a sale is valid.

The public API covers three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, persisting, and reloading the Excel file.
3. Sheet operations: loading typed records, appending rows, updating single
   product fields, and discarding rows appended by a failed commit.
"""


from __future__ import annotations

import configparser
import os
import tempfile
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_LOW_STOCK_THRESHOLD,
    DEFAULT_PAYMENT_METHOD,
    MONEY_QUANTUM,
    ZERO_MONEY,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
SALES_SHEET = SheetName.SALES.value
SALE_LINES_SHEET = SheetName.SALE_LINES.value


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_payment_method: str
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal
    tax_rate: Decimal
    is_active: bool


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: int
    timestamp_iso: str
    user_id: str
    payment_method: str
    subtotal: Decimal
    tax_total: Decimal
    grand_total: Decimal


@dataclass(frozen=True)
class SaleLineRow:
    """In-memory view of a row from the ``SaleLines`` sheet."""

    sale_id: int
    line_number: int
    product_id: str
    quantity: int
    unit_price: Decimal
    tax_rate: Decimal
    tax_amount: Decimal


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the data layer.

    An explicit path wins without verification so callers can target a
    non-standard location on purpose. Otherwise the search walks up from the
    current working directory and returns the first ``config.ini`` found.

    Args:
        explicit_path (Path | None): Optional path to use instead of the
            upward search.

    Returns:
        Path: The explicit path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
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
    """Load ``config.ini`` and return a populated ``ConfigParser``.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser holding the raw configuration.

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

    ``DataFile``, ``StoreName`` and ``SchemaVersion`` are required.
    ``[Defaults]`` is optional: ``PaymentMethod`` falls back to
    :data:`~pos_engine.constants.DEFAULT_PAYMENT_METHOD` and
    ``LowStockThreshold`` to
    :data:`~pos_engine.constants.DEFAULT_LOW_STOCK_THRESHOLD`. A relative
    ``DataFile`` is anchored to ``base_path`` (or the working directory) and
    resolved to an absolute path.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor directory for relative data files.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``LowStockThreshold`` is not a non-negative integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    default_payment = parser.get(
        "Defaults", "PaymentMethod", fallback=DEFAULT_PAYMENT_METHOD)

    threshold = parser.getint(
        "Defaults", "LowStockThreshold", fallback=DEFAULT_LOW_STOCK_THRESHOLD)
    if threshold < 0:
        raise ValueError(f"LowStockThreshold must be zero or positive, got {threshold}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_payment_method=default_payment,
        low_stock_threshold=threshold,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: Workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders.

    The workbook is written to a temporary file next to ``destination`` and
    then moved over it, so a write that fails partway leaves the previous
    file intact.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): File that should receive the serialized workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{dest.stem}-", suffix=dest.suffix, dir=dest.parent)
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        workbook.save(tmp_path)
        os.replace(tmp_path, dest)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
            log.warning("Discarded partial workbook write '%s'", tmp_path)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    """Yield raw value tuples below the header, skipping fully empty rows."""

    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    Args:
        workbook (Workbook): Workbook containing the ``Products`` sheet.

    Yields:
        ProductRow: One typed record per populated row, in sheet order.
    """

    for raw in _iter_sheet(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Iterate over sale headers stored on the ``Sales`` worksheet.

    Args:
        workbook (Workbook): Workbook containing the ``Sales`` sheet.

    Yields:
        SaleRow: One typed header per populated row, in commit order.
    """

    for raw in _iter_sheet(workbook, SALES_SHEET):
        yield deserialize_sale(raw)


def iter_sale_lines(workbook: Workbook) -> Iterable[SaleLineRow]:
    """Iterate over sale lines stored on the ``SaleLines`` worksheet.

    Lines of one sale are written contiguously and in cart order, so callers
    can group them by ``sale_id`` without re-sorting.

    Args:
        workbook (Workbook): Workbook containing the ``SaleLines`` sheet.

    Yields:
        SaleLineRow: One typed line per populated row.
    """

    for raw in _iter_sheet(workbook, SALE_LINES_SHEET):
        yield deserialize_sale_line(raw)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    """Append a sale header to the ``Sales`` worksheet."""

    workbook[SALES_SHEET].append(serialize_sale(record))


def append_sale_line(workbook: Workbook, record: SaleLineRow) -> None:
    """Append a sale line to the ``SaleLines`` worksheet."""

    workbook[SALE_LINES_SHEET].append(serialize_sale_line(record))


def update_product(workbook: Workbook, product_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing product.

    The row whose ``ProductID`` matches ``product_id`` is located first, then
    every requested header is validated before any cell is written, so an
    unknown column leaves the row untouched.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to new values.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")

    sheet = workbook[PRODUCTS_SHEET]
    header_map = _header_map(sheet)
    unknown = [field for field in field_values if field not in header_map]
    if unknown:
        raise KeyError(f"Unknown product field: {unknown[0]}")

    for field, value in field_values.items():
        sheet.cell(row=row_index, column=header_map[field], value=value)


def sheet_row_count(workbook: Workbook, sheet_name: str) -> int:
    """Return the last used row index of ``sheet_name`` (1 means header only)."""

    return workbook[sheet_name].max_row


def truncate_sheet(workbook: Workbook, sheet_name: str, *, keep_rows: int) -> None:
    """Delete every row after ``keep_rows`` on ``sheet_name``.

    Used to discard rows appended during a commit whose save failed. The
    header row is always kept.

    Args:
        workbook (Workbook): Workbook holding the sheet.
        sheet_name (str): Worksheet to trim.
        keep_rows (int): Last row index to keep (1-based, header included).
    """

    sheet = workbook[sheet_name]
    keep_rows = max(keep_rows, 1)
    extra = sheet.max_row - keep_rows
    if extra > 0:
        sheet.delete_rows(keep_rows + 1, extra)
        log.debug("Discarded %d row(s) from sheet '%s'", extra, sheet_name)


def _header_map(sheet: Any) -> dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title of the column holding the key.
        key_value (str): Value to match. Cells are compared as text so ids
            that Excel stored as numbers still match.

    Returns:
        int | None: 1-based row index of the first match, otherwise ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the header row.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    wanted = str(key_value)

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == wanted:
            return row_idx

    return None


def to_money(raw: object) -> Decimal:
    """Normalize a worksheet value into a two-decimal :class:`Decimal`.

    Excel hands numbers back as ``float``; going through ``str`` keeps the
    shortest representation so ``12.35`` does not turn into ``12.3499...``.
    Blank cells become ``0.00``. Extra digits round half-up, the same way
    the sale engine rounds.

    Raises:
        ValueError: If the value cannot be read as a finite number.
    """

    if raw is None or raw == "":
        return ZERO_MONEY
    return _to_finite(raw, "monetary value").quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def to_rate(raw: object) -> Decimal:
    """Normalize a worksheet tax rate, keeping every digit it was entered with.

    Blank cells mean exempt and become ``0``.

    Raises:
        ValueError: If the value cannot be read as a finite number.
    """

    if raw is None or raw == "":
        return Decimal(0)
    return _to_finite(raw, "tax rate")


def _to_finite(raw: object, label: str) -> Decimal:
    try:
        value = Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Not a {label}: {raw!r}") from exc
    if not value.is_finite():
        raise ValueError(f"Not a {label}: {raw!r}")
    return value


def to_int(raw: object) -> int:
    """Normalize a worksheet value into an ``int`` (blank cells become 0)."""

    if raw is None or raw == "":
        return 0
    return int(Decimal(str(raw)))


def serialize_product(record: ProductRow) -> list[object]:
    """Return ``[ProductID, ProductName, Quantity, UnitPrice, TaxRate, IsActive]``."""

    return [
        record.product_id,
        record.product_name,
        record.quantity,
        record.unit_price,
        record.tax_rate,
        record.is_active,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    """Return the ``Sales`` column ordering for ``record``."""

    return [
        record.sale_id,
        record.timestamp_iso,
        record.user_id,
        record.payment_method,
        record.subtotal,
        record.tax_total,
        record.grand_total,
    ]


def serialize_sale_line(record: SaleLineRow) -> list[object]:
    """Return the ``SaleLines`` column ordering for ``record``."""

    return [
        record.sale_id,
        record.line_number,
        record.product_id,
        record.quantity,
        record.unit_price,
        record.tax_rate,
        record.tax_amount,
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Identifiers and names are coerced to ``str`` because Excel happily turns
    ``"1001"`` into a number. Prices become two-decimal
    :class:`~decimal.Decimal` values and tax rates keep their precision; a
    blank tax rate means exempt.

    Args:
        raw_row (Sequence[object]): Raw cell values from the worksheet row.

    Returns:
        ProductRow: Dataclass with consistent Python representations.
    """

    product_id, product_name, quantity_raw, price_raw, tax_raw, is_active = raw_row[:6]
    return ProductRow(
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        quantity=to_int(quantity_raw),
        unit_price=to_money(price_raw),
        tax_rate=to_rate(tax_raw),
        is_active=bool(is_active),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw ``Sales`` row into a :class:`SaleRow`."""

    (
        sale_id,
        timestamp_iso,
        user_id,
        payment_method,
        subtotal_raw,
        tax_total_raw,
        grand_total_raw,
    ) = raw_row[:7]

    return SaleRow(
        sale_id=to_int(sale_id),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        user_id=str(user_id) if user_id is not None else "",
        payment_method=str(payment_method) if payment_method is not None else "",
        subtotal=to_money(subtotal_raw),
        tax_total=to_money(tax_total_raw),
        grand_total=to_money(grand_total_raw),
    )


def deserialize_sale_line(raw_row: Sequence[object]) -> SaleLineRow:
    """Convert a raw ``SaleLines`` row into a :class:`SaleLineRow`."""

    (
        sale_id,
        line_number,
        product_id,
        quantity_raw,
        price_raw,
        tax_rate_raw,
        tax_amount_raw,
    ) = raw_row[:7]

    return SaleLineRow(
        sale_id=to_int(sale_id),
        line_number=to_int(line_number),
        product_id=str(product_id),
        quantity=to_int(quantity_raw),
        unit_price=to_money(price_raw),
        tax_rate=to_rate(tax_rate_raw),
        tax_amount=to_money(tax_amount_raw),
    )
