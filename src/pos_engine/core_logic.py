"""Business logic layer for the POS engine.

This module turns a cart into a finalized sale. It validates the cart
against the catalog, prices and taxes every line, decrements stock, and
persists the sale graph through one explicit commit boundary. All I/O goes
through :mod:`pos_engine.data_manager`; nothing here touches openpyxl cells
directly.

The canonical entry point is :func:`process_sale`, which never raises for
domain failures and instead returns a :class:`SaleResult`. The legacy
string-returning :func:`register_sale` and the structured
:func:`sale_response` are both derived from that result.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    MONEY_QUANTUM,
    ZERO_MONEY,
    SaleErrorKind,
    SaleState,
    SheetName,
)


class BusinessRuleViolation(Exception):
    """Raised when a catalog operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product or sale is unknown."""


class SaleError(Exception):
    """Base class for every reason a sale submission can fail.

    ``kind`` identifies the failure for callers that branch on it, and
    ``recoverable`` tells them whether fixing the cart and resubmitting can
    succeed.
    """

    kind: SaleErrorKind = SaleErrorKind.UNEXPECTED_FAILURE
    recoverable: bool = False

    @property
    def message(self) -> str:
        return str(self)


class CartValidationError(SaleError):
    """The cart itself is wrong; the caller can correct it and resubmit."""

    recoverable = True


class EmptyCartError(CartValidationError):
    """Raised when a cart has no lines."""

    kind = SaleErrorKind.EMPTY_CART

    def __init__(self) -> None:
        super().__init__("The cart must contain at least one line.")


class ProductNotFoundError(CartValidationError):
    """Raised when a cart line references an unknown or inactive product."""

    kind = SaleErrorKind.PRODUCT_NOT_FOUND

    def __init__(self, product_id: str, *, inactive: bool = False) -> None:
        self.product_id = product_id
        self.inactive = inactive
        reason = "is inactive" if inactive else "was not found"
        super().__init__(f"Product '{product_id}' {reason}.")


class InvalidQuantityError(CartValidationError):
    """Raised when a cart line asks for anything but a whole number >= 1."""

    kind = SaleErrorKind.INVALID_QUANTITY

    def __init__(self, product_id: str, quantity: object, *, product_name: Optional[str] = None) -> None:
        self.product_id = product_id
        self.quantity = quantity
        label = product_name or product_id
        super().__init__(f"Quantity for product '{label}' must be at least 1.")


class InvalidPriceError(CartValidationError):
    """Raised when a caller-supplied unit price is negative or not a number."""

    kind = SaleErrorKind.INVALID_PRICE

    def __init__(self, product_id: str, unit_price: object, *, product_name: Optional[str] = None) -> None:
        self.product_id = product_id
        self.unit_price = unit_price
        label = product_name or product_id
        super().__init__(f"Unit price for product '{label}' must be a non-negative amount.")


class InsufficientStockError(CartValidationError):
    """Raised when the cart asks for more units than the catalog holds."""

    kind = SaleErrorKind.INSUFFICIENT_STOCK

    def __init__(
        self,
        product_id: str,
        *,
        requested: int,
        available: int,
        product_name: Optional[str] = None,
    ) -> None:
        self.product_id = product_id
        self.requested = requested
        self.available = available
        label = product_name or product_id
        super().__init__(f"Not enough stock for product '{label}'. Available: {available}")


class PersistenceFailure(SaleError):
    """Raised when the committed state could not be written durably."""

    kind = SaleErrorKind.PERSISTENCE_FAILURE


class UnexpectedFailure(SaleError):
    """Wraps any other error raised while a sale was being processed."""

    kind = SaleErrorKind.UNEXPECTED_FAILURE


@dataclass(frozen=True)
class RuntimeContext:
    """Configuration, workbook handle, caches, and the commit lock.

    One context is shared by every request in a process. The lock
    serializes commits and cache rebuilds; the workbook is the single
    shared mutable resource.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _lock: Any = field(default_factory=threading.RLock, repr=False, compare=False)


@dataclass(frozen=True)
class CartLine:
    """One requested product and quantity, with an optional pinned price."""

    product_id: str
    quantity: int
    unit_price: Optional[Decimal] = None


@dataclass(frozen=True)
class SaleLine:
    """A fully resolved line whose price and tax rate are snapshots."""

    product_id: str
    quantity: int
    unit_price: Decimal
    tax_rate: Decimal
    tax_amount: Decimal

    @property
    def line_subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class Sale:
    """A finalized sale. ``sale_id`` is ``None`` until the sale is persisted."""

    sale_id: Optional[int]
    timestamp: datetime
    user_id: str
    payment_method: str
    lines: Tuple[SaleLine, ...]
    subtotal: Decimal
    tax_total: Decimal
    grand_total: Decimal


@dataclass(frozen=True)
class SaleResult:
    """Outcome of :func:`process_sale`: a committed sale or a typed error."""

    state: SaleState
    sale: Optional[Sale] = None
    error: Optional[SaleError] = None

    @property
    def success(self) -> bool:
        return self.state is SaleState.COMMITTED

    @property
    def error_kind(self) -> Optional[SaleErrorKind]:
        return self.error.kind if self.error is not None else None

    @property
    def message(self) -> Optional[str]:
        return self.error.message if self.error is not None else None


SaleListener = Callable[[Sale], None]


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time truncated to the second.

    Whole seconds keep stored timestamps comparable with the inclusive
    ``23:59:59`` upper bound used by the date filters.
    """

    if candidate is not None:
        return candidate
    return datetime.now(UTC).replace(microsecond=0)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return (creating on demand) the cache bucket called ``name``."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after the workbook changed.

    Args:
        context (RuntimeContext): Context whose cache should be pruned.
        *names (str): Bucket identifiers to drop. Missing buckets are
            ignored.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the product cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket holding ``all`` products, the ``active``
            subset, and a ``by_id`` lookup.
    """

    with context._lock:
        bucket = _get_cache_bucket(context, "products")
        if "all" not in bucket:
            all_products = list(data_manager.iter_products(context.workbook))
            bucket["all"] = all_products
            bucket["active"] = [product for product in all_products if product.is_active]
            bucket["by_id"] = {product.product_id: product for product in all_products}
            log.debug(
                "Populated products cache with %d entries (%d active)",
                len(all_products),
                len(bucket["active"]),
            )
        return bucket


def _ensure_sales_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the sale cache bucket on demand.

    Headers and lines are read once and stitched into :class:`Sale` objects
    so reporting never re-scans the workbook between commits.

    Returns:
        dict[str, Any]: Bucket holding ``all`` sales in commit order and a
            ``by_id`` lookup.
    """

    with context._lock:
        bucket = _get_cache_bucket(context, "sales")
        if "all" not in bucket:
            lines_by_sale: Dict[int, List[SaleLine]] = {}
            for row in data_manager.iter_sale_lines(context.workbook):
                lines_by_sale.setdefault(row.sale_id, []).append(
                    SaleLine(
                        product_id=row.product_id,
                        quantity=row.quantity,
                        unit_price=row.unit_price,
                        tax_rate=row.tax_rate,
                        tax_amount=row.tax_amount,
                    )
                )
            all_sales = [
                _hydrate_sale(row, lines_by_sale.get(row.sale_id, []))
                for row in data_manager.iter_sales(context.workbook)
            ]
            bucket["all"] = all_sales
            bucket["by_id"] = {sale.sale_id: sale for sale in all_sales}
            log.debug("Populated sales cache with %d entries", len(all_sales))
        return bucket


def _hydrate_sale(row: data_manager.SaleRow, lines: Sequence[SaleLine]) -> Sale:
    return Sale(
        sale_id=row.sale_id,
        timestamp=datetime.fromisoformat(row.timestamp_iso),
        user_id=row.user_id,
        payment_method=row.payment_method,
        lines=tuple(lines),
        subtotal=row.subtotal,
        tax_total=row.tax_total,
        grand_total=row.grand_total,
    )


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional explicit ``config.ini``. When
            omitted the data layer searches upward from the working
            directory.

    Returns:
        RuntimeContext: Context ready for sale processing and reporting.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to run against a workbook layout the code does not understand.

    Raises:
        RuntimeError: If ``config.ini`` declares a different schema version
            than :data:`~pos_engine.constants.EXPECTED_SCHEMA_VERSION`.
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
    """Save the in-memory workbook to the configured data file."""
    with context._lock:
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Return a new context over a freshly loaded workbook.

    Unsaved edits held by ``context`` are dropped together with its caches.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def list_products(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.ProductRow]:
    """Return catalog products in sheet order, active ones only by default."""
    cache = _ensure_products_cache(context)
    source = cache["all"] if include_inactive else cache["active"]
    return list(source)


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        product_id (str): Identifier from the ``Products`` sheet.

    Returns:
        data_manager.ProductRow: Current catalog row, active or not.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the catalog.
    """
    cache = _ensure_products_cache(context)
    try:
        return cache["by_id"][product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}") from exc


def list_sales(context: RuntimeContext) -> List[Sale]:
    """Return every persisted sale in commit order."""
    return list(_ensure_sales_cache(context)["all"])


def get_sale(context: RuntimeContext, sale_id: int) -> Sale:
    """Resolve a persisted sale by id.

    Raises:
        MissingReferenceError: If no sale carries ``sale_id``.
    """
    cache = _ensure_sales_cache(context)
    try:
        return cache["by_id"][sale_id]
    except KeyError as exc:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise MissingReferenceError(f"Unknown sale id: {sale_id}") from exc


def add_product(
    context: RuntimeContext,
    *,
    product_id: str,
    product_name: str,
    quantity: int,
    unit_price: Decimal,
    tax_rate: Decimal = ZERO_MONEY,
    is_active: bool = True,
) -> data_manager.ProductRow:
    """Register a new product in the catalog.

    The row is appended to the in-memory workbook; callers persist it with
    :func:`persist_context` (or it rides along with the next committed sale).

    Returns:
        data_manager.ProductRow: The appended record.

    Raises:
        BusinessRuleViolation: If ``product_id`` already exists.
        ValueError: If stock, price, or tax rate is negative.
    """
    require_nonnegative_stock(quantity)
    require_nonnegative_money(unit_price)
    require_nonnegative_money(tax_rate)

    with context._lock:
        if product_id in _ensure_products_cache(context)["by_id"]:
            log.warning("Attempted to add duplicate product '%s'", product_id)
            raise BusinessRuleViolation(f"Product '{product_id}' already exists")

        record = data_manager.ProductRow(
            product_id=product_id,
            product_name=product_name,
            quantity=quantity,
            unit_price=round_money(unit_price),
            tax_rate=_to_decimal(tax_rate),
            is_active=is_active,
        )
        data_manager.append_product(context.workbook, record)
        _invalidate_cache(context, "products")

    log.info(
        "Added product '%s' (stock=%s, price=%s, tax=%s%%)",
        product_id,
        quantity,
        record.unit_price,
        record.tax_rate,
    )
    return record


def require_nonnegative_stock(quantity: int) -> None:
    """Raise ``ValueError`` unless ``quantity`` is an integer >= 0."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
        log.error("Stock validation failed: %s", quantity)
        raise ValueError("Stock must be a whole number, zero or positive")


def require_nonnegative_money(amount: Decimal) -> None:
    """Raise ``ValueError`` if ``amount`` is below zero."""
    if _to_decimal(amount) < ZERO_MONEY:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def _to_decimal(value: object) -> Decimal:
    """Coerce ints, floats, strings, and decimals into :class:`Decimal`.

    Floats go through ``str`` so ``19.0`` becomes ``Decimal("19.0")`` rather
    than its binary expansion.

    Raises:
        ValueError: If the value is not a finite number.
    """
    if isinstance(value, bool):
        raise ValueError(f"Not a numeric value: {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation as exc:
            raise ValueError(f"Not a numeric value: {value!r}") from exc
    # NaN slips past every ordering comparison
    if not result.is_finite():
        raise ValueError(f"Not a finite value: {value!r}")
    return result


def round_money(amount: object) -> Decimal:
    """Round ``amount`` half-up to two fractional digits."""
    return _to_decimal(amount).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def compute_line_tax(unit_price: object, quantity: int, tax_rate_percent: object) -> Decimal:
    """Return the tax owed on one line.

    ``round2(unit_price * quantity * rate / 100)`` with half-up rounding,
    applied once per line. A missing or non-positive rate is exempt and
    yields exactly ``0.00``.

    Args:
        unit_price: Price of one unit.
        quantity (int): Units on the line.
        tax_rate_percent: Percentage rate, e.g. ``19`` for 19 %.

    Returns:
        Decimal: The line tax with two fractional digits.
    """
    if tax_rate_percent is None:
        return ZERO_MONEY
    rate = _to_decimal(tax_rate_percent)
    if rate <= 0:
        return ZERO_MONEY
    return round_money(_to_decimal(unit_price) * quantity * rate / Decimal(100))


def calculate_totals(lines: Sequence[SaleLine]) -> Tuple[Decimal, Decimal, Decimal]:
    """Return ``(subtotal, tax_total, grand_total)`` recomputed from ``lines``."""
    subtotal = round_money(sum((line.line_subtotal for line in lines), ZERO_MONEY))
    tax_total = round_money(sum((line.tax_amount for line in lines), ZERO_MONEY))
    return subtotal, tax_total, round_money(subtotal + tax_total)


def _is_valid_quantity(quantity: object) -> bool:
    return isinstance(quantity, int) and not isinstance(quantity, bool) and quantity >= 1


def _resolve_for_sale(
    product_id: str,
    lookup: Callable[[str], data_manager.ProductRow],
) -> data_manager.ProductRow:
    """Look up a product that may be sold, translating lookup failures."""
    try:
        product = lookup(product_id)
    except MissingReferenceError as exc:
        raise ProductNotFoundError(product_id) from exc
    if not product.is_active:
        log.warning("Attempted sale of inactive product '%s'", product_id)
        raise ProductNotFoundError(product_id, inactive=True)
    return product


def effective_unit_price(line: CartLine, product: data_manager.ProductRow) -> Decimal:
    """Return the caller-pinned price when present, otherwise the catalog price.

    Raises:
        InvalidPriceError: If the pinned price is not a finite, non-negative
            number.
    """
    if line.unit_price is None:
        return product.unit_price
    try:
        raw = _to_decimal(line.unit_price)
    except ValueError as exc:
        raise InvalidPriceError(line.product_id, line.unit_price, product_name=product.product_name) from exc
    if raw < ZERO_MONEY:
        raise InvalidPriceError(line.product_id, line.unit_price, product_name=product.product_name)
    return round_money(raw)


def validate_cart(
    cart: Sequence[CartLine],
    lookup: Callable[[str], data_manager.ProductRow],
) -> Dict[str, data_manager.ProductRow]:
    """Check a cart against the catalog without mutating anything.

    Lines are checked in cart order: the product must resolve and be active,
    the quantity must be a whole number of at least one, any pinned price
    must be non-negative, and the running quantity requested per product
    must fit in its available stock. Several lines for the same product are
    therefore checked against the stock together.

    Args:
        cart (Sequence[CartLine]): Lines to validate.
        lookup (Callable[[str], ProductRow]): Product resolver; raises
            :class:`MissingReferenceError` for unknown ids.

    Returns:
        dict[str, ProductRow]: Resolved products keyed by id.

    Raises:
        EmptyCartError: If ``cart`` has no lines. The lookup is not called.
        ProductNotFoundError: If a product is unknown or inactive.
        InvalidQuantityError: If a quantity is not an integer >= 1.
        InvalidPriceError: If a pinned price is negative.
        InsufficientStockError: If the requested total exceeds stock.
    """
    if not cart:
        raise EmptyCartError()

    requested: Dict[str, int] = {}
    resolved: Dict[str, data_manager.ProductRow] = {}
    for line in cart:
        product = _resolve_for_sale(line.product_id, lookup)
        if not _is_valid_quantity(line.quantity):
            raise InvalidQuantityError(line.product_id, line.quantity, product_name=product.product_name)
        effective_unit_price(line, product)

        total = requested.get(line.product_id, 0) + line.quantity
        if total > product.quantity:
            raise InsufficientStockError(
                line.product_id,
                requested=total,
                available=product.quantity,
                product_name=product.product_name,
            )
        requested[line.product_id] = total
        resolved[line.product_id] = product
    return resolved


def validate_sale(context: RuntimeContext, cart: Sequence[CartLine]) -> Dict[str, data_manager.ProductRow]:
    """Validate ``cart`` against the committed catalog of ``context``."""
    return validate_cart(cart, lambda product_id: get_product(context, product_id))


class SaleTransaction:
    """Staged stock changes and sales for one commit boundary.

    Nothing reaches the workbook until :meth:`commit`. Reads through
    :meth:`get_product` see the staged stock, so checks made inside the
    transaction account for earlier decrements in the same transaction.
    Instances are created by :func:`sale_transaction`, which holds the
    context lock for the whole lifetime.
    """

    def __init__(self, context: RuntimeContext) -> None:
        self._context = context
        self._stock: Dict[str, int] = {}
        self._pending: List[Sale] = []
        self._next_sale_id = next_sale_id(context)
        self.committed = False

    def get_product(self, product_id: str) -> data_manager.ProductRow:
        """Return the catalog row with any staged stock applied."""
        product = get_product(self._context, product_id)
        staged = self._stock.get(product_id)
        return product if staged is None else replace(product, quantity=staged)

    def decrement_stock(self, product_id: str, amount: int) -> int:
        """Stage ``amount`` units leaving stock and return what remains.

        Raises:
            MissingReferenceError: If the product is unknown.
            InsufficientStockError: If fewer than ``amount`` units remain.
        """
        product = self.get_product(product_id)
        if amount > product.quantity:
            raise InsufficientStockError(
                product_id,
                requested=amount,
                available=product.quantity,
                product_name=product.product_name,
            )
        remaining = product.quantity - amount
        self._stock[product_id] = remaining
        return remaining

    def save(self, sale: Sale) -> Sale:
        """Stage ``sale`` for persistence and return it with its id assigned."""
        stored = replace(sale, sale_id=self._next_sale_id)
        self._next_sale_id += 1
        self._pending.append(stored)
        return stored

    @property
    def pending_sales(self) -> Tuple[Sale, ...]:
        return tuple(self._pending)

    def commit(self) -> None:
        """Apply staged changes to the workbook and save it.

        If any step fails the workbook is put back the way it was (stock
        restored, appended rows removed) before the error is reported.

        Raises:
            PersistenceFailure: If applying or saving the changes failed.
        """
        context = self._context
        workbook = context.workbook
        previous_stock = {product_id: get_product(context, product_id).quantity for product_id in self._stock}
        sales_rows = data_manager.sheet_row_count(workbook, SheetName.SALES.value)
        line_rows = data_manager.sheet_row_count(workbook, SheetName.SALE_LINES.value)

        try:
            for product_id, quantity in self._stock.items():
                data_manager.update_product(workbook, product_id, field_values={"Quantity": quantity})
            for sale in self._pending:
                data_manager.append_sale(workbook, build_sale_row(sale))
                for line_row in build_sale_line_rows(sale):
                    data_manager.append_sale_line(workbook, line_row)
            data_manager.save_workbook(workbook, context.settings.data_file)
        except Exception as exc:
            log.error("Commit failed, restoring workbook state: %s", exc)
            self._revert(previous_stock, sales_rows=sales_rows, line_rows=line_rows)
            raise PersistenceFailure(f"Could not persist the sale: {exc}") from exc
        finally:
            _invalidate_cache(context, "products", "sales")

        self.committed = True

    def _revert(self, previous_stock: Dict[str, int], *, sales_rows: int, line_rows: int) -> None:
        workbook = self._context.workbook
        for product_id, quantity in previous_stock.items():
            data_manager.update_product(workbook, product_id, field_values={"Quantity": quantity})
        data_manager.truncate_sheet(workbook, SheetName.SALES.value, keep_rows=sales_rows)
        data_manager.truncate_sheet(workbook, SheetName.SALE_LINES.value, keep_rows=line_rows)


@contextmanager
def sale_transaction(context: RuntimeContext) -> Iterator[SaleTransaction]:
    """Open a commit boundary over ``context``.

    The context lock is held until the block exits, which serializes stock
    checks and decrements across concurrent submissions. A clean exit
    commits; an exception discards the staged changes and propagates.
    """
    with context._lock:
        transaction = SaleTransaction(context)
        try:
            yield transaction
        except BaseException:
            log.warning(
                "Rolling back sale transaction (%d staged sale(s), %d stock change(s))",
                len(transaction._pending),
                len(transaction._stock),
            )
            raise
        transaction.commit()


def next_sale_id(context: RuntimeContext) -> int:
    """Return the id the next persisted sale will receive."""
    return max((sale.sale_id or 0 for sale in list_sales(context)), default=0) + 1


def build_sale_line(product_id: str, quantity: int, unit_price: Decimal, tax_rate: Decimal) -> SaleLine:
    """Price and tax one line using the snapshot values supplied."""
    return SaleLine(
        product_id=product_id,
        quantity=quantity,
        unit_price=unit_price,
        tax_rate=tax_rate,
        tax_amount=compute_line_tax(unit_price, quantity, tax_rate),
    )


def build_sale(
    lines: Sequence[SaleLine],
    *,
    timestamp: datetime,
    user_id: str,
    payment_method: str,
) -> Sale:
    """Assemble an unsaved :class:`Sale` whose totals come from ``lines``."""
    subtotal, tax_total, grand_total = calculate_totals(lines)
    return Sale(
        sale_id=None,
        timestamp=timestamp,
        user_id=user_id,
        payment_method=payment_method,
        lines=tuple(lines),
        subtotal=subtotal,
        tax_total=tax_total,
        grand_total=grand_total,
    )


def build_sale_row(sale: Sale) -> data_manager.SaleRow:
    """Materialize a persisted :class:`Sale` header into a DAL row."""
    if sale.sale_id is None:
        raise ValueError("Cannot serialize a sale without an id")
    return data_manager.SaleRow(
        sale_id=sale.sale_id,
        timestamp_iso=sale.timestamp.isoformat(),
        user_id=sale.user_id,
        payment_method=sale.payment_method,
        subtotal=sale.subtotal,
        tax_total=sale.tax_total,
        grand_total=sale.grand_total,
    )


def build_sale_line_rows(sale: Sale) -> List[data_manager.SaleLineRow]:
    """Materialize the lines of a persisted sale, numbered in cart order."""
    if sale.sale_id is None:
        raise ValueError("Cannot serialize a sale without an id")
    return [
        data_manager.SaleLineRow(
            sale_id=sale.sale_id,
            line_number=number,
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price=line.unit_price,
            tax_rate=line.tax_rate,
            tax_amount=line.tax_amount,
        )
        for number, line in enumerate(sale.lines, start=1)
    ]


def _commit_sale(
    context: RuntimeContext,
    cart: Sequence[CartLine],
    *,
    acting_user: str,
    payment_method: str,
    timestamp: datetime,
) -> Sale:
    """Resolve, decrement, total, and persist ``cart`` as one unit."""
    with sale_transaction(context) as transaction:
        validate_cart(cart, transaction.get_product)

        lines: List[SaleLine] = []
        for cart_line in cart:
            product = transaction.get_product(cart_line.product_id)
            unit_price = effective_unit_price(cart_line, product)
            transaction.decrement_stock(cart_line.product_id, cart_line.quantity)
            lines.append(build_sale_line(product.product_id, cart_line.quantity, unit_price, product.tax_rate))

        draft = build_sale(lines, timestamp=timestamp, user_id=acting_user, payment_method=payment_method)
        sale = transaction.save(draft)
    return sale


def _advance(current: SaleState, target: SaleState) -> SaleState:
    log.debug("Sale state %s -> %s", current.value, target.value)
    return target


def _notify_listeners(sale: Sale, listeners: Sequence[SaleListener]) -> None:
    """Run post-commit callbacks; a failing listener cannot undo the sale."""
    for listener in listeners:
        try:
            listener(sale)
        except Exception:
            log.exception("Post-commit listener %r failed for sale %s", listener, sale.sale_id)


def process_sale(
    context: RuntimeContext,
    cart: Optional[Sequence[CartLine]],
    acting_user: str,
    payment_method: Optional[str] = None,
    *,
    listeners: Sequence[SaleListener] = (),
) -> SaleResult:
    """Validate, price, and atomically commit a cart as a sale.

    The sale is stamped first, then the cart is validated against the
    committed catalog. Inside the commit boundary the cart is validated
    again, each line is resolved in cart order (pinned price or catalog
    price, always the catalog tax rate), stock is decremented, totals are
    recomputed from the lines, and the sale is saved together with the
    stock changes.

    Args:
        context (RuntimeContext): Shared runtime context.
        cart (Sequence[CartLine] | None): Lines to sell.
        acting_user (str): Identifier of the user recording the sale.
        payment_method (str | None): Free-form tag such as ``"cash"``;
            defaults to the configured ``PaymentMethod``.
        listeners (Sequence[Callable[[Sale], None]]): Callbacks run only
            after the commit is durable.

    Returns:
        SaleResult: ``COMMITTED`` with the saved sale, ``REJECTED`` when
            validation failed before any work, or ``ROLLED_BACK`` when the
            commit boundary aborted. Failed results carry the error.
    """
    timestamp = _resolve_timestamp(None)
    method = payment_method or context.settings.default_payment_method
    lines = tuple(cart or ())
    log.info(
        "Processing sale for user '%s' (%d line(s), payment=%s)",
        acting_user,
        len(lines),
        method,
    )

    state = SaleState.DRAFT
    try:
        state = _advance(state, SaleState.VALIDATING)
        validate_sale(context, lines)
        state = _advance(state, SaleState.COMMITTING)
        sale = _commit_sale(
            context,
            lines,
            acting_user=acting_user,
            payment_method=method,
            timestamp=timestamp,
        )
    except SaleError as exc:
        return _failed(state, exc)
    except Exception as exc:
        log.exception("Unexpected failure while processing sale for user '%s'", acting_user)
        error = UnexpectedFailure(f"Unexpected error while registering the sale: {exc}")
        error.__cause__ = exc
        return _failed(state, error)

    state = _advance(state, SaleState.COMMITTED)
    log.info(
        "Committed sale %s for user '%s' (subtotal=%s, tax=%s, total=%s)",
        sale.sale_id,
        acting_user,
        sale.subtotal,
        sale.tax_total,
        sale.grand_total,
    )
    _notify_listeners(sale, listeners)
    return SaleResult(state=state, sale=sale)


def _failed(state: SaleState, error: SaleError) -> SaleResult:
    final = SaleState.REJECTED if state is SaleState.VALIDATING else SaleState.ROLLED_BACK
    log.warning("Sale %s (%s): %s", final.value.lower(), error.kind.value, error)
    return SaleResult(state=_advance(state, final), error=error)


def register_sale(
    context: RuntimeContext,
    cart: Optional[Sequence[CartLine]],
    acting_user: str,
    payment_method: Optional[str] = None,
) -> Optional[str]:
    """Legacy face of :func:`process_sale`: ``None`` on success, else a message."""
    result = process_sale(context, cart, acting_user, payment_method)
    return None if result.success else result.message


def sale_response(result: SaleResult) -> Dict[str, Any]:
    """Shape a :class:`SaleResult` as ``{success, saleId?, error?}``."""
    if result.success and result.sale is not None:
        return {"success": True, "saleId": result.sale.sale_id}
    return {"success": False, "error": result.message}
