"""Unit tests verifying the business logic layer."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from pos_engine import constants, core_logic, data_manager
from pos_engine.constants import SaleErrorKind, SaleState


def _line(product_id: str, quantity: object, unit_price: object = None) -> core_logic.CartLine:
    return core_logic.CartLine(product_id=product_id, quantity=quantity, unit_price=unit_price)


def _lookup(*products: data_manager.ProductRow):
    catalog = {product.product_id: product for product in products}

    def _resolve(product_id: str) -> data_manager.ProductRow:
        try:
            return catalog[product_id]
        except KeyError as exc:
            raise core_logic.MissingReferenceError(product_id) from exc

    return _resolve


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and workbook into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "master.xlsx",
        store_name="Store",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_payment_method="cash",
    )
    workbook = Mock(name="workbook")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_workbook = Mock(return_value=workbook)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.workbook is workbook
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError."""

    bad_settings = replace(context.settings, schema_version="0.9")
    bad_context = core_logic.RuntimeContext(settings=bad_settings, workbook=context.workbook)
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


def test_ensure_schema_version_accepts_expected(context):
    """The expected schema version should pass silently."""

    core_logic.ensure_schema_version(context)


# ---------------------------------------------------------------------------
# Catalog access
# ---------------------------------------------------------------------------


def test_list_products_excludes_inactive_by_default(monkeypatch, context, product_factory):
    """list_products should hide inactive rows unless explicitly requested."""

    products = [product_factory("P1"), product_factory("P2", is_active=False)]
    iter_mock = Mock(return_value=products)
    monkeypatch.setattr(data_manager, "iter_products", iter_mock)

    assert [row.product_id for row in core_logic.list_products(context)] == ["P1"]
    assert [row.product_id for row in core_logic.list_products(context, include_inactive=True)] == ["P1", "P2"]
    iter_mock.assert_called_once_with(context.workbook)


def test_get_product_unknown_raises_missing_reference(monkeypatch, context):
    """Unknown ids should raise MissingReferenceError."""

    monkeypatch.setattr(data_manager, "iter_products", Mock(return_value=[]))
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.get_product(context, "nope")


def test_add_product_appends_and_invalidates_cache(monkeypatch, context, product_factory):
    """add_product should append through the DAL and refresh the catalog view."""

    existing = [product_factory("P1")]
    iter_mock = Mock(return_value=existing)
    append_mock = Mock()
    monkeypatch.setattr(data_manager, "iter_products", iter_mock)
    monkeypatch.setattr(data_manager, "append_product", append_mock)

    record = core_logic.add_product(
        context,
        product_id="P2",
        product_name="New",
        quantity=4,
        unit_price=Decimal("2.5"),
        tax_rate=Decimal("19"),
    )

    assert record.unit_price == Decimal("2.50")
    assert record.tax_rate == Decimal("19.00")
    append_mock.assert_called_once_with(context.workbook, record)
    assert "products" not in context._cache


def test_add_product_rejects_duplicate_id(monkeypatch, context, product_factory):
    """Adding an id that already exists is a business rule violation."""

    monkeypatch.setattr(data_manager, "iter_products", Mock(return_value=[product_factory("P1")]))
    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.add_product(
            context, product_id="P1", product_name="Dup", quantity=1, unit_price=Decimal("1.00"),
        )


@pytest.mark.parametrize(
    "quantity, unit_price, tax_rate",
    [
        (-1, Decimal("1.00"), Decimal("0")),
        (1, Decimal("-0.01"), Decimal("0")),
        (1, Decimal("1.00"), Decimal("-5")),
        (1, Decimal("NaN"), Decimal("0")),
        (1, Decimal("1.00"), Decimal("Infinity")),
    ],
)
def test_add_product_rejects_negative_values(context, quantity, unit_price, tax_rate):
    """Negative or non-finite stock, price or tax rate should raise ValueError."""

    with pytest.raises(ValueError):
        core_logic.add_product(
            context,
            product_id="X",
            product_name="Bad",
            quantity=quantity,
            unit_price=unit_price,
            tax_rate=tax_rate,
        )


# ---------------------------------------------------------------------------
# Tax and totals
# ---------------------------------------------------------------------------


def test_compute_line_tax_applies_percentage():
    """Tax is price * quantity * rate / 100, rounded to cents."""

    assert core_logic.compute_line_tax(Decimal("100.00"), 2, Decimal("19.00")) == Decimal("38.00")


@pytest.mark.parametrize("rate", [None, Decimal("0"), Decimal("-3")])
def test_compute_line_tax_exempt_rates_yield_zero(rate):
    """Missing, zero or negative rates are exempt."""

    assert core_logic.compute_line_tax(Decimal("100.00"), 2, rate) == Decimal("0.00")


def test_compute_line_tax_rounds_half_up():
    """Half a cent rounds up."""

    assert core_logic.compute_line_tax(Decimal("0.05"), 1, Decimal("10")) == Decimal("0.01")


def test_calculate_totals_sums_lines():
    """Totals should be recomputed from the lines."""

    lines = [
        core_logic.build_sale_line("P", 3, Decimal("1000.00"), Decimal("19.00")),
        core_logic.build_sale_line("Q", 1, Decimal("250.50"), Decimal("0.00")),
    ]
    assert core_logic.calculate_totals(lines) == (Decimal("3250.50"), Decimal("570.00"), Decimal("3820.50"))


# ---------------------------------------------------------------------------
# Cart validation
# ---------------------------------------------------------------------------


def test_validate_cart_rejects_empty_cart_without_lookup():
    """An empty cart fails before any catalog access."""

    lookup = Mock()
    with pytest.raises(core_logic.EmptyCartError):
        core_logic.validate_cart([], lookup)
    lookup.assert_not_called()


def test_validate_cart_unknown_product(product_factory):
    """Unknown ids surface as ProductNotFoundError."""

    with pytest.raises(core_logic.ProductNotFoundError) as excinfo:
        core_logic.validate_cart([_line("ghost", 1)], _lookup(product_factory("P")))
    assert excinfo.value.kind is SaleErrorKind.PRODUCT_NOT_FOUND
    assert excinfo.value.recoverable is True


def test_validate_cart_inactive_product_is_not_found(product_factory):
    """Inactive products cannot be sold and are reported as not found."""

    with pytest.raises(core_logic.ProductNotFoundError) as excinfo:
        core_logic.validate_cart([_line("P", 1)], _lookup(product_factory("P", is_active=False)))
    assert excinfo.value.inactive is True


@pytest.mark.parametrize("quantity", [0, -1, 1.5, True, "2"])
def test_validate_cart_rejects_invalid_quantities(product_factory, quantity):
    """Quantities must be whole numbers of at least one."""

    with pytest.raises(core_logic.InvalidQuantityError) as excinfo:
        core_logic.validate_cart([_line("P", quantity)], _lookup(product_factory("P")))
    assert excinfo.value.message == "Quantity for product 'Widget' must be at least 1."


def test_validate_cart_insufficient_stock_reports_available(product_factory):
    """Asking for more than the stock reports what is available."""

    with pytest.raises(core_logic.InsufficientStockError) as excinfo:
        core_logic.validate_cart([_line("P", 11)], _lookup(product_factory("P", quantity=10)))
    assert excinfo.value.available == 10
    assert excinfo.value.message == "Not enough stock for product 'Widget'. Available: 10"


def test_validate_cart_aggregates_duplicate_lines(product_factory):
    """Two lines for one product are checked against its stock together."""

    with pytest.raises(core_logic.InsufficientStockError) as excinfo:
        core_logic.validate_cart([_line("P", 6), _line("P", 5)], _lookup(product_factory("P", quantity=10)))
    assert excinfo.value.requested == 11


@pytest.mark.parametrize("price", [Decimal("-1"), Decimal("-0.001"), Decimal("Infinity"), Decimal("-Infinity"), Decimal("NaN"), "abc"])
def test_validate_cart_rejects_bad_pinned_price(product_factory, price):
    """A pinned price must be a finite, non-negative number."""

    with pytest.raises(core_logic.InvalidPriceError) as excinfo:
        core_logic.validate_cart([_line("P", 1, price)], _lookup(product_factory("P")))
    assert excinfo.value.kind is SaleErrorKind.INVALID_PRICE


def test_validate_cart_reports_first_failing_line(product_factory):
    """Lines are checked in cart order."""

    lookup = _lookup(product_factory("P"), product_factory("Q", quantity=0))
    with pytest.raises(core_logic.ProductNotFoundError):
        core_logic.validate_cart([_line("ghost", 1), _line("Q", 5)], lookup)


def test_validate_cart_returns_resolved_products(product_factory):
    """A valid cart returns the products it references."""

    resolved = core_logic.validate_cart([_line("P", 10)], _lookup(product_factory("P", quantity=10)))
    assert set(resolved) == {"P"}


# ---------------------------------------------------------------------------
# Sale processing
# ---------------------------------------------------------------------------


def test_process_sale_empty_cart_never_reads_catalog(monkeypatch, context):
    """An empty cart is rejected without touching the catalog."""

    iter_mock = Mock(return_value=[])
    monkeypatch.setattr(data_manager, "iter_products", iter_mock)

    result = core_logic.process_sale(context, [], "u1")

    assert result.state is SaleState.REJECTED
    assert result.error_kind is SaleErrorKind.EMPTY_CART
    assert result.sale is None
    iter_mock.assert_not_called()


def test_process_sale_none_cart_is_empty(monkeypatch, context):
    """A missing cart behaves like an empty one."""

    monkeypatch.setattr(data_manager, "iter_products", Mock(return_value=[]))
    result = core_logic.process_sale(context, None, "u1")
    assert result.error_kind is SaleErrorKind.EMPTY_CART


def test_process_sale_commits_and_decrements_stock(runtime_context, set_fixed_datetime):
    """A valid sale is priced, taxed, persisted, and reduces stock."""

    moment = set_fixed_datetime(datetime(2024, 5, 1, 12, 30, 0, tzinfo=UTC))

    result = core_logic.process_sale(runtime_context, [_line("P", 3)], "u1", "card")

    assert result.success
    assert result.state is SaleState.COMMITTED
    sale = result.sale
    assert sale.sale_id == 1
    assert sale.timestamp == moment
    assert sale.user_id == "u1"
    assert sale.payment_method == "card"
    assert sale.subtotal == Decimal("3000.00")
    assert sale.tax_total == Decimal("570.00")
    assert sale.grand_total == Decimal("3570.00")
    assert core_logic.get_product(runtime_context, "P").quantity == 7


def test_process_sale_persists_to_disk(runtime_context, set_fixed_datetime):
    """The committed sale and stock are readable after reloading the workbook."""

    moment = set_fixed_datetime(datetime(2024, 5, 1, 12, 30, 0, tzinfo=UTC))
    core_logic.process_sale(runtime_context, [_line("P", 2), _line("Q", 1)], "u1")

    reloaded = core_logic.refresh_context(runtime_context)
    sales = core_logic.list_sales(reloaded)

    assert len(sales) == 1
    sale = sales[0]
    assert sale.timestamp == moment
    assert sale.payment_method == "cash"
    assert [(line.product_id, line.quantity) for line in sale.lines] == [("P", 2), ("Q", 1)]
    assert core_logic.calculate_totals(sale.lines) == (sale.subtotal, sale.tax_total, sale.grand_total)
    assert sale.grand_total == Decimal("2630.50")
    assert core_logic.get_product(reloaded, "P").quantity == 8
    assert core_logic.get_product(reloaded, "Q").quantity == 4


def test_process_sale_assigns_increasing_ids(runtime_context):
    """Each committed sale receives the next id."""

    first = core_logic.process_sale(runtime_context, [_line("P", 1)], "u1")
    second = core_logic.process_sale(runtime_context, [_line("P", 1)], "u2")

    assert (first.sale.sale_id, second.sale.sale_id) == (1, 2)
    assert core_logic.get_sale(runtime_context, 2).user_id == "u2"


def test_process_sale_price_override_keeps_catalog_tax_rate(runtime_context):
    """A pinned price replaces the catalog price but not the tax rate."""

    result = core_logic.process_sale(runtime_context, [_line("P", 1, Decimal("500.00"))], "u1")

    line = result.sale.lines[0]
    assert line.unit_price == Decimal("500.00")
    assert line.tax_rate == Decimal("19.00")
    assert line.tax_amount == Decimal("95.00")


def test_process_sale_insufficient_stock_changes_nothing(runtime_context):
    """A failing line leaves every product and the sale log untouched."""

    result = core_logic.process_sale(runtime_context, [_line("Q", 1), _line("P", 11)], "u1")

    assert result.state is SaleState.REJECTED
    assert result.error_kind is SaleErrorKind.INSUFFICIENT_STOCK
    assert result.message == "Not enough stock for product 'Widget'. Available: 10"
    assert core_logic.get_product(runtime_context, "P").quantity == 10
    assert core_logic.get_product(runtime_context, "Q").quantity == 5
    assert core_logic.list_sales(runtime_context) == []


@pytest.mark.parametrize("price", [Decimal("Infinity"), Decimal("NaN"), Decimal("-5")])
def test_process_sale_bad_pinned_price_is_rejected(runtime_context, price):
    """Non-finite or negative overrides never reach the workbook."""

    result = core_logic.process_sale(runtime_context, [_line("P", 1, price)], "u1")

    assert result.state is SaleState.REJECTED
    assert result.error_kind is SaleErrorKind.INVALID_PRICE
    assert core_logic.get_product(runtime_context, "P").quantity == 10
    assert core_logic.list_sales(runtime_context) == []


def test_process_sale_keeps_fractional_tax_rate(runtime_context):
    """Rates with more than two decimals are stored and applied as entered."""

    core_logic.add_product(
        runtime_context,
        product_id="T",
        product_name="Tonic",
        quantity=3,
        unit_price=Decimal("1000.00"),
        tax_rate=Decimal("19.125"),
    )
    core_logic.persist_context(runtime_context)
    context = core_logic.refresh_context(runtime_context)
    assert core_logic.get_product(context, "T").tax_rate == Decimal("19.125")

    result = core_logic.process_sale(context, [_line("T", 1)], "u1")

    assert result.sale.tax_total == Decimal("191.25")
    reloaded = core_logic.refresh_context(context)
    line = core_logic.list_sales(reloaded)[0].lines[0]
    assert line.tax_rate == Decimal("19.125")
    assert line.tax_amount == Decimal("191.25")


def test_process_sale_inactive_product_is_rejected(runtime_context):
    """Inactive catalog entries cannot be sold."""

    result = core_logic.process_sale(runtime_context, [_line("R", 1)], "u1")
    assert result.error_kind is SaleErrorKind.PRODUCT_NOT_FOUND
    assert core_logic.get_product(runtime_context, "R").quantity == 8


def test_process_sale_persistence_failure_rolls_back(runtime_context, monkeypatch):
    """A failed save restores stock and discards the appended rows."""

    monkeypatch.setattr(data_manager, "save_workbook", Mock(side_effect=OSError("disk full")))

    result = core_logic.process_sale(runtime_context, [_line("P", 3)], "u1")

    assert result.state is SaleState.ROLLED_BACK
    assert result.error_kind is SaleErrorKind.PERSISTENCE_FAILURE
    assert result.error.recoverable is False
    assert core_logic.get_product(runtime_context, "P").quantity == 10
    assert core_logic.list_sales(runtime_context) == []
    assert list(data_manager.iter_sale_lines(runtime_context.workbook)) == []


def test_process_sale_unexpected_failure_is_wrapped(runtime_context, monkeypatch):
    """Errors outside the domain become UNEXPECTED_FAILURE and roll back."""

    monkeypatch.setattr(core_logic, "build_sale_line", Mock(side_effect=RuntimeError("boom")))

    result = core_logic.process_sale(runtime_context, [_line("P", 1)], "u1")

    assert result.state is SaleState.ROLLED_BACK
    assert result.error_kind is SaleErrorKind.UNEXPECTED_FAILURE
    assert result.message == "Unexpected error while registering the sale: boom"
    assert core_logic.get_product(runtime_context, "P").quantity == 10


def test_process_sale_concurrent_requests_cannot_oversell(config_factory):
    """Two simultaneous carts for the last unit: exactly one succeeds."""

    bundle = config_factory(products=[("S", "Solo", 1, 10, 0, True)])
    context = core_logic.load_runtime_context(bundle.config_path)
    barrier = threading.Barrier(2)
    results = []

    def _submit(user_id: str) -> None:
        barrier.wait()
        results.append(core_logic.process_sale(context, [_line("S", 1)], user_id))

    threads = [threading.Thread(target=_submit, args=(f"u{index}",)) for index in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for result in results if result.success) == 1
    failure = next(result for result in results if not result.success)
    assert failure.error_kind is SaleErrorKind.INSUFFICIENT_STOCK
    assert core_logic.get_product(context, "S").quantity == 0
    assert len(core_logic.list_sales(context)) == 1


def test_process_sale_stock_taken_after_precheck_rolls_back(config_factory, monkeypatch):
    """A rival sale that lands between the pre-check and the lock cannot oversell."""

    bundle = config_factory(products=[("S", "Solo", 1, 10, 0, True)])
    context = core_logic.load_runtime_context(bundle.config_path)
    real_validate = core_logic.validate_sale
    rivals = []
    raced = threading.Event()

    def _validate_then_lose_race(ctx, lines):
        real_validate(ctx, lines)
        if not raced.is_set():
            raced.set()
            rivals.append(core_logic.process_sale(ctx, [_line("S", 1)], "rival"))

    monkeypatch.setattr(core_logic, "validate_sale", _validate_then_lose_race)

    result = core_logic.process_sale(context, [_line("S", 1)], "u1")

    assert rivals[0].success
    assert result.state is SaleState.ROLLED_BACK
    assert result.error_kind is SaleErrorKind.INSUFFICIENT_STOCK
    assert core_logic.get_product(context, "S").quantity == 0
    assert [sale.user_id for sale in core_logic.list_sales(context)] == ["rival"]


def test_process_sale_product_deactivated_after_precheck_rolls_back(runtime_context, monkeypatch):
    """Deactivation between the pre-check and the lock is caught inside the commit."""

    real_validate = core_logic.validate_sale

    def _validate_then_deactivate(ctx, lines):
        real_validate(ctx, lines)
        data_manager.update_product(ctx.workbook, "P", field_values={"IsActive": False})
        core_logic._invalidate_cache(ctx, "products")

    monkeypatch.setattr(core_logic, "validate_sale", _validate_then_deactivate)

    result = core_logic.process_sale(runtime_context, [_line("P", 1)], "u1")

    assert result.state is SaleState.ROLLED_BACK
    assert result.error_kind is SaleErrorKind.PRODUCT_NOT_FOUND
    assert core_logic.get_product(runtime_context, "P").quantity == 10
    assert core_logic.list_sales(runtime_context) == []


def test_process_sale_runs_listeners_after_commit(runtime_context):
    """Listeners observe the committed state."""

    seen = []

    def _listener(sale: core_logic.Sale) -> None:
        seen.append((sale.sale_id, core_logic.get_product(runtime_context, "P").quantity))

    core_logic.process_sale(runtime_context, [_line("P", 2)], "u1", listeners=[_listener])

    assert seen == [(1, 8)]


def test_process_sale_failing_listener_does_not_undo_sale(runtime_context):
    """A listener error is logged and the sale stays committed."""

    def _broken(sale: core_logic.Sale) -> None:
        raise RuntimeError("listener down")

    result = core_logic.process_sale(runtime_context, [_line("P", 1)], "u1", listeners=[_broken])

    assert result.success
    assert len(core_logic.list_sales(runtime_context)) == 1


def test_process_sale_listeners_skipped_on_failure(runtime_context):
    """Listeners are not called for failed sales."""

    listener = Mock()
    core_logic.process_sale(runtime_context, [_line("P", 99)], "u1", listeners=[listener])
    listener.assert_not_called()


# ---------------------------------------------------------------------------
# Transaction boundary
# ---------------------------------------------------------------------------


def test_sale_transaction_discards_staged_changes_on_error(runtime_context):
    """Leaving the block with an exception writes nothing."""

    with pytest.raises(RuntimeError):
        with core_logic.sale_transaction(runtime_context) as transaction:
            transaction.decrement_stock("P", 4)
            assert transaction.get_product("P").quantity == 6
            raise RuntimeError("abort")

    assert core_logic.get_product(runtime_context, "P").quantity == 10


def test_sale_transaction_decrement_beyond_stock_raises(runtime_context):
    """Staged decrements are checked against staged stock."""

    with pytest.raises(core_logic.InsufficientStockError):
        with core_logic.sale_transaction(runtime_context) as transaction:
            transaction.decrement_stock("Q", 3)
            transaction.decrement_stock("Q", 3)


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


def test_register_sale_returns_none_on_success(runtime_context):
    """The legacy adapter returns None when the sale commits."""

    assert core_logic.register_sale(runtime_context, [_line("P", 1)], "u1") is None


def test_register_sale_returns_message_on_failure(runtime_context):
    """The legacy adapter returns the human-readable error."""

    message = core_logic.register_sale(runtime_context, [_line("P", 0)], "u1")
    assert message == "Quantity for product 'Widget' must be at least 1."


def test_sale_response_shapes_outcomes(runtime_context):
    """sale_response should expose the id or the error message."""

    ok = core_logic.process_sale(runtime_context, [_line("P", 1)], "u1")
    failed = core_logic.process_sale(runtime_context, [], "u1")

    assert core_logic.sale_response(ok) == {"success": True, "saleId": 1}
    assert core_logic.sale_response(failed) == {
        "success": False,
        "error": "The cart must contain at least one line.",
    }
