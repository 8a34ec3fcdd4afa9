"""Read-only queries over persisted sales and the catalog.

Everything here is derived from :func:`core_logic.list_sales` and
:func:`core_logic.list_products`; no function in this module mutates the
workbook. Date filters work on whole calendar days: ``date_from`` starts at
00:00:00 and ``date_to`` ends at 23:59:59, both inclusive, in UTC.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Tuple, Union

from . import core_logic, data_manager, log
from .constants import MONEY_QUANTUM, ZERO_MONEY


DateLike = Union[str, date, None]

START_OF_DAY = time(0, 0, 0)
END_OF_DAY = time(23, 59, 59)


@dataclass(frozen=True)
class SaleFilter:
    """Conjunctive criteria for :func:`find_sales`.

    A field left as ``None`` (or an empty string) puts no constraint on that
    dimension.
    """

    date_from: DateLike = None
    date_to: DateLike = None
    user_id: Optional[str] = None
    product_id: Optional[str] = None
    payment_method: Optional[str] = None


@dataclass(frozen=True)
class SalesSummary:
    """Totals for a period plus the change against the period before it."""

    total_amount: Decimal
    sale_count: int
    average_ticket: Decimal
    growth_percent: Optional[Decimal]


@dataclass(frozen=True)
class ProductSales:
    product_id: str
    product_name: str
    quantity: int
    amount: Decimal


@dataclass(frozen=True)
class SellerSales:
    user_id: str
    sale_count: int
    total_amount: Decimal


def parse_day(value: DateLike) -> Optional[date]:
    """Return ``value`` as a calendar date, or ``None`` when absent.

    Accepts ``date`` objects and ISO ``YYYY-MM-DD`` strings. ``datetime``
    values are reduced to their date.

    Raises:
        ValueError: If a string is not an ISO calendar date.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip())


def day_bounds(date_from: DateLike = None, date_to: DateLike = None) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Expand optional day strings into inclusive UTC datetime bounds."""
    start_day = parse_day(date_from)
    end_day = parse_day(date_to)
    start = datetime.combine(start_day, START_OF_DAY, tzinfo=UTC) if start_day else None
    end = datetime.combine(end_day, END_OF_DAY, tzinfo=UTC) if end_day else None
    return start, end


def _absent(value: Optional[str]) -> bool:
    return value is None or value == ""


def _within(moment: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is not None and moment < start:
        return False
    if end is not None and moment > end:
        return False
    return True


def _matches(
    sale: core_logic.Sale,
    criteria: SaleFilter,
    start: Optional[datetime],
    end: Optional[datetime],
) -> bool:
    if not _within(sale.timestamp, start, end):
        return False
    if not _absent(criteria.user_id) and sale.user_id != criteria.user_id:
        return False
    if not _absent(criteria.product_id) and not any(
        line.product_id == criteria.product_id for line in sale.lines
    ):
        return False
    if not _absent(criteria.payment_method) and sale.payment_method != criteria.payment_method:
        return False
    return True


def find_sales(context: core_logic.RuntimeContext, criteria: Optional[SaleFilter] = None) -> List[core_logic.Sale]:
    """Return persisted sales matching every supplied filter.

    Args:
        context (core_logic.RuntimeContext): Shared runtime context.
        criteria (SaleFilter | None): Filters to apply; ``None`` returns all
            sales.

    Returns:
        list[core_logic.Sale]: Matching sales in commit order, unchanged.

    Raises:
        ValueError: If a date filter is not an ISO calendar date.
    """
    criteria = criteria or SaleFilter()
    start, end = day_bounds(criteria.date_from, criteria.date_to)
    matches = [sale for sale in core_logic.list_sales(context) if _matches(sale, criteria, start, end)]
    log.debug("Sale filter %s matched %d sale(s)", criteria, len(matches))
    return matches


def sales_between(
    context: core_logic.RuntimeContext,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[core_logic.Sale]:
    """Return sales whose timestamp lies in ``[start, end]`` (bounds optional)."""
    return [sale for sale in core_logic.list_sales(context) if _within(sale.timestamp, start, end)]


def count_in_range(
    context: core_logic.RuntimeContext,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> int:
    """Count sales whose timestamp lies in ``[start, end]``."""
    return len(sales_between(context, start, end))


def _total(sales: Iterable[core_logic.Sale]) -> Decimal:
    return sum((sale.grand_total for sale in sales), ZERO_MONEY)


def summarize_sales(
    context: core_logic.RuntimeContext,
    start: datetime,
    end: datetime,
) -> SalesSummary:
    """Total amount, count, and average ticket for ``[start, end]``.

    Growth compares the period with the one of equal length that ends one
    second before ``start``. It is ``None`` when neither period sold
    anything, and ``100`` when only the current period did.
    """
    current = sales_between(context, start, end)
    total = _total(current)
    count = len(current)
    average = (total / count).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP) if count else ZERO_MONEY

    previous_end = start - timedelta(seconds=1)
    previous_start = previous_end - (end - start)
    previous_total = _total(sales_between(context, previous_start, previous_end))

    growth: Optional[Decimal] = None
    if previous_total > 0:
        growth = ((total - previous_total) * 100 / previous_total).quantize(
            MONEY_QUANTUM, rounding=ROUND_HALF_UP)
    elif total > 0:
        growth = Decimal("100.00")

    return SalesSummary(
        total_amount=total,
        sale_count=count,
        average_ticket=average,
        growth_percent=growth,
    )


def top_products(
    context: core_logic.RuntimeContext,
    limit: int = 10,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[ProductSales]:
    """Rank products by units sold in the period, best first.

    Ties are broken by product id so the ranking is stable. Products that
    have since left the catalog keep their id as the name.
    """
    quantities: Dict[str, int] = defaultdict(int)
    amounts: Dict[str, Decimal] = defaultdict(lambda: ZERO_MONEY)
    for sale in sales_between(context, start, end):
        for line in sale.lines:
            quantities[line.product_id] += line.quantity
            amounts[line.product_id] += line.line_subtotal

    names = {product.product_id: product.product_name for product in core_logic.list_products(context, include_inactive=True)}
    ranked = sorted(quantities, key=lambda product_id: (-quantities[product_id], product_id))
    return [
        ProductSales(
            product_id=product_id,
            product_name=names.get(product_id, product_id),
            quantity=quantities[product_id],
            amount=amounts[product_id],
        )
        for product_id in ranked[:max(limit, 0)]
    ]


def top_sellers(
    context: core_logic.RuntimeContext,
    limit: int = 10,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[SellerSales]:
    """Rank acting users by total amount sold in the period, best first."""
    counts: Dict[str, int] = defaultdict(int)
    totals: Dict[str, Decimal] = defaultdict(lambda: ZERO_MONEY)
    for sale in sales_between(context, start, end):
        counts[sale.user_id] += 1
        totals[sale.user_id] += sale.grand_total

    ranked = sorted(totals, key=lambda user_id: (-totals[user_id], user_id))
    return [
        SellerSales(user_id=user_id, sale_count=counts[user_id], total_amount=totals[user_id])
        for user_id in ranked[:max(limit, 0)]
    ]


def low_stock_products(
    context: core_logic.RuntimeContext,
    threshold: Optional[int] = None,
    *,
    include_inactive: bool = False,
) -> List[data_manager.ProductRow]:
    """Return products whose stock is at or below ``threshold``.

    ``threshold`` defaults to the configured ``LowStockThreshold``. The
    result is ordered by ascending stock, then product id.
    """
    limit = context.settings.low_stock_threshold if threshold is None else threshold
    products = core_logic.list_products(context, include_inactive=include_inactive)
    low = [product for product in products if product.quantity <= limit]
    return sorted(low, key=lambda product: (product.quantity, product.product_id))


def sales_by_day(
    context: core_logic.RuntimeContext,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[date, Decimal]:
    """Return the grand total sold per calendar day, in date order."""
    series: Dict[date, Decimal] = defaultdict(lambda: ZERO_MONEY)
    for sale in sales_between(context, start, end):
        series[sale.timestamp.date()] += sale.grand_total
    return dict(sorted(series.items()))


def count_sales_today(
    context: core_logic.RuntimeContext,
    user_id: Optional[str] = None,
    *,
    today: Optional[date] = None,
) -> int:
    """Count today's sales (UTC), optionally only those of ``user_id``."""
    day = today or datetime.now(UTC).date()
    start, end = day_bounds(day, day)
    sales = sales_between(context, start, end)
    if not _absent(user_id):
        sales = [sale for sale in sales if sale.user_id == user_id]
    return len(sales)


def count_sales_by_user(context: core_logic.RuntimeContext, user_id: str) -> int:
    """Count every sale ever recorded by ``user_id``."""
    return sum(1 for sale in core_logic.list_sales(context) if sale.user_id == user_id)
