"""
Finances service — time-bucketed usage report for one provider within one fund.

A report window is chosen with a selector plus year/ordinal:

  quarter  Q1..Q4   boundaries at the quarter start, then the configured
                    (months, days) offsets, then the quarter's last day
  month    1..12    boundaries at the month start, the configured day
                    offsets, then the month's last day
  week     ISO week one boundary per calendar day, Monday..Sunday
  all      —        up to FINANCES_ALL_MAX_BUCKETS boundaries spread evenly
                    from one day before the provider's first transaction
                    until now; fewer when the span is only a few days

Every boundary after the first closes a bucket holding the transactions
created after the previous boundary's end-of-day, up to and including the
current boundary's end-of-day. The first boundary only opens the window and
always reports 0.

From the buckets the report derives:
  usage            sum of all bucket values
  transactions     number of the provider's transactions in the window
  avg_transaction  mean of the non-zero bucket values (0 when there are none)
  share_in_range   provider usage / whole-fund usage in the window
  share_total      provider all-time usage / whole-fund all-time usage

A zero denominator yields a share of 0. The optional product-category filter
applies to every figure: NO_PRODUCT_CATEGORY (-1) keeps only transactions
without a product, any other id keeps transactions whose product is in that
category.
"""

import uuid
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import InvalidFilterError
from app.models.product import Product
from app.models.voucher import Voucher
from app.models.voucher_transaction import VoucherTransaction
from app.timeutils import as_utc, end_of_day, start_of_day, utcnow

WINDOWS = ("quarter", "month", "week", "all")

NO_PRODUCT_CATEGORY = -1

# Q4 of MAX_YEAR still ends inside the calendar datetime supports
MIN_YEAR = 1
MAX_YEAR = 9998
MAX_ORDINAL = {"quarter": 4, "month": 12, "week": 53}


# ---------------------------------------------------------------------------
# Boundaries (pure)
# ---------------------------------------------------------------------------

def _add_months(value: datetime, months: int) -> datetime:
    """Shift a first-of-month datetime by whole months."""
    month_index = value.month - 1 + months
    return value.replace(year=value.year + month_index // 12, month=month_index % 12 + 1)


def range_between(start: datetime, end: datetime, count: int) -> list[datetime]:
    """
    Up to `count` boundaries from `start` to `end`, the last one being `end`.

    Intermediate boundaries are whole days apart; a span of N days yields at
    most N + 1 boundaries.
    """
    intermediate = min(count - 1, (end - start).days)
    dates = []
    if intermediate > 0:
        interval = (end - start).days / intermediate
        for i in range(intermediate):
            dates.append(start + timedelta(days=int(i * interval)))
    dates.append(end)
    return dates


def quarter_boundaries(year: int, nth: int) -> list[datetime]:
    if not 1 <= nth <= 4:
        raise InvalidFilterError("Quarter must be between 1 and 4")
    start = datetime(year, nth * 3 - 2, 1, tzinfo=timezone.utc)
    end = end_of_day(_add_months(start, 3) - timedelta(days=1))
    middle = [
        _add_months(start, months) + timedelta(days=days)
        for months, days in settings.FINANCES_QUARTER_OFFSETS
    ]
    return [start, *middle, end]


def month_boundaries(year: int, nth: int) -> list[datetime]:
    if not 1 <= nth <= 12:
        raise InvalidFilterError("Month must be between 1 and 12")
    start = datetime(year, nth, 1, tzinfo=timezone.utc)
    end = end_of_day(_add_months(start, 1) - timedelta(days=1))
    middle = [start + timedelta(days=days) for days in settings.FINANCES_MONTH_OFFSETS]
    return [start, *middle, end]


def week_boundaries(year: int, nth: int) -> list[datetime]:
    try:
        monday = date.fromisocalendar(year, nth, 1)
    except ValueError:
        raise InvalidFilterError(f"{year} has no ISO week {nth}")
    return [start_of_day(monday + timedelta(days=i)) for i in range(7)]


def all_time_boundaries(first_transaction_at: datetime | None, now: datetime) -> list[datetime]:
    now = as_utc(now)
    start = as_utc(first_transaction_at) - timedelta(days=1) if first_transaction_at else now
    return range_between(start, now, settings.FINANCES_ALL_MAX_BUCKETS)


def validate_window(window: str, year: int | None, nth: int | None) -> None:
    """Reject unknown selectors and out-of-range years or ordinals before any I/O."""
    if window not in WINDOWS:
        raise InvalidFilterError(
            f"Unknown report window '{window}'; expected one of {', '.join(WINDOWS)}"
        )
    if window == "all":
        return
    if year is None or nth is None:
        raise InvalidFilterError(f"The '{window}' window needs both year and nth")
    if not MIN_YEAR <= year <= MAX_YEAR:
        raise InvalidFilterError(f"Year must be between {MIN_YEAR} and {MAX_YEAR}")
    if not 1 <= nth <= MAX_ORDINAL[window]:
        raise InvalidFilterError(
            f"The '{window}' ordinal must be between 1 and {MAX_ORDINAL[window]}"
        )
    if window == "week":
        week_boundaries(year, nth)


def sum_buckets(
    boundaries: list[datetime],
    points: list[tuple[datetime, int]],
) -> list[dict]:
    """
    Bucket (created_at, amount_cents) points by boundary.

    Returns one {"key": "YYYY-MM-DD", "value": cents} entry per boundary.
    """
    buckets = []
    for i, boundary in enumerate(boundaries):
        value = 0
        if i > 0:
            lower = end_of_day(boundaries[i - 1])
            upper = end_of_day(boundary)
            value = sum(
                amount for created_at, amount in points
                if lower < as_utc(created_at) <= upper
            )
        buckets.append({"key": as_utc(boundary).date().isoformat(), "value": value})
    return buckets


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def _category_criteria(product_category_id: int | None) -> list:
    if product_category_id is None:
        return []
    if product_category_id == NO_PRODUCT_CATEGORY:
        return [VoucherTransaction.product_id.is_(None)]
    return [
        VoucherTransaction.product_id.in_(
            select(Product.id).where(Product.product_category_id == product_category_id)
        )
    ]


def _fund_criteria(fund_id: uuid.UUID) -> list:
    return [
        VoucherTransaction.voucher_id.in_(
            select(Voucher.id).where(Voucher.fund_id == fund_id)
        )
    ]


async def _sum(db: AsyncSession, *criteria) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(VoucherTransaction.amount_cents), 0)).where(*criteria)
    )
    return result.scalar()


async def generate_finances_report(
    db: AsyncSession,
    fund_id: uuid.UUID,
    provider_organization_id: uuid.UUID,
    window: str,
    year: int | None = None,
    nth: int | None = None,
    product_category_id: int | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Build the finances report for one provider of one fund.

    Args:
        db: Database session.
        fund_id: The fund whose vouchers were spent.
        provider_organization_id: The provider receiving the transactions.
        window: "quarter", "month", "week" or "all".
        year / nth: Year and ordinal (quarter 1-4, month 1-12, ISO week);
            ignored for "all".
        product_category_id: Optional category filter (NO_PRODUCT_CATEGORY
            selects transactions without a product).
        now: End of the "all" window (defaults to the current UTC time).

    Returns:
        Dictionary matching FinancesReport.

    Raises:
        InvalidFilterError: Unknown window, out-of-range year or ordinal.
    """
    validate_window(window, year, nth)
    now = now or utcnow()

    fund_scope = _fund_criteria(fund_id) + _category_criteria(product_category_id)
    provider_scope = fund_scope + [
        VoucherTransaction.organization_id == provider_organization_id
    ]

    if window == "quarter":
        boundaries = quarter_boundaries(year, nth)
    elif window == "month":
        boundaries = month_boundaries(year, nth)
    elif window == "week":
        boundaries = week_boundaries(year, nth)
    else:
        first_result = await db.execute(
            select(func.min(VoucherTransaction.created_at)).where(
                *_fund_criteria(fund_id),
                VoucherTransaction.organization_id == provider_organization_id,
            )
        )
        boundaries = all_time_boundaries(first_result.scalar(), now)

    range_criteria = [
        VoucherTransaction.created_at > end_of_day(boundaries[0]),
        VoucherTransaction.created_at <= end_of_day(boundaries[-1]),
    ]

    points_result = await db.execute(
        select(VoucherTransaction.created_at, VoucherTransaction.amount_cents)
        .where(*provider_scope, *range_criteria)
    )
    points = [(row.created_at, row.amount_cents) for row in points_result]

    buckets = sum_buckets(boundaries, points)
    usage = sum(bucket["value"] for bucket in buckets)
    non_zero = [bucket["value"] for bucket in buckets if bucket["value"] > 0]

    fund_usage_in_range = await _sum(db, *fund_scope, *range_criteria)
    provider_usage_total = await _sum(db, *provider_scope)
    fund_usage_total = await _sum(db, *fund_scope)

    return {
        "dates": buckets,
        "usage_cents": usage,
        "transactions": len(points),
        "avg_transaction_cents": sum(non_zero) / len(non_zero) if non_zero else 0,
        "share_in_range": usage / fund_usage_in_range if fund_usage_in_range > 0 else 0,
        "share_total": (
            provider_usage_total / fund_usage_total if fund_usage_total > 0 else 0
        ),
    }
