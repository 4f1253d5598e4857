"""
Transaction query service — filtered, scoped, read-only views over the ledger.

A query is built in two layers:

  1. build_search_query(filters): the user's filters, AND-combined
       q          provider name, fund name or transaction id (substring)
       state      exact match
       from/to    creation date, inclusive, day granularity
       amount     inclusive lower/upper bound in cents
     ordered newest first.

  2. apply_scope(query, scope): who is looking
       SponsorScope   transactions on vouchers of the sponsor's funds,
                      optionally one fund and/or one provider
       ProviderScope  transactions received by one organization
       VoucherScope   transactions of one voucher

Filters are validated before any statement is sent to the database.
"""

import uuid
from dataclasses import dataclass

from sqlalchemy import select, func, or_, cast, String
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import InvalidFilterError, TransactionNotFoundError
from app.models.fund import Fund
from app.models.organization import Organization
from app.models.voucher import Voucher
from app.models.voucher_transaction import VoucherTransaction
from app.schemas.transaction import TransactionFilter
from app.timeutils import end_of_day, start_of_day


@dataclass(frozen=True)
class SponsorScope:
    organization_id: uuid.UUID
    fund_id: uuid.UUID | None = None
    provider_id: uuid.UUID | None = None


@dataclass(frozen=True)
class ProviderScope:
    organization_id: uuid.UUID


@dataclass(frozen=True)
class VoucherScope:
    voucher_id: uuid.UUID


TransactionScope = SponsorScope | ProviderScope | VoucherScope


def validate_filter(filters: TransactionFilter) -> None:
    """Reject contradictory bounds. Raises InvalidFilterError."""
    if filters.from_date and filters.to_date and filters.from_date > filters.to_date:
        raise InvalidFilterError("from_date must not be after to_date")
    if (
        filters.amount_min is not None
        and filters.amount_max is not None
        and filters.amount_min > filters.amount_max
    ):
        raise InvalidFilterError("amount_min must not exceed amount_max")


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_search_query(filters: TransactionFilter):
    query = select(VoucherTransaction)

    if filters.q:
        # Wildcards in the search term match literally
        term = _escape_like(filters.q)
        pattern = f"%{term}%"
        compact_pattern = f"%{term.replace('-', '')}%"
        provider_names = select(Organization.id).where(
            Organization.name.ilike(pattern, escape="\\")
        )
        fund_names = (
            select(Voucher.id)
            .join(Fund, Voucher.fund_id == Fund.id)
            .where(Fund.name.ilike(pattern, escape="\\"))
        )
        transaction_id = cast(VoucherTransaction.id, String)
        query = query.where(
            or_(
                VoucherTransaction.organization_id.in_(provider_names),
                VoucherTransaction.voucher_id.in_(fund_names),
                # UUIDs render with dashes on PostgreSQL and as bare hex on SQLite
                transaction_id.ilike(pattern, escape="\\"),
                transaction_id.ilike(compact_pattern, escape="\\"),
            )
        )

    if filters.state:
        query = query.where(VoucherTransaction.state == filters.state)
    if filters.from_date:
        query = query.where(VoucherTransaction.created_at >= start_of_day(filters.from_date))
    if filters.to_date:
        query = query.where(VoucherTransaction.created_at <= end_of_day(filters.to_date))
    if filters.amount_min is not None:
        query = query.where(VoucherTransaction.amount_cents >= filters.amount_min)
    if filters.amount_max is not None:
        query = query.where(VoucherTransaction.amount_cents <= filters.amount_max)

    return query.order_by(VoucherTransaction.created_at.desc(), VoucherTransaction.id.desc())


def apply_scope(query, scope: TransactionScope):
    if isinstance(scope, SponsorScope):
        sponsor_vouchers = (
            select(Voucher.id)
            .join(Fund, Voucher.fund_id == Fund.id)
            .where(Fund.organization_id == scope.organization_id)
        )
        if scope.fund_id:
            sponsor_vouchers = sponsor_vouchers.where(Voucher.fund_id == scope.fund_id)
        query = query.where(VoucherTransaction.voucher_id.in_(sponsor_vouchers))
        if scope.provider_id:
            query = query.where(VoucherTransaction.organization_id == scope.provider_id)
        return query
    if isinstance(scope, ProviderScope):
        return query.where(VoucherTransaction.organization_id == scope.organization_id)
    if isinstance(scope, VoucherScope):
        return query.where(VoucherTransaction.voucher_id == scope.voucher_id)
    raise TypeError(f"Unknown transaction scope: {scope!r}")


async def search_transactions(
    db: AsyncSession,
    filters: TransactionFilter,
    scope: TransactionScope,
    limit: int = 50,
    offset: int = 0,
) -> dict:
    """
    One page of the scoped, filtered ledger.

    Returns:
        Dictionary matching TransactionPage: items, total, limit, offset.

    Raises:
        InvalidFilterError: Contradictory bounds (raised before any query runs).
    """
    validate_filter(filters)
    query = apply_scope(build_search_query(filters), scope)

    total_result = await db.execute(
        select(func.count()).select_from(query.order_by(None).subquery())
    )
    result = await db.execute(query.limit(limit).offset(offset))

    return {
        "items": list(result.scalars().all()),
        "total": total_result.scalar(),
        "limit": limit,
        "offset": offset,
    }


async def get_transaction(
    db: AsyncSession,
    scope: TransactionScope,
    transaction_id: uuid.UUID,
) -> VoucherTransaction:
    """A single ledger entry, visible only if it falls inside `scope`."""
    query = apply_scope(
        select(VoucherTransaction).where(VoucherTransaction.id == transaction_id),
        scope,
    )
    result = await db.execute(query)
    txn = result.scalar_one_or_none()
    if txn is None:
        raise TransactionNotFoundError(transaction_id)
    return txn
