"""
Balance service — derives a voucher's spendable amount from the ledger.

There is no stored balance. The available amount is always:

    available = amount_cents
              − Σ amount_cents of the voucher's own transactions
              − Σ amount_cents of transactions on its direct product vouchers

Product vouchers spawned from a regular voucher spend the parent's money, so
their transactions count against the parent. Only DIRECT children are
considered: a product voucher cannot itself have children (the parent of a
voucher must be a regular voucher), so one level is the whole graph.

Two modes, identical results on the same transaction set:
  - compute_balance(): LIVE. Aggregates in SQL. Authoritative; used inside
    the redemption unit of work right before a new ledger entry is written.
  - compute_balance_cached(): CACHED. Sums collections that were eager-loaded
    with BALANCE_LOAD_OPTIONS. Used for listings and batch jobs, where one
    aggregate query per voucher would be too expensive.

Both are read-only.
"""

import uuid
from datetime import datetime

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.exceptions import VoucherNotFoundError
from app.models.voucher import Voucher
from app.models.voucher_transaction import VoucherTransaction
from app.timeutils import as_utc


# Eager-load everything compute_balance_cached() touches. Lazy loading is
# not available on AsyncSession, so vouchers loaded without these options
# cannot be used in cached mode.
BALANCE_LOAD_OPTIONS = (
    selectinload(Voucher.transactions),
    selectinload(Voucher.product_vouchers).selectinload(Voucher.transactions),
)


def is_expired(voucher: Voucher, now: datetime) -> bool:
    """A voucher is expired from its expire_at instant onwards."""
    return as_utc(now) >= as_utc(voucher.expire_at)


async def compute_balance(db: AsyncSession, voucher_id: uuid.UUID) -> int:
    """
    Live available amount in cents, aggregated by the database.

    Raises:
        VoucherNotFoundError: If the voucher doesn't exist.
    """
    amount_result = await db.execute(
        select(Voucher.amount_cents).where(Voucher.id == voucher_id)
    )
    amount_cents = amount_result.scalar_one_or_none()
    if amount_cents is None:
        raise VoucherNotFoundError(voucher_id)

    own_result = await db.execute(
        select(func.coalesce(func.sum(VoucherTransaction.amount_cents), 0))
        .where(VoucherTransaction.voucher_id == voucher_id)
    )
    own_spent = own_result.scalar()

    children_result = await db.execute(
        select(func.coalesce(func.sum(VoucherTransaction.amount_cents), 0))
        .join(Voucher, VoucherTransaction.voucher_id == Voucher.id)
        .where(Voucher.parent_id == voucher_id)
    )
    children_spent = children_result.scalar()

    return amount_cents - own_spent - children_spent


def compute_balance_cached(voucher: Voucher) -> int:
    """Available amount in cents from already-loaded collections."""
    own_spent = sum(t.amount_cents for t in voucher.transactions)
    children_spent = sum(
        t.amount_cents
        for child in voucher.product_vouchers
        for t in child.transactions
    )
    return voucher.amount_cents - own_spent - children_spent


async def load_vouchers_for_balance(
    db: AsyncSession,
    *criteria,
    extra_options: tuple = (),
) -> list[Voucher]:
    """
    Load vouchers matching `criteria` with their balance collections.

    populate_existing refreshes collections of vouchers already sitting in
    the session, so the cached computation sees the current ledger.
    """
    result = await db.execute(
        select(Voucher)
        .where(*criteria)
        .options(*BALANCE_LOAD_OPTIONS, *extra_options)
        .order_by(Voucher.created_at.desc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
