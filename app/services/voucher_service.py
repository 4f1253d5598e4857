"""
Voucher service — granting, locking, reading and reminding.

This module handles:
  - Granting a fund entitlement (one regular voucher per identity per fund)
  - Spawning product vouchers from a regular voucher
  - Token resolution (providers scan a token address, not a voucher id)
  - Row locking for the redemption unit of work
  - Mailing the share-safe code to the holder, and sharing product vouchers
  - The expiry-reminder batch job

Locking:
  lock_voucher() starts with an UPDATE that bumps `lock_version`. On
  PostgreSQL the UPDATE takes the row lock; on SQLite it takes the database
  write lock. Either way a second redemption of the same voucher waits at
  that statement until the first one commits or rolls back, and only then
  reads the ledger. The SELECT ... FOR UPDATE that follows is the portable
  spelling of the same intent (a no-op on SQLite).

Ownership enforcement:
  Holder-facing reads take the identity address and compare it with the
  voucher's holder. There is no way to read someone else's voucher by id.
"""

import logging
import secrets
import uuid
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config import settings
from app.exceptions import (
    DenialReason,
    DuplicateVoucherError,
    FundNotFoundError,
    InsufficientBalanceError,
    ProductNotFoundError,
    RedemptionDeniedError,
    UnauthorizedAccessError,
    VoucherNotFoundError,
    VoucherNotShareableError,
)
from app.models.fund import Fund, FundState
from app.models.product import Product
from app.models.voucher import Voucher, VoucherToken
from app.services.authorization_service import approved_provider_ids
from app.services.balance_service import (
    compute_balance,
    compute_balance_cached,
    is_expired,
    load_vouchers_for_balance,
)
from app.services.notification_service import (
    VoucherExpiring,
    VoucherSent,
    VoucherShared,
    queue_notification,
)
from app.timeutils import as_utc, end_of_day, start_of_day, utcnow

log = logging.getLogger(__name__)


def _generate_token_address() -> str:
    """64 hex characters; unguessable, so it doubles as a bearer credential."""
    return secrets.token_hex(32)


def _new_voucher(
    fund_id: uuid.UUID,
    identity_address: str,
    amount_cents: int,
    expire_at: datetime,
    product_id: uuid.UUID | None = None,
    parent_id: uuid.UUID | None = None,
) -> Voucher:
    """Build a voucher with its two tokens and empty (loaded) ledger collections."""
    return Voucher(
        fund_id=fund_id,
        identity_address=identity_address,
        amount_cents=amount_cents,
        expire_at=expire_at,
        product_id=product_id,
        parent_id=parent_id,
        tokens=[
            VoucherToken(address=_generate_token_address(), need_confirmation=True),
            VoucherToken(address=_generate_token_address(), need_confirmation=False),
        ],
        transactions=[],
        product_vouchers=[],
    )


def amount_for_identity(fund: Fund, identity_address: str) -> int:
    """Entitlement granted to one identity, in cents."""
    return fund.formula_amount_cents


def voucher_summary(voucher: Voucher, available_cents: int, now: datetime | None = None) -> dict:
    """Dictionary matching VoucherResponse. `tokens` must be loaded."""
    now = now or utcnow()
    return {
        "id": voucher.id,
        "fund_id": voucher.fund_id,
        "identity_address": voucher.identity_address,
        "type": voucher.type,
        "amount_cents": voucher.amount_cents,
        "available_cents": available_cents,
        "product_id": voucher.product_id,
        "parent_id": voucher.parent_id,
        "expire_at": as_utc(voucher.expire_at),
        "expired": is_expired(voucher, now),
        "created_at": as_utc(voucher.created_at),
        "tokens": voucher.tokens,
    }


# ---------------------------------------------------------------------------
# Granting
# ---------------------------------------------------------------------------

async def create_voucher(
    db: AsyncSession,
    fund_id: uuid.UUID,
    identity_address: str,
) -> Voucher:
    """
    Grant an identity its entitlement for a fund.

    The voucher amount comes from the fund's entitlement calculator and it
    expires at the end of the fund's last day.

    Raises:
        FundNotFoundError: If the fund doesn't exist.
        RedemptionDeniedError(fund_not_active): If the fund isn't active.
        DuplicateVoucherError: If the identity already holds a voucher for the fund.
    """
    fund = await db.get(Fund, fund_id)
    if fund is None:
        raise FundNotFoundError(fund_id)
    if fund.state != FundState.ACTIVE:
        raise RedemptionDeniedError(DenialReason.FUND_NOT_ACTIVE)

    existing = await db.execute(
        select(Voucher.id).where(
            Voucher.fund_id == fund_id,
            Voucher.identity_address == identity_address,
            Voucher.parent_id.is_(None),
            Voucher.product_id.is_(None),
        )
    )
    if existing.first() is not None:
        raise DuplicateVoucherError(fund_id)

    voucher = _new_voucher(
        fund_id=fund.id,
        identity_address=identity_address,
        amount_cents=amount_for_identity(fund, identity_address),
        expire_at=end_of_day(fund.end_date),
    )
    db.add(voucher)
    try:
        await db.flush()
    except IntegrityError:
        # A concurrent claim committed first; the partial unique index decides
        raise DuplicateVoucherError(fund_id)
    log.info("Voucher %s granted for fund %s", voucher.id, fund.id)
    return voucher


async def spawn_product_voucher(
    db: AsyncSession,
    identity_address: str,
    voucher_id: uuid.UUID,
    product_id: uuid.UUID,
    now: datetime | None = None,
) -> Voucher:
    """
    Reserve a product with a regular voucher by spawning a product voucher.

    The child belongs to the same fund and identity, is worth the product
    price and expires with the parent (or the product, if sooner). Its
    spending counts against the parent's balance.

    Raises:
        VoucherNotFoundError / ProductNotFoundError: Missing entities.
        UnauthorizedAccessError: If the voucher belongs to someone else.
        RedemptionDeniedError: Product vouchers cannot spawn (unsupported_type),
            expired voucher, inactive fund, or the product's organization is
            not an approved provider of the fund (not_permitted).
        InsufficientBalanceError: If the parent cannot cover the price.
    """
    now = now or utcnow()
    parent = await lock_voucher(db, voucher_id)

    if parent.identity_address != identity_address:
        raise UnauthorizedAccessError("You do not have access to this voucher")
    if parent.product_id is not None:
        raise RedemptionDeniedError(DenialReason.UNSUPPORTED_TYPE)
    if is_expired(parent, now):
        raise RedemptionDeniedError(DenialReason.VOUCHER_EXPIRED)

    fund = await db.get(Fund, parent.fund_id, populate_existing=True)
    if fund.state != FundState.ACTIVE:
        raise RedemptionDeniedError(DenialReason.FUND_NOT_ACTIVE)

    product = await db.get(Product, product_id)
    if product is None:
        raise ProductNotFoundError(product_id)
    if product.organization_id not in await approved_provider_ids(db, fund.id):
        raise RedemptionDeniedError(DenialReason.NOT_PERMITTED)
    if product.expire_at is not None and as_utc(product.expire_at) <= as_utc(now):
        raise RedemptionDeniedError(DenialReason.NOT_PERMITTED)

    available = await compute_balance(db, parent.id)
    if product.price_cents > available:
        raise InsufficientBalanceError(
            voucher_id=parent.id,
            requested_cents=product.price_cents,
            available_cents=available,
        )

    expire_at = as_utc(parent.expire_at)
    if product.expire_at is not None:
        expire_at = min(expire_at, as_utc(product.expire_at))

    child = _new_voucher(
        fund_id=parent.fund_id,
        identity_address=parent.identity_address,
        amount_cents=product.price_cents,
        expire_at=expire_at,
        product_id=product.id,
        parent_id=parent.id,
    )
    db.add(child)
    await db.flush()
    log.info("Product voucher %s spawned from %s for product %s", child.id, parent.id, product.id)
    return child


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

async def lock_voucher(db: AsyncSession, voucher_id: uuid.UUID) -> Voucher:
    """
    Take the voucher's write lock and return a freshly loaded row.

    Must be the first statement touching the voucher in the unit of work,
    so nothing is read before the lock is held.

    Raises:
        VoucherNotFoundError: If the voucher doesn't exist.
    """
    result = await db.execute(
        update(Voucher)
        .where(Voucher.id == voucher_id)
        .values(lock_version=Voucher.lock_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise VoucherNotFoundError(voucher_id)

    result = await db.execute(
        select(Voucher)
        .where(Voucher.id == voucher_id)
        .with_for_update()  # No-op on SQLite, row lock on PostgreSQL
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def get_voucher(db: AsyncSession, voucher_id: uuid.UUID) -> Voucher:
    result = await db.execute(
        select(Voucher)
        .where(Voucher.id == voucher_id)
        .options(selectinload(Voucher.tokens))
    )
    voucher = result.scalar_one_or_none()
    if voucher is None:
        raise VoucherNotFoundError(voucher_id)
    return voucher


async def get_voucher_for_identity(
    db: AsyncSession,
    voucher_id: uuid.UUID,
    identity_address: str,
) -> Voucher:
    """
    Get a single voucher, verifying the identity holds it.

    Raises:
        VoucherNotFoundError: If the voucher doesn't exist.
        UnauthorizedAccessError: If the voucher belongs to someone else.
    """
    voucher = await get_voucher(db, voucher_id)
    if voucher.identity_address != identity_address:
        raise UnauthorizedAccessError("You do not have access to this voucher")
    return voucher


async def get_token(db: AsyncSession, address: str) -> VoucherToken:
    """Resolve a scanned token address. Unknown addresses are reported as missing vouchers."""
    result = await db.execute(
        select(VoucherToken).where(VoucherToken.address == address)
    )
    token = result.scalar_one_or_none()
    if token is None:
        raise VoucherNotFoundError(address)
    return token


async def list_vouchers_for_identity(
    db: AsyncSession,
    identity_address: str,
    now: datetime | None = None,
) -> list[dict]:
    """All vouchers of an identity with cached-mode balances."""
    vouchers = await load_vouchers_for_balance(
        db,
        Voucher.identity_address == identity_address,
        extra_options=(selectinload(Voucher.tokens),),
    )
    return [
        voucher_summary(voucher, compute_balance_cached(voucher), now)
        for voucher in vouchers
    ]


# ---------------------------------------------------------------------------
# Mailing and sharing
# ---------------------------------------------------------------------------

def share_safe_address(voucher: Voucher) -> str:
    """Address of the token that may be shown to anyone. `tokens` must be loaded."""
    return next(token.address for token in voucher.tokens if not token.need_confirmation)


async def send_voucher_email(
    db: AsyncSession,
    identity_address: str,
    voucher_id: uuid.UUID,
) -> Voucher:
    """
    Mail the holder their share-safe code, titled with the product name for
    product vouchers and the fund name otherwise.
    """
    voucher = await get_voucher_for_identity(db, voucher_id, identity_address)
    title = voucher.product.name if voucher.product is not None else voucher.fund.name
    queue_notification(
        db,
        VoucherSent(
            voucher_id=voucher.id,
            identity_address=identity_address,
            title=title,
            token_address=share_safe_address(voucher),
        ),
    )
    return voucher


async def share_product_voucher(
    db: AsyncSession,
    identity_address: str,
    voucher_id: uuid.UUID,
    reason: str,
    send_copy: bool = False,
) -> Voucher:
    """
    Send a product voucher's share-safe code to the product's organization.

    Raises:
        VoucherNotShareableError: If the voucher is not a product voucher.
    """
    voucher = await get_voucher_for_identity(db, voucher_id, identity_address)
    if voucher.product is None:
        raise VoucherNotShareableError(voucher.id)

    organization = voucher.product.organization
    recipients = [(organization.identity_address, organization.email)]
    if send_copy:
        recipients.append((identity_address, None))

    for recipient_identity, recipient_email in recipients:
        queue_notification(
            db,
            VoucherShared(
                voucher_id=voucher.id,
                recipient_identity=recipient_identity,
                recipient_email=recipient_email,
                holder_identity=identity_address,
                product_name=voucher.product.name,
                token_address=share_safe_address(voucher),
                reason=reason,
            ),
        )
    log.info("Voucher %s shared with organization %s", voucher.id, organization.id)
    return voucher


# ---------------------------------------------------------------------------
# Expiry reminders
# ---------------------------------------------------------------------------

async def notify_expiring_vouchers(db: AsyncSession, now: datetime | None = None) -> int:
    """
    Queue a reminder for every regular voucher expiring exactly
    VOUCHER_EXPIRY_NOTICE_DAYS from now that still has money on it.

    Balances are computed in cached mode: the job touches many vouchers at once.

    Returns:
        Number of reminders queued.
    """
    now = now or utcnow()
    target_day = (as_utc(now) + timedelta(days=settings.VOUCHER_EXPIRY_NOTICE_DAYS)).date()

    vouchers = await load_vouchers_for_balance(
        db,
        Voucher.product_id.is_(None),
        Voucher.expire_at >= start_of_day(target_day),
        Voucher.expire_at <= end_of_day(target_day),
    )

    queued = 0
    for voucher in vouchers:
        available = compute_balance_cached(voucher)
        if available <= 0:
            continue
        queue_notification(
            db,
            VoucherExpiring(
                voucher_id=voucher.id,
                identity_address=voucher.identity_address,
                fund_name=voucher.fund.name,
                sponsor_name=voucher.fund.organization.name,
                available_cents=available,
                expire_at=as_utc(voucher.expire_at).date().isoformat(),
            ),
        )
        queued += 1

    log.info("Queued %d voucher expiry reminder(s) for %s", queued, target_day)
    return queued
