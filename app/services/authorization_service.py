"""
Redemption authorization — may this identity redeem this voucher, and for which provider?

authorize_redemption() is a pure decision over current state: it writes
nothing and raises nothing for an expected refusal. It answers with a
RedemptionDecision that either lists the organizations the identity may
redeem for, or carries a DenialReason.

Checks run in a fixed order and stop at the first failure. Later checks
assume the earlier ones passed:

  1. voucher expired              → voucher_expired
  2. fund not active              → fund_not_active
  3. dispatch on the voucher kind:
       regular: organizations the identity can scan for
                ∩ organizations approved for the fund       (empty → not_permitted)
       product: already has a transaction                   → product_voucher_used
                identity cannot scan for the product's org  → not_permitted
       other:                                               → unsupported_type

Eligibility only. Whether the balance covers the amount is decided by the
recording path under the voucher lock (see redemption_service).
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import DenialReason, ProductNotFoundError
from app.models.fund import Fund, FundProvider, FundProviderState, FundState
from app.models.organization import Permission
from app.models.product import Product
from app.models.voucher import ProductVoucher, RegularVoucher, Voucher, voucher_kind
from app.models.voucher_transaction import VoucherTransaction
from app.services import organization_service
from app.services.balance_service import is_expired
from app.timeutils import utcnow


@dataclass(frozen=True)
class RedemptionDecision:
    allowed: bool
    reason: DenialReason | None = None
    organization_ids: frozenset[uuid.UUID] = field(default_factory=frozenset)

    @classmethod
    def allow(cls, organization_ids) -> "RedemptionDecision":
        return cls(allowed=True, organization_ids=frozenset(organization_ids))

    @classmethod
    def deny(cls, reason: DenialReason) -> "RedemptionDecision":
        return cls(allowed=False, reason=reason)


async def approved_provider_ids(db: AsyncSession, fund_id: uuid.UUID) -> set[uuid.UUID]:
    """Organizations currently approved to receive redemptions for a fund."""
    result = await db.execute(
        select(FundProvider.organization_id).where(
            FundProvider.fund_id == fund_id,
            FundProvider.state == FundProviderState.APPROVED,
        )
    )
    return set(result.scalars().all())


async def count_transactions(db: AsyncSession, voucher_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count(VoucherTransaction.id))
        .where(VoucherTransaction.voucher_id == voucher_id)
    )
    return result.scalar()


async def authorize_redemption(
    db: AsyncSession,
    identity_address: str,
    voucher: Voucher,
    organization_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> RedemptionDecision:
    """
    Decide whether `identity_address` may redeem `voucher`.

    Args:
        db: Database session.
        identity_address: The identity presenting the voucher at the provider.
        voucher: The voucher being redeemed.
        organization_id: Optional provider context. When given, the decision
            is narrowed to that one organization.
        now: Evaluation instant (defaults to the current UTC time).

    Returns:
        A RedemptionDecision. Never raises for an expected refusal.
    """
    now = now or utcnow()

    if is_expired(voucher, now):
        return RedemptionDecision.deny(DenialReason.VOUCHER_EXPIRED)

    fund = await db.get(Fund, voucher.fund_id, populate_existing=True)
    if fund is None or fund.state != FundState.ACTIVE:
        return RedemptionDecision.deny(DenialReason.FUND_NOT_ACTIVE)

    kind = voucher_kind(voucher)

    if isinstance(kind, RegularVoucher):
        scannable = await organization_service.organization_ids_for_identity(
            db, identity_address, Permission.SCAN_VOUCHERS
        )
        eligible = scannable & await approved_provider_ids(db, fund.id)
    elif isinstance(kind, ProductVoucher):
        # Product vouchers can carry at most one transaction
        if await count_transactions(db, voucher.id) > 0:
            return RedemptionDecision.deny(DenialReason.PRODUCT_VOUCHER_USED)

        product = await db.get(Product, kind.product_id)
        if product is None:
            raise ProductNotFoundError(kind.product_id)
        organization = await organization_service.get_organization(
            db, product.organization_id
        )
        can_scan = await organization_service.identity_can(
            db, organization, identity_address, Permission.SCAN_VOUCHERS
        )
        eligible = {organization.id} if can_scan else set()
    else:
        return RedemptionDecision.deny(DenialReason.UNSUPPORTED_TYPE)

    if organization_id is not None:
        eligible = eligible & {organization_id}

    if not eligible:
        return RedemptionDecision.deny(DenialReason.NOT_PERMITTED)

    return RedemptionDecision.allow(eligible)
