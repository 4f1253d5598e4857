"""
Provider router — scanning and redeeming vouchers, joining funds.

  GET  /provider/vouchers/{address}                          — Authorization preview for a scanned token
  POST /provider/vouchers/{address}/transactions             — Redeem (writes the ledger)
  GET  /organizations/{organization_id}/provider/funds       — Funds the organization applied to
  POST /organizations/{organization_id}/provider/funds       — Apply to a fund
  GET  /organizations/{organization_id}/provider/transactions — Ledger entries received

Redemption runs under REDEMPTION_TIMEOUT_SECONDS. A timeout propagates
like any infrastructure failure and the request's session rolls back.
"""

import asyncio
import logging
import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.dependencies import get_current_identity, get_transaction_filter
from app.models.fund import FundProviderState
from app.models.organization import Permission
from app.schemas.fund_provider import FundProviderApplyRequest, FundProviderResponse
from app.schemas.transaction import (
    RedemptionRequest,
    TransactionFilter,
    TransactionPage,
    TransactionResponse,
)
from app.schemas.voucher import RedemptionPreviewResponse
from app.services import (
    fund_provider_service,
    organization_service,
    redemption_service,
    transaction_query_service,
)
from app.services.transaction_query_service import ProviderScope

log = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/provider/vouchers/{address}",
    response_model=RedemptionPreviewResponse,
    summary="Preview the redemption of a scanned voucher",
)
async def preview_voucher(
    address: str,
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """
    Which of the caller's organizations may redeem this voucher, or why none.

    Nothing is written.
    """
    return await redemption_service.preview_redemption(db, identity, address)


@router.post(
    "/provider/vouchers/{address}/transactions",
    response_model=TransactionResponse,
    status_code=201,
    summary="Redeem a scanned voucher",
)
async def redeem_voucher(
    address: str,
    request: RedemptionRequest,
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """
    Move value out of a voucher to the given organization.

    - **403 redemption_denied**: the voucher may not be redeemed here (see `reason`)
    - **403 confirmation_required**: confirming token without `confirmed=true`
    - **409 insufficient_balance**: the balance no longer covers the amount; retryable

    All amounts are in **integer cents**.
    """
    try:
        return await asyncio.wait_for(
            redemption_service.redeem_token(
                db,
                identity_address=identity,
                address=address,
                organization_id=request.organization_id,
                amount_cents=request.amount_cents,
                product_id=request.product_id,
                confirmed=request.confirmed,
            ),
            timeout=settings.REDEMPTION_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        log.error(
            "Redemption at %s timed out after %.1fs",
            request.organization_id, settings.REDEMPTION_TIMEOUT_SECONDS,
        )
        raise


@router.get(
    "/organizations/{organization_id}/provider/funds",
    response_model=list[FundProviderResponse],
    summary="List the funds an organization applied to",
)
async def list_provider_funds(
    organization_id: uuid.UUID,
    fund_id: uuid.UUID | None = Query(None),
    state: FundProviderState | None = Query(None),
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    await organization_service.require_permission(
        db, organization_id, identity, Permission.MANAGE_PROVIDERS
    )
    return await fund_provider_service.list_provider_funds(
        db, organization_id, fund_id=fund_id, state=state
    )


@router.post(
    "/organizations/{organization_id}/provider/funds",
    response_model=FundProviderResponse,
    status_code=201,
    summary="Apply to a fund as a provider",
)
async def apply_to_fund(
    organization_id: uuid.UUID,
    request: FundProviderApplyRequest,
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """Creates a pending application; the fund's sponsor decides on it."""
    await organization_service.require_permission(
        db, organization_id, identity, Permission.MANAGE_PROVIDERS
    )
    return await fund_provider_service.apply_to_fund(db, organization_id, request.fund_id)


@router.get(
    "/organizations/{organization_id}/provider/transactions",
    response_model=TransactionPage,
    summary="List transactions received by an organization",
)
async def list_provider_transactions(
    organization_id: uuid.UUID,
    filters: TransactionFilter = Depends(get_transaction_filter),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    await organization_service.require_permission(
        db, organization_id, identity, Permission.VIEW_FINANCES
    )
    return await transaction_query_service.search_transactions(
        db, filters, ProviderScope(organization_id), limit=limit, offset=offset
    )
