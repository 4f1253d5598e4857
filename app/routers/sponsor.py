"""
Sponsor router — provider approval and reporting for the funds an organization owns.

  GET   /organizations/{organization_id}/fund-providers
  GET   /organizations/{organization_id}/funds/{fund_id}/providers
  GET   /organizations/{organization_id}/funds/{fund_id}/providers/{fund_provider_id}
  PATCH /organizations/{organization_id}/funds/{fund_id}/providers/{fund_provider_id}
  GET   /organizations/{organization_id}/funds/{fund_id}/providers/{fund_provider_id}/finances
  GET   /organizations/{organization_id}/funds/{fund_id}/providers/{fund_provider_id}/transactions
  GET   /organizations/{organization_id}/funds/{fund_id}/providers/{fund_provider_id}/transactions/{transaction_id}
  GET   /organizations/{organization_id}/sponsor/transactions

Listing and changing providers needs manage_providers on the sponsor
organization; ledger reads and reports need view_finances.
"""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_current_identity, get_transaction_filter
from app.models.fund import FundProviderState
from app.models.organization import Permission
from app.schemas.finances import FinancesResponse
from app.schemas.fund_provider import FundProviderResponse, FundProviderStateUpdate
from app.schemas.transaction import TransactionFilter, TransactionPage, TransactionResponse
from app.services import (
    finances_service,
    fund_provider_service,
    organization_service,
    transaction_query_service,
)
from app.services.transaction_query_service import SponsorScope

router = APIRouter()


@router.get(
    "/{organization_id}/fund-providers",
    response_model=list[FundProviderResponse],
    summary="List providers across the sponsor's funds",
)
async def list_fund_providers(
    organization_id: uuid.UUID,
    fund_id: uuid.UUID | None = Query(None),
    state: FundProviderState | None = Query(None),
    q: str | None = Query(None, description="Matches the provider name"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    await organization_service.require_permission(
        db, organization_id, identity, Permission.MANAGE_PROVIDERS
    )
    return await fund_provider_service.list_sponsor_fund_providers(
        db, organization_id, fund_id=fund_id, state=state, q=q, limit=limit, offset=offset
    )


@router.get(
    "/{organization_id}/funds/{fund_id}/providers",
    response_model=list[FundProviderResponse],
    summary="List providers of one fund",
)
async def list_providers_of_fund(
    organization_id: uuid.UUID,
    fund_id: uuid.UUID,
    state: FundProviderState | None = Query(None),
    q: str | None = Query(None, description="Matches the provider name"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    await organization_service.require_permission(
        db, organization_id, identity, Permission.MANAGE_PROVIDERS
    )
    await fund_provider_service.get_sponsor_fund(db, organization_id, fund_id)
    return await fund_provider_service.list_sponsor_fund_providers(
        db, organization_id, fund_id=fund_id, state=state, q=q, limit=limit, offset=offset
    )


@router.get(
    "/{organization_id}/funds/{fund_id}/providers/{fund_provider_id}",
    response_model=FundProviderResponse,
    summary="Get one provider of a fund",
)
async def get_fund_provider(
    organization_id: uuid.UUID,
    fund_id: uuid.UUID,
    fund_provider_id: uuid.UUID,
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    await organization_service.require_permission(
        db, organization_id, identity, Permission.MANAGE_PROVIDERS
    )
    return await fund_provider_service.get_sponsor_fund_provider(
        db, organization_id, fund_id, fund_provider_id
    )


@router.patch(
    "/{organization_id}/funds/{fund_id}/providers/{fund_provider_id}",
    response_model=FundProviderResponse,
    summary="Approve, decline or reset a provider",
)
async def update_fund_provider(
    organization_id: uuid.UUID,
    fund_id: uuid.UUID,
    fund_provider_id: uuid.UUID,
    request: FundProviderStateUpdate,
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """
    Set the provider's state for this fund.

    Approving notifies the provider. Setting the current state again changes nothing.
    """
    await fund_provider_service.get_sponsor_fund_provider(
        db, organization_id, fund_id, fund_provider_id
    )
    return await fund_provider_service.set_fund_provider_state(
        db,
        fund_provider_id,
        request.state,
        acting_organization_id=organization_id,
        identity_address=identity,
    )


@router.get(
    "/{organization_id}/funds/{fund_id}/providers/{fund_provider_id}/finances",
    response_model=FinancesResponse,
    summary="Usage report of one provider in one fund",
)
async def get_provider_finances(
    organization_id: uuid.UUID,
    fund_id: uuid.UUID,
    fund_provider_id: uuid.UUID,
    window: str = Query(..., description="quarter, month, week or all"),
    year: int | None = Query(None),
    nth: int | None = Query(None, description="Quarter (1-4), month (1-12) or ISO week"),
    product_category_id: int | None = Query(
        None, description="Product category; -1 selects transactions without a product"
    ),
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """
    Time-bucketed usage of a provider, plus its share of the fund's usage.

    All amounts are in **integer cents**.
    """
    finances_service.validate_window(window, year, nth)
    await organization_service.require_permission(
        db, organization_id, identity, Permission.VIEW_FINANCES
    )
    fund_provider = await fund_provider_service.get_sponsor_fund_provider(
        db, organization_id, fund_id, fund_provider_id
    )
    return await finances_service.generate_finances_report(
        db,
        fund_id=fund_id,
        provider_organization_id=fund_provider.organization_id,
        window=window,
        year=year,
        nth=nth,
        product_category_id=product_category_id,
    )


@router.get(
    "/{organization_id}/funds/{fund_id}/providers/{fund_provider_id}/transactions",
    response_model=TransactionPage,
    summary="List transactions of one provider in one fund",
)
async def list_fund_provider_transactions(
    organization_id: uuid.UUID,
    fund_id: uuid.UUID,
    fund_provider_id: uuid.UUID,
    filters: TransactionFilter = Depends(get_transaction_filter),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    transaction_query_service.validate_filter(filters)
    await organization_service.require_permission(
        db, organization_id, identity, Permission.VIEW_FINANCES
    )
    fund_provider = await fund_provider_service.get_sponsor_fund_provider(
        db, organization_id, fund_id, fund_provider_id
    )
    scope = SponsorScope(
        organization_id=organization_id,
        fund_id=fund_id,
        provider_id=fund_provider.organization_id,
    )
    return await transaction_query_service.search_transactions(
        db, filters, scope, limit=limit, offset=offset
    )


@router.get(
    "/{organization_id}/funds/{fund_id}/providers/{fund_provider_id}/transactions/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get one transaction of a provider in a fund",
)
async def get_fund_provider_transaction(
    organization_id: uuid.UUID,
    fund_id: uuid.UUID,
    fund_provider_id: uuid.UUID,
    transaction_id: uuid.UUID,
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """Entries of other funds or other providers read as missing."""
    await organization_service.require_permission(
        db, organization_id, identity, Permission.VIEW_FINANCES
    )
    fund_provider = await fund_provider_service.get_sponsor_fund_provider(
        db, organization_id, fund_id, fund_provider_id
    )
    scope = SponsorScope(
        organization_id=organization_id,
        fund_id=fund_id,
        provider_id=fund_provider.organization_id,
    )
    return await transaction_query_service.get_transaction(db, scope, transaction_id)


@router.get(
    "/{organization_id}/sponsor/transactions",
    response_model=TransactionPage,
    summary="List transactions on the sponsor's funds",
)
async def list_sponsor_transactions(
    organization_id: uuid.UUID,
    fund_id: uuid.UUID | None = Query(None),
    provider_id: uuid.UUID | None = Query(None, description="Receiving organization"),
    filters: TransactionFilter = Depends(get_transaction_filter),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    identity: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    transaction_query_service.validate_filter(filters)
    await organization_service.require_permission(
        db, organization_id, identity, Permission.VIEW_FINANCES
    )
    scope = SponsorScope(
        organization_id=organization_id,
        fund_id=fund_id,
        provider_id=provider_id,
    )
    return await transaction_query_service.search_transactions(
        db, filters, scope, limit=limit, offset=offset
    )
