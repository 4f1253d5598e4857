"""
Fund-provider service — the approval workflow between sponsors and providers.

This module handles:
  - A provider applying to a fund (creates a PENDING FundProvider)
  - The sponsor setting the state (pending / approved / declined, any order)
  - Listings for the sponsor side and the provider side

State changes:
  Only the fund's sponsor organization may change the state, and only an
  identity with the manage_providers capability on that organization may
  act for it. The change is a single-row UPDATE inside the caller's
  transaction, so readers see either the old or the new state.

  Moving to APPROVED queues a ProviderApproved notification. Setting the
  state a row already has is a no-op and queues nothing. Declines are only
  announced when NOTIFY_PROVIDER_DECLINED is switched on.
"""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import (
    DuplicateFundProviderError,
    FundNotFoundError,
    FundProviderNotFoundError,
    UnauthorizedAccessError,
)
from app.models.fund import Fund, FundProvider, FundProviderState
from app.models.organization import Organization, Permission
from app.services import organization_service
from app.services.notification_service import (
    ProviderApproved,
    ProviderDeclined,
    queue_notification,
)

log = logging.getLogger(__name__)


async def get_fund_provider(db: AsyncSession, fund_provider_id: uuid.UUID) -> FundProvider:
    result = await db.execute(
        select(FundProvider)
        .where(FundProvider.id == fund_provider_id)
        .execution_options(populate_existing=True)
    )
    fund_provider = result.scalar_one_or_none()
    if fund_provider is None:
        raise FundProviderNotFoundError(fund_provider_id)
    return fund_provider


async def get_sponsor_fund(
    db: AsyncSession,
    sponsor_organization_id: uuid.UUID,
    fund_id: uuid.UUID,
) -> Fund:
    fund = await db.get(Fund, fund_id)
    if fund is None or fund.organization_id != sponsor_organization_id:
        raise FundNotFoundError(fund_id)
    return fund


async def get_sponsor_fund_provider(
    db: AsyncSession,
    sponsor_organization_id: uuid.UUID,
    fund_id: uuid.UUID,
    fund_provider_id: uuid.UUID,
) -> FundProvider:
    """A FundProvider addressed through its sponsor and fund; mismatches read as missing."""
    fund_provider = await get_fund_provider(db, fund_provider_id)
    if (
        fund_provider.fund_id != fund_id
        or fund_provider.fund.organization_id != sponsor_organization_id
    ):
        raise FundProviderNotFoundError(fund_provider_id)
    return fund_provider


async def apply_to_fund(
    db: AsyncSession,
    organization_id: uuid.UUID,
    fund_id: uuid.UUID,
) -> FundProvider:
    """
    Register a provider organization's request to join a fund.

    Raises:
        FundNotFoundError: If the fund doesn't exist.
        DuplicateFundProviderError: If the pair already exists.
    """
    fund = await db.get(Fund, fund_id)
    if fund is None:
        raise FundNotFoundError(fund_id)

    await organization_service.get_organization(db, organization_id)

    existing = await db.execute(
        select(FundProvider.id).where(
            FundProvider.fund_id == fund_id,
            FundProvider.organization_id == organization_id,
        )
    )
    if existing.first() is not None:
        raise DuplicateFundProviderError(fund_id, organization_id)

    fund_provider = FundProvider(
        fund_id=fund.id,
        organization_id=organization_id,
        state=FundProviderState.PENDING,
    )
    db.add(fund_provider)
    try:
        await db.flush()
    except IntegrityError:
        # Lost a race against a concurrent application; the unique pair decides
        raise DuplicateFundProviderError(fund_id, organization_id)

    log.info("Organization %s applied to fund %s", organization_id, fund_id)
    return fund_provider


async def set_fund_provider_state(
    db: AsyncSession,
    fund_provider_id: uuid.UUID,
    new_state: FundProviderState,
    acting_organization_id: uuid.UUID,
    identity_address: str,
) -> FundProvider:
    """
    Change a provider's approval state for a fund, on behalf of its sponsor.

    Args:
        db: Database session.
        fund_provider_id: The FundProvider row to change.
        new_state: Target state.
        acting_organization_id: Organization issuing the change; must be
            the fund's sponsor.
        identity_address: Identity acting for that organization; needs
            manage_providers.

    Returns:
        The updated FundProvider.

    Raises:
        FundProviderNotFoundError: If the row doesn't exist.
        UnauthorizedAccessError: If the acting organization isn't the sponsor
            or the identity may not manage its providers.
    """
    await organization_service.require_permission(
        db, acting_organization_id, identity_address, Permission.MANAGE_PROVIDERS
    )

    fund_provider = await get_fund_provider(db, fund_provider_id)
    fund = fund_provider.fund
    if fund.organization_id != acting_organization_id:
        raise UnauthorizedAccessError("Only the fund's sponsor can change provider state")

    if fund_provider.state == new_state:
        log.info("Fund provider %s already %s; nothing to do", fund_provider.id, new_state.value)
        return fund_provider

    previous = fund_provider.state
    fund_provider.state = new_state
    await db.flush()
    log.info(
        "Fund provider %s: %s -> %s by %s",
        fund_provider.id, previous.value, new_state.value, acting_organization_id,
    )

    provider: Organization = fund_provider.organization
    sponsor: Organization = fund.organization

    if new_state == FundProviderState.APPROVED:
        queue_notification(
            db,
            ProviderApproved(
                fund_provider_id=fund_provider.id,
                provider_identity=provider.identity_address,
                provider_email=provider.email,
                provider_name=provider.name,
                fund_name=fund.name,
                sponsor_name=sponsor.name,
                provider_url=settings.PROVIDER_FRONTEND_URL,
            ),
        )
    elif new_state == FundProviderState.DECLINED and settings.NOTIFY_PROVIDER_DECLINED:
        queue_notification(
            db,
            ProviderDeclined(
                fund_provider_id=fund_provider.id,
                provider_identity=provider.identity_address,
                provider_email=provider.email,
                provider_name=provider.name,
                fund_name=fund.name,
                sponsor_name=sponsor.name,
            ),
        )

    return fund_provider


async def list_sponsor_fund_providers(
    db: AsyncSession,
    sponsor_organization_id: uuid.UUID,
    fund_id: uuid.UUID | None = None,
    state: FundProviderState | None = None,
    q: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[FundProvider]:
    """
    Providers across the sponsor's funds, newest first.

    Optional filters: one fund, one state, free text on the provider name.
    """
    query = (
        select(FundProvider)
        .join(Fund, FundProvider.fund_id == Fund.id)
        .join(Organization, FundProvider.organization_id == Organization.id)
        .where(Fund.organization_id == sponsor_organization_id)
        .order_by(FundProvider.created_at.desc())
        .limit(limit)
        .offset(offset)
    )

    if fund_id:
        query = query.where(FundProvider.fund_id == fund_id)
    if state:
        query = query.where(FundProvider.state == state)
    if q:
        query = query.where(Organization.name.ilike(f"%{q}%"))

    result = await db.execute(query)
    return list(result.scalars().all())


async def list_provider_funds(
    db: AsyncSession,
    provider_organization_id: uuid.UUID,
    fund_id: uuid.UUID | None = None,
    state: FundProviderState | None = None,
) -> list[FundProvider]:
    """The funds a provider applied to, optionally filtered by fund and state."""
    query = (
        select(FundProvider)
        .where(FundProvider.organization_id == provider_organization_id)
        .order_by(FundProvider.created_at.desc())
    )

    if fund_id:
        query = query.where(FundProvider.fund_id == fund_id)
    if state:
        query = query.where(FundProvider.state == state)

    result = await db.execute(query)
    return list(result.scalars().all())
