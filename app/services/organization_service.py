"""
Organization service — capability checks for identities acting on behalf of organizations.

Two questions are answered here:
  - identity_can(): may this identity use capability X on organization O?
  - organization_ids_for_identity(): which organizations may this identity
    use capability X for?

The owning identity of an organization holds every capability. Everybody
else needs an explicit OrganizationPermission row.
"""

import uuid

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import OrganizationNotFoundError, UnauthorizedAccessError
from app.models.organization import Organization, OrganizationPermission, Permission


async def get_organization(db: AsyncSession, organization_id: uuid.UUID) -> Organization:
    organization = await db.get(Organization, organization_id)
    if organization is None:
        raise OrganizationNotFoundError(organization_id)
    return organization


async def identity_can(
    db: AsyncSession,
    organization: Organization,
    identity_address: str,
    permission: Permission,
) -> bool:
    """Check a single capability of one identity on one organization."""
    if organization.identity_address == identity_address:
        return True

    result = await db.execute(
        select(OrganizationPermission.id).where(
            OrganizationPermission.organization_id == organization.id,
            OrganizationPermission.identity_address == identity_address,
            OrganizationPermission.permission == permission,
        )
    )
    return result.first() is not None


async def organization_ids_for_identity(
    db: AsyncSession,
    identity_address: str,
    permission: Permission,
) -> set[uuid.UUID]:
    """All organizations where the identity holds `permission` (owned ones included)."""
    granted = select(OrganizationPermission.organization_id).where(
        OrganizationPermission.identity_address == identity_address,
        OrganizationPermission.permission == permission,
    )
    result = await db.execute(
        select(Organization.id).where(
            or_(
                Organization.identity_address == identity_address,
                Organization.id.in_(granted),
            )
        )
    )
    return set(result.scalars().all())


async def require_permission(
    db: AsyncSession,
    organization_id: uuid.UUID,
    identity_address: str,
    permission: Permission,
) -> Organization:
    """
    Load an organization and make sure the identity may act for it.

    Raises:
        OrganizationNotFoundError: If the organization doesn't exist.
        UnauthorizedAccessError: If the identity lacks the capability.
    """
    organization = await get_organization(db, organization_id)
    if not await identity_can(db, organization, identity_address, permission):
        raise UnauthorizedAccessError(
            f"Missing '{permission.value}' permission for this organization"
        )
    return organization


async def grant_permission(
    db: AsyncSession,
    organization_id: uuid.UUID,
    identity_address: str,
    permission: Permission,
) -> OrganizationPermission:
    """Grant a capability (idempotent: an existing grant is returned as-is)."""
    result = await db.execute(
        select(OrganizationPermission).where(
            OrganizationPermission.organization_id == organization_id,
            OrganizationPermission.identity_address == identity_address,
            OrganizationPermission.permission == permission,
        )
    )
    grant = result.scalar_one_or_none()
    if grant is None:
        grant = OrganizationPermission(
            organization_id=organization_id,
            identity_address=identity_address,
            permission=permission,
        )
        db.add(grant)
        await db.flush()
    return grant
