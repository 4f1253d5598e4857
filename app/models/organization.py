"""
Organization model — sponsors (fund owners) and providers (voucher acceptors).

The same table holds both roles: an organization is a sponsor by virtue of
owning a Fund and a provider by virtue of a FundProvider row. Capabilities
are granted per identity through OrganizationPermission rows; the owning
identity implicitly holds every capability.

Capabilities used by this service:
  - scan_vouchers:    redeem vouchers on behalf of the organization
  - manage_providers: approve or decline providers of the organization's funds,
                      and apply to other sponsors' funds as a provider
  - view_finances:    read ledger reports scoped to the organization
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, DateTime, Enum, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class Permission(str, enum.Enum):
    SCAN_VOUCHERS = "scan_vouchers"
    MANAGE_PROVIDERS = "manage_providers"
    VIEW_FINANCES = "view_finances"


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        index=True,
    )

    # Owner identity address: holds every permission on this organization
    identity_address: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        index=True,
    )

    email: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    # Payout destination written into each ledger entry received
    iban: Mapped[str | None] = mapped_column(
        String(34),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


class OrganizationPermission(Base):
    __tablename__ = "organization_permissions"

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "identity_address", "permission",
            name="uq_organization_permissions_grant",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    organization_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id"),
        nullable=False,
        index=True,
    )

    identity_address: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        index=True,
    )

    permission: Mapped[Permission] = mapped_column(
        Enum(Permission),
        nullable=False,
    )
