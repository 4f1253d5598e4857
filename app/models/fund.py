"""
Fund and FundProvider models.

A Fund is owned by a sponsor organization and hands out one voucher per
entitled identity. Only while the fund is ACTIVE can its vouchers be
redeemed.

FundProvider is the approval relationship between one provider organization
and one fund:

    pending ──► approved
       ▲  ╲        │
       │   ╲       ▼
       └──── declined

Every state may be re-set by the sponsor at will; there is no automatic
transition. A UNIQUE constraint keeps at most one row per (fund, organization).
"""

import enum
import uuid
from datetime import date, datetime, timezone

from sqlalchemy import String, Integer, Date, DateTime, Enum, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.organization import Organization


class FundState(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"


class FundProviderState(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


class Fund(Base):
    __tablename__ = "funds"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # Sponsor organization
    organization_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id"),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
    )

    state: Mapped[FundState] = mapped_column(
        Enum(FundState),
        default=FundState.PENDING,
        nullable=False,
    )

    start_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
    )

    # Vouchers granted from this fund expire at the end of this day
    end_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
    )

    # Entitlement granted to each identity, in cents
    formula_amount_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    # --- Relationships ---
    organization: Mapped[Organization] = relationship(lazy="selectin")


class FundProvider(Base):
    __tablename__ = "fund_providers"

    __table_args__ = (
        UniqueConstraint("fund_id", "organization_id", name="uq_fund_providers_pair"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    fund_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("funds.id"),
        nullable=False,
        index=True,
    )

    # Provider organization
    organization_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id"),
        nullable=False,
        index=True,
    )

    state: Mapped[FundProviderState] = mapped_column(
        Enum(FundProviderState),
        default=FundProviderState.PENDING,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    # --- Relationships ---
    fund: Mapped[Fund] = relationship(lazy="selectin")
    organization: Mapped[Organization] = relationship(lazy="selectin")
