"""
VoucherTransaction model — the append-only ledger of value moved out of vouchers.

Every successful redemption creates exactly one row. Rows are never deleted.

Immutable once created:
  - amount_cents:    always positive, enforced by a CHECK constraint
  - voucher_id:      the voucher the value came out of
  - organization_id: the provider receiving the value

Mutable while the payment settles:
  - state:           pending → success | canceled
  - attempts:        number of payout attempts so far
  - last_attempt_at: time of the latest payout attempt
  - payment_id:      reference handed back by the payment rail

The immutable columns are guarded with @validates: assigning a different
value to a persisted-or-constructed row raises ImmutableFieldError.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Integer, DateTime, Enum, ForeignKey, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.database import Base
from app.exceptions import ImmutableFieldError
from app.models.organization import Organization
from app.models.product import Product
from app.models.voucher import Voucher


class TransactionState(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    CANCELED = "canceled"


class VoucherTransaction(Base):
    __tablename__ = "voucher_transactions"

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_voucher_transactions_positive_amount"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    voucher_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("vouchers.id"),
        nullable=False,
        index=True,
    )

    # Receiving provider organization
    organization_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id"),
        nullable=False,
        index=True,
    )

    product_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("products.id"),
        nullable=True,
        index=True,
    )

    # Destination payout address (provider IBAN at redemption time)
    address: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )

    amount_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    state: Mapped[TransactionState] = mapped_column(
        Enum(TransactionState),
        default=TransactionState.PENDING,
        nullable=False,
        index=True,
    )

    attempts: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    last_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    payment_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    # Indexed for date-range filters and finance buckets
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    # --- Relationships ---
    voucher: Mapped[Voucher] = relationship(back_populates="transactions")
    provider: Mapped[Organization] = relationship(lazy="selectin")
    product: Mapped[Product | None] = relationship(lazy="selectin")

    @validates("amount_cents", "voucher_id", "organization_id")
    def _guard_immutable(self, key, value):
        current = self.__dict__.get(key)
        if current is not None and current != value:
            raise ImmutableFieldError(key)
        return value
