"""
Voucher and VoucherToken models.

A Voucher is one identity's spendable entitlement against a fund. Its face
amount (`amount_cents`) never changes; what is left to spend is always
re-derived from the ledger (see app.services.balance_service). There is no
mutable balance column.

Voucher kinds:
  - regular: spendable with any provider approved for the fund
  - product: bound to one product (and thus one organization), single-use.
    A product voucher may be spawned from a regular parent voucher, in which
    case its spending also counts against the parent.

`lock_version` is bumped by every redemption before it reads the balance.
The UPDATE takes the row (or database) write lock, which serializes
concurrent redemptions of the same voucher.

Each voucher carries exactly two VoucherTokens, created with it:
  - need_confirmation=False: share-safe, shown as a QR code to providers
  - need_confirmation=True: sensitive, redeemable only after confirmation
"""

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, CheckConstraint, Index, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.fund import Fund
from app.models.product import Product


class VoucherType(str, enum.Enum):
    REGULAR = "regular"
    PRODUCT = "product"


@dataclass(frozen=True)
class RegularVoucher:
    """Spendable with any provider approved for the fund."""


@dataclass(frozen=True)
class ProductVoucher:
    """Bound to one product; redeemable once at the product's organization."""
    product_id: uuid.UUID


VoucherKind = RegularVoucher | ProductVoucher


class Voucher(Base):
    __tablename__ = "vouchers"

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_vouchers_non_negative_amount"),
        # One regular voucher per identity and fund
        Index(
            "uq_vouchers_regular_per_identity",
            "fund_id",
            "identity_address",
            unique=True,
            sqlite_where=text("parent_id IS NULL AND product_id IS NULL"),
            postgresql_where=text("parent_id IS NULL AND product_id IS NULL"),
        ),
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

    # Holder of the voucher (opaque identity address)
    identity_address: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        index=True,
    )

    # Face amount in cents, fixed at creation
    amount_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    # Non-null ⇒ product voucher
    product_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("products.id"),
        nullable=True,
        index=True,
    )

    # Non-null ⇒ spawned from a regular voucher of the same fund
    parent_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("vouchers.id"),
        nullable=True,
        index=True,
    )

    expire_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    lock_version: Mapped[int] = mapped_column(
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
    fund: Mapped[Fund] = relationship(lazy="selectin")
    product: Mapped[Product | None] = relationship(lazy="selectin")

    parent: Mapped["Voucher | None"] = relationship(
        back_populates="product_vouchers",
        remote_side="Voucher.id",
    )
    product_vouchers: Mapped[list["Voucher"]] = relationship(
        back_populates="parent",
    )
    transactions: Mapped[list["VoucherTransaction"]] = relationship(
        back_populates="voucher",
        order_by="VoucherTransaction.created_at",
    )
    tokens: Mapped[list["VoucherToken"]] = relationship(
        back_populates="voucher",
    )

    @property
    def type(self) -> VoucherType:
        return VoucherType.PRODUCT if self.product_id else VoucherType.REGULAR


def voucher_kind(voucher: Voucher) -> VoucherKind:
    """Tag a voucher with its kind so callers can dispatch exhaustively."""
    if voucher.product_id is not None:
        return ProductVoucher(product_id=voucher.product_id)
    return RegularVoucher()


class VoucherToken(Base):
    __tablename__ = "voucher_tokens"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    voucher_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("vouchers.id"),
        nullable=False,
        index=True,
    )

    # Credential value encoded in the QR code
    address: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
    )

    need_confirmation: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    # --- Relationships ---
    voucher: Mapped[Voucher] = relationship(back_populates="tokens")
