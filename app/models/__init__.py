"""
SQLAlchemy ORM models package.

All models are imported here so that:
  1. Base.metadata knows every table before create_all()
  2. Other modules can import from app.models directly
"""

from app.models.organization import Organization, OrganizationPermission, Permission  # noqa: F401
from app.models.fund import Fund, FundProvider, FundProviderState, FundState  # noqa: F401
from app.models.product import Product, ProductCategory  # noqa: F401
from app.models.voucher import (  # noqa: F401
    ProductVoucher,
    RegularVoucher,
    Voucher,
    VoucherKind,
    VoucherToken,
    VoucherType,
    voucher_kind,
)
from app.models.voucher_transaction import TransactionState, VoucherTransaction  # noqa: F401
