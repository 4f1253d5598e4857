"""
Pydantic schemas for voucher endpoints.

Amounts are integer cents. `available_cents` is derived from the ledger at
read time and never stored.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from app.exceptions import DenialReason
from app.models.voucher import VoucherType


class VoucherCreateRequest(BaseModel):
    """Request body for POST /vouchers."""
    fund_id: uuid.UUID


class ProductVoucherRequest(BaseModel):
    """Request body for POST /vouchers/{voucher_id}/product-vouchers."""
    product_id: uuid.UUID


class VoucherShareRequest(BaseModel):
    """Request body for POST /vouchers/{voucher_id}/share."""
    reason: str = Field(..., min_length=1, max_length=2000)
    send_copy: bool = Field(False, description="Also send the message to the holder")


class VoucherMailResponse(BaseModel):
    """Acknowledges queued mail; delivery happens after the request commits."""
    voucher_id: uuid.UUID
    queued: int


class VoucherTokenResponse(BaseModel):
    address: str
    need_confirmation: bool

    model_config = {"from_attributes": True}


class VoucherResponse(BaseModel):
    """A voucher as seen by its holder."""
    id: uuid.UUID
    fund_id: uuid.UUID
    identity_address: str
    type: VoucherType
    amount_cents: int
    available_cents: int
    product_id: uuid.UUID | None
    parent_id: uuid.UUID | None
    expire_at: datetime
    expired: bool
    created_at: datetime
    tokens: list[VoucherTokenResponse]


class RedemptionPreviewResponse(BaseModel):
    """What a provider sees after scanning a token address."""
    voucher_id: uuid.UUID
    fund_id: uuid.UUID
    type: VoucherType
    product_id: uuid.UUID | None
    expire_at: datetime
    need_confirmation: bool
    allowed: bool
    reason: DenialReason | None
    organization_ids: list[uuid.UUID]
    available_cents: int
