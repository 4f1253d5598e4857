"""
Pydantic schemas for ledger queries and redemption endpoints.

All monetary amounts are in integer cents (e.g., €10.50 = 1050).
"""

import uuid
from datetime import date, datetime

from pydantic import BaseModel, Field

from app.models.voucher_transaction import TransactionState


class TransactionFilter(BaseModel):
    """
    Composable ledger filters. Every field is optional; set fields are AND-ed.

    Dates are inclusive at day granularity: `from_date` counts from the start
    of that day, `to_date` up to its last microsecond.
    """
    q: str | None = Field(None, description="Matches provider name, fund name or transaction id")
    state: TransactionState | None = None
    from_date: date | None = None
    to_date: date | None = None
    amount_min: int | None = Field(None, ge=0, description="Inclusive lower bound in cents")
    amount_max: int | None = Field(None, ge=0, description="Inclusive upper bound in cents")


class RedemptionRequest(BaseModel):
    """Request body for POST /provider/vouchers/{address}/transactions."""
    organization_id: uuid.UUID
    amount_cents: int | None = Field(
        None, gt=0, description="Defaults to the product price or the product voucher's value"
    )
    product_id: uuid.UUID | None = None
    confirmed: bool = Field(
        False, description="Holder confirmed out-of-band (required for confirming tokens)"
    )


class TransactionResponse(BaseModel):
    """Public representation of a ledger entry."""
    id: uuid.UUID
    voucher_id: uuid.UUID
    organization_id: uuid.UUID
    product_id: uuid.UUID | None
    address: str | None
    amount_cents: int
    state: TransactionState
    attempts: int
    payment_id: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class TransactionPage(BaseModel):
    """One page of a filtered ledger view, newest first."""
    items: list[TransactionResponse]
    total: int
    limit: int
    offset: int
