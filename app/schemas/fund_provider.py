"""
Pydantic schemas for the fund-provider approval workflow.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel

from app.models.fund import FundProviderState


class FundProviderApplyRequest(BaseModel):
    """Request body for POST /organizations/{organization_id}/provider/funds."""
    fund_id: uuid.UUID


class FundProviderStateUpdate(BaseModel):
    """Request body for PATCH .../providers/{fund_provider_id}."""
    state: FundProviderState


class FundProviderResponse(BaseModel):
    id: uuid.UUID
    fund_id: uuid.UUID
    organization_id: uuid.UUID
    state: FundProviderState
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
