"""
Pydantic schemas for the provider finances report.

Bucket values and usage are integer cents; shares are fractions in [0, 1].
"""

from pydantic import BaseModel, Field


class FinancesBucket(BaseModel):
    key: str = Field(..., description="Boundary date, YYYY-MM-DD")
    value: int = Field(..., description="Usage in cents since the previous boundary")


class FinancesResponse(BaseModel):
    dates: list[FinancesBucket]
    usage_cents: int
    transactions: int
    avg_transaction_cents: float
    share_in_range: float
    share_total: float
