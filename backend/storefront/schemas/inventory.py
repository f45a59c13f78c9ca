"""
Inventory request schemas.
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator


class StockAdjustmentRequest(BaseModel):
    """Manual stock correction. Positive adds stock, negative removes it."""

    delta: int = Field(..., description="Signed quantity change")
    notes: Optional[str] = Field(None, max_length=500)

    @field_validator("delta")
    @classmethod
    def validate_non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("delta must not be zero")
        return v
