"""Payment slip schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from app.core.enums import SlipStatus


class SlipUpload(BaseModel):
    url: str = Field(..., min_length=1, max_length=2000, description="Location of the stored slip image")


class SlipApprove(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2, description="Admin-verified amount")


class SlipResponse(BaseModel):
    registration_id: int
    register_id: str
    full_name: str
    slip_index: int
    slip_id: str
    url: Optional[str] = None
    status: SlipStatus
    uploaded_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
