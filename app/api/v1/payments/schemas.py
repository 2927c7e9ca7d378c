"""Payment ledger schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from app.core.enums import PaymentStatus


class PaymentCreate(BaseModel):
    """Validated input for recording a payment. Built once, before any ledger logic runs."""

    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    method: str = Field(..., min_length=1, max_length=50, description="Cash, Bank Transfer, Card ...")
    reference: Optional[str] = Field(None, max_length=120)
    occurred_at: datetime = Field(..., description="When the money was received; may be backdated")
    note: Optional[str] = None
    status: PaymentStatus = PaymentStatus.active


class PaymentVoid(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class PaymentResponse(BaseModel):
    id: int
    registration_id: int
    sequence_no: int
    amount: Decimal
    method: Optional[str] = None
    reference: Optional[str] = None
    note: Optional[str] = None
    occurred_at: datetime
    status: PaymentStatus
    void_reason: Optional[str] = None
    voided_at: Optional[datetime] = None
    recorded_by: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentLedgerItem(PaymentResponse):
    register_id: Optional[str] = None
    full_name: Optional[str] = None


class RegistrationSnapshot(BaseModel):
    """Balance-relevant view of a registration, used for audit before/after data."""

    id: int
    register_id: str
    full_name: str
    full_amount: Optional[Decimal] = None
    current_paid_amount: Decimal
    deleted: bool = False


class BalanceResponse(BaseModel):
    registration_id: int
    full_amount: Decimal
    paid_amount: Decimal
    balance: Decimal


class FinanceStats(BaseModel):
    total_revenue: Decimal
    total_payments: int
    active_registrations: int
