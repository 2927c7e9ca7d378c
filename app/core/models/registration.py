"""
Registration: a student's financial account. Created by the public intake form (external);
the ledger only updates current_paid_amount and the embedded payment slips.
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, BigInteger, Column, DateTime, Integer, Numeric, String
from sqlalchemy.dialects.postgresql import JSONB

from app.db.session import Base

# SQLite only auto-increments INTEGER PRIMARY KEY
BigIntId = BigInteger().with_variant(Integer(), "sqlite")
JsonData = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Registration(Base):
    __tablename__ = "registrations"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    register_id = Column(String(50), nullable=False, unique=True)
    full_name = Column(String(255), nullable=False)
    full_amount = Column(Numeric(12, 2), nullable=True)
    # Denormalized: always the sum of active registration_payments.amount after a ledger write
    current_paid_amount = Column(Numeric(12, 2), nullable=False, default=0)
    # Ordered list of {id, url, status, uploadedAt, approvedAt?, declinedAt?}
    payment_slips = Column(JsonData, nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
