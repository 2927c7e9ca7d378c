"""Registration payment: one ledger row. Amount is immutable; the only permitted change is active -> void."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from app.core.enums import PaymentStatus
from app.core.models.registration import BigIntId, utcnow
from app.db.session import Base


class RegistrationPayment(Base):
    """Payment entry against a registration. Rows are never deleted; voiding is logical."""

    __tablename__ = "registration_payments"
    __table_args__ = (
        UniqueConstraint("registration_id", "sequence_no", name="uq_registration_payment_sequence"),
        CheckConstraint("amount > 0", name="chk_registration_payment_amount"),
        CheckConstraint("status IN ('active','void')", name="chk_registration_payment_status"),
    )

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    registration_id = Column(
        BigIntId,
        ForeignKey("registrations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    sequence_no = Column(BigIntId, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    method = Column(String(50), nullable=True)  # Cash, Bank Transfer, Card ...
    reference = Column(String(120), nullable=True, index=True)  # slip id for slip conversions
    note = Column(Text, nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(10), nullable=False, default=PaymentStatus.active.value)
    void_reason = Column(Text, nullable=True)
    voided_at = Column(DateTime(timezone=True), nullable=True)
    recorded_by = Column(BigIntId, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    registration = relationship("Registration", backref="payments")
