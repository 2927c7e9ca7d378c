"""
Storage access used by the ledger: registrations, payment rows and the slip list embedded
in a registration. No business rules here; callers own transactions.
"""

import copy
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified

from app.core.enums import PaymentStatus, SlipStatus
from app.core.models import Registration, RegistrationPayment


def to_money(val) -> Decimal:
    if val is None:
        return Decimal("0.00")
    if not isinstance(val, Decimal):
        val = Decimal(str(val))
    return val.quantize(Decimal("0.01"))


# --- Registration ---
async def get_registration(db: AsyncSession, registration_id: int) -> Optional[Registration]:
    result = await db.execute(
        select(Registration)
        .where(Registration.id == registration_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def is_registration_deleted(db: AsyncSession, registration_id: int) -> bool:
    deleted_at = (
        await db.execute(select(Registration.deleted_at).where(Registration.id == registration_id))
    ).scalar_one_or_none()
    return deleted_at is not None


async def lock_registration(db: AsyncSession, registration_id: int) -> Optional[Registration]:
    """
    First statement of every ledger transaction. The UPDATE takes the row lock on PostgreSQL
    and the database write lock on SQLite, so the max(sequence_no) read that follows is race-free.
    """
    result = await db.execute(
        update(Registration)
        .where(Registration.id == registration_id)
        .values(updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None
    return await get_registration(db, registration_id)


async def update_paid_amount(db: AsyncSession, registration_id: int, amount: Decimal) -> None:
    await db.execute(
        update(Registration)
        .where(Registration.id == registration_id)
        .values(current_paid_amount=amount)
        .execution_options(synchronize_session="evaluate")
    )


# --- Payment ---
async def create_payment(db: AsyncSession, **fields: Any) -> RegistrationPayment:
    payment = RegistrationPayment(**fields)
    db.add(payment)
    await db.flush()
    return payment


async def get_payment(db: AsyncSession, payment_id: int) -> Optional[RegistrationPayment]:
    result = await db.execute(
        select(RegistrationPayment)
        .where(RegistrationPayment.id == payment_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def void_payment_row(
    db: AsyncSession,
    payment: RegistrationPayment,
    reason: str,
    voided_at: datetime,
) -> RegistrationPayment:
    payment.status = PaymentStatus.void.value
    payment.void_reason = reason
    payment.voided_at = voided_at
    await db.flush()
    return payment


async def find_payment_by_reference(
    db: AsyncSession, registration_id: int, reference: str
) -> Optional[RegistrationPayment]:
    result = await db.execute(
        select(RegistrationPayment)
        .where(
            RegistrationPayment.registration_id == registration_id,
            RegistrationPayment.reference == reference,
        )
        .limit(1)
    )
    return result.scalars().first()


async def sum_active(db: AsyncSession, registration_id: int) -> Decimal:
    total = (
        await db.execute(
            select(func.coalesce(func.sum(RegistrationPayment.amount), 0)).where(
                RegistrationPayment.registration_id == registration_id,
                RegistrationPayment.status == PaymentStatus.active.value,
            )
        )
    ).scalar()
    return to_money(total)


async def max_sequence(db: AsyncSession, registration_id: int) -> int:
    current = (
        await db.execute(
            select(func.max(RegistrationPayment.sequence_no)).where(
                RegistrationPayment.registration_id == registration_id
            )
        )
    ).scalar()
    return int(current or 0)


# --- Payment slips (JSON list on the registration) ---
def get_slips(registration: Registration) -> List[Dict[str, Any]]:
    """Copy of the slip list. A single stored object is read as a one-element list."""
    raw = registration.payment_slips
    if not raw:
        return []
    if isinstance(raw, dict):
        raw = [raw]
    return [copy.deepcopy(s) if isinstance(s, dict) else {} for s in raw]


def slip_status(slip: Dict[str, Any]) -> str:
    return slip.get("status") or SlipStatus.pending.value


def set_slip_status(
    registration: Registration,
    index: int,
    status: SlipStatus,
    timestamp: datetime,
) -> Dict[str, Any]:
    slips = get_slips(registration)
    slip = slips[index]
    slip["status"] = status.value
    if status == SlipStatus.approved:
        slip["approvedAt"] = timestamp.isoformat()
    elif status == SlipStatus.declined:
        slip["declinedAt"] = timestamp.isoformat()
    registration.payment_slips = slips
    flag_modified(registration, "payment_slips")
    return slip


def append_slip(registration: Registration, slip: Dict[str, Any]) -> int:
    slips = get_slips(registration)
    slips.append(slip)
    registration.payment_slips = slips
    flag_modified(registration, "payment_slips")
    return len(slips) - 1
