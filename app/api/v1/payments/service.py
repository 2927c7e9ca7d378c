"""Payments service: record, void, balance, ledger reads. Every mutation is reconciled and audited."""

import logging
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional, Union

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.activity.audit_service import (
    CATEGORY_PAYMENTS,
    SUBJECT_PAYMENT,
    SUBJECT_REGISTRATION,
    AuditSink,
    activity_status_for,
    error_meta,
    record_safe,
)
from app.auth.schemas import CurrentUser
from app.core.config import settings
from app.core.enums import ActivityStatus, PaymentStatus
from app.core.exceptions import AlreadyVoidedError, NotFoundError, ServiceError, ValidationError
from app.core.models import Registration, RegistrationPayment

from . import repository
from .ledger import (
    ledger_transaction,
    next_sequence_no,
    resync_paid_amount,
    storage_errors,
    validate_amount,
)
from .repository import to_money
from .schemas import (
    BalanceResponse,
    FinanceStats,
    PaymentCreate,
    PaymentLedgerItem,
    PaymentResponse,
    RegistrationSnapshot,
)

logger = logging.getLogger(__name__)


def payment_to_response(pt: RegistrationPayment) -> PaymentResponse:
    return PaymentResponse(
        id=pt.id,
        registration_id=pt.registration_id,
        sequence_no=pt.sequence_no,
        amount=to_money(pt.amount),
        method=pt.method,
        reference=pt.reference,
        note=pt.note,
        occurred_at=pt.occurred_at,
        status=pt.status,
        void_reason=pt.void_reason,
        voided_at=pt.voided_at,
        recorded_by=pt.recorded_by,
        created_at=pt.created_at,
    )


def registration_snapshot(reg: Registration) -> RegistrationSnapshot:
    return RegistrationSnapshot(
        id=reg.id,
        register_id=reg.register_id,
        full_name=reg.full_name,
        full_amount=to_money(reg.full_amount) if reg.full_amount is not None else None,
        current_paid_amount=to_money(reg.current_paid_amount),
        deleted=reg.deleted_at is not None,
    )


def parse_payment_input(data: Union[PaymentCreate, Mapping[str, Any]]) -> PaymentCreate:
    """Turn a raw form/JSON payload into PaymentCreate, failing on the first invalid field."""
    if isinstance(data, PaymentCreate):
        payload = data
    else:
        try:
            payload = PaymentCreate.model_validate(dict(data))
        except SchemaValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(p) for p in first.get("loc", ())) or "payload"
            raise ValidationError(f"Invalid {field}: {first.get('msg')}")
    # Objects built with model_construct skip field validation
    validate_amount(payload.amount)
    if not (payload.method or "").strip():
        raise ValidationError("Payment method is required")
    return payload


# --- Add ---
async def add_payment(
    db: AsyncSession,
    registration_id: int,
    data: Union[PaymentCreate, Mapping[str, Any]],
    *,
    actor: Optional[CurrentUser],
    audit: AuditSink,
) -> PaymentResponse:
    before: Optional[RegistrationSnapshot] = None
    subject_label: Optional[str] = None
    try:
        async with storage_errors(db):
            registration = await repository.get_registration(db, registration_id)
            if not registration:
                raise NotFoundError("Registration not found")
            before = registration_snapshot(registration)
            subject_label = registration.register_id
            payload = parse_payment_input(data)
            if await repository.is_registration_deleted(db, registration_id):
                raise ValidationError("Cannot record a payment against a deleted registration")

        async with ledger_transaction(db, registration_id) as registration:
            if registration.deleted_at is not None:
                raise ValidationError("Cannot record a payment against a deleted registration")
            payment = await repository.create_payment(
                db,
                registration_id=registration_id,
                sequence_no=await next_sequence_no(db, registration_id),
                amount=payload.amount,
                method=payload.method.strip(),
                reference=(payload.reference or "").strip() or None,
                note=(payload.note or "").strip() or None,
                occurred_at=payload.occurred_at,
                status=PaymentStatus(payload.status).value,
                recorded_by=actor.id if actor else None,
            )
            await resync_paid_amount(db, registration_id)
    except ServiceError as e:
        logger.warning("Add payment rejected for registration %s: %s", registration_id, e.message)
        await record_safe(
            audit,
            actor=actor,
            category=CATEGORY_PAYMENTS,
            action="payment_add_failed",
            status=activity_status_for(e),
            subject_type=SUBJECT_REGISTRATION,
            subject_id=registration_id,
            subject_label=subject_label,
            message=f"Payment could not be recorded: {e.message}",
            before=before,
            meta=error_meta(e, input=data),
        )
        raise

    response = payment_to_response(payment)
    after = registration_snapshot(registration)
    logger.info(
        "Recorded payment #%s of %s for registration %s (paid now %s)",
        response.sequence_no,
        response.amount,
        registration_id,
        after.current_paid_amount,
    )
    await record_safe(
        audit,
        actor=actor,
        category=CATEGORY_PAYMENTS,
        action="payment_added",
        status=ActivityStatus.success,
        subject_type=SUBJECT_REGISTRATION,
        subject_id=registration_id,
        subject_label=subject_label,
        message=f"Recorded payment #{response.sequence_no} of {response.amount}",
        before={"registration": before},
        after={"payment": response, "registration": after},
    )
    return response


# --- Void ---
async def void_payment(
    db: AsyncSession,
    payment_id: int,
    reason: str,
    *,
    actor: Optional[CurrentUser],
    audit: AuditSink,
) -> PaymentResponse:
    before: Optional[dict] = None
    registration_id: Optional[int] = None
    try:
        async with storage_errors(db):
            payment = await repository.get_payment(db, payment_id)
            if not payment:
                raise NotFoundError("Payment not found")
            registration_id = payment.registration_id
            registration = await repository.get_registration(db, registration_id)
            before = {
                "payment": payment_to_response(payment),
                "registration": registration_snapshot(registration) if registration else None,
            }
            if payment.status == PaymentStatus.void.value:
                raise AlreadyVoidedError()
            reason = (reason or "").strip()
            if not reason:
                raise ValidationError("A reason is required to void a payment")

        async with ledger_transaction(db, registration_id) as registration:
            # Re-read under the lock: a concurrent void may have won the race
            payment = await repository.get_payment(db, payment_id)
            if payment.status == PaymentStatus.void.value:
                raise AlreadyVoidedError()
            old_paid = to_money(registration.current_paid_amount)
            await repository.void_payment_row(db, payment, reason, datetime.now(timezone.utc))
            new_paid = await resync_paid_amount(db, registration_id)
    except ServiceError as e:
        logger.warning("Void rejected for payment %s: %s", payment_id, e.message)
        await record_safe(
            audit,
            actor=actor,
            category=CATEGORY_PAYMENTS,
            action="payment_void_failed",
            status=activity_status_for(e),
            subject_type=SUBJECT_PAYMENT,
            subject_id=payment_id,
            message=f"Payment could not be voided: {e.message}",
            before=before,
            meta=error_meta(e, reason=reason, registration_id=registration_id),
        )
        raise

    response = payment_to_response(payment)
    logger.info(
        "Voided payment %s (registration %s): paid %s -> %s",
        payment_id,
        registration_id,
        old_paid,
        new_paid,
    )
    await record_safe(
        audit,
        actor=actor,
        category=CATEGORY_PAYMENTS,
        action="payment_voided",
        status=ActivityStatus.success,
        subject_type=SUBJECT_PAYMENT,
        subject_id=payment_id,
        subject_label=registration.register_id,
        message=f"Voided payment #{response.sequence_no}: {reason}",
        before=before,
        after={"payment": response, "registration": registration_snapshot(registration)},
        meta={"old_paid_amount": old_paid, "new_paid_amount": new_paid},
    )
    return response


# --- Balance ---
async def get_balance(db: AsyncSession, registration_id: int) -> BalanceResponse:
    registration = await repository.get_registration(db, registration_id)
    if not registration:
        raise NotFoundError("Registration not found")
    full = to_money(registration.full_amount)
    paid = to_money(registration.current_paid_amount)
    return BalanceResponse(
        registration_id=registration.id,
        full_amount=full,
        paid_amount=paid,
        balance=full - paid,
    )


async def resync_paid_amount_direct(
    db: AsyncSession,
    registration_id: int,
    *,
    actor: Optional[CurrentUser],
    audit: AuditSink,
) -> BalanceResponse:
    """Administrative re-sync of the cached paid amount in its own transaction."""
    before: Optional[RegistrationSnapshot] = None
    try:
        async with storage_errors(db):
            registration = await repository.get_registration(db, registration_id)
            if not registration:
                raise NotFoundError("Registration not found")
            before = registration_snapshot(registration)
        async with ledger_transaction(db, registration_id) as registration:
            await resync_paid_amount(db, registration_id)
    except ServiceError as e:
        await record_safe(
            audit,
            actor=actor,
            category=CATEGORY_PAYMENTS,
            action="payment_balance_resync_failed",
            status=activity_status_for(e),
            subject_type=SUBJECT_REGISTRATION,
            subject_id=registration_id,
            message=f"Balance re-sync failed: {e.message}",
            before=before,
            meta=error_meta(e),
        )
        raise

    after = registration_snapshot(registration)
    if after.current_paid_amount != before.current_paid_amount:
        logger.warning(
            "Registration %s paid amount drifted: cached %s, ledger %s",
            registration_id,
            before.current_paid_amount,
            after.current_paid_amount,
        )
    await record_safe(
        audit,
        actor=actor,
        category=CATEGORY_PAYMENTS,
        action="payment_balance_resynced",
        status=ActivityStatus.success,
        subject_type=SUBJECT_REGISTRATION,
        subject_id=registration_id,
        subject_label=registration.register_id,
        message="Paid amount recomputed from active payments",
        before={"registration": before},
        after={"registration": after},
    )
    return await get_balance(db, registration_id)


# --- Reads ---
async def list_registration_payments(db: AsyncSession, registration_id: int) -> List[PaymentResponse]:
    registration = await repository.get_registration(db, registration_id)
    if not registration:
        raise NotFoundError("Registration not found")
    result = await db.execute(
        select(RegistrationPayment)
        .where(RegistrationPayment.registration_id == registration_id)
        .order_by(RegistrationPayment.sequence_no)
    )
    return [payment_to_response(pt) for pt in result.scalars().all()]


async def get_payment_ledger(db: AsyncSession, limit: Optional[int] = None) -> List[PaymentLedgerItem]:
    """Most recent payments across all registrations, newest first."""
    stmt = (
        select(RegistrationPayment, Registration.register_id, Registration.full_name)
        .join(Registration, RegistrationPayment.registration_id == Registration.id)
        .order_by(RegistrationPayment.occurred_at.desc(), RegistrationPayment.id.desc())
        .limit(limit or settings.payment_ledger_limit)
    )
    rows = (await db.execute(stmt)).all()
    return [
        PaymentLedgerItem(
            **payment_to_response(pt).model_dump(),
            register_id=register_id,
            full_name=full_name,
        )
        for pt, register_id, full_name in rows
    ]


async def get_finance_stats(db: AsyncSession) -> FinanceStats:
    total_revenue = (
        await db.execute(
            select(func.coalesce(func.sum(RegistrationPayment.amount), 0)).where(
                RegistrationPayment.status == PaymentStatus.active.value
            )
        )
    ).scalar()
    total_payments = (await db.execute(select(func.count(RegistrationPayment.id)))).scalar() or 0
    active_registrations = (
        await db.execute(select(func.count(Registration.id)).where(Registration.deleted_at.is_(None)))
    ).scalar() or 0
    return FinanceStats(
        total_revenue=to_money(total_revenue),
        total_payments=total_payments,
        active_registrations=active_registrations,
    )
