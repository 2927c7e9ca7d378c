"""
Payment slips: evidence uploaded by students, verified by an admin.
pending -> approved (creates exactly one ledger payment, reference = slip id) or pending -> declined.
Resolved slips are final.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.activity.audit_service import (
    CATEGORY_PAYMENTS,
    SUBJECT_REGISTRATION,
    AuditSink,
    activity_status_for,
    error_meta,
    record_safe,
)
from app.api.v1.payments import repository
from app.api.v1.payments.ledger import (
    ledger_transaction,
    next_sequence_no,
    resync_paid_amount,
    storage_errors,
    validate_amount,
)
from app.api.v1.payments.schemas import PaymentResponse
from app.api.v1.payments.service import payment_to_response, registration_snapshot
from app.auth.schemas import CurrentUser
from app.core.config import settings
from app.core.enums import ActivityStatus, PaymentStatus, SlipStatus
from app.core.exceptions import (
    AlreadyResolvedError,
    DuplicateConversionError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from app.core.models import Registration

from .schemas import SlipResponse, SlipUpload

logger = logging.getLogger(__name__)


def _parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def slip_reference(slip: Dict[str, Any], index: int) -> str:
    """Stable identifier of a slip; legacy slips without an id fall back to their position."""
    return str(slip.get("id") or f"index_{index}")


def _slip_to_response(reg: Registration, index: int, slip: Dict[str, Any]) -> SlipResponse:
    return SlipResponse(
        registration_id=reg.id,
        register_id=reg.register_id,
        full_name=reg.full_name,
        slip_index=index,
        slip_id=slip_reference(slip, index),
        url=slip.get("url"),
        status=repository.slip_status(slip),
        uploaded_at=_parse_ts(slip.get("uploadedAt")),
        approved_at=_parse_ts(slip.get("approvedAt")),
        declined_at=_parse_ts(slip.get("declinedAt")),
    )


def _slip_at(registration: Optional[Registration], slip_index: int) -> Dict[str, Any]:
    if not registration or not registration.payment_slips:
        raise NotFoundError("Registration or slip not found")
    slips = repository.get_slips(registration)
    if slip_index < 0 or slip_index >= len(slips):
        raise NotFoundError("Slip index out of bounds")
    return slips[slip_index]


def _ensure_pending(slip: Dict[str, Any]) -> None:
    current = repository.slip_status(slip)
    if current != SlipStatus.pending.value:
        raise AlreadyResolvedError(f"This payment slip has already been {current}.")


async def _ensure_not_converted(db: AsyncSession, registration_id: int, reference: str) -> None:
    existing = await repository.find_payment_by_reference(db, registration_id, reference)
    if existing:
        raise DuplicateConversionError(
            f"Payment #{existing.sequence_no} already records slip {reference}"
        )


async def _load_slip(
    db: AsyncSession, registration_id: int, slip_index: int
) -> Tuple[Registration, Dict[str, Any]]:
    registration = await repository.get_registration(db, registration_id)
    slip = _slip_at(registration, slip_index)
    return registration, slip


# --- Approve ---
async def approve_slip(
    db: AsyncSession,
    registration_id: int,
    slip_index: int,
    amount: Decimal,
    *,
    actor: Optional[CurrentUser],
    audit: AuditSink,
) -> PaymentResponse:
    before: Dict[str, Any] = {}
    reference: Optional[str] = None
    try:
        async with storage_errors(db):
            registration, slip = await _load_slip(db, registration_id, slip_index)
            before = {"slip": dict(slip), "registration": registration_snapshot(registration)}
            amount = validate_amount(amount)
            _ensure_pending(slip)
            reference = slip_reference(slip, slip_index)
            await _ensure_not_converted(db, registration_id, reference)

        async with ledger_transaction(db, registration_id) as registration:
            # Same guards under the lock; a concurrent approval may have committed meanwhile
            locked_slip = _slip_at(registration, slip_index)
            _ensure_pending(locked_slip)
            if slip_reference(locked_slip, slip_index) != reference:
                raise AlreadyResolvedError("Payment slips changed while approving, reload and retry.")
            await _ensure_not_converted(db, registration_id, reference)

            now = datetime.now(timezone.utc)
            approved = repository.set_slip_status(registration, slip_index, SlipStatus.approved, now)
            payment = await repository.create_payment(
                db,
                registration_id=registration_id,
                sequence_no=await next_sequence_no(db, registration_id),
                amount=amount,
                method=settings.slip_payment_method,
                reference=reference,
                note=settings.slip_payment_note,
                occurred_at=now,
                status=PaymentStatus.active.value,
                recorded_by=actor.id if actor else None,
            )
            await resync_paid_amount(db, registration_id)
    except ServiceError as e:
        logger.warning(
            "Slip approval rejected (registration %s, slip %s): %s", registration_id, slip_index, e.message
        )
        await record_safe(
            audit,
            actor=actor,
            category=CATEGORY_PAYMENTS,
            action="payment_slip_approve_failed",
            status=activity_status_for(e),
            subject_type=SUBJECT_REGISTRATION,
            subject_id=registration_id,
            message=f"Payment slip could not be approved: {e.message}",
            before=before or None,
            meta=error_meta(e, slip_index=slip_index, slip_id=reference, amount=amount),
        )
        raise

    response = payment_to_response(payment)
    after_registration = registration_snapshot(registration)
    logger.info(
        "Approved slip %s for registration %s as payment #%s of %s",
        reference,
        registration_id,
        response.sequence_no,
        response.amount,
    )
    await record_safe(
        audit,
        actor=actor,
        category=CATEGORY_PAYMENTS,
        action="payment_slip_approved",
        status=ActivityStatus.success,
        subject_type=SUBJECT_REGISTRATION,
        subject_id=registration_id,
        subject_label=registration.register_id,
        message=f"Approved payment slip {reference} as payment #{response.sequence_no} of {response.amount}",
        before=before,
        after={"slip": approved, "payment": response, "registration": after_registration},
        meta={"slip_index": slip_index},
    )
    return response


# --- Decline ---
async def decline_slip(
    db: AsyncSession,
    registration_id: int,
    slip_index: int,
    *,
    actor: Optional[CurrentUser],
    audit: AuditSink,
) -> SlipResponse:
    before: Optional[dict] = None
    try:
        async with storage_errors(db):
            registration, slip = await _load_slip(db, registration_id, slip_index)
        before = dict(slip)
        _ensure_pending(slip)
        reference = slip_reference(slip, slip_index)

        async with ledger_transaction(db, registration_id) as registration:
            locked_slip = _slip_at(registration, slip_index)
            _ensure_pending(locked_slip)
            if slip_reference(locked_slip, slip_index) != reference:
                raise AlreadyResolvedError("Payment slips changed while declining, reload and retry.")
            declined = repository.set_slip_status(
                registration, slip_index, SlipStatus.declined, datetime.now(timezone.utc)
            )
    except ServiceError as e:
        logger.warning(
            "Slip decline rejected (registration %s, slip %s): %s", registration_id, slip_index, e.message
        )
        await record_safe(
            audit,
            actor=actor,
            category=CATEGORY_PAYMENTS,
            action="payment_slip_decline_failed",
            status=activity_status_for(e),
            subject_type=SUBJECT_REGISTRATION,
            subject_id=registration_id,
            message=f"Payment slip could not be declined: {e.message}",
            before={"slip": before} if before else None,
            meta=error_meta(e, slip_index=slip_index),
        )
        raise

    logger.info("Declined slip %s for registration %s", reference, registration_id)
    await record_safe(
        audit,
        actor=actor,
        category=CATEGORY_PAYMENTS,
        action="payment_slip_declined",
        status=ActivityStatus.success,
        subject_type=SUBJECT_REGISTRATION,
        subject_id=registration_id,
        subject_label=registration.register_id,
        message=f"Declined payment slip {reference}",
        before={"slip": before},
        after={"slip": declined},
        meta={"slip_index": slip_index},
    )
    return _slip_to_response(registration, slip_index, declined)


# --- Upload (public) ---
async def upload_slip(
    db: AsyncSession,
    registration_id: int,
    payload: SlipUpload,
    *,
    audit: AuditSink,
) -> SlipResponse:
    """Append a pending slip. The file itself is stored by the upload service; only its URL lands here."""
    url = (payload.url or "").strip()
    try:
        if not url:
            raise ValidationError("Slip URL is required")
        async with storage_errors(db):
            if not await repository.get_registration(db, registration_id):
                raise NotFoundError("Registration not found")

        async with ledger_transaction(db, registration_id) as registration:
            if registration.deleted_at is not None:
                raise ValidationError("Cannot upload a payment slip for a deleted registration")
            now = datetime.now(timezone.utc)
            taken = {s.get("id") for s in repository.get_slips(registration)}
            stamp = int(now.timestamp() * 1000)
            while f"slip_{stamp}" in taken:
                stamp += 1
            slip = {
                "id": f"slip_{stamp}",
                "url": url,
                "uploadedAt": now.isoformat(),
                "status": SlipStatus.pending.value,
            }
            index = repository.append_slip(registration, slip)
    except ServiceError as e:
        await record_safe(
            audit,
            actor=None,
            category=CATEGORY_PAYMENTS,
            action="payment_slip_upload_failed",
            status=activity_status_for(e),
            subject_type=SUBJECT_REGISTRATION,
            subject_id=registration_id,
            message=f"Payment slip upload rejected: {e.message}",
            meta=error_meta(e, url=url),
        )
        raise

    logger.info("Slip %s uploaded for registration %s", slip["id"], registration_id)
    await record_safe(
        audit,
        actor=None,
        category=CATEGORY_PAYMENTS,
        action="payment_slip_uploaded",
        status=ActivityStatus.success,
        subject_type=SUBJECT_REGISTRATION,
        subject_id=registration_id,
        subject_label=registration.register_id,
        message=f"Payment slip {slip['id']} uploaded",
        after={"slip": slip},
        meta={"slip_index": index},
    )
    return _slip_to_response(registration, index, slip)


# --- Queue ---
async def list_slips(
    db: AsyncSession,
    status_filter: str = "all",
    search: str = "",
) -> List[SlipResponse]:
    """Slips across active registrations, oldest upload first so the queue is worked fairly."""
    if status_filter != "all" and status_filter not in {s.value for s in SlipStatus}:
        raise ValidationError("Status must be one of: all, pending, approved, declined")

    stmt = select(Registration).where(Registration.deleted_at.is_(None))
    term = (search or "").strip()
    if term:
        pattern = f"%{term}%"
        stmt = stmt.where(
            or_(Registration.full_name.ilike(pattern), Registration.register_id.ilike(pattern))
        )
    stmt = stmt.order_by(Registration.created_at.desc())
    registrations = (await db.execute(stmt)).scalars().all()

    items: List[SlipResponse] = []
    for reg in registrations:
        for index, slip in enumerate(repository.get_slips(reg)):
            if repository.slip_status(slip) not in {s.value for s in SlipStatus}:
                logger.warning("Skipping slip %s on registration %s with unknown status", index, reg.id)
                continue
            if status_filter == "all" or repository.slip_status(slip) == status_filter:
                items.append(_slip_to_response(reg, index, slip))

    far_future = datetime.max.replace(tzinfo=timezone.utc)
    items.sort(key=lambda s: s.uploaded_at or far_future)
    return items
