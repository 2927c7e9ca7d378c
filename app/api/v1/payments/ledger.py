"""
Ledger primitives shared by payments and slip conversion: sequence allocation, balance
reconciliation and the atomic unit that wraps them.
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal, InvalidOperation
from typing import AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError, PersistenceError, ServiceError, ValidationError
from app.core.models import Registration

from . import repository

logger = logging.getLogger(__name__)


def validate_amount(value) -> Decimal:
    """Finite, positive, at most two decimal places."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("Amount must be a number")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be a positive number")
    if amount != amount.quantize(Decimal("0.01")):
        raise ValidationError("Amount cannot have more than 2 decimal places")
    return amount


async def next_sequence_no(db: AsyncSession, registration_id: int) -> int:
    """Next payment number for the registration. Call only inside ledger_transaction."""
    return await repository.max_sequence(db, registration_id) + 1


async def resync_paid_amount(db: AsyncSession, registration_id: int) -> Decimal:
    """Recompute current_paid_amount from active payments (full sum, never a delta) and store it."""
    total = await repository.sum_active(db, registration_id)
    await repository.update_paid_amount(db, registration_id, total)
    return total


@asynccontextmanager
async def storage_errors(db: AsyncSession) -> AsyncIterator[None]:
    """Reads and checks done before the atomic unit: storage errors become PersistenceError."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("Ledger read failed, rolled back")
        await db.rollback()
        raise PersistenceError() from exc


@asynccontextmanager
async def ledger_transaction(db: AsyncSession, registration_id: int) -> AsyncIterator[Registration]:
    """
    Lock the registration, run the body, commit. Any error rolls everything back;
    storage errors surface as PersistenceError with the original as __cause__.
    """
    try:
        registration = await repository.lock_registration(db, registration_id)
        if registration is None:
            raise NotFoundError("Registration not found")
        yield registration
        await db.commit()
    except ServiceError:
        await db.rollback()
        raise
    except SQLAlchemyError as exc:
        logger.exception("Ledger transaction failed for registration %s, rolled back", registration_id)
        await db.rollback()
        raise PersistenceError() from exc
    except Exception:
        await db.rollback()
        raise
