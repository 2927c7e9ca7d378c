"""Payments router: record, void, balance, ledger, stats."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.activity.audit_service import AuditSink, get_audit_sink
from app.auth.rbac import require_admin
from app.auth.schemas import CurrentUser
from app.core.exceptions import ServiceError
from app.db.session import get_db

from .schemas import (
    BalanceResponse,
    FinanceStats,
    PaymentCreate,
    PaymentLedgerItem,
    PaymentResponse,
    PaymentVoid,
)
from . import service

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


@router.post(
    "/registrations/{registration_id}",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_payment(
    registration_id: int,
    payload: PaymentCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
    audit: AuditSink = Depends(get_audit_sink),
) -> PaymentResponse:
    try:
        return await service.add_payment(
            db, registration_id, payload, actor=current_user, audit=audit
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{payment_id}/void", response_model=PaymentResponse)
async def void_payment(
    payment_id: int,
    payload: PaymentVoid,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
    audit: AuditSink = Depends(get_audit_sink),
) -> PaymentResponse:
    try:
        return await service.void_payment(
            db, payment_id, payload.reason, actor=current_user, audit=audit
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/registrations/{registration_id}/balance",
    response_model=BalanceResponse,
    dependencies=[Depends(require_admin)],
)
async def get_balance(
    registration_id: int,
    db: AsyncSession = Depends(get_db),
) -> BalanceResponse:
    try:
        return await service.get_balance(db, registration_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/registrations/{registration_id}",
    response_model=List[PaymentResponse],
    dependencies=[Depends(require_admin)],
)
async def list_registration_payments(
    registration_id: int,
    db: AsyncSession = Depends(get_db),
) -> List[PaymentResponse]:
    try:
        return await service.list_registration_payments(db, registration_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/registrations/{registration_id}/resync", response_model=BalanceResponse)
async def resync_balance(
    registration_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
    audit: AuditSink = Depends(get_audit_sink),
) -> BalanceResponse:
    """Recompute the cached paid amount from active payments."""
    try:
        return await service.resync_paid_amount_direct(
            db, registration_id, actor=current_user, audit=audit
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/ledger",
    response_model=List[PaymentLedgerItem],
    dependencies=[Depends(require_admin)],
)
async def get_payment_ledger(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
) -> List[PaymentLedgerItem]:
    return await service.get_payment_ledger(db, limit=limit)


@router.get(
    "/stats",
    response_model=FinanceStats,
    dependencies=[Depends(require_admin)],
)
async def get_finance_stats(db: AsyncSession = Depends(get_db)) -> FinanceStats:
    return await service.get_finance_stats(db)
