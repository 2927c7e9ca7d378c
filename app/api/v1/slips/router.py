"""Payment slips router: public upload, admin queue, approve, decline."""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.activity.audit_service import AuditSink, get_audit_sink
from app.api.v1.payments.schemas import PaymentResponse
from app.auth.rbac import require_admin
from app.auth.schemas import CurrentUser
from app.core.exceptions import ServiceError
from app.db.session import get_db

from .schemas import SlipApprove, SlipResponse, SlipUpload
from . import service

router = APIRouter(prefix="/api/v1/slips", tags=["payment-slips"])


@router.post(
    "/registrations/{registration_id}",
    response_model=SlipResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_slip(
    registration_id: int,
    payload: SlipUpload,
    db: AsyncSession = Depends(get_db),
    audit: AuditSink = Depends(get_audit_sink),
) -> SlipResponse:
    """Attach an uploaded slip to a registration. Called by the public payment page."""
    try:
        return await service.upload_slip(db, registration_id, payload, audit=audit)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "",
    response_model=List[SlipResponse],
    dependencies=[Depends(require_admin)],
)
async def list_slips(
    slip_status: str = Query("all", alias="status", description="all, pending, approved, declined"),
    search: str = Query(""),
    db: AsyncSession = Depends(get_db),
) -> List[SlipResponse]:
    try:
        return await service.list_slips(db, status_filter=slip_status, search=search)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/registrations/{registration_id}/{slip_index}/approve",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def approve_slip(
    registration_id: int,
    slip_index: int,
    payload: SlipApprove,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
    audit: AuditSink = Depends(get_audit_sink),
) -> PaymentResponse:
    try:
        return await service.approve_slip(
            db, registration_id, slip_index, payload.amount, actor=current_user, audit=audit
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/registrations/{registration_id}/{slip_index}/decline",
    response_model=SlipResponse,
)
async def decline_slip(
    registration_id: int,
    slip_index: int,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
    audit: AuditSink = Depends(get_audit_sink),
) -> SlipResponse:
    try:
        return await service.decline_slip(
            db, registration_id, slip_index, actor=current_user, audit=audit
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
