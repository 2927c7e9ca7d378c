"""
Activity logging for ledger operations. Every add/void/approve/decline attempt produces one record,
written after the business transaction and never allowed to fail it.
"""

import logging
from typing import Any, Optional, Protocol

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.auth.schemas import CurrentUser
from app.core.enums import ActivityStatus
from app.core.exceptions import AlreadyResolvedError, AlreadyVoidedError, DuplicateConversionError
from app.core.models import AdminActivityLog
from app.db.session import get_session_factory

from .sanitize import sanitize_for_log, truncate

logger = logging.getLogger(__name__)

CATEGORY_PAYMENTS = "payments"

SUBJECT_REGISTRATION = "Registration"
SUBJECT_PAYMENT = "RegistrationPayment"


class AuditSink(Protocol):
    async def record(
        self,
        *,
        actor: Optional[CurrentUser],
        category: str,
        action: str,
        status: ActivityStatus,
        subject_type: Optional[str] = None,
        subject_id: Optional[int] = None,
        subject_label: Optional[str] = None,
        message: Optional[str] = None,
        before: Any = None,
        after: Any = None,
        meta: Any = None,
    ) -> None:
        ...


class ActivityLogSink:
    """Persists records to admin_activity_logs using its own session."""

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def record(
        self,
        *,
        actor: Optional[CurrentUser],
        category: str,
        action: str,
        status: ActivityStatus,
        subject_type: Optional[str] = None,
        subject_id: Optional[int] = None,
        subject_label: Optional[str] = None,
        message: Optional[str] = None,
        before: Any = None,
        after: Any = None,
        meta: Any = None,
    ) -> None:
        entry = AdminActivityLog(
            actor_user_id=actor.id if actor else None,
            actor_name_snapshot=truncate(actor.name if actor else None, 180),
            actor_email_snapshot=truncate(actor.email if actor else None, 320),
            category=truncate(category, 60) or "general",
            action=truncate(action, 120) or "unknown",
            status=ActivityStatus(status).value,
            subject_type=truncate(subject_type, 80),
            subject_id=subject_id,
            subject_label=truncate(subject_label, 240),
            message=truncate(message, 1000),
            before_data=sanitize_for_log(before),
            after_data=sanitize_for_log(after),
            meta=sanitize_for_log(meta),
        )
        async with self._session_factory() as session:
            session.add(entry)
            await session.commit()


async def record_safe(audit: AuditSink, **fields: Any) -> None:
    """Best-effort: a failing sink is logged, never raised to the caller."""
    try:
        await audit.record(**fields)
    except Exception:
        logger.exception(
            "Failed to persist admin activity log (action=%s, subject_id=%s)",
            fields.get("action"),
            fields.get("subject_id"),
        )


def activity_status_for(exc: Exception) -> ActivityStatus:
    """State-machine and double-spend guards are 'blocked'; everything else is a failure."""
    if isinstance(exc, (AlreadyVoidedError, AlreadyResolvedError, DuplicateConversionError)):
        return ActivityStatus.blocked
    return ActivityStatus.failure


def error_meta(exc: Exception, **extra: Any) -> dict:
    meta = {"error": getattr(exc, "message", None) or str(exc)}
    if exc.__cause__ is not None:
        meta["cause"] = str(exc.__cause__)
    meta.update(extra)
    return meta


def get_audit_sink() -> AuditSink:
    return ActivityLogSink(get_session_factory())
