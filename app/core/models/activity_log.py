"""
Admin activity log: one row per attempted ledger operation, success or not.
Written after the business transaction commits, in a separate session.
"""

from sqlalchemy import Column, DateTime, String, Text

from app.core.models.registration import BigIntId, JsonData, utcnow
from app.db.session import Base


class AdminActivityLog(Base):
    __tablename__ = "admin_activity_logs"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    actor_user_id = Column(BigIntId, nullable=True, index=True)
    actor_name_snapshot = Column(String(180), nullable=True)
    actor_email_snapshot = Column(String(320), nullable=True)
    category = Column(String(60), nullable=False, default="general", index=True)
    action = Column(String(120), nullable=False, index=True)
    status = Column(String(40), nullable=False, default="success", index=True)  # success, failure, blocked
    subject_type = Column(String(80), nullable=True)
    subject_id = Column(BigIntId, nullable=True)
    subject_label = Column(String(240), nullable=True)
    message = Column(Text, nullable=True)
    before_data = Column(JsonData, nullable=True)
    after_data = Column(JsonData, nullable=True)
    meta = Column(JsonData, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
