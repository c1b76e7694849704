from sqlalchemy import Column, Integer, String, Text, DateTime, JSON

from app.core.enums import NotificationStatus
from app.core.utils import utcnow
from app.database import Base


class Notification(Base):
    """
    Outbox row for an email notification.

    Written in the same transaction as the state change that caused it and
    delivered later by the dispatcher. dedup_key is unique so a redelivered
    webhook cannot enqueue the same notification twice.
    """
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    kind = Column(String(64), nullable=False, index=True)
    dedup_key = Column(String(255), nullable=False, unique=True)
    subject = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)
    recipients = Column(JSON, nullable=True)  # None means the configured defaults
    status = Column(String(16), nullable=False, default=NotificationStatus.PENDING.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    sent_at = Column(DateTime(timezone=True), nullable=True)
