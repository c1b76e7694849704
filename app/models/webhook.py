from sqlalchemy import Column, Integer, String, Text, DateTime, JSON

from app.core.enums import WebhookEventStatus
from app.core.utils import utcnow
from app.database import Base


class WebhookEvent(Base):
    """
    Append-only log of inbound payment webhook deliveries.

    The request columns (method through user_agent) are written once at
    ingestion and never changed. Reconciliation only appends its outcome in
    the processing columns; the retry service reads them to decide what to
    re-attempt.
    """
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True)
    event_type = Column(String(64), nullable=False, index=True)

    # Raw delivery
    method = Column(String(8), nullable=False)
    url = Column(Text, nullable=True)
    headers = Column(JSON, nullable=True)
    body = Column(JSON, nullable=True)
    raw_body = Column(Text, nullable=True)
    query_params = Column(JSON, nullable=True)
    source_ip = Column(String(64), nullable=True, index=True)
    user_agent = Column(String(512), nullable=True)

    # Correlation
    provider_event_id = Column(String(64), nullable=True, index=True)
    payment_id = Column(String(64), nullable=True, index=True)
    external_reference = Column(String(128), nullable=True, index=True)
    order_id = Column(Integer, nullable=True, index=True)

    # Processing outcome
    status = Column(String(32), nullable=False, default=WebhookEventStatus.RECEIVED.value, index=True)
    order_status = Column(String(32), nullable=True)
    error_kind = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True, index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processing_time_ms = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def __repr__(self):
        return (f"<WebhookEvent(id={self.id}, type='{self.event_type}', payment_id='{self.payment_id}', "
                f"status='{self.status}', attempts={self.attempts})>")
