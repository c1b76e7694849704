from datetime import datetime
from typing import Any, Dict, List, Optional

from app.schemas.base import BaseSchema


class WebhookEventSummary(BaseSchema):
    id: int
    event_type: str
    status: str
    payment_id: Optional[str] = None
    external_reference: Optional[str] = None
    order_id: Optional[int] = None
    order_status: Optional[str] = None
    error_kind: Optional[str] = None
    attempts: int = 0
    next_retry_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    created_at: datetime


class WebhookEventRead(WebhookEventSummary):
    method: str
    url: Optional[str] = None
    headers: Optional[Dict[str, Any]] = None
    body: Optional[Any] = None
    raw_body: Optional[str] = None
    query_params: Optional[Dict[str, Any]] = None
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None
    provider_event_id: Optional[str] = None
    error_message: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    processing_time_ms: Optional[int] = None


class WebhookEventList(BaseSchema):
    events: List[WebhookEventSummary]
    total: int
    limit: int
    offset: int


class WebhookAck(BaseSchema):
    success: bool = True
    event_id: int
    status: str
