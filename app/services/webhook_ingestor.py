"""
Inbound payment webhook intake.

Order of checks: per-IP rate limit, then the path secret, then a verbatim
write to the webhook event log. Nothing after the secret check may raise
before the row is committed; payload interpretation is limited to pulling
out the correlation fields, and a payload without a payment id is still
logged (as invalid) rather than rejected unlogged.
"""

import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from app.core.config import Settings, get_settings
from app.core.enums import WebhookEventStatus
from app.core.exceptions import WebhookAuthError, WebhookError, WebhookPersistenceError, WebhookRateLimitedError
from app.database import async_session
from app.models.webhook import WebhookEvent
from app.services.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

RATE_LIMIT_BUCKET = "payment_webhook"


@dataclass
class InboundWebhook:
    """Framework-independent view of one webhook HTTP request."""
    method: str
    url: str
    path_token: str
    raw_body: Union[bytes, str] = b""
    headers: Dict[str, str] = field(default_factory=dict)
    query_params: Dict[str, str] = field(default_factory=dict)
    source_ip: Optional[str] = None


def _decode_body(raw_body: Union[bytes, str]) -> str:
    if isinstance(raw_body, bytes):
        return raw_body.decode("utf-8", errors="replace")
    return raw_body or ""


def _parse_json(text: str) -> Optional[Any]:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


class WebhookIngestor:

    def __init__(self, session_factory=None, rate_limiter: Optional[SlidingWindowRateLimiter] = None,
                 settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or async_session
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            RATE_LIMIT_BUCKET,
            self.settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
            self.settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
            session_factory=self.session_factory,
        )

    async def ingest(self, request: InboundWebhook) -> WebhookEvent:
        """
        Validate and durably log one delivery.

        Returns the committed WebhookEvent, with status RECEIVED when it can be
        reconciled or INVALID when it carries no payment id.

        Raises:
            WebhookRateLimitedError: source IP over the window limit (nothing logged)
            WebhookAuthError: path secret mismatch (audit-logged only)
            WebhookError: no secret configured
            WebhookPersistenceError: the event log write failed
        """
        source_ip = request.source_ip or "unknown"

        if not await self.rate_limiter.hit(source_ip):
            raise WebhookRateLimitedError(f"Too many webhook requests from {source_ip}")

        expected = self.settings.WEBHOOK_SECRET_TOKEN
        if not expected:
            logger.error("WEBHOOK_SECRET_TOKEN is not configured; rejecting payment webhook")
            raise WebhookError("Webhook secret is not configured")
        if not hmac.compare_digest(request.path_token.encode("utf-8"), expected.encode("utf-8")):
            logger.warning(
                "Rejected payment webhook with invalid secret from %s (%s %s, user-agent %s)",
                source_ip, request.method, request.url, request.headers.get("user-agent"),
            )
            raise WebhookAuthError("Invalid webhook token")

        event = self._build_event(request, source_ip)
        try:
            async with self.session_factory() as db:
                db.add(event)
                await db.commit()
                await db.refresh(event)
        except SQLAlchemyError as e:
            logger.exception("Failed to persist payment webhook from %s", source_ip)
            raise WebhookPersistenceError(f"Could not log webhook event: {str(e)}") from e

        if event.status == WebhookEventStatus.INVALID.value:
            logger.warning("Webhook event %s has no payment id; logged and not reconciled", event.id)
        else:
            logger.info("Logged webhook event %s for payment %s", event.id, event.payment_id)
        return event

    def _build_event(self, request: InboundWebhook, source_ip: str) -> WebhookEvent:
        raw_text = _decode_body(request.raw_body)
        body = _parse_json(raw_text)
        envelope = body if isinstance(body, dict) else {}
        data = envelope.get("data") if isinstance(envelope.get("data"), dict) else {}
        query = dict(request.query_params or {})

        payment_id = data.get("id") or query.get("data.id") or query.get("id")
        event_type = envelope.get("type") or envelope.get("topic") or query.get("type") or query.get("topic") or "payment"
        headers = dict(request.headers or {})

        event = WebhookEvent(
            event_type=str(event_type)[:64],
            method=request.method,
            url=request.url,
            headers=headers,
            body=body,
            raw_body=raw_text,
            query_params=query,
            source_ip=source_ip,
            user_agent=(headers.get("user-agent") or headers.get("User-Agent") or "")[:512] or None,
            provider_event_id=str(envelope["id"]) if envelope.get("id") is not None else None,
            payment_id=str(payment_id) if payment_id else None,
            external_reference=str(envelope["external_reference"]) if envelope.get("external_reference") else None,
            attempts=0,
        )
        if event.payment_id:
            event.status = WebhookEventStatus.RECEIVED.value
        else:
            event.status = WebhookEventStatus.INVALID.value
            event.error_kind = "missing_payment_id"
            event.error_message = "Payload carries no payment id"
        return event
