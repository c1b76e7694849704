import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import and_, func, or_, select

from app.core.config import Settings, get_settings
from app.core.enums import WebhookEventStatus
from app.core.utils import utcnow
from app.database import async_session
from app.models.webhook import WebhookEvent
from app.services.webhook_processor import WebhookProcessor

logger = logging.getLogger(__name__)


class WebhookRetryService:
    """
    Periodic pass over webhook events that failed with a retryable error, and
    over events still RECEIVED after the grace period (their in-process
    handoff was lost, e.g. the service restarted after acknowledging them).

    Each due event is handed back to the processor, which records the new
    outcome and schedules the next attempt. Events that have used up their
    attempts are marked permanently failed, never dropped.
    """

    def __init__(self, session_factory=None, processor: Optional[WebhookProcessor] = None,
                 settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or async_session
        self.processor = processor or WebhookProcessor(self.session_factory, settings=self.settings)
        self.max_attempts = self.settings.WEBHOOK_RETRY_MAX_ATTEMPTS
        self.batch_size = self.settings.WEBHOOK_RETRY_BATCH_SIZE
        self.unprocessed_grace = timedelta(seconds=self.settings.WEBHOOK_UNPROCESSED_GRACE_SECONDS)

    async def process_failed_events(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        summary = {"due": 0, "processed": 0, "still_failing": 0, "permanent": 0}

        async with self.session_factory() as db:
            result = await db.execute(
                select(WebhookEvent.id, WebhookEvent.attempts)
                .where(or_(
                    and_(
                        WebhookEvent.status == WebhookEventStatus.FAILED.value,
                        WebhookEvent.next_retry_at <= now,
                    ),
                    and_(
                        WebhookEvent.status == WebhookEventStatus.RECEIVED.value,
                        WebhookEvent.created_at <= now - self.unprocessed_grace,
                    ),
                ))
                .order_by(func.coalesce(WebhookEvent.next_retry_at, WebhookEvent.created_at).asc())
                .limit(self.batch_size)
            )
            due = result.all()

        summary["due"] = len(due)
        for event_id, attempts in due:
            if (attempts or 0) >= self.max_attempts:
                await self.processor.mark_permanently_failed(
                    event_id, f"Retries exhausted after {attempts} attempts"
                )
                summary["permanent"] += 1
                continue

            event = await self.processor.process_event(event_id)
            if event.status in (WebhookEventStatus.PROCESSED.value, WebhookEventStatus.IGNORED.value):
                summary["processed"] += 1
            elif event.status == WebhookEventStatus.FAILED_PERMANENT.value:
                summary["permanent"] += 1
            else:
                summary["still_failing"] += 1

        if due:
            logger.info("Webhook retry pass: %s", summary)
        return summary

    async def get_stats(self) -> Dict[str, int]:
        """Event counts per status"""
        async with self.session_factory() as db:
            result = await db.execute(
                select(WebhookEvent.status, func.count(WebhookEvent.id)).group_by(WebhookEvent.status)
            )
            counts = {status: count for status, count in result.all()}
        return {status.value: counts.get(status.value, 0) for status in WebhookEventStatus}
