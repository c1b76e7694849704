"""
Runs reconciliation for a logged webhook event and appends the outcome to it.

Outcomes:
- PROCESSED / IGNORED: reconciled (IGNORED when the provider status is not one we map)
- FAILED: retryable error; next_retry_at is set with exponential backoff
- FAILED_PERMANENT: non-retryable error or retries exhausted; an operator
  notification is queued
"""

import logging
import time
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import func, select

from app.core.config import Settings, get_settings
from app.core.enums import WebhookEventStatus
from app.core.exceptions import ReconciliationError, WebhookError, WebhookEventNotFoundError
from app.core.utils import truncate, utcnow
from app.database import async_session
from app.models.webhook import WebhookEvent
from app.services.notification_service import enqueue_notification
from app.services.payments.reconciler import PaymentReconciler, ReconciliationResult

logger = logging.getLogger(__name__)

# Statuses the reconciler is never run for
_NOT_PROCESSABLE = {WebhookEventStatus.INVALID.value}


class WebhookProcessor:

    def __init__(self, session_factory=None, reconciler: Optional[PaymentReconciler] = None,
                 settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or async_session
        self.reconciler = reconciler or PaymentReconciler(self.session_factory)
        self.max_attempts = self.settings.WEBHOOK_RETRY_MAX_ATTEMPTS
        self.base_delay = self.settings.WEBHOOK_RETRY_BASE_DELAY_SECONDS
        self.max_delay = self.settings.WEBHOOK_RETRY_MAX_DELAY_SECONDS

    def backoff_delay(self, attempts: int) -> timedelta:
        """Delay before the next attempt after ``attempts`` failures: base * 2^(attempts-1), capped"""
        seconds = self.base_delay * (2 ** max(attempts - 1, 0))
        return timedelta(seconds=min(seconds, self.max_delay))

    async def get_event(self, event_id: int) -> WebhookEvent:
        async with self.session_factory() as db:
            event = await db.get(WebhookEvent, event_id)
        if event is None:
            raise WebhookEventNotFoundError(f"Webhook event {event_id} not found")
        return event

    async def list_events(
        self,
        *,
        status: Optional[str] = None,
        event_type: Optional[str] = None,
        payment_id: Optional[str] = None,
        external_reference: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WebhookEvent], int]:
        """Filtered page of the event log, newest first, plus the filtered total"""
        filters = []
        if status:
            filters.append(WebhookEvent.status == status)
        if event_type:
            filters.append(WebhookEvent.event_type == event_type)
        if payment_id:
            filters.append(WebhookEvent.payment_id == payment_id)
        if external_reference:
            filters.append(WebhookEvent.external_reference == external_reference)

        async with self.session_factory() as db:
            total = (await db.execute(select(func.count(WebhookEvent.id)).where(*filters))).scalar() or 0
            result = await db.execute(
                select(WebhookEvent)
                .where(*filters)
                .order_by(WebhookEvent.created_at.desc(), WebhookEvent.id.desc())
                .limit(limit)
                .offset(offset)
            )
            events = list(result.scalars().all())
        return events, total

    async def process_event(self, event_id: int) -> WebhookEvent:
        """Reconcile one event and record the result on it."""
        event = await self.get_event(event_id)
        if event.status in _NOT_PROCESSABLE:
            logger.info("Webhook event %s is %s; not reconciling", event_id, event.status)
            return event

        started = time.monotonic()
        try:
            result = await self.reconciler.reconcile(event)
        except ReconciliationError as e:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            return await self._record_failure(event_id, e.error_kind, str(e), e.retryable, elapsed_ms)
        except Exception as e:
            # Database hiccups and the like; the event stays retryable
            logger.exception("Unexpected error reconciling webhook event %s", event_id)
            elapsed_ms = int((time.monotonic() - started) * 1000)
            return await self._record_failure(event_id, "internal_error", str(e), True, elapsed_ms)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        return await self._record_success(event_id, result, elapsed_ms)

    async def requeue(self, event_id: int, now: Optional[datetime] = None) -> WebhookEvent:
        """Operator action: give a failed event a fresh retry budget, due immediately."""
        now = now or utcnow()
        async with self.session_factory() as db:
            event = await self._load_for_update(db, event_id)
            if event.status not in (WebhookEventStatus.FAILED.value, WebhookEventStatus.FAILED_PERMANENT.value):
                raise WebhookError(f"Webhook event {event_id} is {event.status}; only failed events can be retried")
            event.status = WebhookEventStatus.FAILED.value
            event.attempts = 0
            event.next_retry_at = now
            await db.commit()
            await db.refresh(event)

        logger.info("Webhook event %s re-queued for retry", event_id)
        return event

    async def mark_permanently_failed(self, event_id: int, reason: str) -> WebhookEvent:
        async with self.session_factory() as db:
            event = await self._load_for_update(db, event_id)
            event.status = WebhookEventStatus.FAILED_PERMANENT.value
            event.next_retry_at = None
            event.error_message = truncate(reason)
            await self._notify_operator(db, event)
            await db.commit()
            await db.refresh(event)

        logger.error("Webhook event %s permanently failed: %s", event_id, reason)
        return event

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @staticmethod
    async def _load_for_update(db, event_id: int) -> WebhookEvent:
        result = await db.execute(select(WebhookEvent).where(WebhookEvent.id == event_id).with_for_update())
        event = result.scalars().first()
        if event is None:
            raise WebhookEventNotFoundError(f"Webhook event {event_id} not found")
        return event

    async def _record_success(self, event_id: int, result: ReconciliationResult, elapsed_ms: int) -> WebhookEvent:
        now = utcnow()
        async with self.session_factory() as db:
            event = await self._load_for_update(db, event_id)
            event.status = (WebhookEventStatus.PROCESSED if result.recognized else WebhookEventStatus.IGNORED).value
            event.order_status = result.order_status
            event.order_id = result.order_id
            event.payment_id = event.payment_id or result.payment_id
            event.external_reference = result.external_reference
            event.error_kind = None
            event.error_message = None
            event.attempts = (event.attempts or 0) + 1
            event.last_attempt_at = now
            event.next_retry_at = None
            event.processed_at = now
            event.processing_time_ms = elapsed_ms
            await db.commit()
            await db.refresh(event)
        return event

    async def _record_failure(
        self,
        event_id: int,
        error_kind: str,
        message: str,
        retryable: bool,
        elapsed_ms: int,
    ) -> WebhookEvent:
        now = utcnow()
        async with self.session_factory() as db:
            event = await self._load_for_update(db, event_id)
            event.attempts = (event.attempts or 0) + 1
            event.last_attempt_at = now
            event.error_kind = error_kind
            event.error_message = truncate(message)
            event.processing_time_ms = elapsed_ms

            if retryable and event.attempts < self.max_attempts:
                event.status = WebhookEventStatus.FAILED.value
                event.next_retry_at = now + self.backoff_delay(event.attempts)
                logger.warning(
                    "Webhook event %s failed (%s, attempt %s/%s), retrying at %s: %s",
                    event_id, error_kind, event.attempts, self.max_attempts, event.next_retry_at, message,
                )
            else:
                event.status = WebhookEventStatus.FAILED_PERMANENT.value
                event.next_retry_at = None
                await self._notify_operator(db, event)
                logger.error(
                    "Webhook event %s permanently failed (%s, attempt %s, retryable=%s): %s",
                    event_id, error_kind, event.attempts, retryable, message,
                )

            await db.commit()
            await db.refresh(event)
        return event

    async def _notify_operator(self, db, event: WebhookEvent) -> None:
        await enqueue_notification(
            db,
            kind="webhook_failed_permanent",
            dedup_key=f"webhook_failed:{event.id}:{event.attempts}",
            subject=f"Payment webhook {event.id} needs attention",
            body=(
                f"Webhook event {event.id} could not be reconciled.\n\n"
                f"Payment id: {event.payment_id}\n"
                f"External reference: {event.external_reference}\n"
                f"Error kind: {event.error_kind}\n"
                f"Error: {event.error_message}\n"
                f"Attempts: {event.attempts}\n"
            ),
        )
