"""Email notifications: a database outbox plus the SMTP sender that drains it."""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.enums import NotificationStatus
from app.core.utils import truncate, utcnow
from app.database import async_session
from app.models.notification import Notification

logger = logging.getLogger(__name__)


async def enqueue_notification(
    db: AsyncSession,
    *,
    kind: str,
    dedup_key: str,
    subject: str,
    body: str,
    recipients: Optional[Sequence[str]] = None,
) -> bool:
    """
    Add a notification to the outbox in the caller's transaction.

    Returns False when a notification with the same dedup_key already exists,
    which is how redelivered webhooks avoid sending the same email twice.
    The caller commits.
    """
    existing = await db.execute(select(Notification.id).where(Notification.dedup_key == dedup_key))
    if existing.scalar() is not None:
        logger.debug("Notification %s already queued, skipping", dedup_key)
        return False

    db.add(Notification(
        kind=kind,
        dedup_key=dedup_key,
        subject=subject,
        body=body,
        recipients=list(recipients) if recipients else None,
        status=NotificationStatus.PENDING.value,
        attempts=0,
    ))
    return True


class EmailNotificationService:
    """Lightweight SMTP helper for system notifications."""

    def __init__(self, settings: Settings):
        self._settings = settings

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def is_configured(self) -> bool:
        settings = self._settings
        return bool(settings.SMTP_HOST and settings.SMTP_USERNAME and settings.SMTP_PASSWORD)

    async def send(self, subject: str, body_text: str, recipients: Optional[Sequence[str]] = None) -> None:
        """Send one plain-text email. Raises on SMTP failure so the caller can count the attempt."""
        to_addresses = self._resolve_recipients(recipients)
        if not to_addresses:
            raise ValueError("No recipients configured for notification")

        footer = "\n\nSent automatically by the marketplace sync service"
        message = self._build_message(subject, to_addresses, body_text + footer)
        await asyncio.to_thread(self._send_sync, message)
        logger.info("Notification email sent to %s", message["To"])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _resolve_recipients(self, override: Optional[Sequence[str]]) -> List[str]:
        recipients: Iterable[str] = override if override else self._settings.NOTIFICATION_EMAILS
        return [email.strip() for email in recipients if email]

    def _build_message(self, subject: str, to_addresses: Sequence[str], body_text: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self._formatted_from_address
        message["To"] = ", ".join(sorted(set(to_addresses)))
        message.set_content(body_text)
        return message

    @property
    def _formatted_from_address(self) -> str:
        from_email = self._settings.SMTP_FROM_EMAIL or self._settings.SMTP_USERNAME
        from_name = self._settings.SMTP_FROM_NAME or "Marketplace Sync"
        return formataddr((from_name, from_email))

    def _send_sync(self, message: EmailMessage) -> None:
        settings = self._settings
        host = settings.SMTP_HOST
        port = settings.SMTP_PORT or (465 if settings.SMTP_USE_SSL else 587)
        timeout = settings.SMTP_TIMEOUT

        if settings.SMTP_USE_SSL:
            smtp = smtplib.SMTP_SSL(host=host, port=port, timeout=timeout)
        else:
            smtp = smtplib.SMTP(host=host, port=port, timeout=timeout)
        try:
            if settings.SMTP_USE_TLS and not settings.SMTP_USE_SSL:
                smtp.starttls()

            smtp.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
            smtp.send_message(message)
        finally:
            try:
                smtp.quit()
            except smtplib.SMTPException:
                smtp.close()


class NotificationDispatcher:
    """
    Drains the outbox. At-least-once: a row is marked sent only after SMTP
    accepted it, and failures only ever touch the notification row.
    """

    def __init__(self, session_factory=None, email_service: Optional[EmailNotificationService] = None,
                 settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or async_session
        self.email_service = email_service or EmailNotificationService(self.settings)
        self.max_attempts = self.settings.NOTIFICATION_MAX_ATTEMPTS

    async def dispatch_pending(self, limit: int = 50) -> Dict[str, Any]:
        summary = {"sent": 0, "failed": 0}

        if not self.email_service.is_configured():
            logger.debug("SMTP configuration incomplete; leaving notifications queued")
            return summary

        async with self.session_factory() as db:
            result = await db.execute(
                select(Notification)
                .where(Notification.status == NotificationStatus.PENDING.value)
                .order_by(Notification.created_at.asc())
                .limit(limit)
            )
            pending = list(result.scalars().all())

            for notification in pending:
                notification.attempts = (notification.attempts or 0) + 1
                try:
                    await self.email_service.send(notification.subject, notification.body, notification.recipients)
                except (smtplib.SMTPException, OSError, ValueError) as exc:
                    notification.last_error = truncate(str(exc))
                    if notification.attempts >= self.max_attempts:
                        notification.status = NotificationStatus.FAILED.value
                        logger.error("Giving up on notification %s after %s attempts: %s",
                                     notification.dedup_key, notification.attempts, exc)
                    summary["failed"] += 1
                else:
                    notification.status = NotificationStatus.SENT.value
                    notification.sent_at = utcnow()
                    notification.last_error = None
                    summary["sent"] += 1
                await db.commit()

        if summary["sent"] or summary["failed"]:
            logger.info("Notification dispatch: %s", summary)
        return summary
