# Webhook processing and retry unit tests
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.core.enums import WebhookEventStatus
from app.core.exceptions import PaymentProviderError, WebhookError, WebhookEventNotFoundError
from app.core.utils import as_utc, utcnow
from app.models.notification import Notification
from app.models.order import Order
from app.models.webhook import WebhookEvent
from app.services.payments.reconciler import PaymentReconciler
from app.services.webhook_processor import WebhookProcessor
from app.services.webhook_retry_service import WebhookRetryService
from tests.mocks import MockPaymentProvider, make_payment


@pytest.fixture
def provider():
    return MockPaymentProvider({"1001": make_payment("1001", "approved", external_reference="order-ref-1")})


@pytest.fixture
def processor(session_factory, provider, settings):
    return WebhookProcessor(session_factory, reconciler=PaymentReconciler(session_factory, provider), settings=settings)


@pytest.fixture
def retry_service(session_factory, processor, settings):
    return WebhookRetryService(session_factory, processor=processor, settings=settings)


@pytest.fixture
def create_event(session_factory):
    async def _create(payment_id="1001", status=WebhookEventStatus.RECEIVED.value, **overrides):
        values = {
            "event_type": "payment",
            "method": "POST",
            "payment_id": payment_id,
            "body": {"type": "payment", "data": {"id": payment_id}},
            "status": status,
            "attempts": 0,
        }
        values.update(overrides)
        async with session_factory() as db:
            event = WebhookEvent(**values)
            db.add(event)
            await db.commit()
            await db.refresh(event)
        return event

    return _create


"""
1. Processing outcomes
"""

@pytest.mark.asyncio
async def test_process_event_reconciles_order(processor, create_event, create_order, db_session):
    order = await create_order()
    event = await create_event()

    event = await processor.process_event(event.id)

    assert event.status == WebhookEventStatus.PROCESSED.value
    assert event.order_id == order.id
    assert event.order_status == "processing"
    assert event.external_reference == "order-ref-1"
    assert event.attempts == 1
    assert event.processed_at is not None
    assert event.next_retry_at is None
    assert event.processing_time_ms is not None


@pytest.mark.asyncio
async def test_unmapped_status_is_ignored(processor, provider, create_event, create_order):
    await create_order()
    provider.payments["1001"] = make_payment("1001", "charged_back")
    event = await create_event()

    event = await processor.process_event(event.id)

    assert event.status == WebhookEventStatus.IGNORED.value


@pytest.mark.asyncio
async def test_invalid_event_is_never_reconciled(processor, provider, create_event):
    event = await create_event(payment_id=None, status=WebhookEventStatus.INVALID.value)

    event = await processor.process_event(event.id)

    assert event.status == WebhookEventStatus.INVALID.value
    assert provider.calls == []


@pytest.mark.asyncio
async def test_order_not_found_schedules_retry(processor, create_event, settings):
    event = await create_event()
    before = utcnow()

    event = await processor.process_event(event.id)

    assert event.status == WebhookEventStatus.FAILED.value
    assert event.error_kind == "order_not_found"
    assert event.attempts == 1
    delay = as_utc(event.next_retry_at) - before
    assert timedelta(seconds=29) <= delay <= timedelta(seconds=31)


@pytest.mark.asyncio
async def test_permanent_error_notifies_operator(processor, provider, create_event, db_session):
    provider.payments["1001"] = make_payment("1001", external_reference=None)
    event = await create_event()

    event = await processor.process_event(event.id)

    assert event.status == WebhookEventStatus.FAILED_PERMANENT.value
    assert event.error_kind == "missing_correlation_key"
    assert event.next_retry_at is None
    notification = (await db_session.execute(select(Notification))).scalars().one()
    assert notification.kind == "webhook_failed_permanent"


@pytest.mark.asyncio
async def test_unexpected_error_is_retryable(mocker, processor, create_event):
    mocker.patch.object(processor.reconciler, "reconcile", side_effect=RuntimeError("db went away"))
    event = await create_event()

    event = await processor.process_event(event.id)

    assert event.status == WebhookEventStatus.FAILED.value
    assert event.error_kind == "internal_error"


def test_backoff_is_exponential_and_capped(processor):
    assert processor.backoff_delay(1) == timedelta(seconds=30)
    assert processor.backoff_delay(2) == timedelta(seconds=60)
    assert processor.backoff_delay(3) == timedelta(seconds=120)
    assert processor.backoff_delay(20) == timedelta(seconds=3600)


"""
2. Retry scheduler
"""

@pytest.mark.asyncio
async def test_retry_pass_reconciles_once_order_appears(processor, retry_service, create_event,
                                                        create_order, db_session):
    """Webhook arrives before its order; the next retry pass reconciles it"""
    event = await create_event()
    event = await processor.process_event(event.id)
    assert event.error_kind == "order_not_found"

    await create_order()

    # Not due yet
    summary = await retry_service.process_failed_events()
    assert summary["due"] == 0

    summary = await retry_service.process_failed_events(now=utcnow() + timedelta(minutes=5))
    assert summary == {"due": 1, "processed": 1, "still_failing": 0, "permanent": 0}

    event = await processor.get_event(event.id)
    assert event.status == WebhookEventStatus.PROCESSED.value
    assert event.attempts == 2
    order = (await db_session.execute(select(Order))).scalars().one()
    assert (order.status, order.payment_status) == ("processing", "paid")


@pytest.mark.asyncio
async def test_retry_pass_recovers_events_left_received(retry_service, create_event, create_order, db_session):
    """An acknowledged event whose background processing never ran is reconciled by the retry pass"""
    await create_order()
    event = await create_event(created_at=utcnow() - timedelta(minutes=10))

    summary = await retry_service.process_failed_events()

    assert summary == {"due": 1, "processed": 1, "still_failing": 0, "permanent": 0}
    event = await retry_service.processor.get_event(event.id)
    assert event.status == WebhookEventStatus.PROCESSED.value
    assert event.attempts == 1
    order = (await db_session.execute(select(Order))).scalars().one()
    assert (order.status, order.payment_status) == ("processing", "paid")


@pytest.mark.asyncio
async def test_retry_pass_leaves_fresh_received_events_to_background_processing(retry_service, provider,
                                                                                 create_event):
    event = await create_event()

    summary = await retry_service.process_failed_events()

    assert summary["due"] == 0
    assert provider.calls == []
    event = await retry_service.processor.get_event(event.id)
    assert event.status == WebhookEventStatus.RECEIVED.value

    # Once past the grace period it is picked up
    summary = await retry_service.process_failed_events(now=utcnow() + timedelta(minutes=5))
    assert summary["due"] == 1


@pytest.mark.asyncio
async def test_retries_exhausted_become_permanent(processor, retry_service, provider, create_event):
    provider.errors["1001"] = PaymentProviderError("upstream down", status_code=503)
    event = await create_event()
    await processor.process_event(event.id)

    later = utcnow()
    for _ in range(3):
        later += timedelta(hours=2)
        await retry_service.process_failed_events(now=later)

    event = await processor.get_event(event.id)
    assert event.status == WebhookEventStatus.FAILED_PERMANENT.value
    assert event.attempts == 4


@pytest.mark.asyncio
async def test_retry_pass_marks_exhausted_events_permanent(retry_service, create_event):
    event = await create_event(
        status=WebhookEventStatus.FAILED.value,
        attempts=4,
        next_retry_at=utcnow() - timedelta(minutes=1),
    )

    summary = await retry_service.process_failed_events()

    assert summary["permanent"] == 1
    event = await retry_service.processor.get_event(event.id)
    assert event.status == WebhookEventStatus.FAILED_PERMANENT.value


@pytest.mark.asyncio
async def test_stats_count_every_status(retry_service, create_event):
    await create_event()
    await create_event(status=WebhookEventStatus.FAILED.value)

    stats = await retry_service.get_stats()

    assert stats["received"] == 1
    assert stats["failed"] == 1
    assert stats["processed"] == 0
    assert set(stats) == {s.value for s in WebhookEventStatus}


"""
3. Operator actions and queries
"""

@pytest.mark.asyncio
async def test_requeue_resets_attempts(processor, create_event):
    event = await create_event(status=WebhookEventStatus.FAILED_PERMANENT.value, attempts=4)

    event = await processor.requeue(event.id)

    assert event.status == WebhookEventStatus.FAILED.value
    assert event.attempts == 0
    assert event.next_retry_at is not None


@pytest.mark.asyncio
async def test_requeue_rejects_processed_events(processor, create_event):
    event = await create_event(status=WebhookEventStatus.PROCESSED.value)

    with pytest.raises(WebhookError):
        await processor.requeue(event.id)


@pytest.mark.asyncio
async def test_unknown_event(processor):
    with pytest.raises(WebhookEventNotFoundError):
        await processor.get_event(404)
    with pytest.raises(WebhookEventNotFoundError):
        await processor.requeue(404)


@pytest.mark.asyncio
async def test_list_events_filters(processor, create_event):
    await create_event(payment_id="1")
    await create_event(payment_id="2", status=WebhookEventStatus.FAILED.value)
    await create_event(payment_id="3", status=WebhookEventStatus.FAILED.value)

    events, total = await processor.list_events(status="failed", limit=1)

    assert total == 2
    assert len(events) == 1
    assert events[0].payment_id == "3"

    events, total = await processor.list_events(payment_id="1")
    assert total == 1
