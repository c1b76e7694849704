# Webhook ingestion unit tests
import asyncio
import json
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.core.enums import WebhookEventStatus
from app.core.exceptions import WebhookAuthError, WebhookError, WebhookPersistenceError, WebhookRateLimitedError
from app.core.utils import utcnow
from app.models.webhook import WebhookEvent
from app.services.rate_limiter import SlidingWindowRateLimiter
from app.services.webhook_ingestor import InboundWebhook, WebhookIngestor


@pytest.fixture
def ingestor(session_factory, settings):
    return WebhookIngestor(session_factory, settings=settings)


def _request(token="test-secret", body=None, query=None, ip="203.0.113.7"):
    raw = json.dumps(body).encode() if body is not None else b""
    return InboundWebhook(
        method="POST",
        url="https://shop.example.com/webhooks/payment/xxx",
        path_token=token,
        raw_body=raw,
        headers={"content-type": "application/json", "user-agent": "PaymentProvider/1.0"},
        query_params=query or {},
        source_ip=ip,
    )


async def _event_count(db_session):
    return (await db_session.execute(select(func.count(WebhookEvent.id)))).scalar()


@pytest.mark.asyncio
async def test_valid_webhook_is_logged_verbatim(ingestor, db_session):
    body = {"id": 555, "type": "payment", "action": "payment.updated", "data": {"id": "1001"}}

    event = await ingestor.ingest(_request(body=body, query={"topic": "payment"}))

    assert event.id is not None
    assert event.status == WebhookEventStatus.RECEIVED.value
    assert event.payment_id == "1001"
    assert event.provider_event_id == "555"
    assert event.event_type == "payment"
    assert event.body == body
    assert json.loads(event.raw_body) == body
    assert event.source_ip == "203.0.113.7"
    assert event.user_agent == "PaymentProvider/1.0"
    assert event.attempts == 0
    assert await _event_count(db_session) == 1


@pytest.mark.asyncio
async def test_payment_id_from_query_string(ingestor):
    event = await ingestor.ingest(_request(query={"data.id": "2002", "type": "payment"}))

    assert event.payment_id == "2002"
    assert event.status == WebhookEventStatus.RECEIVED.value


@pytest.mark.asyncio
async def test_missing_payment_id_is_logged_as_invalid(ingestor, db_session):
    event = await ingestor.ingest(_request(body={"type": "payment", "data": {}}))

    assert event.status == WebhookEventStatus.INVALID.value
    assert event.error_kind == "missing_payment_id"
    assert await _event_count(db_session) == 1


@pytest.mark.asyncio
async def test_unparseable_body_is_still_logged(ingestor):
    request = _request(query={"id": "3003"})
    request.raw_body = b"not json at all"

    event = await ingestor.ingest(request)

    assert event.body is None
    assert event.raw_body == "not json at all"
    assert event.payment_id == "3003"


@pytest.mark.asyncio
async def test_bad_secret_is_rejected_and_not_logged(ingestor, db_session):
    with pytest.raises(WebhookAuthError):
        await ingestor.ingest(_request(token="wrong", body={"data": {"id": "1001"}}))

    assert await _event_count(db_session) == 0


@pytest.mark.asyncio
async def test_unconfigured_secret_rejects_everything(session_factory, settings):
    ingestor = WebhookIngestor(session_factory, settings=settings.model_copy(update={"WEBHOOK_SECRET_TOKEN": ""}))

    with pytest.raises(WebhookError):
        await ingestor.ingest(_request(token=""))


@pytest.mark.asyncio
async def test_rate_limit_applies_per_source_ip(ingestor, db_session):
    for _ in range(3):
        await ingestor.ingest(_request(body={"data": {"id": "1001"}}))

    with pytest.raises(WebhookRateLimitedError):
        await ingestor.ingest(_request(body={"data": {"id": "1001"}}))

    # A different source is unaffected
    await ingestor.ingest(_request(body={"data": {"id": "1001"}}, ip="198.51.100.1"))
    assert await _event_count(db_session) == 4


@pytest.mark.asyncio
async def test_rate_limit_runs_before_secret_check(ingestor):
    for _ in range(3):
        with pytest.raises(WebhookAuthError):
            await ingestor.ingest(_request(token="wrong"))

    with pytest.raises(WebhookRateLimitedError):
        await ingestor.ingest(_request(token="wrong"))


@pytest.mark.asyncio
async def test_persistence_failure_is_reported(mocker, session_factory, settings):
    limiter = mocker.MagicMock(spec=SlidingWindowRateLimiter)
    limiter.hit = mocker.AsyncMock(return_value=True)

    failing_session = mocker.MagicMock()
    failing_session.__aenter__ = mocker.AsyncMock(return_value=failing_session)
    failing_session.__aexit__ = mocker.AsyncMock(return_value=False)
    failing_session.commit = mocker.AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("disk full")))

    ingestor = WebhookIngestor(lambda: failing_session, rate_limiter=limiter, settings=settings)

    with pytest.raises(WebhookPersistenceError):
        await ingestor.ingest(_request(body={"data": {"id": "1001"}}))


"""
Sliding window limiter
"""

@pytest.mark.asyncio
async def test_sliding_window_expires_old_hits(session_factory):
    limiter = SlidingWindowRateLimiter("test", max_requests=2, window_seconds=60, session_factory=session_factory)
    start = utcnow()

    assert await limiter.hit("ip", now=start) is True
    assert await limiter.hit("ip", now=start + timedelta(seconds=10)) is True
    assert await limiter.hit("ip", now=start + timedelta(seconds=20)) is False
    # The first hit has left the window
    assert await limiter.hit("ip", now=start + timedelta(seconds=61)) is True
    assert await limiter.hit("ip", now=start + timedelta(seconds=62)) is False


@pytest.mark.asyncio
async def test_concurrent_hits_never_exceed_the_limit(session_factory):
    # Separate instances, as separate requests would build them
    limiters = [
        SlidingWindowRateLimiter("test", max_requests=2, window_seconds=60, session_factory=session_factory)
        for _ in range(5)
    ]

    results = await asyncio.gather(*(limiter.hit("ip") for limiter in limiters))

    assert results.count(True) == 2
    assert results.count(False) == 3


@pytest.mark.asyncio
async def test_sliding_window_buckets_are_independent(session_factory):
    webhooks = SlidingWindowRateLimiter("a", max_requests=1, window_seconds=60, session_factory=session_factory)
    other = SlidingWindowRateLimiter("b", max_requests=1, window_seconds=60, session_factory=session_factory)

    assert await webhooks.hit("ip") is True
    assert await other.hit("ip") is True
    assert await webhooks.hit("ip") is False
