# Payment reconciliation unit tests
import asyncio

import pytest
from sqlalchemy import func, select

from app.core.enums import OrderStatus, PaymentStatus
from app.core.exceptions import (
    MissingCorrelationKeyError,
    MissingPaymentIdError,
    OrderNotFoundError,
    PaymentProviderError,
)
from app.models.notification import Notification
from app.models.order import Order
from app.models.webhook import WebhookEvent
from app.services.payments.reconciler import (
    STATUS_MAP,
    PaymentReconciler,
    extract_payment_id,
    map_provider_status,
)
from tests.mocks import MockPaymentProvider, make_payment


@pytest.fixture
def provider():
    return MockPaymentProvider({"1001": make_payment("1001", "approved")})


@pytest.fixture
def reconciler(session_factory, provider):
    return PaymentReconciler(session_factory, provider=provider)


def _event(payment_id="1001", **overrides):
    values = {"id": 1, "event_type": "payment", "method": "POST", "payment_id": payment_id}
    values.update(overrides)
    return WebhookEvent(**values)


async def _order(db_session, external_reference="order-ref-1"):
    result = await db_session.execute(select(Order).where(Order.external_reference == external_reference))
    return result.scalars().one()


"""
1. Status mapping
"""

@pytest.mark.parametrize("provider_status, expected", [
    ("approved", (OrderStatus.PROCESSING, PaymentStatus.PAID)),
    ("rejected", (OrderStatus.CANCELLED, PaymentStatus.FAILED)),
    ("cancelled", (OrderStatus.CANCELLED, PaymentStatus.FAILED)),
    ("refunded", (OrderStatus.REFUNDED, PaymentStatus.REFUNDED)),
    ("pending", (OrderStatus.PENDING, PaymentStatus.PENDING)),
    ("in_process", (OrderStatus.PROCESSING, PaymentStatus.PROCESSING)),
    ("APPROVED", (OrderStatus.PROCESSING, PaymentStatus.PAID)),
])
def test_status_map(provider_status, expected):
    assert map_provider_status(provider_status) == expected


def test_unknown_status_is_unmapped():
    assert map_provider_status("charged_back") is None
    assert map_provider_status(None) is None
    assert "charged_back" not in STATUS_MAP


def test_extract_payment_id_fallbacks():
    assert extract_payment_id(_event("42")) == "42"
    assert extract_payment_id(_event(None, body={"data": {"id": 77}})) == "77"
    assert extract_payment_id(_event(None, query_params={"data.id": "88"})) == "88"
    assert extract_payment_id(_event(None, query_params={"id": "99"})) == "99"
    assert extract_payment_id(_event(None, body=["not", "a", "dict"])) is None


"""
2. Reconciliation
"""

@pytest.mark.asyncio
async def test_approved_payment_marks_order_paid(reconciler, create_order, db_session):
    await create_order()

    result = await reconciler.reconcile(_event())

    assert result.recognized is True
    assert result.changed is True
    assert (result.order_status, result.payment_status) == ("processing", "paid")

    order = await _order(db_session)
    assert order.status == OrderStatus.PROCESSING.value
    assert order.payment_status == PaymentStatus.PAID.value
    assert order.provider_status == "approved"
    assert order.provider_payment_id == "1001"
    assert order.payment_method == "credit_card"
    assert order.provider_approved_at is not None
    assert order.payment_details["external_reference"] == "order-ref-1"


@pytest.mark.asyncio
async def test_redelivery_is_idempotent(reconciler, create_order, db_session):
    """The same webhook delivered twice converges on one state with one notification"""
    await create_order()

    first = await reconciler.reconcile(_event())
    second = await reconciler.reconcile(_event())

    assert first.changed is True
    assert second.changed is False
    assert (second.order_status, second.payment_status) == ("processing", "paid")

    order = await _order(db_session)
    assert (order.status, order.payment_status) == ("processing", "paid")
    notifications = (await db_session.execute(select(Notification))).scalars().all()
    assert len(notifications) == 1
    assert notifications[0].dedup_key == "payment:1001:paid"


@pytest.mark.asyncio
async def test_concurrent_deliveries_for_one_order(reconciler, create_order, db_session):
    await create_order()

    results = await asyncio.gather(*(reconciler.reconcile(_event()) for _ in range(3)))

    assert sum(1 for r in results if r.changed) == 1
    count = (await db_session.execute(select(func.count(Notification.id)))).scalar()
    assert count == 1


@pytest.mark.asyncio
async def test_late_delivery_converges_on_current_provider_state(reconciler, provider, create_order, db_session):
    """An old 'pending' notification processed after approval reads the approved payment"""
    await create_order()
    await reconciler.reconcile(_event())

    provider.payments["1001"]["status"] = "refunded"
    await reconciler.reconcile(_event())

    order = await _order(db_session)
    assert (order.status, order.payment_status) == ("refunded", "refunded")


@pytest.mark.asyncio
async def test_unknown_provider_status_leaves_order_unchanged(reconciler, provider, create_order, db_session):
    await create_order()
    provider.payments["1001"] = make_payment("1001", "charged_back")

    result = await reconciler.reconcile(_event())

    assert result.recognized is False
    order = await _order(db_session)
    assert (order.status, order.payment_status) == ("pending", "pending")
    assert order.provider_status == "charged_back"


@pytest.mark.asyncio
async def test_missing_payment_id(reconciler):
    with pytest.raises(MissingPaymentIdError) as exc_info:
        await reconciler.reconcile(_event(None))

    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_payment_without_correlation_key(reconciler, provider):
    provider.payments["1001"] = make_payment("1001", external_reference=None)

    with pytest.raises(MissingCorrelationKeyError) as exc_info:
        await reconciler.reconcile(_event())

    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_order_not_found_is_retryable(reconciler):
    with pytest.raises(OrderNotFoundError) as exc_info:
        await reconciler.reconcile(_event())

    assert exc_info.value.retryable is True
    assert exc_info.value.error_kind == "order_not_found"


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, retryable", [(None, True), (429, True), (502, True), (404, False)])
async def test_provider_errors_carry_retryability(reconciler, provider, status_code, retryable):
    provider.errors["1001"] = PaymentProviderError("provider failed", status_code=status_code)

    with pytest.raises(PaymentProviderError) as exc_info:
        await reconciler.reconcile(_event())

    assert exc_info.value.retryable is retryable
