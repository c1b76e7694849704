"""
Payment webhook -> order reconciliation.

The webhook only tells us *which* payment changed. The reconciler reads the
payment from the provider, finds the order by its correlation key
(external_reference) and writes the mapped status. Because the provider
record is always the current one, a late or duplicated delivery converges on
the same final order state.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select

from app.core.enums import OrderStatus, PaymentStatus
from app.core.exceptions import MissingCorrelationKeyError, MissingPaymentIdError, OrderNotFoundError
from app.core.locks import KeyedLocks
from app.core.utils import parse_iso_datetime
from app.database import async_session
from app.models.order import Order
from app.models.webhook import WebhookEvent
from app.services.notification_service import enqueue_notification
from app.services.payments.client import PaymentProviderClient

logger = logging.getLogger(__name__)

# provider status -> (order status, payment status)
STATUS_MAP: Dict[str, Tuple[OrderStatus, PaymentStatus]] = {
    "approved": (OrderStatus.PROCESSING, PaymentStatus.PAID),
    "rejected": (OrderStatus.CANCELLED, PaymentStatus.FAILED),
    "cancelled": (OrderStatus.CANCELLED, PaymentStatus.FAILED),
    "refunded": (OrderStatus.REFUNDED, PaymentStatus.REFUNDED),
    "pending": (OrderStatus.PENDING, PaymentStatus.PENDING),
    "in_process": (OrderStatus.PROCESSING, PaymentStatus.PROCESSING),
}


@dataclass
class ReconciliationResult:
    payment_id: str
    external_reference: str
    order_id: int
    provider_status: Optional[str]
    order_status: str
    payment_status: str
    recognized: bool
    changed: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def map_provider_status(provider_status: Optional[str]) -> Optional[Tuple[OrderStatus, PaymentStatus]]:
    return STATUS_MAP.get((provider_status or "").lower())


def extract_payment_id(event: WebhookEvent) -> Optional[str]:
    """Payment id from the logged event: its column, then body data.id, then query data.id / id"""
    if event.payment_id:
        return str(event.payment_id)

    body = event.body if isinstance(event.body, dict) else {}
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    if data.get("id"):
        return str(data["id"])

    query = event.query_params or {}
    value = query.get("data.id") or query.get("id")
    return str(value) if value else None


class PaymentReconciler:

    # One writer per correlation key at a time, process wide
    _key_locks = KeyedLocks()

    def __init__(self, session_factory=None, provider: Optional[PaymentProviderClient] = None):
        self.session_factory = session_factory or async_session
        self.provider = provider or PaymentProviderClient()

    async def reconcile(self, event: WebhookEvent) -> ReconciliationResult:
        """
        Apply the provider's current view of a payment to its order.

        Raises:
            MissingPaymentIdError: nothing to look up (not retryable)
            PaymentProviderError: provider call failed (retryable if transient)
            MissingCorrelationKeyError: payment has no external_reference (not retryable)
            OrderNotFoundError: order not committed yet (retryable)
        """
        payment_id = extract_payment_id(event)
        if not payment_id:
            raise MissingPaymentIdError(f"Webhook event {event.id} carries no payment id")

        payment = await self.provider.get_payment(payment_id)

        external_reference = payment.get("external_reference")
        if not external_reference:
            raise MissingCorrelationKeyError(f"Payment {payment_id} has no external_reference")
        external_reference = str(external_reference)

        async with self._key_locks.hold(external_reference):
            async with self.session_factory() as db:
                result = await db.execute(
                    select(Order).where(Order.external_reference == external_reference).with_for_update()
                )
                order = result.scalars().first()
                if order is None:
                    raise OrderNotFoundError(
                        f"No order with external_reference {external_reference} (payment {payment_id})"
                    )

                outcome, previous_payment_status = self._apply(order, payment, payment_id, external_reference)

                if outcome.changed and outcome.payment_status != previous_payment_status:
                    await enqueue_notification(
                        db,
                        kind="payment_status_changed",
                        dedup_key=f"payment:{payment_id}:{outcome.payment_status}",
                        subject=f"Order {order.order_number or order.id}: payment {outcome.payment_status}",
                        body=(
                            f"Order {order.order_number or order.id} (reference {external_reference})\n"
                            f"Payment {payment_id} is now {outcome.provider_status}.\n"
                            f"Order status: {outcome.order_status}\n"
                            f"Payment status: {outcome.payment_status}\n"
                        ),
                    )
                await db.commit()

        logger.info(
            "Reconciled payment %s -> order %s: %s/%s (provider %s, changed=%s)",
            payment_id, outcome.order_id, outcome.order_status, outcome.payment_status,
            outcome.provider_status, outcome.changed,
        )
        return outcome

    def _apply(
        self,
        order: Order,
        payment: Dict[str, Any],
        payment_id: str,
        external_reference: str,
    ) -> Tuple[ReconciliationResult, str]:
        provider_status = payment.get("status")
        mapped = map_provider_status(provider_status)
        previous = (order.status, order.payment_status, order.provider_status)
        previous_payment_status = order.payment_status

        if mapped is None:
            logger.warning(
                "Unrecognized provider status %r for payment %s; order %s left unchanged",
                provider_status, payment_id, order.id,
            )
        else:
            order_status, payment_status = mapped
            order.status = order_status.value
            order.payment_status = payment_status.value

        method = (payment.get("payment_method") or {}).get("type") or payment.get("payment_type_id") or "unknown"
        order.provider_status = provider_status
        order.provider_status_detail = payment.get("status_detail")
        order.provider_payment_id = payment_id
        order.provider_payment_method = method
        order.payment_method = method
        order.payment_details = payment
        if provider_status == "approved":
            order.provider_approved_at = parse_iso_datetime(payment.get("date_approved") or payment.get("date_created"))

        changed = previous != (order.status, order.payment_status, order.provider_status)
        return ReconciliationResult(
            payment_id=payment_id,
            external_reference=external_reference,
            order_id=order.id,
            provider_status=provider_status,
            order_status=order.status,
            payment_status=order.payment_status,
            recognized=mapped is not None,
            changed=changed,
        ), previous_payment_status
