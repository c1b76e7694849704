# app/models/order.py
from sqlalchemy import Column, Integer, String, Float, DateTime, JSON

from app.core.enums import OrderStatus, PaymentStatus
from app.core.utils import utcnow
from app.database import Base


class Order(Base):
    """
    Storefront order, as far as payment reconciliation is concerned.

    external_reference is the correlation key set at checkout and echoed back
    by the payment provider. After creation the payment reconciler is the only
    writer of the payment_* / provider_* fields and of status.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(64), nullable=True, unique=True)
    user_id = Column(Integer, nullable=True, index=True)
    external_reference = Column(String(128), nullable=False, unique=True, index=True)
    total_amount = Column(Float, nullable=True)
    customer_email = Column(String(255), nullable=True)

    status = Column(String(32), nullable=False, default=OrderStatus.PENDING.value)
    payment_status = Column(String(32), nullable=False, default=PaymentStatus.PENDING.value)
    payment_method = Column(String(64), nullable=True)

    provider_status = Column(String(64), nullable=True)
    provider_status_detail = Column(String(128), nullable=True)
    provider_payment_id = Column(String(64), nullable=True, index=True)
    provider_payment_method = Column(String(64), nullable=True)
    provider_approved_at = Column(DateTime(timezone=True), nullable=True)
    payment_details = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return (f"<Order(id={self.id}, external_reference='{self.external_reference}', "
                f"status='{self.status}', payment_status='{self.payment_status}')>")
