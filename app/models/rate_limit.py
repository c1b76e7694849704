from sqlalchemy import Column, Integer, String, DateTime, Index

from app.core.utils import utcnow
from app.database import Base


class RateLimitHit(Base):
    """
    One accepted request inside a sliding rate-limit window.

    Kept in the database rather than process memory so limits hold across
    restarts and across worker processes.
    """
    __tablename__ = "rate_limit_hits"

    id = Column(Integer, primary_key=True)
    bucket = Column(String(64), nullable=False)   # e.g. "payment_webhook"
    key = Column(String(128), nullable=False)     # e.g. source IP
    hit_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_rate_limit_hits_bucket_key_hit_at", "bucket", "key", "hit_at"),
    )
