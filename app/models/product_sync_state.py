from sqlalchemy import Column, Integer, String, Text, DateTime

from app.core.utils import utcnow
from app.database import Base


class ProductSyncState(Base):
    """
    Per-external-product sync bookkeeping.

    last_synced_at is only moved by a successful sync and is the delta-sync
    watermark. Failures set last_error and bump retry_count; the next success
    clears both.
    """

    __tablename__ = "product_sync_state"

    id = Column(Integer, primary_key=True)
    external_id = Column(String(64), nullable=False, unique=True, index=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_snapshot_hash = Column(String(64), nullable=True)
    last_error = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return (f"<ProductSyncState(external_id={self.external_id}, last_synced_at={self.last_synced_at}, "
                f"retry_count={self.retry_count})>")
