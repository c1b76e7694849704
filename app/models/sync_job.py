from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Boolean, ForeignKey

from app.core.enums import SyncJobStatus
from app.core.utils import utcnow
from app.database import Base


class SyncJob(Base):
    """
    Ledger row for one marketplace sync run.

    Status only moves forward (queued -> running -> success/failed/partial).
    heartbeat_at is touched on every progress write so orphaned runs can be
    detected after a crash.
    """

    __tablename__ = "sync_jobs"

    id = Column(Integer, primary_key=True)
    job_type = Column(String(32), nullable=False, index=True)
    status = Column(String(32), nullable=False, default=SyncJobStatus.QUEUED.value, index=True)
    account_id = Column(Integer, ForeignKey("marketplace_accounts.id", ondelete="SET NULL"), nullable=True, index=True)
    target_external_id = Column(String(64), nullable=True)

    total = Column(Integer, nullable=False, default=0)
    processed = Column(Integer, nullable=False, default=0)
    items_succeeded = Column(Integer, nullable=False, default=0)
    items_failed = Column(Integer, nullable=False, default=0)
    items_unchanged = Column(Integer, nullable=False, default=0)

    error = Column(Text, nullable=True)
    requested_by = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    heartbeat_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (f"<SyncJob(id={self.id}, type={self.job_type}, status={self.status}, "
                f"processed={self.processed}/{self.total})>")


class SyncLog(Base):
    """Per-item audit row written while a sync job runs."""

    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True)
    job_id = Column(Integer, ForeignKey("sync_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id = Column(String(64), nullable=False, index=True)
    action = Column(String(16), nullable=False)  # insert, update, noop, error
    diff = Column(JSON, nullable=True)
    success = Column(Boolean, nullable=False, default=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
