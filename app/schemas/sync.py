"""
Schemas for the sync and marketplace endpoints.

Responses are camelCase on the wire (jobId, isRunning, needsRefresh, ...).
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import ConfigDict
from pydantic.alias_generators import to_camel

from app.core.enums import SyncJobStatus
from app.schemas.base import BaseSchema
from app.services.sync_job_ledger import progress_percent


class CamelSchema(BaseSchema):
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )


class SyncRunRequest(CamelSchema):
    type: Literal["delta", "full_import"] = "delta"
    user_id: Optional[int] = None


class SyncJobQueued(CamelSchema):
    job_id: int
    status: str


class SyncJobRead(CamelSchema):
    id: int
    job_type: str
    status: str
    account_id: Optional[int] = None
    target_external_id: Optional[str] = None
    total: int
    processed: int
    items_succeeded: int
    items_failed: int
    items_unchanged: int
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    progress: Optional[int] = None
    is_running: bool
    is_completed: bool

    @classmethod
    def from_job(cls, job) -> "SyncJobRead":
        status = SyncJobStatus(job.status)
        return cls(
            id=job.id,
            job_type=job.job_type,
            status=job.status,
            account_id=job.account_id,
            target_external_id=job.target_external_id,
            total=job.total or 0,
            processed=job.processed or 0,
            items_succeeded=job.items_succeeded or 0,
            items_failed=job.items_failed or 0,
            items_unchanged=job.items_unchanged or 0,
            error=job.error,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            progress=progress_percent(job),
            is_running=status == SyncJobStatus.RUNNING,
            is_completed=status.is_terminal,
        )


class SyncJobList(CamelSchema):
    jobs: List[SyncJobRead]
    total: int
    limit: int
    offset: int


class ProductSyncStatusRead(CamelSchema):
    external_id: str
    health: str
    last_synced_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    retry_count: int = 0


class TokenStatusRead(CamelSchema):
    valid: bool
    needs_refresh: bool
    expires_at: Optional[datetime] = None
    reason: str


class MarketplaceAccountRead(CamelSchema):
    id: int
    user_id: int
    seller_id: Optional[str] = None
    nickname: Optional[str] = None
    scope: Optional[str] = None
    expires_at: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None
