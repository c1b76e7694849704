"""Persistent ledger of marketplace sync jobs and their state machine."""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import SYNC_JOB_TRANSITIONS, SyncItemAction, SyncJobStatus, SyncJobType
from app.core.exceptions import InvalidJobTransitionError, SyncJobError, SyncJobNotFoundError
from app.core.utils import as_utc, truncate, utcnow
from app.database import async_session
from app.models.sync_job import SyncJob, SyncLog

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (SyncJobStatus.QUEUED.value, SyncJobStatus.RUNNING.value)

_OUTCOME_COUNTERS = {
    SyncItemAction.INSERT: "items_succeeded",
    SyncItemAction.UPDATE: "items_succeeded",
    SyncItemAction.NOOP: "items_unchanged",
    SyncItemAction.ERROR: "items_failed",
}


def progress_percent(job: SyncJob) -> Optional[int]:
    """round(processed / total * 100), or None while the total is unknown"""
    if not job.total:
        return None
    return round(job.processed / job.total * 100)


def _check_transition(job: SyncJob, target: SyncJobStatus) -> None:
    current = SyncJobStatus(job.status)
    if target not in SYNC_JOB_TRANSITIONS[current]:
        raise InvalidJobTransitionError(
            f"Sync job {job.id} cannot move from {current.value} to {target.value}"
        )


class SyncJobLedger:
    """
    Reads and writes SyncJob rows.

    Every mutation runs in its own short transaction and commits before
    returning, so progress is visible to other sessions (and survives a crash)
    while a long job is still working.
    """

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or async_session

    async def _load_for_update(self, db: AsyncSession, job_id: int) -> SyncJob:
        result = await db.execute(select(SyncJob).where(SyncJob.id == job_id).with_for_update())
        job = result.scalars().first()
        if job is None:
            raise SyncJobNotFoundError(f"Sync job {job_id} not found")
        return job

    async def create_job(
        self,
        job_type: SyncJobType,
        *,
        account_id: Optional[int] = None,
        requested_by: Optional[int] = None,
        target_external_id: Optional[str] = None,
    ) -> SyncJob:
        """Create a queued job with nothing processed yet."""
        async with self.session_factory() as db:
            now = utcnow()
            job = SyncJob(
                job_type=SyncJobType(job_type).value,
                status=SyncJobStatus.QUEUED.value,
                account_id=account_id,
                requested_by=requested_by,
                target_external_id=target_external_id,
                total=0,
                processed=0,
                created_at=now,
                heartbeat_at=now,
            )
            db.add(job)
            await db.commit()
            await db.refresh(job)

        logger.info("Created %s sync job %s (account %s)", job.job_type, job.id, account_id)
        return job

    async def mark_running(self, job_id: int, total: int = 0) -> SyncJob:
        async with self.session_factory() as db:
            job = await self._load_for_update(db, job_id)
            _check_transition(job, SyncJobStatus.RUNNING)
            now = utcnow()
            job.status = SyncJobStatus.RUNNING.value
            job.started_at = now
            job.heartbeat_at = now
            if total:
                job.total = max(int(total), job.total or 0)
            await db.commit()
            await db.refresh(job)

        logger.info("Sync job %s running (total=%s)", job_id, job.total or "unknown")
        return job

    async def set_total(self, job_id: int, total: int) -> SyncJob:
        """
        Record the expected item count.

        While queued the total may be revised upward. Once running it can only
        go from unknown (0) to known, a single time.
        """
        async with self.session_factory() as db:
            job = await self._load_for_update(db, job_id)
            status = SyncJobStatus(job.status)
            if status.is_terminal:
                raise InvalidJobTransitionError(f"Sync job {job_id} is {status.value}; total is frozen")
            total = int(total)
            if status == SyncJobStatus.RUNNING and job.total:
                raise SyncJobError(f"Sync job {job_id} already has total={job.total}")
            if total < job.total or total < job.processed:
                raise SyncJobError(
                    f"Sync job {job_id} total cannot drop to {total} "
                    f"(total={job.total}, processed={job.processed})"
                )
            job.total = total
            job.heartbeat_at = utcnow()
            await db.commit()
            await db.refresh(job)
        return job

    async def record_item_processed(
        self,
        job_id: int,
        outcome: SyncItemAction = SyncItemAction.UPDATE,
    ) -> SyncJob:
        """Count one finished item (successful or logged-and-skipped) and touch the heartbeat."""
        async with self.session_factory() as db:
            job = await self._load_for_update(db, job_id)
            if job.status != SyncJobStatus.RUNNING.value:
                raise InvalidJobTransitionError(
                    f"Sync job {job_id} is {job.status}; items can only be recorded while running"
                )
            if job.total and job.processed + 1 > job.total:
                raise SyncJobError(f"Sync job {job_id} already processed all {job.total} items")

            job.processed += 1
            counter = _OUTCOME_COUNTERS[SyncItemAction(outcome)]
            setattr(job, counter, (getattr(job, counter) or 0) + 1)
            job.heartbeat_at = utcnow()
            await db.commit()
            await db.refresh(job)
        return job

    async def finish(self, job_id: int, final_status: SyncJobStatus, error: Optional[str] = None) -> SyncJob:
        final_status = SyncJobStatus(final_status)
        if not final_status.is_terminal:
            raise InvalidJobTransitionError(f"{final_status.value} is not a terminal status")

        async with self.session_factory() as db:
            job = await self._load_for_update(db, job_id)
            _check_transition(job, final_status)
            now = utcnow()
            job.status = final_status.value
            job.finished_at = now
            job.heartbeat_at = now
            job.error = truncate(error)
            await db.commit()
            await db.refresh(job)

        log = logger.warning if final_status != SyncJobStatus.SUCCESS else logger.info
        log(
            "Sync job %s finished %s: processed=%s/%s succeeded=%s failed=%s unchanged=%s%s",
            job.id, job.status, job.processed, job.total, job.items_succeeded,
            job.items_failed, job.items_unchanged, f" error={error}" if error else "",
        )
        return job

    async def get_job(self, job_id: int) -> SyncJob:
        async with self.session_factory() as db:
            job = await db.get(SyncJob, job_id)
        if job is None:
            raise SyncJobNotFoundError(f"Sync job {job_id} not found")
        return job

    async def list_jobs(self, limit: int = 20, offset: int = 0) -> Tuple[List[SyncJob], int]:
        """Jobs newest first, plus the total row count"""
        async with self.session_factory() as db:
            total = (await db.execute(select(func.count(SyncJob.id)))).scalar() or 0
            result = await db.execute(
                select(SyncJob)
                .order_by(SyncJob.created_at.desc(), SyncJob.id.desc())
                .limit(limit)
                .offset(offset)
            )
            jobs = list(result.scalars().all())
        return jobs, total

    async def get_active_job(self, account_id: Optional[int]) -> Optional[SyncJob]:
        """The queued or running job for an account, if any"""
        async with self.session_factory() as db:
            stmt = select(SyncJob).where(SyncJob.status.in_(ACTIVE_STATUSES))
            if account_id is None:
                stmt = stmt.where(SyncJob.account_id.is_(None))
            else:
                stmt = stmt.where(SyncJob.account_id == account_id)
            result = await db.execute(stmt.order_by(SyncJob.created_at.asc()).limit(1))
            return result.scalars().first()

    async def log_item(
        self,
        job_id: int,
        external_id: str,
        action: SyncItemAction,
        *,
        diff: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        async with self.session_factory() as db:
            db.add(SyncLog(
                job_id=job_id,
                external_id=external_id,
                action=SyncItemAction(action).value,
                diff=diff,
                success=action != SyncItemAction.ERROR,
                error=truncate(error),
            ))
            await db.commit()

    async def get_item_logs(self, job_id: int, limit: int = 100) -> List[SyncLog]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SyncLog).where(SyncLog.job_id == job_id).order_by(SyncLog.id.asc()).limit(limit)
            )
            return list(result.scalars().all())

    async def fail_orphaned_jobs(self, timeout: timedelta, now: Optional[datetime] = None) -> List[int]:
        """
        Fail queued/running jobs whose heartbeat is older than ``timeout``.

        Queued jobs are walked through running first so every job's history
        stays queued -> running -> terminal.
        """
        now = now or utcnow()
        cutoff = now - timeout

        async with self.session_factory() as db:
            result = await db.execute(
                select(SyncJob)
                .where(SyncJob.status.in_(ACTIVE_STATUSES))
                .where(or_(SyncJob.heartbeat_at.is_(None), SyncJob.heartbeat_at < cutoff))
                .with_for_update()
            )
            orphaned = [
                job for job in result.scalars().all()
                if as_utc(job.heartbeat_at or job.created_at) < cutoff
            ]

            for job in orphaned:
                if job.status == SyncJobStatus.QUEUED.value:
                    job.status = SyncJobStatus.RUNNING.value
                    job.started_at = job.started_at or now
                _check_transition(job, SyncJobStatus.FAILED)
                job.status = SyncJobStatus.FAILED.value
                job.finished_at = now
                job.error = (
                    f"Orphaned: no progress since {as_utc(job.heartbeat_at or job.created_at).isoformat()}; "
                    f"failed by sweep after {int(timeout.total_seconds() // 60)} minutes"
                )
            await db.commit()

        job_ids = [job.id for job in orphaned]
        if job_ids:
            logger.warning("Failed %d orphaned sync jobs: %s", len(job_ids), job_ids)
        return job_ids
