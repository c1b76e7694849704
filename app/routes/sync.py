# app/routes/sync.py
"""
Sync job endpoints.

Triggers create the queued ledger row first and answer with its id; the run
itself happens in a background task so callers poll GET /sync/jobs/{id}.
"""

import asyncio
import logging
from typing import Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from app.core.enums import SyncJobType
from app.core.exceptions import AccountNotConnectedError, SyncAlreadyRunningError, SyncJobNotFoundError
from app.dependencies import get_sync_ledger, get_sync_orchestrator
from app.schemas.sync import (
    ProductSyncStatusRead,
    SyncJobList,
    SyncJobQueued,
    SyncJobRead,
    SyncRunRequest,
)
from app.services.sync_job_ledger import SyncJobLedger
from app.services.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)
router = APIRouter(tags=["sync"])

_active_sync_tasks: Dict[int, asyncio.Task] = {}


def _launch(orchestrator: SyncOrchestrator, job_id: int) -> None:
    loop = asyncio.get_running_loop()
    task = loop.create_task(orchestrator.execute(job_id))
    _active_sync_tasks[job_id] = task

    def _finalize(t: asyncio.Task, sync_job_id: int) -> None:
        _active_sync_tasks.pop(sync_job_id, None)
        if t.cancelled():
            logger.warning("Sync job %s task was cancelled", sync_job_id)
        elif t.exception() is not None:
            logger.error("Sync job %s task crashed", sync_job_id, exc_info=t.exception())

    task.add_done_callback(lambda t, sync_job_id=job_id: _finalize(t, sync_job_id))


async def _enqueue_or_raise(orchestrator: SyncOrchestrator, job_type: SyncJobType, **kwargs):
    try:
        return await orchestrator.enqueue(job_type, **kwargs)
    except AccountNotConnectedError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SyncAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/sync/run", response_model=SyncJobQueued, status_code=202)
async def run_sync(
    request: Optional[SyncRunRequest] = Body(default=None),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Queue a delta sync or a full import for the user's marketplace account."""
    request = request or SyncRunRequest()
    job = await _enqueue_or_raise(orchestrator, SyncJobType(request.type), requesting_user_id=request.user_id)
    logger.info("Queued %s sync job %s", request.type, job.id)
    _launch(orchestrator, job.id)
    return SyncJobQueued(job_id=job.id, status=job.status)


@router.post("/sync/item/{external_id}", response_model=SyncJobQueued, status_code=202)
async def sync_item(
    external_id: str,
    user_id: Optional[int] = Query(default=None),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    job = await _enqueue_or_raise(
        orchestrator, SyncJobType.SINGLE_ITEM, requesting_user_id=user_id, external_id=external_id
    )
    _launch(orchestrator, job.id)
    return SyncJobQueued(job_id=job.id, status=job.status)


@router.get("/sync/jobs", response_model=SyncJobList)
async def list_sync_jobs(
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    ledger: SyncJobLedger = Depends(get_sync_ledger),
):
    jobs, total = await ledger.list_jobs(limit=limit, offset=offset)
    return SyncJobList(jobs=[SyncJobRead.from_job(job) for job in jobs], total=total, limit=limit, offset=offset)


@router.get("/sync/jobs/{job_id}", response_model=SyncJobRead)
async def get_sync_job(job_id: int, ledger: SyncJobLedger = Depends(get_sync_ledger)):
    try:
        job = await ledger.get_job(job_id)
    except SyncJobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return SyncJobRead.from_job(job)


@router.get("/sync/products/{external_id}", response_model=ProductSyncStatusRead)
async def get_product_sync_status(
    external_id: str,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    status = await orchestrator.get_product_sync_status(external_id)
    return ProductSyncStatusRead(**status)
