"""
Marketplace -> local catalog sync.

A run is split in two so routes can answer immediately:

    job = await orchestrator.enqueue(SyncJobType.DELTA, requesting_user_id=1)
    asyncio.create_task(orchestrator.execute(job.id))

The run_* helpers do both inline (scheduler, tests). One queued or running
job per marketplace account is allowed at a time; a second request is
rejected with SyncAlreadyRunningError.

Failure policy:
- no usable token, or the first page fetch fails: the job fails
- an item fetch/upsert fails: ProductSyncState.last_error is set, the item
  counts as processed and the batch carries on (job ends partial)
- a later page fails: pagination stops, the job ends partial if anything
  succeeded, failed otherwise
- the marketplace keeps rejecting credentials after a forced refresh: failed
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.core.config import Settings, get_settings
from app.core.enums import ProductSyncHealth, SyncItemAction, SyncJobStatus, SyncJobType
from app.core.exceptions import (
    AccountNotConnectedError,
    MarketplaceAPIError,
    MarketplaceAuthError,
    SyncAlreadyRunningError,
    TokenRefreshError,
)
from app.core.locks import KeyedLocks
from app.core.utils import as_utc, parse_iso_datetime, truncate, utcnow
from app.database import async_session
from app.models.marketplace_account import MarketplaceAccount
from app.models.product import Product
from app.models.product_sync_state import ProductSyncState
from app.models.sync_job import SyncJob
from app.services.marketplace.client import MarketplaceClient
from app.services.marketplace.mapping import map_item_to_product, snapshot_hash
from app.services.marketplace.token_store import TokenStore
from app.services.notification_service import enqueue_notification
from app.services.sync_job_ledger import SyncJobLedger

logger = logging.getLogger(__name__)

# Errors that mean this account cannot talk to the marketplace right now
_FATAL_ERRORS = (MarketplaceAuthError, TokenRefreshError, AccountNotConnectedError)


@dataclass
class _RunContext:
    job_id: int
    job_type: SyncJobType
    account_id: int
    seller_id: Optional[str]
    token: str
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    unchanged: int = 0
    page_error: Optional[str] = None


def compute_sync_health(
    state: Optional[ProductSyncState],
    stale_after: timedelta,
    now: Optional[datetime] = None,
) -> ProductSyncHealth:
    if state is None:
        return ProductSyncHealth.NEVER_SYNCED
    if state.last_error:
        return ProductSyncHealth.ERRORED
    if state.last_synced_at is None:
        return ProductSyncHealth.NEVER_SYNCED
    now = now or utcnow()
    if now - as_utc(state.last_synced_at) > stale_after:
        return ProductSyncHealth.STALE
    return ProductSyncHealth.IN_SYNC


class SyncOrchestrator:

    # Shared so every orchestrator in the process sees the same per-account gate
    _start_locks = KeyedLocks()

    def __init__(
        self,
        session_factory=None,
        token_store: Optional[TokenStore] = None,
        client: Optional[MarketplaceClient] = None,
        ledger: Optional[SyncJobLedger] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or async_session
        self.token_store = token_store or TokenStore(self.session_factory, settings=self.settings)
        self.client = client or MarketplaceClient(settings=self.settings)
        self.ledger = ledger or SyncJobLedger(self.session_factory)
        self.page_size = self.settings.SYNC_PAGE_SIZE

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    async def run_delta_sync(self, requesting_user_id: Optional[int] = None,
                             account_id: Optional[int] = None) -> SyncJob:
        job = await self.enqueue(SyncJobType.DELTA, requesting_user_id=requesting_user_id, account_id=account_id)
        return await self.execute(job.id)

    async def run_full_import(self, requesting_user_id: Optional[int] = None) -> SyncJob:
        job = await self.enqueue(SyncJobType.FULL_IMPORT, requesting_user_id=requesting_user_id)
        return await self.execute(job.id)

    async def sync_single_product(self, external_id: str, requesting_user_id: Optional[int] = None) -> SyncJob:
        job = await self.enqueue(
            SyncJobType.SINGLE_ITEM, requesting_user_id=requesting_user_id, external_id=external_id
        )
        return await self.execute(job.id)

    async def enqueue(
        self,
        job_type: SyncJobType,
        *,
        requesting_user_id: Optional[int] = None,
        account_id: Optional[int] = None,
        external_id: Optional[str] = None,
    ) -> SyncJob:
        """
        Create the queued ledger row for a run.

        Raises:
            AccountNotConnectedError: the user has no marketplace account
            SyncAlreadyRunningError: the account already has an active job
        """
        job_type = SyncJobType(job_type)
        if job_type == SyncJobType.SINGLE_ITEM and not external_id:
            raise ValueError("external_id is required for a single item sync")

        if account_id is not None:
            account = await self.token_store.get_account(account_id)
        else:
            user_id = requesting_user_id if requesting_user_id is not None else self.settings.DEFAULT_USER_ID
            account = await self.token_store.get_account_for_user(user_id)

        async with self._start_locks.hold(account.id):
            active = await self.ledger.get_active_job(account.id)
            if active is not None:
                raise SyncAlreadyRunningError(
                    f"Account {account.id} already has sync job {active.id} ({active.status})"
                )
            return await self.ledger.create_job(
                job_type,
                account_id=account.id,
                requested_by=requesting_user_id,
                target_external_id=external_id,
            )

    async def execute(self, job_id: int) -> SyncJob:
        """Drive a queued job to a terminal state. Never raises for job-level failures."""
        job = await self.ledger.get_job(job_id)
        job_type = SyncJobType(job.job_type)
        await self.ledger.mark_running(job_id, total=1 if job_type == SyncJobType.SINGLE_ITEM else 0)

        try:
            account = await self.token_store.get_account(job.account_id)
            token = await self.token_store.get_valid_token(account.id)
        except (TokenRefreshError, AccountNotConnectedError, MarketplaceAPIError) as e:
            logger.error(f"Sync job {job_id}: could not obtain a marketplace token: {str(e)}")
            return await self._finish_failed(job_id, f"Could not obtain a valid token: {str(e)}")

        ctx = _RunContext(
            job_id=job_id,
            job_type=job_type,
            account_id=account.id,
            seller_id=account.seller_id,
            token=token,
            total=1 if job_type == SyncJobType.SINGLE_ITEM else 0,
        )

        try:
            if job_type == SyncJobType.SINGLE_ITEM:
                await self._run_single(ctx, job.target_external_id)
            else:
                await self._run_paginated(ctx)
        except _FATAL_ERRORS as e:
            # Items already synced keep their results; the job ends partial unless nothing succeeded
            logger.error(f"Sync job {job_id} aborted, marketplace access lost: {str(e)}")
            ctx.page_error = f"Marketplace authorization failed: {str(e)}"
        except _FirstPageFailed as e:
            return await self._finish_failed(job_id, str(e))
        except Exception as e:
            logger.exception(f"Sync job {job_id} crashed")
            return await self._finish_failed(job_id, f"Unexpected error: {str(e)}")

        return await self._finish(ctx)

    # ------------------------------------------------------------------
    # Run bodies
    # ------------------------------------------------------------------
    async def _run_single(self, ctx: _RunContext, external_id: str) -> None:
        ok = await self._process_item(ctx, external_id, force=False)
        if not ok:
            raise _FirstPageFailed(f"Failed to sync item {external_id}")

    async def _run_paginated(self, ctx: _RunContext) -> None:
        if not ctx.seller_id:
            raise _FirstPageFailed(f"Account {ctx.account_id} has no seller id; reconnect the account")

        offset = 0
        first_page = True
        while True:
            try:
                page = await self._call(
                    ctx, self.client.search_seller_items, ctx.seller_id, offset=offset, limit=self.page_size
                )
            except _FATAL_ERRORS:
                raise
            except MarketplaceAPIError as e:
                if first_page:
                    raise _FirstPageFailed(f"First page fetch failed: {str(e)}")
                logger.error(f"Sync job {ctx.job_id}: page at offset {offset} failed, stopping: {str(e)}")
                ctx.page_error = f"Page fetch at offset {offset} failed: {str(e)}"
                return

            ids = [str(i) for i in page.get("results") or []]
            remote_total = int((page.get("paging") or {}).get("total") or 0)

            if first_page:
                first_page = False
                if remote_total:
                    await self.ledger.set_total(ctx.job_id, remote_total)
                    ctx.total = remote_total

            if not ids:
                return

            if ctx.total:
                ids = ids[:max(ctx.total - ctx.processed, 0)]

            if ctx.job_type == SyncJobType.DELTA:
                await self._process_delta_batch(ctx, ids)
            else:
                for external_id in ids:
                    await self._process_item(ctx, external_id, force=True)

            offset += len(page.get("results") or [])
            if ctx.total and ctx.processed >= ctx.total:
                return
            if remote_total and offset >= remote_total:
                return

            # Let other tasks run between pages
            await asyncio.sleep(0)

    async def _process_delta_batch(self, ctx: _RunContext, ids: List[str]) -> None:
        """Only fetch details for items changed since their watermark."""
        try:
            summaries = await self._call(ctx, self.client.get_items_summary, ids)
        except _FATAL_ERRORS:
            raise
        except MarketplaceAPIError as e:
            logger.warning(f"Sync job {ctx.job_id}: multi-get failed, fetching every item on the page: {str(e)}")
            summaries = []

        remote_updated = {
            str(s.get("id")): parse_iso_datetime(s.get("last_updated")) for s in summaries
        }
        states = await self._load_states(ids)

        for external_id in ids:
            state = states.get(external_id)
            updated_at = remote_updated.get(external_id)
            if (
                state is not None
                and state.last_synced_at is not None
                and not state.last_error
                and updated_at is not None
                and updated_at <= as_utc(state.last_synced_at)
            ):
                await self._record(ctx, external_id, SyncItemAction.NOOP)
                continue
            await self._process_item(ctx, external_id, force=False)

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------
    async def _process_item(self, ctx: _RunContext, external_id: str, force: bool) -> bool:
        """Fetch, map and upsert one item. Returns False if the item failed."""
        try:
            item, description = await self._call(ctx, self.client.fetch_item_with_description, external_id)
            action, diff = await self._apply_item(item, description, ctx.seller_id, force=force)
        except _FATAL_ERRORS:
            raise
        except Exception as e:
            logger.warning(f"Sync job {ctx.job_id}: item {external_id} failed: {str(e)}")
            await self._mark_state_failed(external_id, str(e))
            await self._record(ctx, external_id, SyncItemAction.ERROR, error=str(e))
            return False

        await self._record(ctx, external_id, action, diff=diff)
        return True

    async def _apply_item(
        self,
        item: Dict[str, Any],
        description: str,
        seller_id: Optional[str],
        force: bool = False,
    ) -> Tuple[SyncItemAction, Optional[Dict[str, Any]]]:
        """Upsert the catalog row and move the item's watermark. Last writer wins."""
        external_id = str(item["id"])
        digest = snapshot_hash(item, description)
        values = map_item_to_product(item, description, seller_id)
        now = utcnow()

        async with self.session_factory() as db:
            state = await self._get_state(db, external_id)
            product = (await db.execute(
                select(Product).where(Product.external_id == external_id)
            )).scalars().first()

            if not force and product is not None and state is not None and state.last_snapshot_hash == digest:
                action, diff = SyncItemAction.NOOP, None
            elif product is None:
                db.add(Product(**values))
                try:
                    await db.flush()
                    action, diff = SyncItemAction.INSERT, None
                except IntegrityError:
                    # Inserted concurrently by someone else; fall through to an update
                    await db.rollback()
                    product = (await db.execute(
                        select(Product).where(Product.external_id == external_id)
                    )).scalars().one()
                    state = await self._get_state(db, external_id)
                    action, diff = SyncItemAction.UPDATE, self._update_product(product, values)
            else:
                action, diff = SyncItemAction.UPDATE, self._update_product(product, values)

            if state is None:
                state = ProductSyncState(external_id=external_id, retry_count=0)
                db.add(state)
            state.last_synced_at = now
            state.last_attempt_at = now
            state.last_snapshot_hash = digest
            state.last_error = None
            state.retry_count = 0
            await db.commit()

        logger.debug("Item %s synced: %s", external_id, action.value)
        return action, diff

    @staticmethod
    def _update_product(product: Product, values: Dict[str, Any]) -> Dict[str, Any]:
        diff = {}
        for key, value in values.items():
            old = getattr(product, key)
            if old != value:
                diff[key] = {"old": old, "new": value}
                setattr(product, key, value)
        return diff

    async def _mark_state_failed(self, external_id: str, error: str) -> None:
        async with self.session_factory() as db:
            state = await self._get_state(db, external_id)
            if state is None:
                state = ProductSyncState(external_id=external_id, retry_count=0)
                db.add(state)
            state.last_error = truncate(error)
            state.retry_count = (state.retry_count or 0) + 1
            state.last_attempt_at = utcnow()
            await db.commit()

    async def _record(
        self,
        ctx: _RunContext,
        external_id: str,
        action: SyncItemAction,
        diff: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        await self.ledger.log_item(ctx.job_id, external_id, action, diff=diff, error=error)
        job = await self.ledger.record_item_processed(ctx.job_id, action)
        ctx.processed = job.processed
        ctx.succeeded = job.items_succeeded
        ctx.failed = job.items_failed
        ctx.unchanged = job.items_unchanged

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _call(self, ctx: _RunContext, method, first_arg, **kwargs):
        """
        Call a client method with the current token.

        A 401/403 triggers one forced refresh and one retry; a second
        rejection or a rejected refresh token propagates.
        """
        try:
            return await method(first_arg, ctx.token, lane=ctx.account_id, **kwargs)
        except MarketplaceAuthError:
            logger.warning("Sync job %s: access token rejected, forcing a refresh", ctx.job_id)
            account = await self.token_store.refresh(ctx.account_id)
            ctx.token = account.access_token
            return await method(first_arg, ctx.token, lane=ctx.account_id, **kwargs)

    @staticmethod
    async def _get_state(db, external_id: str) -> Optional[ProductSyncState]:
        result = await db.execute(
            select(ProductSyncState).where(ProductSyncState.external_id == external_id)
        )
        return result.scalars().first()

    async def _load_states(self, ids: List[str]) -> Dict[str, ProductSyncState]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ProductSyncState).where(ProductSyncState.external_id.in_(ids))
            )
            return {s.external_id: s for s in result.scalars().all()}

    async def _finish(self, ctx: _RunContext) -> SyncJob:
        if not ctx.total and ctx.processed:
            await self.ledger.set_total(ctx.job_id, ctx.processed)

        ok = ctx.succeeded + ctx.unchanged
        if ctx.page_error:
            status = SyncJobStatus.PARTIAL if ok else SyncJobStatus.FAILED
            error = ctx.page_error
        elif ctx.failed:
            status = SyncJobStatus.PARTIAL if ok else SyncJobStatus.FAILED
            error = f"{ctx.failed} of {ctx.processed} items failed"
        else:
            status, error = SyncJobStatus.SUCCESS, None

        if status == SyncJobStatus.FAILED:
            return await self._finish_failed(ctx.job_id, error)
        return await self.ledger.finish(ctx.job_id, status, error)

    async def _finish_failed(self, job_id: int, error: str) -> SyncJob:
        job = await self.ledger.finish(job_id, SyncJobStatus.FAILED, error)
        async with self.session_factory() as db:
            await enqueue_notification(
                db,
                kind="sync_job_failed",
                dedup_key=f"sync_job_failed:{job_id}",
                subject=f"Marketplace sync job {job_id} failed",
                body=(
                    f"Sync job {job_id} ({job.job_type}) for account {job.account_id} failed.\n\n"
                    f"Processed: {job.processed}/{job.total}\nError: {error}\n"
                ),
            )
            await db.commit()
        return job

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    async def get_product_sync_status(self, external_id: str) -> Dict[str, Any]:
        async with self.session_factory() as db:
            state = await self._get_state(db, external_id)
        health = compute_sync_health(state, timedelta(hours=self.settings.PRODUCT_STALE_AFTER_HOURS))
        return {
            "external_id": external_id,
            "health": health.value,
            "last_synced_at": as_utc(state.last_synced_at) if state else None,
            "last_attempt_at": as_utc(state.last_attempt_at) if state else None,
            "last_error": state.last_error if state else None,
            "retry_count": state.retry_count if state else 0,
        }

    async def run_delta_sync_all_accounts(self) -> List[SyncJob]:
        """Scheduled entry point: one delta sync per connected account."""
        jobs = []
        accounts: List[MarketplaceAccount] = await self.token_store.list_accounts()
        for account in accounts:
            try:
                jobs.append(await self.run_delta_sync(account_id=account.id))
            except SyncAlreadyRunningError as e:
                logger.info(f"Skipping scheduled delta sync: {str(e)}")
        return jobs


class _FirstPageFailed(Exception):
    """Internal: the run failed before making any progress."""
