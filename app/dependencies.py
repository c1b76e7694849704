from typing import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.database import async_session
from app.services.marketplace.token_store import TokenStore
from app.services.sync_job_ledger import SyncJobLedger
from app.services.sync_orchestrator import SyncOrchestrator
from app.services.webhook_ingestor import WebhookIngestor
from app.services.webhook_processor import WebhookProcessor
from app.services.webhook_retry_service import WebhookRetryService


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


def get_session_factory():
    """Dependency returning the session factory used by long-running services."""
    return async_session


def get_token_store(
    session_factory=Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
) -> TokenStore:
    return TokenStore(session_factory, settings=settings)


def get_sync_ledger(session_factory=Depends(get_session_factory)) -> SyncJobLedger:
    return SyncJobLedger(session_factory)


def get_sync_orchestrator(
    session_factory=Depends(get_session_factory),
    token_store: TokenStore = Depends(get_token_store),
    settings: Settings = Depends(get_settings),
) -> SyncOrchestrator:
    return SyncOrchestrator(session_factory, token_store=token_store, settings=settings)


def get_webhook_ingestor(
    session_factory=Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
) -> WebhookIngestor:
    return WebhookIngestor(session_factory, settings=settings)


def get_webhook_processor(
    session_factory=Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
) -> WebhookProcessor:
    return WebhookProcessor(session_factory, settings=settings)


def get_webhook_retry_service(
    session_factory=Depends(get_session_factory),
    processor: WebhookProcessor = Depends(get_webhook_processor),
    settings: Settings = Depends(get_settings),
) -> WebhookRetryService:
    return WebhookRetryService(session_factory, processor=processor, settings=settings)
