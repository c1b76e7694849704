"""
Payment webhook endpoint plus the admin views over the webhook event log.

The inbound endpoint answers 200 as soon as the delivery is logged;
reconciliation runs after the response, and failures are picked up by the
retry scheduler from the log.
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from app.core.enums import WebhookEventStatus
from app.core.exceptions import (
    WebhookAuthError,
    WebhookError,
    WebhookEventNotFoundError,
    WebhookPersistenceError,
    WebhookRateLimitedError,
)
from app.dependencies import get_webhook_ingestor, get_webhook_processor, get_webhook_retry_service
from app.schemas.webhook import WebhookAck, WebhookEventList, WebhookEventRead, WebhookEventSummary
from app.services.webhook_ingestor import InboundWebhook, WebhookIngestor
from app.services.webhook_processor import WebhookProcessor
from app.services.webhook_retry_service import WebhookRetryService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])
admin_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/webhooks/payment/{secret_token}", response_model=WebhookAck)
async def payment_webhook(
    secret_token: str,
    request: Request,
    background_tasks: BackgroundTasks,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """Endpoint to receive payment notifications from the payment provider"""
    inbound = InboundWebhook(
        method=request.method,
        url=str(request.url),
        path_token=secret_token,
        raw_body=await request.body(),
        headers=dict(request.headers),
        query_params=dict(request.query_params),
        source_ip=request.client.host if request.client else None,
    )

    try:
        event = await ingestor.ingest(inbound)
    except WebhookRateLimitedError as e:
        raise HTTPException(status_code=429, detail=str(e))
    except WebhookAuthError:
        raise HTTPException(status_code=401, detail="Invalid token")
    except WebhookPersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except WebhookError as e:
        raise HTTPException(status_code=500, detail=str(e))

    if event.status == WebhookEventStatus.INVALID.value:
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": "Payment id not provided", "event_id": event.id},
        )

    background_tasks.add_task(processor.process_event, event.id)
    return WebhookAck(event_id=event.id, status=event.status)


@admin_router.get("/events", response_model=WebhookEventList)
async def list_webhook_events(
    status: Optional[str] = Query(default=None),
    event_type: Optional[str] = Query(default=None),
    payment_id: Optional[str] = Query(default=None),
    external_reference: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    events, total = await processor.list_events(
        status=status,
        event_type=event_type,
        payment_id=payment_id,
        external_reference=external_reference,
        limit=limit,
        offset=offset,
    )
    return WebhookEventList(
        events=[WebhookEventSummary.from_orm_model(e) for e in events],
        total=total,
        limit=limit,
        offset=offset,
    )


@admin_router.get("/events/stats")
async def webhook_event_stats(retry_service: WebhookRetryService = Depends(get_webhook_retry_service)):
    counts = await retry_service.get_stats()
    return {"total": sum(counts.values()), "by_status": counts}


@admin_router.get("/events/{event_id}", response_model=WebhookEventRead)
async def get_webhook_event(event_id: int, processor: WebhookProcessor = Depends(get_webhook_processor)):
    try:
        event = await processor.get_event(event_id)
    except WebhookEventNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return WebhookEventRead.from_orm_model(event)


@admin_router.post("/events/{event_id}/retry", response_model=WebhookEventSummary)
async def retry_webhook_event(
    event_id: int,
    background_tasks: BackgroundTasks,
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """Re-queue a failed event with a fresh retry budget and reprocess it now."""
    try:
        event = await processor.requeue(event_id)
    except WebhookEventNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WebhookError as e:
        raise HTTPException(status_code=409, detail=str(e))

    background_tasks.add_task(processor.process_event, event.id)
    return WebhookEventSummary.from_orm_model(event)


@admin_router.post("/retry/process")
async def run_retry_pass(retry_service: WebhookRetryService = Depends(get_webhook_retry_service)):
    """Run the retry scheduler's pass immediately."""
    return await retry_service.process_failed_events()
