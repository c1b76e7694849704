"""
Schema exports for the application.
"""

# Base schemas
from .base import BaseSchema

# Sync and marketplace schemas
from .sync import (
    SyncRunRequest,
    SyncJobQueued,
    SyncJobRead,
    SyncJobList,
    ProductSyncStatusRead,
    TokenStatusRead,
    MarketplaceAccountRead,
)

# Webhook schemas
from .webhook import WebhookEventSummary, WebhookEventRead, WebhookEventList, WebhookAck
