"""
Shared enums and constants used across the application.
"""

from enum import Enum


class SyncJobType(str, Enum):
    DELTA = "delta"
    FULL_IMPORT = "full_import"
    SINGLE_ITEM = "single_item"


class SyncJobStatus(str, Enum):
    """Sync job lifecycle: queued -> running -> success | failed | partial"""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncJobStatus.SUCCESS, SyncJobStatus.FAILED, SyncJobStatus.PARTIAL)


# Allowed forward transitions. Terminal states have no outgoing edges.
SYNC_JOB_TRANSITIONS = {
    SyncJobStatus.QUEUED: {SyncJobStatus.RUNNING},
    SyncJobStatus.RUNNING: {SyncJobStatus.SUCCESS, SyncJobStatus.FAILED, SyncJobStatus.PARTIAL},
    SyncJobStatus.SUCCESS: set(),
    SyncJobStatus.FAILED: set(),
    SyncJobStatus.PARTIAL: set(),
}


class SyncItemAction(str, Enum):
    """Outcome recorded for a single item inside a sync job"""
    INSERT = "insert"
    UPDATE = "update"
    NOOP = "noop"
    ERROR = "error"


class ProductSyncHealth(str, Enum):
    IN_SYNC = "in_sync"
    NEVER_SYNCED = "never_synced"
    ERRORED = "errored"
    STALE = "stale"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class WebhookEventStatus(str, Enum):
    """Processing status appended to a logged webhook delivery."""
    RECEIVED = "received"                  # Logged, reconciliation not attempted yet
    INVALID = "invalid"                    # Structurally invalid (no payment id), never reconciled
    PROCESSED = "processed"                # Reconciled against an order
    IGNORED = "ignored"                    # Reconciled, provider status not mapped
    FAILED = "failed"                      # Retryable failure, waiting for the retry service
    FAILED_PERMANENT = "failed_permanent"  # Needs operator attention


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
