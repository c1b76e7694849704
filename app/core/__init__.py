"""
Core module exports.
"""
from .enums import (
    SyncJobType,
    SyncJobStatus,
    SyncItemAction,
    ProductSyncHealth,
    OrderStatus,
    PaymentStatus,
    WebhookEventStatus,
    NotificationStatus,
)

from .exceptions import (
    BaseServiceError,
    MarketplaceServiceError,
    MarketplaceAPIError,
    MarketplaceAuthError,
    RateLimitExceeded,
    TokenRefreshError,
    AccountNotConnectedError,
    SyncJobError,
    SyncJobNotFoundError,
    InvalidJobTransitionError,
    SyncAlreadyRunningError,
    WebhookError,
    WebhookAuthError,
    WebhookRateLimitedError,
    WebhookPersistenceError,
    WebhookEventNotFoundError,
    ReconciliationError,
    MissingPaymentIdError,
    MissingCorrelationKeyError,
    OrderNotFoundError,
    PaymentProviderError,
)
