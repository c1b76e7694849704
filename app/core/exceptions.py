from typing import Optional


class BaseServiceError(Exception):
    """Base exception for all service-related errors."""
    pass


# --- Marketplace ---

class MarketplaceServiceError(BaseServiceError):
    """Base exception for marketplace integration errors."""
    pass


class MarketplaceAPIError(MarketplaceServiceError):
    """Raised when a marketplace API call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: Optional[bool] = None):
        super().__init__(message)
        self.status_code = status_code
        if retryable is None:
            retryable = status_code is None or status_code >= 500
        self.retryable = retryable


class MarketplaceAuthError(MarketplaceAPIError):
    """Raised when the marketplace rejects the access token (401/403)."""

    def __init__(self, message: str, status_code: Optional[int] = 401):
        super().__init__(message, status_code=status_code, retryable=False)


class RateLimitExceeded(MarketplaceAPIError):
    """Raised when a request is still throttled (429) after the backoff retry."""

    def __init__(self, message: str):
        super().__init__(message, status_code=429, retryable=True)


class TokenRefreshError(MarketplaceServiceError):
    """Raised when the marketplace rejects a refresh token. The account must re-authenticate."""
    pass


class AccountNotConnectedError(MarketplaceServiceError):
    """Raised when no marketplace account exists for the user/account id."""
    pass


# --- Sync jobs ---

class SyncJobError(BaseServiceError):
    """Base exception for sync job errors."""
    pass


class SyncJobNotFoundError(SyncJobError):
    """Raised when a sync job id is unknown."""
    pass


class InvalidJobTransitionError(SyncJobError):
    """Raised when a job status change is not allowed by the state machine."""
    pass


class SyncAlreadyRunningError(SyncJobError):
    """Raised when an account already has a queued or running job."""
    pass


# --- Webhooks ---

class WebhookError(BaseServiceError):
    """Base exception for inbound webhook errors."""
    pass


class WebhookAuthError(WebhookError):
    """Raised when the webhook path secret does not match."""
    pass


class WebhookRateLimitedError(WebhookError):
    """Raised when a source IP exceeds the webhook request window."""
    pass


class WebhookPersistenceError(WebhookError):
    """Raised when an inbound delivery could not be written to the event log."""
    pass


class WebhookEventNotFoundError(WebhookError):
    """Raised when a webhook event id is unknown."""
    pass


# --- Payment reconciliation ---

class ReconciliationError(BaseServiceError):
    """Base exception for payment reconciliation failures."""

    error_kind = "reconciliation_error"
    retryable = False


class MissingPaymentIdError(ReconciliationError):
    """The event payload carries no payment id."""

    error_kind = "missing_payment_id"
    retryable = False


class MissingCorrelationKeyError(ReconciliationError):
    """The payment has no external_reference, so no order can ever match."""

    error_kind = "missing_correlation_key"
    retryable = False


class OrderNotFoundError(ReconciliationError):
    """No order with the correlation key exists yet."""

    error_kind = "order_not_found"
    retryable = True


class PaymentProviderError(ReconciliationError):
    """Raised when the payment provider API call fails."""

    error_kind = "provider_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        # Network errors, throttling and 5xx are transient; other 4xx are not.
        self.retryable = status_code is None or status_code == 429 or status_code >= 500
