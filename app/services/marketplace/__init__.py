from .auth import MarketplaceAuthManager
from .client import MarketplaceClient
from .fetcher import RateLimitedFetcher
from .token_store import TokenStore, TokenValidity

__all__ = [
    "MarketplaceAuthManager",
    "MarketplaceClient",
    "RateLimitedFetcher",
    "TokenStore",
    "TokenValidity",
]
