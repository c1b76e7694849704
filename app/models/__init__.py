from .marketplace_account import MarketplaceAccount
from .sync_job import SyncJob, SyncLog
from .product_sync_state import ProductSyncState
from .product import Product
from .order import Order
from .webhook import WebhookEvent
from .rate_limit import RateLimitHit
from .notification import Notification

# This ensures all models are registered with SQLAlchemy
__all__ = [
    'MarketplaceAccount',
    'SyncJob',
    'SyncLog',
    'ProductSyncState',
    'Product',
    'Order',
    'WebhookEvent',
    'RateLimitHit',
    'Notification',
]
