from .mock_marketplace import MockMarketplaceClient, make_item
from .mock_payments import MockPaymentProvider, make_payment
