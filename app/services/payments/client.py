import logging
from typing import Dict, Optional

import httpx

from app.core.config import Settings, get_settings
from app.core.exceptions import PaymentProviderError

logger = logging.getLogger(__name__)


class PaymentProviderClient:
    """
    Read-only client for the payment provider's payments API.

    Webhook payloads only carry a payment id, so every reconciliation reads
    the authoritative payment record from here.
    """

    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.PAYMENT_API_BASE_URL.rstrip("/")
        self.access_token = self.settings.PAYMENT_ACCESS_TOKEN
        self.timeout = self.settings.SYNC_REQUEST_TIMEOUT_SECONDS
        self._client = client

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }

    async def get_payment(self, payment_id: str) -> Dict:
        """
        Fetch a payment by id.

        Raises:
            PaymentProviderError: network failure or non-200 response. The
                error's ``retryable`` flag separates transient failures
                (network, 429, 5xx) from permanent ones (404 and other 4xx).
        """
        if not self.access_token:
            raise PaymentProviderError("PAYMENT_ACCESS_TOKEN is not configured", status_code=401)

        url = f"{self.base_url}/v1/payments/{payment_id}"
        logger.debug(f"Fetching payment {payment_id} from {url}")

        try:
            if self._client is not None:
                response = await self._client.get(url, headers=self._get_headers())
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, headers=self._get_headers())
        except httpx.RequestError as e:
            logger.error(f"Network error fetching payment {payment_id}: {str(e)}")
            raise PaymentProviderError(f"Network error fetching payment {payment_id}: {str(e)}")

        if response.status_code == 200:
            return response.json()

        if response.status_code == 404:
            raise PaymentProviderError(f"Payment {payment_id} not found at the provider", status_code=404)

        logger.error(f"Payment provider error {response.status_code} for {payment_id}: {response.text[:500]}")
        raise PaymentProviderError(
            f"Payment provider returned {response.status_code} for payment {payment_id}",
            status_code=response.status_code,
        )
