"""
Marketplace OAuth client.

Talks to the marketplace's OAuth endpoints only: authorization URL, code
exchange, refresh-token grant and the seller profile lookup used on connect.
Persisting what comes back is the token store's job.
"""

import logging
from typing import Dict, Optional
from urllib.parse import urlencode

import httpx

from app.core.config import Settings, get_settings
from app.core.exceptions import MarketplaceAPIError, MarketplaceAuthError, TokenRefreshError

logger = logging.getLogger(__name__)


class MarketplaceAuthManager:
    """
    Manages the marketplace OAuth grants (authorization_code and refresh_token)
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

        self.client_id = self.settings.MARKETPLACE_CLIENT_ID
        self.client_secret = self.settings.MARKETPLACE_CLIENT_SECRET
        self.redirect_uri = self.settings.MARKETPLACE_REDIRECT_URI
        self.auth_url = self.settings.MARKETPLACE_AUTH_URL
        self.token_url = self.settings.MARKETPLACE_TOKEN_URL
        self.api_base_url = self.settings.MARKETPLACE_API_BASE_URL.rstrip("/")
        self.timeout = self.settings.SYNC_REQUEST_TIMEOUT_SECONDS

        logger.debug("MarketplaceAuthManager initialized (token url: %s)", self.token_url)

    def _require_credentials(self):
        if not self.client_id or not self.client_secret:
            raise MarketplaceAPIError(
                "Missing marketplace OAuth credentials. Set MARKETPLACE_CLIENT_ID and MARKETPLACE_CLIENT_SECRET.",
                retryable=False,
            )

    def generate_user_authorization_url(self, state: Optional[str] = None) -> str:
        """Generate the URL the seller visits to grant access"""
        if not self.redirect_uri:
            raise ValueError("MARKETPLACE_REDIRECT_URI is required for authorization URL generation")

        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
        }
        if state:
            params["state"] = state

        logger.info("Generated marketplace authorization URL")
        return f"{self.auth_url}?{urlencode(params)}"

    async def exchange_authorization_code(self, code: str) -> Dict:
        """
        Exchange an authorization code for an access/refresh token pair.

        Returns the raw token payload (access_token, refresh_token, expires_in,
        scope, user_id).
        """
        self._require_credentials()
        data = {
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "redirect_uri": self.redirect_uri,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.token_url,
                    data=data,
                    headers={"Accept": "application/json"},
                )
        except httpx.RequestError as e:
            logger.error(f"Network error exchanging authorization code: {str(e)}")
            raise MarketplaceAPIError(f"Network error exchanging authorization code: {str(e)}")

        if response.status_code != 200:
            logger.error(f"Authorization code exchange failed: {response.text}")
            raise MarketplaceAuthError(
                f"Failed to exchange authorization code: {response.text}",
                status_code=response.status_code,
            )

        payload = response.json()
        if not payload.get("access_token"):
            raise MarketplaceAPIError("Token response did not include an access_token", retryable=False)

        logger.info("Exchanged authorization code for marketplace tokens")
        return payload

    async def refresh_access_token(self, refresh_token: str) -> Dict:
        """
        Run the refresh_token grant.

        Raises:
            TokenRefreshError: the marketplace rejected the refresh token
                (invalid_grant / 400 / 401). Not retryable; the seller must
                reconnect.
            MarketplaceAPIError: network failure or server error.
        """
        self._require_credentials()
        if not refresh_token:
            raise TokenRefreshError("No refresh token available")

        data = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.token_url,
                    data=data,
                    headers={"Accept": "application/json"},
                )
        except httpx.RequestError as e:
            logger.error(f"Network error refreshing token: {str(e)}")
            raise MarketplaceAPIError(f"Network error refreshing access token: {str(e)}")

        if response.status_code == 200:
            payload = response.json()
            if not payload.get("access_token"):
                raise TokenRefreshError("Refresh response did not include an access_token")
            return payload

        error_text = response.text
        logger.error(f"Token refresh failed ({response.status_code}): {error_text}")

        if response.status_code in (400, 401, 403) or "invalid_grant" in error_text:
            raise TokenRefreshError(
                "Refresh token rejected by the marketplace. The account must be reconnected."
            )
        raise MarketplaceAPIError(
            f"Failed to refresh access token: {error_text}",
            status_code=response.status_code,
        )

    async def get_seller_profile(self, access_token: str) -> Dict:
        """Fetch the authenticated seller (id, nickname) for a fresh token"""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.api_base_url}/users/me",
                    headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                )
        except httpx.RequestError as e:
            raise MarketplaceAPIError(f"Network error fetching seller profile: {str(e)}")

        if response.status_code in (401, 403):
            raise MarketplaceAuthError("Access token rejected fetching seller profile", status_code=response.status_code)
        if response.status_code != 200:
            raise MarketplaceAPIError(
                f"Failed to fetch seller profile: {response.text}",
                status_code=response.status_code,
            )
        return response.json()
