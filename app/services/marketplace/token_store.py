"""
Durable token storage and lifecycle for connected marketplace accounts.

Access and refresh tokens live on the MarketplaceAccount row. Callers ask for
a token through get_valid_token(), which refreshes transparently when the
stored token has less than the safety margin left. Refreshes for one account
are single-flight: concurrent callers wait on a per-account lock and re-read
the row, so a refresh token is never spent twice.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import select, update, delete

from app.core.config import Settings, get_settings
from app.core.exceptions import AccountNotConnectedError, MarketplaceAPIError, TokenRefreshError
from app.core.locks import KeyedLocks
from app.core.utils import as_utc, utcnow
from app.database import async_session
from app.models.marketplace_account import MarketplaceAccount
from app.services.marketplace.auth import MarketplaceAuthManager

logger = logging.getLogger(__name__)


@dataclass
class TokenValidity:
    valid: bool
    needs_refresh: bool
    expires_at: Optional[datetime]
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["expires_at"] = self.expires_at.isoformat() if self.expires_at else None
        return data


class TokenStore:
    """
    Reads, refreshes and persists marketplace OAuth tokens.
    """

    # Shared across instances so every service in the process collapses onto
    # the same per-account lock.
    _refresh_locks = KeyedLocks()

    def __init__(
        self,
        session_factory=None,
        auth_manager: Optional[MarketplaceAuthManager] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or async_session
        self.auth_manager = auth_manager or MarketplaceAuthManager(self.settings)
        self.safety_margin = timedelta(seconds=self.settings.TOKEN_SAFETY_MARGIN_SECONDS)
        self.refresh_window = timedelta(seconds=self.settings.TOKEN_REFRESH_WINDOW_SECONDS)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    async def get_account(self, account_id: int) -> MarketplaceAccount:
        async with self.session_factory() as db:
            account = await db.get(MarketplaceAccount, account_id)
        if account is None:
            raise AccountNotConnectedError(f"Marketplace account {account_id} not found")
        return account

    async def get_account_for_user(self, user_id: int) -> MarketplaceAccount:
        async with self.session_factory() as db:
            result = await db.execute(
                select(MarketplaceAccount).where(MarketplaceAccount.user_id == user_id)
            )
            account = result.scalars().first()
        if account is None:
            raise AccountNotConnectedError(f"No marketplace account connected for user {user_id}")
        return account

    async def list_accounts(self):
        async with self.session_factory() as db:
            result = await db.execute(select(MarketplaceAccount).order_by(MarketplaceAccount.id))
            return list(result.scalars().all())

    def _has_margin(self, account: MarketplaceAccount, now: Optional[datetime] = None) -> bool:
        """True when the stored access token outlives the safety margin"""
        if not account.access_token or not account.expires_at:
            return False
        now = now or utcnow()
        return now + self.safety_margin < as_utc(account.expires_at)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def get_valid_token(self, account_id: int) -> str:
        """
        Return an access token with more than the safety margin of validity,
        refreshing first if needed.
        """
        account = await self.get_account(account_id)
        if self._has_margin(account):
            return account.access_token

        async with self._refresh_locks.hold(account_id):
            # Another caller may have refreshed while we waited for the lock
            account = await self.get_account(account_id)
            if self._has_margin(account):
                logger.debug("Token for account %s refreshed by a concurrent caller", account_id)
                return account.access_token

            logger.info("Access token for account %s expired or near expiry, refreshing", account_id)
            account = await self._refresh_locked(account)
            return account.access_token

    async def check_validity(self, account_id: int) -> TokenValidity:
        """Report token state without touching it"""
        try:
            account = await self.get_account(account_id)
        except AccountNotConnectedError:
            return TokenValidity(valid=False, needs_refresh=False, expires_at=None, reason="Account not found")

        expires_at = as_utc(account.expires_at)
        now = utcnow()

        if not account.access_token:
            return TokenValidity(
                valid=False,
                needs_refresh=bool(account.refresh_token),
                expires_at=expires_at,
                reason="No access token stored",
            )
        if expires_at is None or expires_at <= now:
            return TokenValidity(valid=False, needs_refresh=True, expires_at=expires_at, reason="Token expired")
        if expires_at <= now + self.refresh_window:
            return TokenValidity(valid=True, needs_refresh=True, expires_at=expires_at, reason="Token valid but expiring soon")
        return TokenValidity(valid=True, needs_refresh=False, expires_at=expires_at, reason="Token valid")

    async def refresh(self, account_id: int) -> MarketplaceAccount:
        """Force a refresh-token exchange and persist the new pair"""
        async with self._refresh_locks.hold(account_id):
            account = await self.get_account(account_id)
            return await self._refresh_locked(account)

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------
    async def connect(self, user_id: int, code: str) -> MarketplaceAccount:
        """Complete the OAuth callback: exchange the code and upsert the user's account"""
        payload = await self.auth_manager.exchange_authorization_code(code)
        profile: Dict[str, Any] = {}
        try:
            profile = await self.auth_manager.get_seller_profile(payload["access_token"])
        except MarketplaceAPIError as e:
            logger.warning(f"Could not fetch seller profile on connect: {str(e)}")

        now = utcnow()
        values = {
            "access_token": payload["access_token"],
            "refresh_token": payload.get("refresh_token"),
            "expires_at": now + timedelta(seconds=int(payload.get("expires_in", 21600))),
            "scope": payload.get("scope"),
            "seller_id": str(profile.get("id") or payload.get("user_id") or "") or None,
            "nickname": profile.get("nickname"),
            "last_refreshed_at": now,
            "last_refresh_error": None,
        }

        async with self.session_factory() as db:
            result = await db.execute(
                select(MarketplaceAccount).where(MarketplaceAccount.user_id == user_id)
            )
            account = result.scalars().first()
            if account is None:
                account = MarketplaceAccount(user_id=user_id, **values)
                db.add(account)
            else:
                for key, value in values.items():
                    setattr(account, key, value)
            await db.commit()
            await db.refresh(account)

        logger.info("Connected marketplace seller %s for user %s", account.seller_id, user_id)
        return account

    async def disconnect(self, user_id: int) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                delete(MarketplaceAccount).where(MarketplaceAccount.user_id == user_id)
            )
            await db.commit()
        removed = (result.rowcount or 0) > 0
        if removed:
            logger.info("Disconnected marketplace account for user %s", user_id)
        return removed

    # ------------------------------------------------------------------
    # Scheduled sweep
    # ------------------------------------------------------------------
    async def refresh_expiring_tokens(self) -> Dict[str, int]:
        """Refresh every account whose token expires inside the refresh window"""
        summary = {"checked": 0, "refreshed": 0, "failed": 0}
        cutoff = utcnow() + self.refresh_window

        for account in await self.list_accounts():
            if not account.refresh_token:
                continue
            expires_at = as_utc(account.expires_at)
            if expires_at is not None and expires_at > cutoff:
                continue
            summary["checked"] += 1
            try:
                await self.refresh(account.id)
                summary["refreshed"] += 1
            except (TokenRefreshError, MarketplaceAPIError) as e:
                summary["failed"] += 1
                logger.error(f"Proactive token refresh failed for account {account.id}: {str(e)}")

        if summary["checked"]:
            logger.info("Token refresh sweep: %s", summary)
        return summary

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _refresh_locked(self, account: MarketplaceAccount) -> MarketplaceAccount:
        """Run the refresh grant and persist it. Caller holds the account lock."""
        if not account.refresh_token:
            raise TokenRefreshError(
                f"Account {account.id} has no refresh token. The account must be reconnected."
            )

        try:
            payload = await self.auth_manager.refresh_access_token(account.refresh_token)
        except TokenRefreshError as e:
            # A rejected refresh token is dead; clear the pair so waiters fail fast
            await self._write(account.id, {
                "access_token": None,
                "refresh_token": None,
                "expires_at": None,
                "last_refresh_error": str(e),
            })
            logger.error("Refresh token rejected for account %s; reconnect required", account.id)
            raise

        now = utcnow()
        values = {
            "access_token": payload["access_token"],
            # Keep the old refresh token if the marketplace did not rotate it
            "refresh_token": payload.get("refresh_token") or account.refresh_token,
            "expires_at": now + timedelta(seconds=int(payload.get("expires_in", 21600))),
            "last_refreshed_at": now,
            "last_refresh_error": None,
        }
        if payload.get("scope"):
            values["scope"] = payload["scope"]

        await self._write(account.id, values)
        logger.info("Refreshed access token for account %s (expires %s)", account.id, values["expires_at"])
        return await self.get_account(account.id)

    async def _write(self, account_id: int, values: Dict[str, Any]) -> None:
        """Single UPDATE so readers never see half a token pair"""
        values = dict(values, updated_at=utcnow())
        async with self.session_factory() as db:
            await db.execute(
                update(MarketplaceAccount)
                .where(MarketplaceAccount.id == account_id)
                .values(**values)
            )
            await db.commit()
