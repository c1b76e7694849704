# app/routes/marketplace.py
"""Marketplace account connection and token status."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.core.config import Settings, get_settings
from app.core.exceptions import (
    AccountNotConnectedError,
    MarketplaceAPIError,
    MarketplaceAuthError,
    TokenRefreshError,
)
from app.dependencies import get_token_store
from app.schemas.sync import MarketplaceAccountRead, TokenStatusRead
from app.services.marketplace.token_store import TokenStore

logger = logging.getLogger(__name__)
router = APIRouter(tags=["marketplace"])


def _user_id(user_id: Optional[int], settings: Settings) -> int:
    return user_id if user_id is not None else settings.DEFAULT_USER_ID


@router.get("/token-status", response_model=TokenStatusRead)
async def token_status(
    user_id: Optional[int] = Query(default=None),
    token_store: TokenStore = Depends(get_token_store),
    settings: Settings = Depends(get_settings),
):
    try:
        account = await token_store.get_account_for_user(_user_id(user_id, settings))
    except AccountNotConnectedError:
        return TokenStatusRead(valid=False, needs_refresh=False, expires_at=None,
                               reason="No marketplace account connected")
    validity = await token_store.check_validity(account.id)
    return TokenStatusRead(**validity.to_dict())


@router.post("/refresh-token", response_model=TokenStatusRead)
async def refresh_token(
    user_id: Optional[int] = Query(default=None),
    token_store: TokenStore = Depends(get_token_store),
    settings: Settings = Depends(get_settings),
):
    """Force an immediate refresh-token exchange."""
    try:
        account = await token_store.get_account_for_user(_user_id(user_id, settings))
        await token_store.refresh(account.id)
    except AccountNotConnectedError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TokenRefreshError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except MarketplaceAPIError as e:
        raise HTTPException(status_code=502, detail=str(e))

    validity = await token_store.check_validity(account.id)
    return TokenStatusRead(**validity.to_dict())


@router.get("/marketplace/auth-url")
async def marketplace_auth_url(
    user_id: Optional[int] = Query(default=None),
    token_store: TokenStore = Depends(get_token_store),
    settings: Settings = Depends(get_settings),
):
    """URL the seller visits to grant access. The local user id travels in ``state``."""
    try:
        url = token_store.auth_manager.generate_user_authorization_url(state=str(_user_id(user_id, settings)))
    except ValueError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"auth_url": url}


@router.get("/marketplace/callback", response_model=MarketplaceAccountRead)
async def marketplace_callback(
    code: str = Query(...),
    state: Optional[str] = Query(default=None),
    token_store: TokenStore = Depends(get_token_store),
    settings: Settings = Depends(get_settings),
):
    """OAuth redirect target: exchange the code and store the account."""
    try:
        user_id = int(state) if state else settings.DEFAULT_USER_ID
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid state parameter")

    try:
        account = await token_store.connect(user_id, code)
    except MarketplaceAuthError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except MarketplaceAPIError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return MarketplaceAccountRead(
        id=account.id,
        user_id=account.user_id,
        seller_id=account.seller_id,
        nickname=account.nickname,
        scope=account.scope,
        expires_at=account.expires_at,
        last_refreshed_at=account.last_refreshed_at,
    )


@router.delete("/marketplace/account")
async def disconnect_marketplace(
    user_id: Optional[int] = Query(default=None),
    token_store: TokenStore = Depends(get_token_store),
    settings: Settings = Depends(get_settings),
):
    removed = await token_store.disconnect(_user_id(user_id, settings))
    if not removed:
        raise HTTPException(status_code=404, detail="No marketplace account connected")
    return {"disconnected": True}
