import logging
from typing import Dict, Hashable, List, Optional, Tuple

from app.core.config import Settings, get_settings
from app.core.exceptions import MarketplaceAPIError, MarketplaceAuthError, RateLimitExceeded
from app.services.marketplace.fetcher import RateLimitedFetcher, get_shared_fetcher

logger = logging.getLogger(__name__)

# The multi-get endpoint accepts at most this many ids per call
MULTIGET_MAX_IDS = 20


class MarketplaceClient:
    """
    Client for the marketplace item APIs used by the sync engine.

    Every call goes through the RateLimitedFetcher on the caller's lane
    (normally the account id), so delays and 429 handling apply uniformly to
    page fetches and per-item detail calls.
    Without an explicit fetcher the process-wide one is used.
    """

    def __init__(self, fetcher: Optional[RateLimitedFetcher] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.fetcher = fetcher or get_shared_fetcher()

    async def search_seller_items(
        self,
        seller_id: str,
        token: str,
        *,
        lane: Hashable,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> Dict:
        """
        One page of the seller's active item ids.

        Returns:
            Dict: {"results": [item ids], "paging": {"total", "offset", "limit"}}
        """
        params = {
            "status": "active",
            "offset": offset,
            "limit": limit or self.settings.SYNC_PAGE_SIZE,
        }
        response = await self.fetcher.get(f"/users/{seller_id}/items/search", lane=lane, token=token, params=params)
        response.setdefault("results", [])
        response.setdefault("paging", {})
        return response

    async def get_items_summary(self, item_ids: List[str], token: str, *, lane: Hashable) -> List[Dict]:
        """
        Fetch id/last_updated/status for a batch of items via the multi-get endpoint.

        Items the marketplace answers with a non-200 code are omitted.
        """
        summaries: List[Dict] = []
        for start in range(0, len(item_ids), MULTIGET_MAX_IDS):
            chunk = item_ids[start:start + MULTIGET_MAX_IDS]
            response = await self.fetcher.get(
                "/items",
                lane=lane,
                token=token,
                params={"ids": ",".join(chunk), "attributes": "id,last_updated,status"},
            )
            for entry in response or []:
                if entry.get("code") == 200 and entry.get("body"):
                    summaries.append(entry["body"])
                else:
                    logger.debug("Multi-get skipped entry: %s", entry)
        return summaries

    async def get_item(self, item_id: str, token: str, *, lane: Hashable) -> Dict:
        return await self.fetcher.get(f"/items/{item_id}", lane=lane, token=token)

    async def get_item_description(self, item_id: str, token: str, *, lane: Hashable) -> str:
        data = await self.fetcher.get(f"/items/{item_id}/description", lane=lane, token=token)
        return data.get("plain_text") or data.get("text") or data.get("content") or ""

    async def fetch_item_with_description(self, item_id: str, token: str, *, lane: Hashable) -> Tuple[Dict, str]:
        """
        Fetch an item and, best effort, its description.

        A missing description is not an error; throttling and auth failures
        still propagate so the caller can react to them.
        """
        item = await self.get_item(item_id, token, lane=lane)
        description = ""
        try:
            description = await self.get_item_description(item_id, token, lane=lane)
        except (MarketplaceAuthError, RateLimitExceeded):
            raise
        except MarketplaceAPIError as e:
            logger.warning(f"Could not fetch description for item {item_id}: {str(e)}")
        return item, description
