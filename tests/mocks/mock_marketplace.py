from typing import Dict, List, Optional, Set

from app.core.exceptions import MarketplaceAPIError, MarketplaceAuthError


def make_item(item_id: str, **overrides) -> Dict:
    item = {
        "id": item_id,
        "title": f"Item {item_id}",
        "price": 100.0,
        "available_quantity": 1,
        "condition": "new",
        "status": "active",
        "last_updated": "2020-01-01T12:00:00.000Z",
        "pictures": [{"secure_url": f"https://img.example.com/{item_id}.jpg"}],
        "attributes": [{"id": "BRAND", "name": "Marca", "value_name": "Fender"}],
    }
    item.update(overrides)
    return item


class MockMarketplaceClient:
    """In-memory stand-in for MarketplaceClient with the same call signatures."""

    def __init__(self, items: Optional[List[Dict]] = None):
        self.items: Dict[str, Dict] = {item["id"]: item for item in items or []}
        self.descriptions: Dict[str, str] = {}
        self.failing_items: Set[str] = set()
        self.failing_offsets: Set[int] = set()
        self.rejected_tokens: Set[str] = set()
        self.reported_total: Optional[int] = None
        # Every token is rejected once this many items were fetched
        self.revoke_access_after_items: Optional[int] = None
        self.calls: List[tuple] = []  # Track calls for testing

    def _check_token(self, token: str):
        if token in self.rejected_tokens:
            raise MarketplaceAuthError("invalid access token")

    async def search_seller_items(self, seller_id, token, *, lane, offset=0, limit=None):
        self.calls.append(("search", offset, token))
        self._check_token(token)
        if offset in self.failing_offsets:
            raise MarketplaceAPIError(f"Request failed (500) at offset {offset}", status_code=500)
        ids = list(self.items)
        limit = limit or 50
        total = len(ids) if self.reported_total is None else self.reported_total
        return {
            "results": ids[offset:offset + limit],
            "paging": {"total": total, "offset": offset, "limit": limit},
        }

    async def get_items_summary(self, item_ids, token, *, lane):
        self.calls.append(("summary", tuple(item_ids), token))
        self._check_token(token)
        return [
            {"id": i, "last_updated": self.items[i].get("last_updated"), "status": self.items[i].get("status")}
            for i in item_ids if i in self.items
        ]

    async def fetch_item_with_description(self, item_id, token, *, lane):
        self.calls.append(("item", item_id, token))
        self._check_token(token)
        if self.revoke_access_after_items is not None and len(self.fetched_items()) > self.revoke_access_after_items:
            raise MarketplaceAuthError("access revoked")
        if item_id in self.failing_items:
            raise MarketplaceAPIError(f"Request failed (500) for item {item_id}", status_code=500)
        if item_id not in self.items:
            raise MarketplaceAPIError(f"Request failed (404) for item {item_id}", status_code=404)
        return dict(self.items[item_id]), self.descriptions.get(item_id, "")

    def fetched_items(self) -> List[str]:
        return [call[1] for call in self.calls if call[0] == "item"]
