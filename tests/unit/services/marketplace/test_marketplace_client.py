# Marketplace item API client unit tests
import pytest

from app.core.exceptions import MarketplaceAPIError, MarketplaceAuthError
from app.services.marketplace.client import MULTIGET_MAX_IDS, MarketplaceClient
from app.services.marketplace.fetcher import RateLimitedFetcher


@pytest.fixture
def mock_fetcher(mocker):
    fetcher = mocker.MagicMock(spec=RateLimitedFetcher)
    fetcher.get = mocker.AsyncMock()
    return fetcher


@pytest.fixture
def client(mock_fetcher, settings):
    return MarketplaceClient(fetcher=mock_fetcher, settings=settings)


@pytest.mark.asyncio
async def test_search_seller_items(client, mock_fetcher):
    mock_fetcher.get.return_value = {"results": ["MLB1"], "paging": {"total": 1}}

    page = await client.search_seller_items("123", "tok", lane=1, offset=4)

    mock_fetcher.get.assert_awaited_once_with(
        "/users/123/items/search",
        lane=1,
        token="tok",
        params={"status": "active", "offset": 4, "limit": 4},
    )
    assert page["results"] == ["MLB1"]


@pytest.mark.asyncio
async def test_search_fills_missing_keys(client, mock_fetcher):
    mock_fetcher.get.return_value = {}

    page = await client.search_seller_items("123", "tok", lane=1)

    assert page == {"results": [], "paging": {}}


@pytest.mark.asyncio
async def test_items_summary_chunks_and_skips_errors(client, mock_fetcher):
    ids = [f"MLB{i}" for i in range(MULTIGET_MAX_IDS + 1)]

    def answer(path, lane, token, params):
        return [
            {"code": 200, "body": {"id": item_id, "last_updated": "2026-10-01T00:00:00Z"}}
            if item_id != "MLB3" else {"code": 404, "body": {"message": "not found"}}
            for item_id in params["ids"].split(",")
        ]

    mock_fetcher.get.side_effect = answer

    summaries = await client.get_items_summary(ids, "tok", lane=1)

    assert mock_fetcher.get.await_count == 2
    assert len(summaries) == len(ids) - 1
    assert "MLB3" not in {s["id"] for s in summaries}


@pytest.mark.asyncio
async def test_description_failure_is_tolerated(client, mock_fetcher):
    mock_fetcher.get.side_effect = [{"id": "MLB1"}, MarketplaceAPIError("not found", status_code=404)]

    item, description = await client.fetch_item_with_description("MLB1", "tok", lane=1)

    assert item == {"id": "MLB1"}
    assert description == ""


@pytest.mark.asyncio
async def test_description_auth_failure_propagates(client, mock_fetcher):
    mock_fetcher.get.side_effect = [{"id": "MLB1"}, MarketplaceAuthError("expired")]

    with pytest.raises(MarketplaceAuthError):
        await client.fetch_item_with_description("MLB1", "tok", lane=1)


@pytest.mark.asyncio
async def test_description_text(client, mock_fetcher):
    mock_fetcher.get.return_value = {"plain_text": "Guitarra em perfeito estado"}

    assert await client.get_item_description("MLB1", "tok", lane=1) == "Guitarra em perfeito estado"
