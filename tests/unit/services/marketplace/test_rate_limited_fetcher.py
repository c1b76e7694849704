# Rate-limited transport unit tests
import asyncio

import httpx
import pytest

from app.core.exceptions import MarketplaceAPIError, MarketplaceAuthError, RateLimitExceeded
from app.services.marketplace.client import MarketplaceClient
from app.services.marketplace.fetcher import RateLimitedFetcher, get_shared_fetcher


def _response(status_code, payload=None, text=""):
    request = httpx.Request("GET", "https://marketplace.test/items")
    if payload is not None:
        return httpx.Response(status_code, json=payload, request=request)
    return httpx.Response(status_code, text=text, request=request)


@pytest.fixture
def mock_http(mocker):
    client = mocker.MagicMock()
    client.request = mocker.AsyncMock()
    return client


@pytest.fixture
def mock_sleep(mocker):
    return mocker.patch("app.services.marketplace.fetcher.asyncio.sleep", new=mocker.AsyncMock())


@pytest.fixture
def shared_fetcher():
    get_shared_fetcher.cache_clear()
    yield get_shared_fetcher()
    get_shared_fetcher.cache_clear()


@pytest.mark.asyncio
async def test_successful_get_returns_json_with_bearer_token(mock_http, mock_sleep, settings):
    mock_http.request.return_value = _response(200, {"id": "MLB1"})
    fetcher = RateLimitedFetcher(client=mock_http, settings=settings)

    result = await fetcher.get("/items/MLB1", lane=1, token="abc", params={"x": 1})

    assert result == {"id": "MLB1"}
    args, kwargs = mock_http.request.call_args
    assert args == ("GET", "https://marketplace.test/items/MLB1")
    assert kwargs["headers"]["Authorization"] == "Bearer abc"
    assert kwargs["params"] == {"x": 1}


@pytest.mark.asyncio
async def test_single_429_is_retried_once_after_backoff(mock_http, mock_sleep, settings):
    mock_http.request.side_effect = [_response(429, text="slow down"), _response(200, {"ok": True})]
    fetcher = RateLimitedFetcher(delay_ms=500, backoff_multiplier=5, client=mock_http, settings=settings)

    result = await fetcher.get("/items", lane=1)

    assert result == {"ok": True}
    assert mock_http.request.await_count == 2
    mock_sleep.assert_any_await(2.5)


@pytest.mark.asyncio
async def test_second_429_raises_rate_limit_exceeded(mock_http, mock_sleep, settings):
    mock_http.request.side_effect = [_response(429), _response(429)]
    fetcher = RateLimitedFetcher(client=mock_http, settings=settings)

    with pytest.raises(RateLimitExceeded) as exc_info:
        await fetcher.get("/items", lane=1)

    assert exc_info.value.status_code == 429
    assert exc_info.value.retryable is True
    assert mock_http.request.await_count == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [401, 403])
async def test_auth_errors_are_not_retried(mock_http, mock_sleep, settings, status_code):
    mock_http.request.return_value = _response(status_code, text="invalid_token")
    fetcher = RateLimitedFetcher(client=mock_http, settings=settings)

    with pytest.raises(MarketplaceAuthError):
        await fetcher.get("/items", lane=1)

    assert mock_http.request.await_count == 1


@pytest.mark.asyncio
async def test_server_error_raises_immediately(mock_http, mock_sleep, settings):
    mock_http.request.return_value = _response(500, text="Internal Server Error")
    fetcher = RateLimitedFetcher(client=mock_http, settings=settings)

    with pytest.raises(MarketplaceAPIError) as exc_info:
        await fetcher.get("/items", lane=1)

    assert exc_info.value.status_code == 500
    assert exc_info.value.retryable is True
    assert "Internal Server Error" in str(exc_info.value)
    assert mock_http.request.await_count == 1


@pytest.mark.asyncio
async def test_network_error_is_wrapped(mock_http, mock_sleep, settings):
    mock_http.request.side_effect = httpx.ConnectError("Connection failed")
    fetcher = RateLimitedFetcher(client=mock_http, settings=settings)

    with pytest.raises(MarketplaceAPIError) as exc_info:
        await fetcher.get("/items", lane=1)

    assert exc_info.value.status_code is None
    assert "Network error" in str(exc_info.value)


@pytest.mark.asyncio
async def test_calls_on_one_lane_are_spaced_by_the_delay(mock_http, mock_sleep, settings):
    mock_http.request.return_value = _response(200, {})
    fetcher = RateLimitedFetcher(delay_ms=500, client=mock_http, settings=settings)

    await fetcher.get("/a", lane="seller-1")
    await fetcher.get("/b", lane="seller-1")

    # The second call waited for (close to) the full inter-request delay
    assert mock_sleep.await_count == 1
    waited = mock_sleep.await_args.args[0]
    assert 0 < waited <= 0.5


@pytest.mark.asyncio
async def test_lanes_do_not_delay_each_other(mock_http, mock_sleep, settings):
    mock_http.request.return_value = _response(200, {})
    fetcher = RateLimitedFetcher(delay_ms=500, client=mock_http, settings=settings)

    await fetcher.get("/a", lane="seller-1")
    await fetcher.get("/b", lane="seller-2")

    mock_sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_clients_share_lane_spacing_through_the_process_wide_fetcher(mocker, mock_sleep, shared_fetcher,
                                                                         settings):
    mocker.patch.object(shared_fetcher, "_send", new=mocker.AsyncMock(return_value=_response(200, {})))
    first = MarketplaceClient(settings=settings)
    second = MarketplaceClient(settings=settings)

    assert first.fetcher is shared_fetcher
    assert second.fetcher is shared_fetcher

    await first.fetcher.get("/a", lane="seller-1")
    await second.fetcher.get("/b", lane="seller-1")

    # A fresh client still waits out the spacing left by the previous one
    assert mock_sleep.await_count == 1
    assert 0 < mock_sleep.await_args.args[0] <= shared_fetcher.delay


@pytest.mark.asyncio
async def test_concurrent_calls_on_one_lane_are_serialized(mocker, settings):
    in_flight = 0
    max_in_flight = 0

    async def slow_request(*args, **kwargs):
        nonlocal in_flight, max_in_flight
        in_flight += 1
        max_in_flight = max(max_in_flight, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return _response(200, {})

    client = mocker.MagicMock()
    client.request = slow_request
    fetcher = RateLimitedFetcher(delay_ms=0, client=client, settings=settings)

    await asyncio.gather(*(fetcher.get(f"/items/{i}", lane=1) for i in range(5)))

    assert max_in_flight == 1
