# Payment provider client unit tests
import httpx
import pytest

from app.core.exceptions import PaymentProviderError
from app.services.payments.client import PaymentProviderClient


def _response(status_code, payload=None, text=""):
    request = httpx.Request("GET", "https://payments.test/v1/payments/1001")
    if payload is not None:
        return httpx.Response(status_code, json=payload, request=request)
    return httpx.Response(status_code, text=text, request=request)


@pytest.fixture
def mock_http(mocker):
    client = mocker.MagicMock()
    client.get = mocker.AsyncMock()
    return client


@pytest.mark.asyncio
async def test_get_payment(mock_http, settings):
    mock_http.get.return_value = _response(200, {"id": 1001, "status": "approved"})
    client = PaymentProviderClient(settings, client=mock_http)

    payment = await client.get_payment("1001")

    assert payment["status"] == "approved"
    args, kwargs = mock_http.get.call_args
    assert args == ("https://payments.test/v1/payments/1001",)
    assert kwargs["headers"]["Authorization"] == "Bearer test-payment-token"


@pytest.mark.asyncio
async def test_not_found_is_permanent(mock_http, settings):
    mock_http.get.return_value = _response(404, text="not found")
    client = PaymentProviderClient(settings, client=mock_http)

    with pytest.raises(PaymentProviderError) as exc_info:
        await client.get_payment("1001")

    assert exc_info.value.status_code == 404
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_server_error_is_retryable(mock_http, settings):
    mock_http.get.return_value = _response(503, text="unavailable")
    client = PaymentProviderClient(settings, client=mock_http)

    with pytest.raises(PaymentProviderError) as exc_info:
        await client.get_payment("1001")

    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_network_error_is_retryable(mock_http, settings):
    mock_http.get.side_effect = httpx.ConnectTimeout("timed out")
    client = PaymentProviderClient(settings, client=mock_http)

    with pytest.raises(PaymentProviderError) as exc_info:
        await client.get_payment("1001")

    assert exc_info.value.status_code is None
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_missing_access_token(mock_http, settings):
    client = PaymentProviderClient(settings.model_copy(update={"PAYMENT_ACCESS_TOKEN": ""}), client=mock_http)

    with pytest.raises(PaymentProviderError) as exc_info:
        await client.get_payment("1001")

    assert exc_info.value.retryable is False
    mock_http.get.assert_not_awaited()
