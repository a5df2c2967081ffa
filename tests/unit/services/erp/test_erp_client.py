# ERP API client unit tests
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from stocksync.core.exceptions import ERPAPIError, RateLimited
from stocksync.core.rate_gate import RateGate
from stocksync.services.erp.client import ERPClient, parse_retry_after


def make_response(status_code, payload=None, headers=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.json.return_value = payload if payload is not None else {}
    response.content = b"{}" if payload is not None else b""
    response.text = text
    return response


@pytest.fixture
def auth():
    auth = MagicMock()
    auth.get_access_token = AsyncMock(side_effect=["token-1", "token-2"])
    return auth


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def erp_client(auth, settings, sleep):
    return ERPClient(auth, RateGate(0), settings, sleep=sleep)


@pytest.fixture
def mock_request(mocker):
    mock_client = mocker.patch("httpx.AsyncClient")
    request = AsyncMock()
    mock_client.return_value.__aenter__.return_value.request = request
    return request


@pytest.mark.asyncio
async def test_request_carries_bearer_token(erp_client, mock_request):
    mock_request.return_value = make_response(200, {"data": [{"id": 1}]})

    result = await erp_client.get("/produtos", "tenant-1", "accA", params={"codigo": "SKU-1"})

    assert result == {"data": [{"id": 1}]}
    _, kwargs = mock_request.call_args
    assert kwargs["headers"]["Authorization"] == "Bearer token-1"
    assert kwargs["url"] == "https://erp.test/Api/v3/produtos"
    assert kwargs["params"] == {"codigo": "SKU-1"}


@pytest.mark.asyncio
async def test_rate_limit_is_retried_honoring_retry_after(erp_client, mock_request, sleep):
    mock_request.side_effect = [
        make_response(429, headers={"Retry-After": "3"}),
        make_response(429, headers={"Retry-After": "3"}),
        make_response(200, {"data": []}),
    ]

    result = await erp_client.get("/produtos", "tenant-1", "accA")

    assert result == {"data": []}
    assert mock_request.call_count == 3
    assert [c.args[0] for c in sleep.await_args_list] == [3.0, 3.0]


@pytest.mark.asyncio
async def test_rate_limit_gives_up_after_two_retries(erp_client, mock_request, sleep):
    mock_request.return_value = make_response(429, headers={"Retry-After": "5"})

    with pytest.raises(RateLimited) as exc_info:
        await erp_client.get("/produtos", "tenant-1", "accA")

    assert mock_request.call_count == 3
    assert exc_info.value.retry_after == 5.0
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_missing_retry_after_uses_default(erp_client, mock_request, sleep, settings):
    mock_request.side_effect = [make_response(429), make_response(200, {})]

    await erp_client.get("/produtos", "tenant-1", "accA")

    sleep.assert_awaited_once_with(settings.ERP_DEFAULT_RETRY_AFTER)


@pytest.mark.asyncio
async def test_unauthorized_refreshes_token_once(erp_client, mock_request, auth):
    mock_request.side_effect = [make_response(401, text="expired"), make_response(200, {"data": {}})]

    await erp_client.get("/produtos/1", "tenant-1", "accA")

    assert auth.get_access_token.await_count == 2
    assert auth.get_access_token.await_args_list[1].kwargs == {"stale_token": "token-1"}
    _, kwargs = mock_request.call_args
    assert kwargs["headers"]["Authorization"] == "Bearer token-2"


@pytest.mark.asyncio
async def test_second_unauthorized_is_an_error(erp_client, mock_request):
    mock_request.return_value = make_response(401, text="still expired")

    with pytest.raises(ERPAPIError) as exc_info:
        await erp_client.get("/produtos/1", "tenant-1", "accA")

    assert exc_info.value.status_code == 401
    assert mock_request.call_count == 2


@pytest.mark.asyncio
async def test_other_errors_raise_with_status(erp_client, mock_request):
    mock_request.return_value = make_response(500, {"error": {"message": "oops"}}, text="oops")

    with pytest.raises(ERPAPIError) as exc_info:
        await erp_client.post("/estoques", "tenant-1", "accA", data={"quantidade": 1})

    assert exc_info.value.status_code == 500
    assert exc_info.value.payload == {"error": {"message": "oops"}}


@pytest.mark.asyncio
async def test_network_error_is_wrapped(erp_client, mock_request):
    mock_request.side_effect = httpx.ConnectError("unreachable")

    with pytest.raises(ERPAPIError):
        await erp_client.get("/produtos", "tenant-1", "accA")


@pytest.mark.asyncio
async def test_empty_body_returns_empty_dict(erp_client, mock_request):
    mock_request.return_value = make_response(204)

    assert await erp_client.post("/estoques", "tenant-1", "accA", data={}) == {}


def test_parse_retry_after():
    assert parse_retry_after("7", 1.0) == 7.0
    assert parse_retry_after(None, 1.0) == 1.0
    assert parse_retry_after("not a date", 1.5) == 1.5
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT", 1.0) == 0.0
