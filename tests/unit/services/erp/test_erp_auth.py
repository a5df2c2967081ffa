from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from stocksync.core.exceptions import ERPAPIError, ReauthorizationRequired
from stocksync.core.rate_gate import RateGate
from stocksync.core.utils import utcnow
from stocksync.services.erp.auth import ERPAuthManager
from tests.fixtures.tenants import seed_credential


def make_response(status_code, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload or {}
    response.text = text
    return response


@pytest.fixture
def auth_manager(credentials, settings):
    return ERPAuthManager(credentials, RateGate(0), settings)


@pytest.fixture
def mock_post(mocker):
    mock_client = mocker.patch("httpx.AsyncClient")
    post = AsyncMock()
    mock_client.return_value.__aenter__.return_value.post = post
    return post


@pytest.mark.asyncio
async def test_valid_token_is_returned_without_refresh(auth_manager, session_factory, mock_post):
    await seed_credential(session_factory, expires_at=utcnow() + timedelta(hours=1))

    token = await auth_manager.get_access_token("tenant-1", "accA")

    assert token == "token-accA"
    mock_post.assert_not_awaited()


@pytest.mark.asyncio
async def test_expiring_token_is_refreshed_and_stored(auth_manager, session_factory, credentials, mock_post):
    await seed_credential(session_factory, expires_at=utcnow() + timedelta(seconds=10))
    mock_post.return_value = make_response(200, {
        "access_token": "token-new", "refresh_token": "refresh-new", "expires_in": 21600,
    })

    token = await auth_manager.get_access_token("tenant-1", "accA")

    assert token == "token-new"
    _, kwargs = mock_post.call_args
    assert kwargs["data"] == {"grant_type": "refresh_token", "refresh_token": "refresh-accA"}
    stored = await credentials.get("tenant-1", "accA")
    assert stored.access_token == "token-new"
    assert stored.refresh_token == "refresh-new"
    assert stored.expires_at > utcnow() + timedelta(hours=5)


@pytest.mark.asyncio
async def test_rejected_token_forces_refresh(auth_manager, session_factory, mock_post):
    await seed_credential(session_factory, expires_at=utcnow() + timedelta(hours=1))
    mock_post.return_value = make_response(200, {"access_token": "token-new", "expires_in": 3600})

    token = await auth_manager.get_access_token("tenant-1", "accA", stale_token="token-accA")

    assert token == "token-new"


@pytest.mark.asyncio
async def test_token_already_replaced_by_another_caller_is_reused(auth_manager, session_factory, mock_post):
    await seed_credential(session_factory, expires_at=utcnow() + timedelta(hours=1))

    token = await auth_manager.get_access_token("tenant-1", "accA", stale_token="some-older-token")

    assert token == "token-accA"
    mock_post.assert_not_awaited()


@pytest.mark.asyncio
async def test_invalid_grant_deactivates_account(auth_manager, session_factory, credentials, mock_post):
    await seed_credential(session_factory)
    mock_post.return_value = make_response(
        400, text='{"error": {"type": "invalid_grant", "description": "Invalid refresh token"}}')

    with pytest.raises(ReauthorizationRequired) as exc_info:
        await auth_manager.get_access_token("tenant-1", "accA")

    assert exc_info.value.account_ref == "accA"
    assert "state=tenant-1%3AaccA" in exc_info.value.reauth_url
    stored = await credentials.get("tenant-1", "accA")
    assert stored.is_active is False
    assert stored.last_error == "Invalid refresh token"


@pytest.mark.asyncio
async def test_refresh_server_error_is_not_a_revocation(auth_manager, session_factory, credentials, mock_post):
    await seed_credential(session_factory)
    mock_post.return_value = make_response(500, text="internal error")

    with pytest.raises(ERPAPIError):
        await auth_manager.get_access_token("tenant-1", "accA")

    assert (await credentials.get("tenant-1", "accA")).is_active is True


@pytest.mark.asyncio
async def test_deactivated_account_requires_reauthorization(auth_manager, session_factory, mock_post):
    await seed_credential(session_factory, is_active=False)

    with pytest.raises(ReauthorizationRequired):
        await auth_manager.get_access_token("tenant-1", "accA")
    mock_post.assert_not_awaited()


@pytest.mark.asyncio
async def test_unknown_account_requires_reauthorization(auth_manager):
    with pytest.raises(ReauthorizationRequired) as exc_info:
        await auth_manager.get_access_token("tenant-1", "accZ")

    assert exc_info.value.reauth_url.startswith("https://erp.test/Api/v3/oauth/authorize?")
