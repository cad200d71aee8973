from datetime import timedelta

import httpx
import pytest

from conftest import json_response, utc
from services.errors import ConfigurationError, RefreshFailed, TokenExpiredNoRefresh
from services.token_refresh import ensure_valid, force_refresh

TOKEN_PATH = "/oauth2/v3/token"
NOW = utc(2024, 3, 1)


async def test_valid_token_is_returned_without_refresh(repository, tesla_client, fake_tesla):
    await repository.store("user-1", "access", "refresh", NOW + timedelta(hours=1))

    assert await ensure_valid(repository, "user-1", client=tesla_client, now=NOW) == "access"
    assert fake_tesla.requests == []


async def test_token_within_buffer_is_refreshed(repository, tesla_client, fake_tesla):
    await repository.store("user-1", "old-access", "old-refresh", NOW + timedelta(minutes=4))
    fake_tesla.route("POST", TOKEN_PATH, json_response(200, {
        "access_token": "new-access",
        "refresh_token": "new-refresh",
        "expires_in": 3600,
    }))

    assert await ensure_valid(repository, "user-1", client=tesla_client, now=NOW) == "new-access"

    form = fake_tesla.form(fake_tesla.calls("POST", TOKEN_PATH)[0])
    assert form["grant_type"] == "refresh_token"
    assert form["refresh_token"] == "old-refresh"

    tokens = await repository.load("user-1")
    assert tokens.refresh_token == "new-refresh"
    assert tokens.expires_at == NOW + timedelta(hours=1)


async def test_refresh_keeps_old_refresh_token_when_omitted(repository, tesla_client, fake_tesla):
    await repository.store("user-1", "old-access", "old-refresh", NOW - timedelta(hours=1))
    fake_tesla.route("POST", TOKEN_PATH, json_response(200, {
        "access_token": "new-access",
        "expires_in": 3600,
    }))

    await ensure_valid(repository, "user-1", client=tesla_client, now=NOW)

    tokens = await repository.load("user-1")
    assert tokens.access_token == "new-access"
    assert tokens.refresh_token == "old-refresh"


async def test_expired_without_refresh_token(repository, tesla_client):
    await repository.store("user-1", "old-access", None, NOW - timedelta(minutes=1))
    with pytest.raises(TokenExpiredNoRefresh):
        await ensure_valid(repository, "user-1", client=tesla_client, now=NOW)


async def test_expired_without_client_credentials(repository, tesla_client, monkeypatch):
    await repository.store("user-1", "old-access", "old-refresh", NOW - timedelta(minutes=1))
    monkeypatch.delenv("TESLA_CLIENT_SECRET")
    with pytest.raises(ConfigurationError):
        await ensure_valid(repository, "user-1", client=tesla_client, now=NOW)


async def test_rejected_refresh_is_not_retried(repository, tesla_client, fake_tesla):
    await repository.store("user-1", "old-access", "old-refresh", NOW - timedelta(minutes=1))
    fake_tesla.route("POST", TOKEN_PATH, json_response(401, {"error": "login_required"}))

    with pytest.raises(RefreshFailed) as exc_info:
        await ensure_valid(repository, "user-1", client=tesla_client, now=NOW)

    assert exc_info.value.status_code == 401
    assert len(fake_tesla.calls("POST", TOKEN_PATH)) == 1
    assert (await repository.load("user-1")).access_token == "old-access"


async def test_unreachable_token_endpoint_is_a_refresh_failure(repository, tesla_client, fake_tesla):
    await repository.store("user-1", "old-access", "old-refresh", NOW - timedelta(minutes=1))
    fake_tesla.route("POST", TOKEN_PATH, httpx.ConnectError("connection refused"))

    with pytest.raises(RefreshFailed) as exc_info:
        await ensure_valid(repository, "user-1", client=tesla_client, now=NOW)

    assert exc_info.value.status_code is None
    assert (await repository.load("user-1")).access_token == "old-access"


@pytest.mark.parametrize("response", [
    httpx.Response(200, text="<html>maintenance</html>"),
    json_response(200, {"token_type": "Bearer"}),
])
async def test_success_without_access_token_is_a_refresh_failure(repository, tesla_client, fake_tesla, response):
    await repository.store("user-1", "old-access", "old-refresh", NOW - timedelta(minutes=1))
    fake_tesla.route("POST", TOKEN_PATH, response)

    with pytest.raises(RefreshFailed) as exc_info:
        await ensure_valid(repository, "user-1", client=tesla_client, now=NOW)

    assert exc_info.value.status_code == 200
    tokens = await repository.load("user-1")
    assert tokens.access_token == "old-access"
    assert tokens.refresh_token == "old-refresh"


async def test_invalid_expires_in_is_ignored(repository, tesla_client, fake_tesla):
    await repository.store("user-1", "old-access", "old-refresh", NOW - timedelta(minutes=1))
    fake_tesla.route("POST", TOKEN_PATH, json_response(200, {
        "access_token": "new-access",
        "expires_in": "soon",
    }))

    assert await ensure_valid(repository, "user-1", client=tesla_client, now=NOW) == "new-access"
    assert (await repository.load("user-1")).expires_at is None


async def test_force_refresh_ignores_stored_expiry(repository, tesla_client, fake_tesla):
    await repository.store("user-1", "old-access", "old-refresh", NOW + timedelta(hours=8))
    fake_tesla.route("POST", TOKEN_PATH, json_response(200, {
        "access_token": "new-access",
        "expires_in": 3600,
    }))

    assert await force_refresh(repository, "user-1", client=tesla_client, now=NOW) == "new-access"
    assert (await repository.load("user-1")).expires_at == NOW + timedelta(hours=1)
