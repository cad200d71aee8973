"""Keeps a user's Tesla access token valid."""

import logging
from datetime import datetime, timedelta

import httpx

from services.errors import ConfigurationError, RefreshFailed, TokenExpiredNoRefresh
from services.event import record_audit_event
from services.vault import CredentialRepository, TeslaTokens
from utils.tesla_api import TeslaClient, get_client_config, read_token_payload
from utils.timeutil import utcnow

logger = logging.getLogger("token_refresh")

# Refresh tokens this long before they actually expire
EXPIRY_BUFFER = timedelta(minutes=5)


def needs_refresh(expires_at: datetime | None, now: datetime) -> bool:
    if expires_at is None:
        return False
    return expires_at - EXPIRY_BUFFER <= now


async def _refresh(
    repository: CredentialRepository,
    user_id: str,
    tokens: TeslaTokens,
    client: TeslaClient | None,
    now: datetime,
) -> str:
    if not tokens.refresh_token:
        raise TokenExpiredNoRefresh(user_id)

    client_id, client_secret = get_client_config()
    if not client_id or not client_secret:
        raise ConfigurationError("Tesla client credentials not configured")

    client = client or TeslaClient()
    try:
        token_res = await client.token_request({
            "grant_type": "refresh_token",
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": tokens.refresh_token,
        })
    except httpx.HTTPError as e:
        message = str(e) or e.__class__.__name__
        logger.warning(f"✗ refresh:{user_id[:8]}: token endpoint unreachable ({message})")
        raise RefreshFailed(user_id, None, message) from e

    if not token_res.is_success:
        logger.warning(f"✗ refresh:{user_id[:8]}: HTTP {token_res.status_code}")
        raise RefreshFailed(user_id, token_res.status_code, token_res.text)

    payload = read_token_payload(token_res)
    if payload is None:
        logger.warning(f"✗ refresh:{user_id[:8]}: no usable tokens in response")
        raise RefreshFailed(user_id, token_res.status_code, token_res.text)

    new_access_token = payload["access_token"]
    # Tesla may omit the refresh token; keep the old one then
    new_refresh_token = payload.get("refresh_token") or tokens.refresh_token
    expires_at = None
    if payload["expires_in"]:
        expires_at = now + timedelta(seconds=payload["expires_in"])

    await repository.store(user_id, new_access_token, new_refresh_token, expires_at)
    logger.info(f"✓ refresh:{user_id[:8]}: valid until {expires_at}")

    await record_audit_event(
        repository.session,
        "tesla.token_refreshed",
        "Tesla access token refreshed",
        user_id=user_id,
        entity_id=user_id,
        details={"expires_at": expires_at.isoformat() if expires_at else None},
    )
    return new_access_token


async def ensure_valid(
    repository: CredentialRepository,
    user_id: str,
    client: TeslaClient | None = None,
    now: datetime | None = None,
) -> str:
    """Return a usable access token, refreshing it first if it is (nearly) expired.

    Raises NotConnected, TokenExpiredNoRefresh, ConfigurationError or
    RefreshFailed. Nothing is retried here.
    """
    now = now or utcnow()
    tokens = await repository.load(user_id)

    if not needs_refresh(tokens.expires_at, now):
        return tokens.access_token

    logger.info(f"[refresh] Token for user {user_id} expires at {tokens.expires_at}, refreshing")
    return await _refresh(repository, user_id, tokens, client, now)


async def force_refresh(
    repository: CredentialRepository,
    user_id: str,
    client: TeslaClient | None = None,
    now: datetime | None = None,
) -> str:
    """Refresh regardless of the stored expiry, e.g. after Tesla answered 401."""
    tokens = await repository.load(user_id)
    logger.info(f"[refresh] Access token for user {user_id} rejected, refreshing early")
    return await _refresh(repository, user_id, tokens, client, now or utcnow())
