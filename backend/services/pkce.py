"""Tesla OAuth 2.0 authorization code flow with PKCE.

Flow:
  1. ``begin`` persists a one-time state + code verifier and returns the
     Tesla authorize URL.
  2. Tesla redirects back with ``code`` and ``state``.
  3. ``complete`` consumes the state (delete first, so a replayed callback
     finds nothing), checks its age, exchanges the code and stores the
     resulting tokens in the vault.
"""

import hashlib
import logging
import secrets
from base64 import urlsafe_b64encode
from dataclasses import dataclass
from datetime import datetime, timedelta
from urllib.parse import urlencode

import httpx
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from models.pkce_state import PkceState
from services.errors import ConfigurationError, ExpiredState, InvalidState, TokenExchangeFailed
from services.event import record_audit_event
from services.vault import CredentialRepository
from utils.tesla_api import (
    OAUTH_SCOPES,
    TeslaClient,
    get_client_config,
    get_redirect_uri,
    read_token_payload,
)
from utils.timeutil import as_utc, utcnow

logger = logging.getLogger("pkce")

# Unreserved characters from RFC 7636
PKCE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"
STATE_LENGTH = 32
VERIFIER_LENGTH = 128
STATE_TTL = timedelta(hours=1)


@dataclass
class AuthorizationRequest:
    auth_url: str
    state: str


# ---------------------------------------------------------------------------
# PKCE helpers
# ---------------------------------------------------------------------------

def _random_string(length: int) -> str:
    return "".join(secrets.choice(PKCE_ALPHABET) for _ in range(length))


def generate_code_verifier() -> str:
    return _random_string(VERIFIER_LENGTH)


def generate_state() -> str:
    return _random_string(STATE_LENGTH)


def generate_code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


# ---------------------------------------------------------------------------
# Flow
# ---------------------------------------------------------------------------

async def begin(
    session: AsyncSession,
    user_id: str,
    client: TeslaClient | None = None,
) -> AuthorizationRequest:
    """Create a PKCE state for ``user_id`` and build the authorize URL."""
    client_id, _ = get_client_config()
    if not client_id:
        raise ConfigurationError("TESLA_CLIENT_ID not configured")
    client = client or TeslaClient()

    state = generate_state()
    code_verifier = generate_code_verifier()

    session.add(PkceState(nonce=state, code_verifier=code_verifier, user_id=user_id))
    await session.commit()

    params = {
        "client_id": client_id,
        "redirect_uri": get_redirect_uri(),
        "response_type": "code",
        "scope": " ".join(OAUTH_SCOPES),
        "state": state,
        "code_challenge": generate_code_challenge(code_verifier),
        "code_challenge_method": "S256",
    }
    auth_url = f"{client.authorize_url}?{urlencode(params)}"
    logger.info(f"[pkce] Started Tesla authorization for user {user_id} (state {state[:8]}...)")
    return AuthorizationRequest(auth_url=auth_url, state=state)


async def complete(
    session: AsyncSession,
    user_id: str,
    code: str,
    state: str,
    client: TeslaClient | None = None,
    repository: CredentialRepository | None = None,
    now: datetime | None = None,
) -> None:
    """Exchange an authorization code for tokens and store them."""
    result = await session.execute(
        select(PkceState).where(PkceState.nonce == state, PkceState.user_id == user_id)
    )
    pkce_state = result.scalar_one_or_none()
    if not pkce_state:
        logger.warning(f"[pkce] Unknown or replayed state {state[:8]}... for user {user_id}")
        raise InvalidState()

    code_verifier = pkce_state.code_verifier
    created_at = as_utc(pkce_state.created_at)

    # Consume before anything else can fail
    await session.execute(
        delete(PkceState).where(PkceState.nonce == state, PkceState.user_id == user_id)
    )
    await session.commit()

    now = now or utcnow()
    age = now - created_at
    if age > STATE_TTL:
        logger.warning(f"[pkce] Expired state for user {user_id} ({int(age.total_seconds())}s old)")
        raise ExpiredState(age.total_seconds())

    client_id, client_secret = get_client_config()
    if not client_id or not client_secret:
        raise ConfigurationError("Tesla client credentials not configured")
    client = client or TeslaClient()

    try:
        token_res = await client.token_request({
            "grant_type": "authorization_code",
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "code_verifier": code_verifier,
            "redirect_uri": get_redirect_uri(),
        })
    except httpx.HTTPError as e:
        message = str(e) or e.__class__.__name__
        logger.error(f"[pkce] Token endpoint unreachable for user {user_id}: {message}")
        raise TokenExchangeFailed(None, message) from e

    if not token_res.is_success:
        logger.error(f"[pkce] Token exchange failed for user {user_id}: {token_res.status_code}")
        raise TokenExchangeFailed(token_res.status_code, token_res.text)

    tokens = read_token_payload(token_res)
    if tokens is None:
        logger.error(f"[pkce] Token exchange for user {user_id} returned no usable tokens")
        raise TokenExchangeFailed(token_res.status_code, token_res.text)

    expires_at = None
    if tokens["expires_in"]:
        expires_at = now + timedelta(seconds=tokens["expires_in"])

    repository = repository or CredentialRepository(session)
    await repository.store(
        user_id,
        tokens["access_token"],
        tokens.get("refresh_token"),
        expires_at,
    )

    await record_audit_event(
        session,
        "tesla.connected",
        "Tesla account connected",
        level="success",
        user_id=user_id,
        entity_id=user_id,
    )
    logger.info(f"[pkce] Tesla account connected for user {user_id}")


async def purge_expired(session: AsyncSession, now: datetime | None = None) -> int:
    """Delete states older than the TTL. Returns the number removed."""
    cutoff = (now or utcnow()) - STATE_TTL
    # Stored naive in SQLite; compare in the same form
    result = await session.execute(
        delete(PkceState)
        .where(PkceState.created_at < cutoff.replace(tzinfo=None))
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount or 0
