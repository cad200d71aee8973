"""Resolves bearer tokens and the cron secret to callers."""

import logging
import os
import secrets
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.api_token import SessionToken
from services.errors import AuthenticationError, ConfigurationError
from utils.timeutil import as_utc, utcnow

logger = logging.getLogger("auth")


def parse_bearer(authorization: str | None) -> str:
    if not authorization:
        raise AuthenticationError("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Authorization header must be 'Bearer <token>'")
    return token.strip()


async def resolve_user(session: AsyncSession, token_str: str) -> str:
    """Return the user_id behind an active token and update its usage stats."""
    result = await session.execute(
        select(SessionToken)
        .where(SessionToken.token == token_str)
        .where(SessionToken.is_active == True)  # noqa: E712
    )
    token = result.scalar_one_or_none()
    if not token:
        logger.warning(f"Rejected bearer token {token_str[:8]}...")
        raise AuthenticationError("Invalid or inactive token")

    now = utcnow()
    if token.expires_at and as_utc(token.expires_at) <= now:
        logger.info(f"Expired session token for user {token.user_id}")
        raise AuthenticationError("Session expired")

    token.request_count = (token.request_count or 0) + 1
    token.last_used_at = now
    await session.commit()
    return token.user_id


async def issue_token(
    session: AsyncSession,
    user_id: str,
    label: str = "session",
    expires_at: datetime | None = None,
) -> SessionToken:
    """Create a bearer token for ``user_id``."""
    token = SessionToken(user_id=user_id, label=label, expires_at=expires_at)
    session.add(token)
    await session.commit()
    await session.refresh(token)
    return token


def verify_cron_secret(provided: str | None) -> None:
    expected = os.environ.get("CRON_SECRET")
    if not expected:
        raise ConfigurationError("CRON_SECRET not configured")
    if not provided or not secrets.compare_digest(provided, expected):
        raise AuthenticationError("Invalid cron secret")
