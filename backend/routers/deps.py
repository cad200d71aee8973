"""Shared route dependencies."""

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_session
from services.auth import parse_bearer, resolve_user, verify_cron_secret
from services.errors import AuthenticationError, ConfigurationError
from utils.tesla_api import TeslaClient


async def get_current_user(
    authorization: str | None = Header(None),
    session: AsyncSession = Depends(get_session),
) -> str:
    """Resolve the bearer token to a user_id or fail with 401."""
    try:
        token = parse_bearer(authorization)
        return await resolve_user(session, token)
    except AuthenticationError as e:
        raise HTTPException(status_code=401, detail=str(e))


async def require_cron_secret(x_cron_secret: str | None = Header(None)) -> None:
    try:
        verify_cron_secret(x_cron_secret)
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail={"error": "configuration_error", "message": str(e)})
    except AuthenticationError as e:
        raise HTTPException(status_code=401, detail=str(e))


def get_tesla_client() -> TeslaClient:
    """Overridden in tests to inject a mock transport."""
    return TeslaClient()
