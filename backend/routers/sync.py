"""Sync trigger routes."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import async_session, get_session
from routers.deps import get_current_user, get_tesla_client, require_cron_secret
from schemas.sync import SyncResponse
from services.errors import ConfigurationError, CredentialError, NotConnected
from services.sync import sync_all_users, sync_user
from utils.tesla_api import TeslaClient

router = APIRouter()


def get_session_factory():
    return async_session


@router.post("", response_model=SyncResponse, response_model_exclude_none=True)
async def sync_current_user(
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    client: TeslaClient = Depends(get_tesla_client),
):
    """Sync the caller's vehicles."""
    try:
        summary = await sync_user(session, user_id, client=client)
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail={"error": "configuration_error", "message": str(e)})
    except NotConnected as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CredentialError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return SyncResponse.from_summary(summary)


@router.post(
    "/all",
    response_model=SyncResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(require_cron_secret)],
)
async def sync_everyone(
    session_factory=Depends(get_session_factory),
    client: TeslaClient = Depends(get_tesla_client),
):
    """Scheduled trigger: sync every connected user."""
    try:
        summary = await sync_all_users(session_factory, client=client)
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail={"error": "configuration_error", "message": str(e)})
    return SyncResponse.from_summary(summary)
