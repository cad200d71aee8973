"""Tesla account connection routes.

Flow:
  1. Frontend calls POST /start -> gets auth_url + state
  2. User signs in at Tesla, which redirects to the frontend callback page
  3. Frontend posts code + state to POST /callback
  4. Backend exchanges the code, stores encrypted tokens and discovers vehicles
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_session
from routers.deps import get_current_user, get_tesla_client, require_cron_secret
from schemas.tesla import (
    RegistrationResponse,
    TeslaCallbackRequest,
    TeslaCallbackResponse,
    TeslaStartResponse,
    VehicleRefreshResponse,
)
from services import pkce
from services.errors import (
    ConfigurationError,
    CredentialError,
    NotConnected,
    OAuthStateError,
    TokenExchangeFailed,
)
from services.tesla_account import disconnect_account, discover_vehicles, register_partner_account
from utils.tesla_api import TeslaApiError, TeslaClient

router = APIRouter()
logger = logging.getLogger(__name__)


def _configuration_error(e: ConfigurationError) -> HTTPException:
    return HTTPException(
        status_code=500,
        detail={"error": "configuration_error", "message": str(e)},
    )


@router.post("/start", response_model=TeslaStartResponse)
async def start_tesla_auth(
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    client: TeslaClient = Depends(get_tesla_client),
):
    try:
        request = await pkce.begin(session, user_id, client=client)
    except ConfigurationError as e:
        raise _configuration_error(e)
    return TeslaStartResponse(auth_url=request.auth_url, state=request.state)


@router.post("/callback", response_model=TeslaCallbackResponse)
async def tesla_callback(
    body: TeslaCallbackRequest,
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    client: TeslaClient = Depends(get_tesla_client),
):
    try:
        await pkce.complete(session, user_id, body.code, body.state, client=client)
    except OAuthStateError as e:
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_state", "message": e.user_message},
        )
    except TokenExchangeFailed as e:
        raise HTTPException(
            status_code=502,
            detail={
                "error": "token_exchange_failed",
                "message": "Kon de Tesla-koppeling niet voltooien.",
                "details": e.response_text[:1000],
            },
        )
    except ConfigurationError as e:
        raise _configuration_error(e)

    # Vehicle discovery is best effort; the account is connected either way
    vehicles_count = None
    try:
        vehicles = await discover_vehicles(session, user_id, client=client)
        vehicles_count = len(vehicles)
    except Exception as e:
        await session.rollback()
        logger.warning(f"Vehicle discovery after connect failed for user {user_id}: {e}")

    return TeslaCallbackResponse(success=True, vehicles_count=vehicles_count)


@router.post("/disconnect")
async def disconnect_tesla(
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    await disconnect_account(session, user_id)
    return {"success": True, "message": "Tesla account successfully disconnected"}


@router.post("/vehicles/refresh", response_model=VehicleRefreshResponse)
async def refresh_vehicles(
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    client: TeslaClient = Depends(get_tesla_client),
):
    try:
        vehicles = await discover_vehicles(session, user_id, client=client)
    except NotConnected as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CredentialError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationError as e:
        raise _configuration_error(e)
    except TeslaApiError as e:
        raise HTTPException(status_code=502, detail=f"Failed to fetch vehicles: {e.response_text[:300]}")
    return VehicleRefreshResponse(success=True, vehicles_count=len(vehicles))


@router.post("/register", response_model=RegistrationResponse, dependencies=[Depends(require_cron_secret)])
async def register_partner(client: TeslaClient = Depends(get_tesla_client)):
    """Register this application's domain with the Fleet API region."""
    try:
        result = await register_partner_account(client)
    except ConfigurationError as e:
        raise _configuration_error(e)
    except TeslaApiError as e:
        raise HTTPException(
            status_code=502,
            detail={"error": "token_failed", "details": e.response_text[:1000]},
        )
    return RegistrationResponse(
        success=result.success,
        attempts=result.attempts,
        already_registered=result.already_registered,
        status_code=result.status_code,
        error=result.error,
    )
