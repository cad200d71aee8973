"""
Tesla account lifecycle: vehicle discovery, disconnect and partner
registration of this application's domain with the Fleet API.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models.pkce_state import PkceState
from models.vehicle import Vehicle
from services.errors import ConfigurationError
from services.event import record_audit_event
from services.token_refresh import ensure_valid
from services.vault import CredentialRepository
from utils.tesla_api import (
    TeslaApiError,
    TeslaClient,
    get_client_config,
    get_partner_domain,
    read_token_payload,
)

logger = logging.getLogger("tesla_account")

REGISTER_MAX_ATTEMPTS = 3
REGISTER_RETRY_DELAY = 2
PARTNER_SCOPES = "openid vehicle_device_data vehicle_cmds vehicle_charging_cmds"


# ---------------------------------------------------------------------------
# Vehicle discovery
# ---------------------------------------------------------------------------

def _vehicle_fields(remote: dict[str, Any]) -> dict[str, Any]:
    config = remote.get("vehicle_config") or {}
    year = config.get("year")
    return {
        "vin": remote.get("vin"),
        "display_name": remote.get("display_name"),
        "model": config.get("car_type"),
        "color": config.get("exterior_color"),
        "year": int(year) if year else None,
    }


async def discover_vehicles(
    session: AsyncSession,
    user_id: str,
    client: TeslaClient | None = None,
) -> list[Vehicle]:
    """Fetch the user's vehicles from Tesla and upsert them as active."""
    client = client or TeslaClient()
    access_token = await ensure_valid(CredentialRepository(session), user_id, client=client)
    remote_vehicles = await client.list_vehicles(access_token)
    logger.info(f"[vehicles] Found {len(remote_vehicles)} vehicle(s) for user {user_id}")

    vehicles = []
    for remote in remote_vehicles:
        tesla_vehicle_id = str(remote.get("id"))
        result = await session.execute(
            select(Vehicle).where(
                Vehicle.user_id == user_id,
                Vehicle.tesla_vehicle_id == tesla_vehicle_id,
            )
        )
        vehicle = result.scalar_one_or_none()
        if not vehicle:
            vehicle = Vehicle(user_id=user_id, tesla_vehicle_id=tesla_vehicle_id)
            session.add(vehicle)

        for key, value in _vehicle_fields(remote).items():
            if value is not None:
                setattr(vehicle, key, value)
        vehicle.is_active = True
        vehicles.append(vehicle)

    await session.commit()
    return vehicles


# ---------------------------------------------------------------------------
# Disconnect
# ---------------------------------------------------------------------------

async def disconnect_account(session: AsyncSession, user_id: str) -> None:
    """Forget the user's Tesla credentials. Readings and vehicles are kept."""
    await session.execute(
        update(Vehicle).where(Vehicle.user_id == user_id).values(is_active=False)
    )
    await session.execute(delete(PkceState).where(PkceState.user_id == user_id))
    # Commits the deactivation above as well
    await CredentialRepository(session).delete(user_id)

    await record_audit_event(
        session,
        "tesla.disconnected",
        "Tesla account disconnected",
        user_id=user_id,
        entity_id=user_id,
    )
    logger.info(f"[disconnect] Tesla account disconnected for user {user_id}")


# ---------------------------------------------------------------------------
# Partner registration
# ---------------------------------------------------------------------------

@dataclass
class RegistrationResult:
    success: bool
    attempts: int
    already_registered: bool = False
    status_code: int | None = None
    data: Any = None
    error: str | None = None


async def _partner_token(client: TeslaClient) -> str:
    client_id, client_secret = get_client_config()
    if not client_id or not client_secret:
        raise ConfigurationError("Tesla client credentials not configured")

    try:
        token_res = await client.token_request({
            "grant_type": "client_credentials",
            "client_id": client_id,
            "client_secret": client_secret,
            "scope": PARTNER_SCOPES,
            "audience": client.fleet_base_url,
        })
    except httpx.HTTPError as e:
        raise TeslaApiError("client_credentials", None, str(e) or e.__class__.__name__) from e
    if not token_res.is_success:
        raise TeslaApiError("client_credentials", token_res.status_code, token_res.text)

    payload = read_token_payload(token_res)
    if payload is None:
        raise TeslaApiError("client_credentials", token_res.status_code, "No access_token in response")
    return payload["access_token"]


async def register_partner_account(
    client: TeslaClient | None = None,
    domain: str | None = None,
    max_attempts: int = REGISTER_MAX_ATTEMPTS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RegistrationResult:
    """Register the partner domain in the Fleet API region.

    Transient failures (5xx, 429, transport) are retried with a delay that
    grows per attempt. An existing registration counts as success.
    """
    client = client or TeslaClient()
    domain = domain or get_partner_domain()
    partner_token = await _partner_token(client)

    last_error = None
    for attempt in range(1, max_attempts + 1):
        try:
            resp = await client.register_partner_account(partner_token, domain)
        except httpx.HTTPError as e:
            last_error = str(e) or e.__class__.__name__
            logger.warning(f"[register] Attempt {attempt}/{max_attempts} transport error: {last_error}")
            if attempt < max_attempts:
                await sleep(REGISTER_RETRY_DELAY * attempt)
            continue

        text = resp.text
        logger.info(f"[register] Attempt {attempt}/{max_attempts}: HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError:
            data = {"raw": text}

        if resp.is_success:
            logger.info(f"✓ register: {domain} registered")
            return RegistrationResult(True, attempt, status_code=resp.status_code, data=data)

        if resp.status_code == 409 or "already registered" in text or "Account already exists" in text:
            logger.info(f"✓ register: {domain} already registered")
            return RegistrationResult(
                True, attempt, already_registered=True, status_code=resp.status_code, data=data
            )

        last_error = f"Status {resp.status_code}: {text[:300]}"
        if resp.status_code >= 500 or resp.status_code == 429:
            if attempt < max_attempts:
                await sleep(REGISTER_RETRY_DELAY * attempt)
            continue

        logger.error(f"✗ register: permanent failure {last_error}")
        return RegistrationResult(
            False, attempt, status_code=resp.status_code, data=data, error=last_error
        )

    logger.error(f"✗ register: all {max_attempts} attempts failed ({last_error})")
    return RegistrationResult(False, max_attempts, error=last_error)
