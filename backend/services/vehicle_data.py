"""Fetches vehicle_data with a bounded number of retries."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from utils.tesla_api import TeslaClient

logger = logging.getLogger("vehicle_data")

MAX_ATTEMPTS = 3
RETRY_DELAY = 2

OFFLINE_STATUS_CODES = {408, 504}
OFFLINE_PHRASES = (
    "vehicle unavailable",
    "asleep",
    "offline",
    "timeout",
    "timed out",
    "could not wake",
)


@dataclass
class FetchResult:
    success: bool
    data: dict | None = None
    is_offline: bool = False
    error: str | None = None
    attempts: int = 0
    status_code: int | None = None


@dataclass
class VehicleSnapshot:
    odometer_miles: float | None
    latitude: float | None = None
    longitude: float | None = None
    location_name: str | None = None


def is_offline_error(status_code: int | None, text: str | None) -> bool:
    """True when a failure means the vehicle is unreachable rather than broken."""
    if status_code in OFFLINE_STATUS_CODES:
        return True
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in OFFLINE_PHRASES)


async def fetch_vehicle_data(
    client: TeslaClient,
    vehicle_id: str,
    access_token: str,
    max_attempts: int = MAX_ATTEMPTS,
    retry_delay: float = RETRY_DELAY,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> FetchResult:
    """Fetch vehicle_data, retrying any failure after a fixed delay.

    The outcome of the last attempt is returned as is. A 401 is returned
    at once since the same token will keep being rejected.
    """
    result = FetchResult(success=False)
    for attempt in range(1, max_attempts + 1):
        try:
            resp = await client.vehicle_data(vehicle_id, access_token)
            if resp.is_success:
                try:
                    payload = resp.json()
                except ValueError:
                    payload = None
                if isinstance(payload, dict):
                    data = payload.get("response") or {}
                    return FetchResult(success=True, data=data, attempts=attempt, status_code=resp.status_code)
                result = FetchResult(
                    success=False,
                    error=f"HTTP {resp.status_code}: invalid JSON body {resp.text[:200]}",
                    attempts=attempt,
                    status_code=resp.status_code,
                )
            else:
                text = resp.text
                result = FetchResult(
                    success=False,
                    is_offline=is_offline_error(resp.status_code, text),
                    error=f"HTTP {resp.status_code}: {text[:200]}",
                    attempts=attempt,
                    status_code=resp.status_code,
                )
        except httpx.HTTPError as e:
            message = str(e) or e.__class__.__name__
            result = FetchResult(
                success=False,
                is_offline=isinstance(e, httpx.TimeoutException) or is_offline_error(None, message),
                error=message,
                attempts=attempt,
            )

        kind = "offline" if result.is_offline else "error"
        logger.warning(
            f"[fetch] vehicle {vehicle_id} attempt {attempt}/{max_attempts} {kind}: {result.error}"
        )
        if result.status_code == 401:
            break
        if attempt < max_attempts:
            await sleep(retry_delay)

    return result


def _as_float(value: Any) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def extract_snapshot(data: dict) -> VehicleSnapshot:
    """Pull odometer and position out of a vehicle_data payload."""
    vehicle_state = data.get("vehicle_state") or {}
    drive_state = data.get("drive_state") or {}
    location_data = data.get("location_data") or {}

    latitude = _as_float(drive_state.get("latitude") or location_data.get("latitude"))
    longitude = _as_float(drive_state.get("longitude") or location_data.get("longitude"))

    location_name = location_data.get("name") or location_data.get("address")
    if not location_name and latitude is not None and longitude is not None:
        location_name = f"{latitude:.5f}, {longitude:.5f}"

    return VehicleSnapshot(
        odometer_miles=_as_float(vehicle_state.get("odometer")),
        latitude=latitude,
        longitude=longitude,
        location_name=location_name,
    )
