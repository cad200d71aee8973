"""Wakes a sleeping vehicle and waits for it to come online."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx

from utils.tesla_api import TeslaApiError, TeslaClient

logger = logging.getLogger("vehicle_wake")

WAKE_TIMEOUT = 60
POLL_INTERVAL = 3


@dataclass
class WakeResult:
    online: bool
    attempts: int
    elapsed: float
    error: str | None = None
    status_code: int | None = None


async def wake_vehicle(
    client: TeslaClient,
    vehicle_id: str,
    access_token: str,
    timeout: float = WAKE_TIMEOUT,
    interval: float = POLL_INTERVAL,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> WakeResult:
    """Send a wake_up command, then poll the vehicle state until it is online.

    Poll failures are logged and polling continues until the deadline,
    except a 401, which ends the loop at once. A vehicle that never
    reports ``online`` is treated as offline.
    """
    started = clock()
    deadline = started + timeout

    try:
        await client.wake_up(vehicle_id, access_token)
        logger.info(f"[wake] wake_up sent to vehicle {vehicle_id}")
    except (TeslaApiError, httpx.HTTPError) as e:
        # It may already be waking from another trigger
        logger.warning(f"[wake] wake_up command failed for vehicle {vehicle_id}: {e}")

    attempts = 0
    last_state = None
    while True:
        attempts += 1
        try:
            vehicle = await client.get_vehicle(vehicle_id, access_token)
            last_state = vehicle.get("state")
            if last_state == "online":
                elapsed = clock() - started
                logger.info(f"[wake] Vehicle {vehicle_id} online after {attempts} polls ({elapsed:.1f}s)")
                return WakeResult(online=True, attempts=attempts, elapsed=elapsed)
            logger.debug(f"[wake] Vehicle {vehicle_id} state: {last_state}")
        except (TeslaApiError, httpx.HTTPError) as e:
            logger.warning(f"[wake] Poll {attempts} failed for vehicle {vehicle_id}: {e}")
            if isinstance(e, TeslaApiError) and e.status_code == 401:
                return WakeResult(
                    online=False,
                    attempts=attempts,
                    elapsed=clock() - started,
                    error="Access token rejected (HTTP 401)",
                    status_code=401,
                )

        remaining = deadline - clock()
        if remaining <= 0:
            break
        await sleep(min(interval, remaining))
        if clock() >= deadline:
            break

    elapsed = clock() - started
    logger.warning(f"[wake] Vehicle {vehicle_id} did not wake within {timeout:.0f}s (last state: {last_state})")
    return WakeResult(
        online=False,
        attempts=attempts,
        elapsed=elapsed,
        error=f"Vehicle did not wake within {timeout:.0f}s (state: {last_state or 'unknown'})",
    )
