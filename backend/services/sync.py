"""
Multi-user Tesla mileage sync.

For every user holding Tesla credentials: make sure the access token is
valid, then for each active vehicle backfill missed days, wake the vehicle,
fetch vehicle_data and reconcile the odometer into day buckets.

Failures stay local: a vehicle failing never stops the user's other
vehicles, a user failing never stops the other users. Only configuration
errors abort the run.
"""

import asyncio
import logging
import os
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.vehicle import Vehicle
from services.errors import ConfigurationError, CredentialError
from services.event import record_audit_event
from services.reconciliation import backfill_gaps, get_last_reading, miles_to_km, reconcile
from services.sync_status import record_sync_result
from services.token_refresh import ensure_valid, force_refresh
from services.vault import CredentialRepository
from services.vehicle_data import FetchResult, extract_snapshot, fetch_vehicle_data
from services.vehicle_wake import WakeResult, wake_vehicle
from utils.tesla_api import TeslaClient, get_client_config
from utils.timeutil import utc_today, utcnow

logger = logging.getLogger("sync")

# Upper bound on error strings returned to the caller
MAX_ERRORS = 50

DEFAULT_MAX_CONCURRENT_USERS = 1


@dataclass
class SyncSummary:
    success: bool = True
    synced: int = 0
    failed: int = 0
    offline: int = 0
    users_total: int = 0
    users_failed: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0

    def add_error(self, message: str) -> None:
        if len(self.errors) < MAX_ERRORS:
            self.errors.append(message)

    def merge(self, other: "SyncSummary", prefix: str = "") -> None:
        self.synced += other.synced
        self.failed += other.failed
        self.offline += other.offline
        for error in other.errors:
            self.add_error(f"{prefix}{error}")

    def to_dict(self) -> dict:
        return asdict(self)


def get_max_concurrent_users() -> int:
    raw = os.environ.get("SYNC_MAX_CONCURRENT_USERS")
    try:
        value = int(raw) if raw else DEFAULT_MAX_CONCURRENT_USERS
    except ValueError:
        logger.warning(f"Invalid SYNC_MAX_CONCURRENT_USERS={raw!r}, using {DEFAULT_MAX_CONCURRENT_USERS}")
        value = DEFAULT_MAX_CONCURRENT_USERS
    return max(1, value)


def _require_client_config() -> None:
    client_id, client_secret = get_client_config()
    if not client_id or not client_secret:
        logger.error("[sync] Missing Tesla client credentials")
        raise ConfigurationError("Tesla client credentials not configured")


async def _active_vehicle_ids(session: AsyncSession, user_id: str) -> list[str]:
    result = await session.execute(
        select(Vehicle.id)
        .where(Vehicle.user_id == user_id, Vehicle.is_active == True)  # noqa: E712
        .order_by(Vehicle.created_at)
    )
    return list(result.scalars().all())


async def _record_failure(
    session: AsyncSession,
    vehicle_id: str,
    label: str,
    error: str,
    is_offline: bool,
    now: datetime,
) -> None:
    try:
        await record_sync_result(session, vehicle_id, False, error=error, is_offline=is_offline, now=now)
    except Exception as e:
        await session.rollback()
        logger.error(f"[sync] Could not record status for {label}: {e}")


class _UserToken:
    """A user's access token for one sync run, force-refreshed at most once."""

    def __init__(self, repository: CredentialRepository, user_id: str, client: TeslaClient, now):
        self.repository = repository
        self.user_id = user_id
        self.client = client
        self.now = now
        self.value: str | None = None
        self._renewed = False
        self._renew_error: Exception | None = None

    async def renew(self) -> str:
        if self._renew_error:
            raise self._renew_error
        if not self._renewed:
            self._renewed = True
            try:
                self.value = await force_refresh(
                    self.repository, self.user_id, client=self.client, now=self.now
                )
            except CredentialError as e:
                self._renew_error = e
                raise
        return self.value


async def _wake_and_fetch(
    client: TeslaClient,
    remote_id: str,
    access_token: str,
    sleep: Callable[[float], Awaitable[None]],
    clock: Callable[[], float],
) -> tuple[WakeResult, FetchResult | None]:
    wake = await wake_vehicle(client, remote_id, access_token, sleep=sleep, clock=clock)
    if not wake.online:
        return wake, None
    return wake, await fetch_vehicle_data(client, remote_id, access_token, sleep=sleep)


async def sync_vehicle(
    session: AsyncSession,
    vehicle: Vehicle,
    access_token: str,
    client: TeslaClient,
    summary: SyncSummary,
    now: datetime | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
    renew_token: Callable[[], Awaitable[str]] | None = None,
) -> str:
    """Sync one vehicle. Returns ``synced``, ``offline`` or ``failed``.

    When Tesla rejects the access token with a 401, ``renew_token`` is
    awaited for a fresh one and the wake and fetch are retried once.
    """
    now = now or utcnow()
    today = utc_today(now)
    # Captured up front: a rollback expires the instance
    vehicle_id, user_id, label = vehicle.id, vehicle.user_id, vehicle.label
    remote_id = vehicle.tesla_vehicle_id

    try:
        last_reading = await get_last_reading(session, vehicle_id)
        await backfill_gaps(session, vehicle, last_reading, today)

        wake, fetched = await _wake_and_fetch(client, remote_id, access_token, sleep, clock)
        if renew_token and (fetched or wake).status_code == 401:
            logger.info(f"[sync] {label}: access token rejected, refreshing and retrying once")
            access_token = await renew_token()
            wake, fetched = await _wake_and_fetch(client, remote_id, access_token, sleep, clock)

        if not wake.online:
            if wake.status_code == 401:
                summary.failed += 1
                summary.add_error(f"{label}: {wake.error}")
                await _record_failure(session, vehicle_id, label, wake.error, False, now)
                return "failed"
            summary.offline += 1
            summary.add_error(f"{label}: offline ({wake.error})")
            await _record_failure(session, vehicle_id, label, wake.error, True, now)
            return "offline"

        if not fetched.success:
            if fetched.is_offline:
                summary.offline += 1
                summary.add_error(f"{label}: offline ({fetched.error})")
                await _record_failure(session, vehicle_id, label, fetched.error, True, now)
                return "offline"
            summary.failed += 1
            summary.add_error(f"{label}: {fetched.error}")
            await _record_failure(session, vehicle_id, label, fetched.error, False, now)
            return "failed"

        snapshot = extract_snapshot(fetched.data)
        if not snapshot.odometer_miles:
            summary.failed += 1
            summary.add_error(f"{label}: no odometer data")
            await _record_failure(session, vehicle_id, label, "no odometer data", False, now)
            return "failed"

        odometer_km = miles_to_km(snapshot.odometer_miles)
        await reconcile(session, vehicle, odometer_km, today, snapshot=snapshot, now=now)
        await record_sync_result(session, vehicle_id, True, now=now)
        summary.synced += 1
        logger.info(f"✓ {label}: {odometer_km} km")
        return "synced"

    except ConfigurationError:
        raise
    except Exception as e:
        await session.rollback()
        message = str(e) or e.__class__.__name__
        logger.error(f"✗ {label}: {message}")
        summary.failed += 1
        summary.add_error(f"{label}: {message}")
        await _record_failure(session, vehicle_id, label, message, False, now)
        await record_audit_event(
            session,
            "sync.vehicle_failed",
            f"Sync failed for {label}",
            level="error",
            entity_type="vehicle",
            entity_id=vehicle_id,
            user_id=user_id,
            details={"error": message[:500]},
        )
        return "failed"


async def sync_user(
    session: AsyncSession,
    user_id: str,
    client: TeslaClient | None = None,
    now: datetime | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> SyncSummary:
    """Sync all active vehicles of one user, strictly one after another.

    Credential errors propagate; the caller decides whether they end a
    request or only skip this user.
    """
    _require_client_config()
    client = client or TeslaClient()
    summary = SyncSummary(users_total=1)
    started = time.monotonic()

    repository = CredentialRepository(session)
    token = _UserToken(repository, user_id, client, now)
    token.value = await ensure_valid(repository, user_id, client=client, now=now)

    vehicle_ids = await _active_vehicle_ids(session, user_id)
    if not vehicle_ids:
        logger.info(f"[sync] No active vehicles for user {user_id}")

    for vehicle_id in vehicle_ids:
        # Reloaded each time; a failed vehicle rolls back and expires the session
        vehicle = await session.get(Vehicle, vehicle_id, populate_existing=True)
        await sync_vehicle(
            session, vehicle, token.value, client, summary,
            now=now, sleep=sleep, clock=clock, renew_token=token.renew,
        )

    summary.duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        f"[sync] User {user_id}: {summary.synced} synced, {summary.offline} offline, "
        f"{summary.failed} failed"
    )
    await record_audit_event(
        session,
        "sync.completed",
        f"Synced {summary.synced} of {len(vehicle_ids)} vehicle(s)",
        level="success" if not summary.failed else "warning",
        user_id=user_id,
        entity_id=user_id,
        details={"synced": summary.synced, "offline": summary.offline, "failed": summary.failed},
    )
    return summary


async def sync_all_users(
    session_factory,
    client: TeslaClient | None = None,
    max_concurrent: int | None = None,
    now: datetime | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> SyncSummary:
    """Sync every user holding Tesla credentials.

    Users run through a bounded pool, each with its own session. A
    ConfigurationError cancels the remaining users and propagates.
    """
    logger.info("[sync-all] Starting multi-user Tesla sync")
    started = time.monotonic()
    _require_client_config()
    client = client or TeslaClient()

    async with session_factory() as session:
        user_ids = await CredentialRepository(session).list_connected_user_ids()

    summary = SyncSummary(users_total=len(user_ids))
    if not user_ids:
        logger.info("[sync-all] No users with Tesla credentials")
        return summary

    limit = max_concurrent or get_max_concurrent_users()
    semaphore = asyncio.Semaphore(limit)
    logger.info(f"[sync-all] {len(user_ids)} user(s), up to {limit} at a time")

    async def _run_user(user_id: str) -> None:
        async with semaphore:
            async with session_factory() as session:
                try:
                    result = await sync_user(
                        session, user_id, client=client, now=now, sleep=sleep, clock=clock
                    )
                    summary.merge(result, prefix=f"User {user_id}: ")
                except ConfigurationError:
                    raise
                except CredentialError as e:
                    summary.users_failed += 1
                    summary.add_error(f"User {user_id}: {e}")
                    logger.warning(f"✗ user:{user_id[:8]}: {e}")
                    await record_audit_event(
                        session,
                        "sync.user_failed",
                        "Tesla credentials unusable",
                        level="warning",
                        user_id=user_id,
                        entity_id=user_id,
                        details={"error": str(e)[:500]},
                    )
                except Exception as e:
                    await session.rollback()
                    summary.users_failed += 1
                    summary.add_error(f"User {user_id}: {e}")
                    logger.error(f"✗ user:{user_id[:8]}: {e}")

    tasks = [asyncio.create_task(_run_user(user_id)) for user_id in user_ids]
    try:
        await asyncio.gather(*tasks)
    except ConfigurationError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    summary.duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        f"[sync-all] Completed in {summary.duration_ms}ms: "
        f"{summary.users_total - summary.users_failed}/{summary.users_total} users, "
        f"{summary.synced} synced, {summary.offline} offline, {summary.failed} failed"
    )
    return summary
