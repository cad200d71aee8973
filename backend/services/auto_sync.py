"""
Auto-sync scheduler.

Runs as a background asyncio task during the application lifespan and
triggers a full multi-user sync every ``auto_sync_interval`` minutes while
``auto_sync_enabled`` is on. The interval is measured from the end of the
previous run.
"""

import asyncio
import logging
import time

from database.connection import async_session
from models.settings import DEFAULT_SETTINGS, get_setting
from services.errors import ConfigurationError
from services.pkce import purge_expired
from services.sync import sync_all_users

logger = logging.getLogger("auto_sync")

# How often the toggle and interval settings are re-read (seconds)
POLL_INTERVAL = 60

DEFAULT_INTERVAL = int(DEFAULT_SETTINGS["auto_sync_interval"])


async def _read_schedule(session_factory) -> tuple[bool, int]:
    async with session_factory() as session:
        enabled = await get_setting(session, "auto_sync_enabled") == "true"
        raw_interval = await get_setting(session, "auto_sync_interval")
    try:
        interval = int(raw_interval)
    except ValueError:
        interval = DEFAULT_INTERVAL
    if interval < 1:
        interval = DEFAULT_INTERVAL
    return enabled, interval


def _log_sync_result(success: bool, detail: str) -> None:
    if success:
        logger.info(f"✓ auto-sync: {detail}")
    else:
        logger.warning(f"✗ auto-sync: {detail}")


async def run_scheduled_sync(session_factory=async_session) -> None:
    """One scheduled pass: housekeeping, then sync all users."""
    async with session_factory() as session:
        purged = await purge_expired(session)
        if purged:
            logger.info(f"Purged {purged} expired PKCE state(s)")

    try:
        summary = await sync_all_users(session_factory)
        _log_sync_result(
            summary.users_failed == 0,
            f"{summary.synced} synced, {summary.offline} offline, {summary.failed} failed, "
            f"{summary.users_failed}/{summary.users_total} users failed",
        )
    except ConfigurationError as e:
        _log_sync_result(False, f"configuration error: {e}")


async def start_auto_sync_scheduler(session_factory=async_session) -> None:
    logger.info("Auto-sync scheduler started")
    await asyncio.sleep(5)

    last_run: float | None = None
    while True:
        try:
            enabled, interval = await _read_schedule(session_factory)
            if not enabled:
                await asyncio.sleep(POLL_INTERVAL)
                continue

            if last_run is not None:
                elapsed = time.monotonic() - last_run
                if elapsed < interval * 60:
                    await asyncio.sleep(min(POLL_INTERVAL, interval * 60 - elapsed))
                    continue

            await run_scheduled_sync(session_factory)
            last_run = time.monotonic()

        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Scheduler error: {e}")
            await asyncio.sleep(POLL_INTERVAL)
