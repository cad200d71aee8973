"""Per-vehicle sync status bookkeeping."""

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.sync_status import VehicleSyncStatus
from utils.timeutil import utcnow

logger = logging.getLogger("sync_status")


async def record_sync_result(
    session: AsyncSession,
    vehicle_id: str,
    success: bool,
    error: str | None = None,
    is_offline: bool = False,
    now: datetime | None = None,
) -> VehicleSyncStatus:
    """Upsert the status row of ``vehicle_id`` for one sync attempt."""
    now = now or utcnow()
    result = await session.execute(
        select(VehicleSyncStatus).where(VehicleSyncStatus.vehicle_id == vehicle_id)
    )
    status = result.scalar_one_or_none()
    if not status:
        status = VehicleSyncStatus(vehicle_id=vehicle_id, consecutive_failures=0)
        session.add(status)

    status.last_sync_attempt = now
    status.is_offline = is_offline
    if success:
        status.last_successful_sync = now
        status.consecutive_failures = 0
        status.last_error = None
    else:
        status.consecutive_failures = (status.consecutive_failures or 0) + 1
        status.last_error = error

    await session.commit()
    if not success:
        logger.debug(
            f"[status] vehicle {vehicle_id}: {status.consecutive_failures} consecutive failure(s)"
        )
    return status
