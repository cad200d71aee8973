"""
Mileage reconciliation: turns odometer snapshots into day buckets.

Each sync run does three things for a vehicle:
  1. backfill a synthetic zero-distance bucket for every day missed since
     the last stored bucket,
  2. close yesterday's bucket with the distance driven since its snapshot,
  3. upsert today's snapshot with daily_km = 0, to be closed by tomorrow's run.

All writes are keyed on (vehicle_id, reading_date), so running the same day
twice never counts distance twice.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.mileage import MileageReading
from models.vehicle import Vehicle
from schemas.mileage import SyncedMetadata, SyntheticMetadata, dump_metadata, parse_metadata
from services.vehicle_data import VehicleSnapshot
from utils.timeutil import days_between, utcnow

logger = logging.getLogger("reconciliation")

KM_PER_MILE = 1.60934

_UPSERT_KEY = ["vehicle_id", "reading_date"]


@dataclass
class ReconciliationResult:
    today_reading: MileageReading
    closed_date: date | None = None
    daily_km: int = 0
    backfilled: list[date] = field(default_factory=list)


def miles_to_km(miles: float) -> int:
    """Convert miles to whole kilometres, rounding halves up."""
    return math.floor(miles * KM_PER_MILE + 0.5)


# ---------------------------------------------------------------------------
# Persistence helpers
# ---------------------------------------------------------------------------

def _insert_for(session: AsyncSession):
    if session.get_bind().dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert


def _columns(values: dict) -> dict:
    """Map attribute names to table columns (``bucket_metadata`` is stored as ``metadata``)."""
    columns = MileageReading.__mapper__.columns
    return {columns[key]: value for key, value in values.items()}


async def _upsert_reading(
    session: AsyncSession,
    values: dict,
    update: tuple[str, ...] | None,
) -> None:
    """INSERT a bucket; on (vehicle_id, reading_date) conflict update ``update`` or do nothing."""
    insert = _insert_for(session)
    stmt = insert(MileageReading.__table__).values(_columns(values))
    if update:
        columns = MileageReading.__mapper__.columns
        set_ = {columns[key]: stmt.excluded[columns[key].key] for key in update}
        set_[columns["updated_at"]] = utcnow()
        stmt = stmt.on_conflict_do_update(index_elements=_UPSERT_KEY, set_=set_)
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=_UPSERT_KEY)
    await session.execute(stmt)


async def get_last_reading(session: AsyncSession, vehicle_id: str) -> MileageReading | None:
    """Most recent day bucket of a vehicle."""
    result = await session.execute(
        select(MileageReading)
        .where(MileageReading.vehicle_id == vehicle_id)
        .order_by(MileageReading.reading_date.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_reading(session: AsyncSession, vehicle_id: str, day: date) -> MileageReading | None:
    result = await session.execute(
        select(MileageReading)
        .where(MileageReading.vehicle_id == vehicle_id, MileageReading.reading_date == day)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Reconciliation steps
# ---------------------------------------------------------------------------

async def backfill_gaps(
    session: AsyncSession,
    vehicle: Vehicle,
    last_reading: MileageReading | None,
    today: date,
) -> list[date]:
    """Insert synthetic buckets for the days between ``last_reading`` and ``today``.

    Commits immediately so the gap is closed even if the live fetch fails.
    Existing buckets are never overwritten.
    """
    if last_reading is None:
        return []

    missing = days_between(last_reading.reading_date, today)
    if not missing:
        return []

    carried = last_reading.odometer_km
    metadata = dump_metadata(SyntheticMetadata(carried_odometer_km=carried))
    for day in missing:
        await _upsert_reading(
            session,
            {
                "vehicle_id": vehicle.id,
                "user_id": vehicle.user_id,
                "reading_date": day,
                "odometer_km": carried,
                "daily_km": 0,
                "bucket_metadata": metadata,
            },
            update=None,
        )
    await session.commit()

    logger.info(
        f"[backfill] {vehicle.label}: {len(missing)} synthetic day(s) "
        f"{missing[0].isoformat()}..{missing[-1].isoformat()} at {carried} km"
    )
    return missing


async def _close_bucket(
    session: AsyncSession,
    baseline: MileageReading,
    odometer_km: int,
    snapshot: VehicleSnapshot | None,
    now: datetime,
) -> int:
    """Attribute the distance since ``baseline``'s snapshot to ``baseline``'s day."""
    previous = parse_metadata(baseline.bucket_metadata)
    # A bucket closed earlier today keeps its original starting point
    if isinstance(previous, SyncedMetadata) and previous.start_odometer_km is not None:
        start_km = previous.start_odometer_km
    else:
        start_km = baseline.odometer_km

    if not start_km:
        logger.info(f"[reconcile] No baseline odometer for {baseline.reading_date}, daily_km forced to 0")
        return 0

    daily_km = odometer_km - start_km
    if daily_km < 0:
        logger.warning(
            f"[reconcile] Odometer went backwards for vehicle {baseline.vehicle_id} "
            f"({start_km} -> {odometer_km} km), clamping to 0"
        )
        daily_km = 0
    if daily_km == 0:
        return 0

    baseline.daily_km = daily_km
    baseline.odometer_km = odometer_km
    baseline.bucket_metadata = dump_metadata(SyncedMetadata(
        latitude=snapshot.latitude if snapshot else None,
        longitude=snapshot.longitude if snapshot else None,
        location_name=snapshot.location_name if snapshot else None,
        start_odometer_km=start_km,
        end_odometer_km=odometer_km,
        synced_at=now,
    ))
    if snapshot and snapshot.location_name:
        baseline.location_name = snapshot.location_name
    await session.flush()
    return daily_km


async def reconcile(
    session: AsyncSession,
    vehicle: Vehicle,
    odometer_km: int,
    today: date,
    snapshot: VehicleSnapshot | None = None,
    now: datetime | None = None,
) -> ReconciliationResult:
    """Run backfill, yesterday closure and today's snapshot for one vehicle."""
    now = now or utcnow()
    try:
        last_reading = await get_last_reading(session, vehicle.id)
        backfilled = await backfill_gaps(session, vehicle, last_reading, today)

        yesterday = today - timedelta(days=1)
        baseline = await get_reading(session, vehicle.id, yesterday)
        if baseline is None and last_reading is not None and last_reading.reading_date < today:
            baseline = last_reading

        daily_km = 0
        closed_date = None
        if baseline is not None:
            daily_km = await _close_bucket(session, baseline, odometer_km, snapshot, now)
            if daily_km:
                closed_date = baseline.reading_date

        await _upsert_reading(
            session,
            {
                "vehicle_id": vehicle.id,
                "user_id": vehicle.user_id,
                "reading_date": today,
                "odometer_km": odometer_km,
                "daily_km": 0,
                "location_name": snapshot.location_name if snapshot else None,
                "bucket_metadata": dump_metadata(SyncedMetadata(
                    latitude=snapshot.latitude if snapshot else None,
                    longitude=snapshot.longitude if snapshot else None,
                    location_name=snapshot.location_name if snapshot else None,
                    synced_at=now,
                )),
            },
            update=("odometer_km", "daily_km", "location_name", "bucket_metadata"),
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    today_reading = await get_reading(session, vehicle.id, today)
    if closed_date:
        logger.info(f"[reconcile] {vehicle.label}: {closed_date.isoformat()} closed at {daily_km} km")
    logger.info(f"[reconcile] {vehicle.label}: {today.isoformat()} snapshot {odometer_km} km")
    return ReconciliationResult(
        today_reading=today_reading,
        closed_date=closed_date,
        daily_km=daily_km,
        backfilled=backfilled,
    )
