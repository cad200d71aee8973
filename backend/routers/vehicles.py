"""Vehicle and mileage reading routes."""

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_session
from models.mileage import MileageReading
from models.vehicle import Vehicle
from routers.deps import get_current_user
from schemas.mileage import MileageReadingResponse
from schemas.vehicle import VehicleResponse

router = APIRouter()


@router.get("", response_model=list[VehicleResponse])
async def list_vehicles(
    include_inactive: bool = Query(False),
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    stmt = select(Vehicle).where(Vehicle.user_id == user_id)
    if not include_inactive:
        stmt = stmt.where(Vehicle.is_active == True)  # noqa: E712
    result = await session.execute(stmt.order_by(Vehicle.created_at))
    return result.scalars().all()


@router.get("/{vehicle_id}/readings", response_model=list[MileageReadingResponse])
async def list_readings(
    vehicle_id: str,
    start: date | None = Query(None),
    end: date | None = Query(None),
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    """Day buckets of one vehicle, oldest first."""
    vehicle = await session.get(Vehicle, vehicle_id)
    if not vehicle or vehicle.user_id != user_id:
        raise HTTPException(status_code=404, detail="Vehicle not found")

    stmt = select(MileageReading).where(MileageReading.vehicle_id == vehicle_id)
    if start:
        stmt = stmt.where(MileageReading.reading_date >= start)
    if end:
        stmt = stmt.where(MileageReading.reading_date <= end)
    result = await session.execute(stmt.order_by(MileageReading.reading_date))
    return [MileageReadingResponse.from_model(r) for r in result.scalars().all()]
