"""Pydantic schemas for the vehicles API."""

from datetime import datetime
from pydantic import BaseModel


class SyncStatusResponse(BaseModel):
    last_sync_attempt: datetime | None = None
    last_successful_sync: datetime | None = None
    consecutive_failures: int = 0
    last_error: str | None = None
    is_offline: bool = False

    model_config = {"from_attributes": True}


class VehicleResponse(BaseModel):
    """Schema for vehicle API response."""
    id: str
    tesla_vehicle_id: str
    vin: str | None = None
    display_name: str | None = None
    model: str | None = None
    color: str | None = None
    year: int | None = None
    is_active: bool
    sync_status: SyncStatusResponse | None = None

    model_config = {"from_attributes": True}
