"""Pydantic schemas for mileage readings and their metadata."""

from datetime import date, datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class SyntheticMetadata(BaseModel):
    """Zero-distance bucket inserted to fill a day without a sync."""
    kind: Literal["synthetic"] = "synthetic"
    synthetic: Literal[True] = True
    reason: str = "gap_backfill"
    carried_odometer_km: int | None = None


class SyncedMetadata(BaseModel):
    """Bucket written from a live vehicle_data reading."""
    kind: Literal["synced"] = "synced"
    synthetic: Literal[False] = False
    latitude: float | None = None
    longitude: float | None = None
    location_name: str | None = None
    start_odometer_km: int | None = None
    end_odometer_km: int | None = None
    synced_at: datetime | None = None


BucketMetadata = Annotated[
    Union[SyntheticMetadata, SyncedMetadata],
    Field(discriminator="kind"),
]

_metadata_adapter = TypeAdapter(BucketMetadata)


def parse_metadata(raw: dict | None) -> SyntheticMetadata | SyncedMetadata | None:
    """Load stored metadata, accepting untagged blobs from older rows."""
    if not raw:
        return None
    if "kind" not in raw:
        raw = {**raw, "kind": "synthetic" if raw.get("synthetic") else "synced"}
    return _metadata_adapter.validate_python(raw)


def dump_metadata(metadata: SyntheticMetadata | SyncedMetadata) -> dict:
    return metadata.model_dump(mode="json")


class MileageReadingResponse(BaseModel):
    """Schema for a day bucket API response."""
    id: str
    vehicle_id: str
    reading_date: date
    odometer_km: int
    daily_km: int | None = None
    location_name: str | None = None
    metadata: SyntheticMetadata | SyncedMetadata | None = None

    @classmethod
    def from_model(cls, reading) -> "MileageReadingResponse":
        return cls(
            id=reading.id,
            vehicle_id=reading.vehicle_id,
            reading_date=reading.reading_date,
            odometer_km=reading.odometer_km,
            daily_km=reading.daily_km,
            location_name=reading.location_name,
            metadata=parse_metadata(reading.bucket_metadata),
        )
