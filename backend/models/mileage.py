"""Mileage reading (day bucket) database model."""

import uuid
from datetime import date, datetime, timezone

from sqlalchemy import String, Integer, Date, DateTime, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from database.connection import Base


class MileageReading(Base):
    """Odometer state and attributed distance of one vehicle for one day.

    ``odometer_km`` is the odometer at the end of the bucket. ``daily_km`` is
    the distance driven that day, filled in by the following day's sync.
    """

    __tablename__ = "mileage_readings"
    __table_args__ = (
        UniqueConstraint("vehicle_id", "reading_date", name="uq_mileage_readings_vehicle_date"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    vehicle_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("vehicles.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    reading_date: Mapped[date] = mapped_column(Date, nullable=False)
    odometer_km: Mapped[int] = mapped_column(Integer, nullable=False)
    daily_km: Mapped[int | None] = mapped_column(Integer, nullable=True, default=0)
    location_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Serialized BucketMetadata, see schemas.mileage
    bucket_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return (
            f"<MileageReading(vehicle_id={self.vehicle_id}, date={self.reading_date}, "
            f"odometer_km={self.odometer_km}, daily_km={self.daily_km})>"
        )
