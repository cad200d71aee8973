"""Per-vehicle sync status database model."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database.connection import Base


class VehicleSyncStatus(Base):
    """Outcome of the latest sync attempts for one vehicle."""

    __tablename__ = "vehicle_sync_status"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    vehicle_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("vehicles.id"), nullable=False, unique=True, index=True
    )
    last_sync_attempt: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_successful_sync: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_offline: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    vehicle = relationship("Vehicle", back_populates="sync_status")

    def __repr__(self) -> str:
        return f"<VehicleSyncStatus(vehicle_id={self.vehicle_id}, failures={self.consecutive_failures})>"
