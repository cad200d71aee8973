"""Vehicle database model."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Integer, Boolean, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database.connection import Base


class Vehicle(Base):
    """A Tesla vehicle linked to a user."""

    __tablename__ = "vehicles"
    __table_args__ = (
        UniqueConstraint("user_id", "tesla_vehicle_id", name="uq_vehicles_user_tesla_vehicle"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    tesla_vehicle_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vin: Mapped[str | None] = mapped_column(String(17), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    model: Mapped[str | None] = mapped_column(String(50), nullable=True)
    color: Mapped[str | None] = mapped_column(String(50), nullable=True)
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Deactivated on disconnect so historical readings keep their vehicle
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    sync_status = relationship(
        "VehicleSyncStatus", back_populates="vehicle", uselist=False, lazy="selectin"
    )

    @property
    def label(self) -> str:
        """Human readable name used in error summaries."""
        return self.display_name or self.vin or self.tesla_vehicle_id

    def __repr__(self) -> str:
        return f"<Vehicle(id={self.id}, tesla_vehicle_id={self.tesla_vehicle_id}, active={self.is_active})>"
