"""User profile database model."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from database.connection import Base


class Profile(Base):
    """Profile of a user resolved by the external auth provider."""

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Tesla tokens (Legacy: now stored encrypted in TeslaCredential)
    # Read only for lazy migration, never written with new values
    tesla_access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    tesla_refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    tesla_token_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<Profile(user_id={self.user_id}, email={self.email})>"
