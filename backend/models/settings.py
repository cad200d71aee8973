"""Runtime settings database model."""

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, DateTime, Text, select
from sqlalchemy.orm import Mapped, mapped_column

from database.connection import Base

logger = logging.getLogger("settings")

# Default settings
DEFAULT_SETTINGS = {
    "auto_sync_enabled": "false",
    "auto_sync_interval": "360",
}


class AppSettings(Base):
    """Runtime-tunable settings stored as key-value pairs."""

    __tablename__ = "app_settings"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)
    value: Mapped[str] = mapped_column(Text, nullable=False, default="")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<AppSettings(key={self.key}, value={self.value[:50]})>"


async def get_setting(session, key: str) -> str:
    """Read a single setting, falling back to DEFAULT_SETTINGS."""
    default = DEFAULT_SETTINGS.get(key, "")
    try:
        result = await session.execute(select(AppSettings).where(AppSettings.key == key))
        setting = result.scalar_one_or_none()
        return setting.value if setting else default
    except Exception as e:
        logger.warning(f"Failed to read setting {key}: {e}")
        return default
