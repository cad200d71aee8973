"""Bearer session token database model."""

import secrets
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Boolean, DateTime, Integer
from sqlalchemy.orm import Mapped, mapped_column

from database.connection import Base


def generate_session_token() -> str:
    return f"kmt_{secrets.token_urlsafe(32)}"


class SessionToken(Base):
    """Bearer token handed out by the login provider, resolved to a user_id.

    ``expires_at`` is optional; tokens without it live until deactivated.
    """

    __tablename__ = "session_tokens"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    label: Mapped[str] = mapped_column(String(255), nullable=False, default="session")
    token: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True, index=True, default=generate_session_token
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    request_count: Mapped[int] = mapped_column(Integer, default=0)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<SessionToken(id={self.id}, user_id={self.user_id}, active={self.is_active})>"
