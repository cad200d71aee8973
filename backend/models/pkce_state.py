"""PKCE state database model."""

from datetime import datetime, timezone

from sqlalchemy import String, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from database.connection import Base


class PkceState(Base):
    """One-time OAuth state created when a user starts connecting Tesla."""

    __tablename__ = "oauth_pkce_state"

    nonce: Mapped[str] = mapped_column(String(64), primary_key=True)
    code_verifier: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<PkceState(nonce={self.nonce[:8]}..., user_id={self.user_id})>"
