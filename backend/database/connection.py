"""Database connection and session management."""

import os
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase


# Data directory
DATA_DIR = Path(os.environ.get("KMTRACK_DATA_DIR", Path.home() / ".kmtrack"))

DATABASE_URL = os.environ.get("KMTRACK_DATABASE_URL") or f"sqlite+aiosqlite:///{DATA_DIR / 'kmtrack.db'}"

if not os.environ.get("KMTRACK_DATABASE_URL"):
    DATA_DIR.mkdir(parents=True, exist_ok=True)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


def import_models() -> None:
    """Import every model module so they register with Base.metadata."""
    from models.api_token import SessionToken  # noqa: F401
    from models.credential import TeslaCredential  # noqa: F401
    from models.event import AuditEvent  # noqa: F401
    from models.mileage import MileageReading  # noqa: F401
    from models.pkce_state import PkceState  # noqa: F401
    from models.profile import Profile  # noqa: F401
    from models.settings import AppSettings  # noqa: F401
    from models.sync_status import VehicleSyncStatus  # noqa: F401
    from models.vehicle import Vehicle  # noqa: F401


async def init_db():
    """Initialize the database and create all tables."""
    import_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Close the database engine."""
    await engine.dispose()


async def get_session() -> AsyncSession:
    """Dependency to get a database session."""
    async with async_session() as session:
        yield session
