"""Settings management API routes.

Settings are deployment wide (the auto-sync schedule), so they are guarded
by the operator secret rather than a user's bearer token.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_session
from models.settings import AppSettings, DEFAULT_SETTINGS
from routers.deps import require_cron_secret
from schemas.settings import SettingUpdate, SettingsResponse

router = APIRouter(dependencies=[Depends(require_cron_secret)])


@router.get("/", response_model=SettingsResponse)
async def get_all_settings(
    session: AsyncSession = Depends(get_session),
):
    """Get all settings, merging with defaults."""
    result = await session.execute(select(AppSettings))
    db_settings = {s.key: s.value for s in result.scalars().all() if s.key in DEFAULT_SETTINGS}

    # Merge: DB values override defaults
    merged = {**DEFAULT_SETTINGS, **db_settings}
    return SettingsResponse(settings=merged)


@router.put("/")
async def update_settings(
    updates: list[SettingUpdate],
    session: AsyncSession = Depends(get_session),
):
    """Update one or more settings."""
    for update in updates:
        if update.key not in DEFAULT_SETTINGS:
            raise HTTPException(status_code=400, detail=f"Unknown setting: {update.key}")
        if update.key == "auto_sync_enabled" and update.value not in ("true", "false"):
            raise HTTPException(status_code=400, detail="auto_sync_enabled must be 'true' or 'false'")
        if update.key == "auto_sync_interval" and (not update.value.isdigit() or int(update.value) < 1):
            raise HTTPException(status_code=400, detail="auto_sync_interval must be a positive number of minutes")

        result = await session.execute(
            select(AppSettings).where(AppSettings.key == update.key)
        )
        setting = result.scalar_one_or_none()

        if setting:
            setting.value = update.value
        else:
            session.add(AppSettings(key=update.key, value=update.value))

    await session.commit()
    return {"status": "ok"}
