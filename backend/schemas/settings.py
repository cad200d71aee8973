"""Pydantic schemas for the runtime settings API."""

from pydantic import BaseModel, field_validator


class SettingUpdate(BaseModel):
    """One key/value pair; unknown keys are rejected by the router."""
    key: str
    value: str

    @field_validator("key", "value")
    @classmethod
    def strip(cls, v: str) -> str:
        return v.strip()


class SettingsResponse(BaseModel):
    """Stored settings merged over the defaults."""
    settings: dict[str, str]
