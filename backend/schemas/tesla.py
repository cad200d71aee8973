"""Pydantic schemas for the Tesla connection API."""

from pydantic import BaseModel


class TeslaStartResponse(BaseModel):
    auth_url: str
    state: str


class TeslaCallbackRequest(BaseModel):
    code: str
    state: str


class TeslaCallbackResponse(BaseModel):
    success: bool
    vehicles_count: int | None = None


class VehicleRefreshResponse(BaseModel):
    success: bool
    vehicles_count: int


class RegistrationResponse(BaseModel):
    success: bool
    attempts: int
    already_registered: bool = False
    status_code: int | None = None
    error: str | None = None
