from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from conftest import json_response
from models.mileage import MileageReading
from models.pkce_state import PkceState
from models.vehicle import Vehicle
from services import pkce
from services.errors import NotConnected
from services.tesla_account import disconnect_account, discover_vehicles, register_partner_account
from utils.tesla_api import TeslaApiError
from utils.timeutil import utc_today, utcnow

TOKEN_PATH = "/oauth2/v3/token"
PARTNER_PATH = "/api/1/partner_accounts"


def _remote(vehicle_id: int, name: str, **config) -> dict:
    return {
        "id": vehicle_id,
        "vin": f"VIN{vehicle_id}",
        "display_name": name,
        "vehicle_config": config,
    }


async def _vehicles(session, user_id: str) -> dict[str, Vehicle]:
    result = await session.execute(
        select(Vehicle)
        .where(Vehicle.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return {v.tesla_vehicle_id: v for v in result.scalars().all()}


async def test_discover_vehicles_inserts_and_updates(db_session, repository, tesla_client, fake_tesla):
    await repository.store("user-1", "access", "refresh", utcnow() + timedelta(hours=8))
    db_session.add(Vehicle(user_id="user-1", tesla_vehicle_id="1001", display_name="Old", is_active=False))
    await db_session.commit()
    fake_tesla.route("GET", "/api/1/vehicles", json_response(200, {"response": [
        _remote(1001, "Rood", car_type="model3", exterior_color="Red", year="2021"),
        _remote(1002, "Blauw", car_type="modely"),
    ]}))

    vehicles = await discover_vehicles(db_session, "user-1", client=tesla_client)

    assert len(vehicles) == 2
    stored = await _vehicles(db_session, "user-1")
    assert set(stored) == {"1001", "1002"}
    assert stored["1001"].display_name == "Rood"
    assert stored["1001"].is_active
    assert stored["1001"].year == 2021
    assert stored["1001"].model == "model3"
    assert stored["1002"].vin == "VIN1002"


async def test_disconnect_keeps_history(db_session, repository, vehicle, tesla_client):
    await repository.store("user-1", "access", "refresh", utcnow() + timedelta(hours=8))
    db_session.add(MileageReading(
        vehicle_id=vehicle.id, user_id="user-1", reading_date=utc_today(), odometer_km=1000,
    ))
    await db_session.commit()
    await pkce.begin(db_session, "user-1", client=tesla_client)

    await disconnect_account(db_session, "user-1")

    with pytest.raises(NotConnected):
        await repository.load("user-1")
    assert not (await _vehicles(db_session, "user-1"))["1001"].is_active
    readings = (await db_session.execute(select(MileageReading))).scalars().all()
    assert len(readings) == 1
    states = (await db_session.execute(select(PkceState))).scalars().all()
    assert states == []


async def test_register_treats_conflict_as_success(tesla_client, fake_tesla, clock):
    fake_tesla.route("POST", TOKEN_PATH, json_response(200, {"access_token": "partner"}))
    fake_tesla.route("POST", PARTNER_PATH, json_response(409, {"error": "Account already exists"}))

    result = await register_partner_account(tesla_client, domain="kmtrack.test", sleep=clock.sleep)

    assert result.success
    assert result.already_registered
    assert result.attempts == 1
    form = fake_tesla.form(fake_tesla.calls("POST", TOKEN_PATH)[0])
    assert form["grant_type"] == "client_credentials"
    assert form["audience"] == "https://fleet.test"


async def test_register_retries_server_errors(tesla_client, fake_tesla, clock):
    fake_tesla.route("POST", TOKEN_PATH, json_response(200, {"access_token": "partner"}))
    fake_tesla.route(
        "POST", PARTNER_PATH,
        json_response(503, {"error": "unavailable"}),
        httpx.ConnectError("connection reset"),
        json_response(200, {"response": {"domain": "kmtrack.test"}}),
    )

    result = await register_partner_account(tesla_client, domain="kmtrack.test", sleep=clock.sleep)

    assert result.success
    assert result.attempts == 3
    assert clock.sleeps == [2, 4]
    request = fake_tesla.calls("POST", PARTNER_PATH)[0]
    assert request.headers["Authorization"] == "Bearer partner"


async def test_register_gives_up_on_client_error(tesla_client, fake_tesla, clock):
    fake_tesla.route("POST", TOKEN_PATH, json_response(200, {"access_token": "partner"}))
    fake_tesla.route("POST", PARTNER_PATH, json_response(400, {"error": "invalid domain"}))

    result = await register_partner_account(tesla_client, domain="kmtrack.test", sleep=clock.sleep)

    assert not result.success
    assert result.attempts == 1
    assert result.status_code == 400
    assert clock.sleeps == []


@pytest.mark.parametrize("response", [
    httpx.ConnectError("connection refused"),
    httpx.Response(200, text="<html>maintenance</html>"),
])
async def test_register_without_partner_token(tesla_client, fake_tesla, clock, response):
    fake_tesla.route("POST", TOKEN_PATH, response)

    with pytest.raises(TeslaApiError) as exc_info:
        await register_partner_account(tesla_client, domain="kmtrack.test", sleep=clock.sleep)

    assert exc_info.value.method == "client_credentials"
    assert fake_tesla.calls("POST", PARTNER_PATH) == []
