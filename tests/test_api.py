"""HTTP surface tests against the FastAPI app with an in-memory database."""

from datetime import timedelta

import httpx
import pytest

from conftest import json_response
from database.connection import get_session
from main import app
from models.vehicle import Vehicle
from routers.deps import get_tesla_client
from routers.sync import get_session_factory
from services.auth import issue_token
from services.vault import CredentialRepository
from utils.timeutil import utcnow

CRON = {"X-Cron-Secret": "test-cron-secret"}


@pytest.fixture
async def api(session_factory, tesla_client):
    async def _session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_tesla_client] = lambda: tesla_client
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
async def auth_headers(db_session):
    token = await issue_token(db_session, "user-1")
    return {"Authorization": f"Bearer {token.token}"}


async def test_health(api):
    resp = await api.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


async def test_requests_without_bearer_are_rejected(api):
    assert (await api.post("/api/sync")).status_code == 401
    assert (await api.post("/api/tesla/start")).status_code == 401
    resp = await api.get("/api/vehicles", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401


async def test_cron_secret_is_required(api):
    assert (await api.post("/api/sync/all")).status_code == 401
    resp = await api.post("/api/sync/all", headers={"X-Cron-Secret": "wrong"})
    assert resp.status_code == 401


async def test_missing_cron_secret_config_is_a_server_error(api, monkeypatch):
    monkeypatch.delenv("CRON_SECRET")
    resp = await api.post("/api/sync/all", headers=CRON)
    assert resp.status_code == 500
    assert resp.json()["detail"]["error"] == "configuration_error"


async def test_start_returns_authorize_url(api, auth_headers):
    resp = await api.post("/api/tesla/start", headers=auth_headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["auth_url"].startswith("https://auth.test/oauth2/v3/authorize?")
    assert len(body["state"]) == 32


async def test_callback_with_unknown_state(api, auth_headers):
    resp = await api.post(
        "/api/tesla/callback", headers=auth_headers, json={"code": "abc", "state": "unknown"}
    )

    assert resp.status_code == 400
    assert resp.json()["detail"]["error"] == "invalid_state"


async def test_callback_with_unreachable_token_endpoint(api, auth_headers, fake_tesla):
    state = (await api.post("/api/tesla/start", headers=auth_headers)).json()["state"]
    fake_tesla.route("POST", "/oauth2/v3/token", httpx.ConnectError("connection refused"))

    resp = await api.post(
        "/api/tesla/callback", headers=auth_headers, json={"code": "abc", "state": state}
    )

    assert resp.status_code == 502
    assert resp.json()["detail"]["error"] == "token_exchange_failed"


async def test_callback_connects_and_discovers(api, auth_headers, fake_tesla):
    state = (await api.post("/api/tesla/start", headers=auth_headers)).json()["state"]
    fake_tesla.route("POST", "/oauth2/v3/token", json_response(200, {
        "access_token": "access", "refresh_token": "refresh", "expires_in": 28800,
    }))
    fake_tesla.route("GET", "/api/1/vehicles", json_response(200, {"response": [
        {"id": 1001, "vin": "VIN1001", "display_name": "Rood"},
    ]}))

    resp = await api.post(
        "/api/tesla/callback", headers=auth_headers, json={"code": "abc", "state": state}
    )

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "vehicles_count": 1}
    vehicles = (await api.get("/api/vehicles", headers=auth_headers)).json()
    assert [v["tesla_vehicle_id"] for v in vehicles] == ["1001"]


async def test_sync_for_caller(api, auth_headers, db_session, fake_tesla):
    await CredentialRepository(db_session).store("user-1", "access", "refresh", utcnow() + timedelta(hours=8))
    vehicle = Vehicle(user_id="user-1", tesla_vehicle_id="1001")
    db_session.add(vehicle)
    await db_session.commit()
    fake_tesla.vehicle_online("1001")
    fake_tesla.vehicle_odometer(1000.0)

    resp = await api.post("/api/sync", headers=auth_headers)

    assert resp.status_code == 200
    assert resp.json()["synced"] == 1
    assert "errors" not in resp.json()

    readings = (await api.get(f"/api/vehicles/{vehicle.id}/readings", headers=auth_headers)).json()
    assert readings[0]["odometer_km"] == 1609


async def test_sync_without_tesla_account(api, auth_headers):
    resp = await api.post("/api/sync", headers=auth_headers)
    assert resp.status_code == 404


async def test_sync_with_unreachable_token_endpoint(api, auth_headers, db_session, fake_tesla):
    await CredentialRepository(db_session).store("user-1", "access", "refresh", utcnow() - timedelta(minutes=1))
    fake_tesla.route("POST", "/oauth2/v3/token", httpx.ConnectError("connection refused"))

    resp = await api.post("/api/sync", headers=auth_headers)

    assert resp.status_code == 409


async def test_sync_all_with_no_users(api):
    resp = await api.post("/api/sync/all", headers=CRON)

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["users_total"] == 0


async def test_readings_of_foreign_vehicle_are_hidden(api, auth_headers, db_session):
    vehicle = Vehicle(user_id="someone-else", tesla_vehicle_id="2002")
    db_session.add(vehicle)
    await db_session.commit()

    resp = await api.get(f"/api/vehicles/{vehicle.id}/readings", headers=auth_headers)
    assert resp.status_code == 404


async def test_settings_roundtrip(api):
    resp = await api.put(
        "/api/settings/", headers=CRON,
        json=[{"key": "auto_sync_enabled", "value": "true"}],
    )
    assert resp.status_code == 200

    settings = (await api.get("/api/settings/", headers=CRON)).json()["settings"]
    assert settings["auto_sync_enabled"] == "true"
    assert settings["auto_sync_interval"] == "360"


async def test_settings_reject_unknown_keys(api):
    resp = await api.put(
        "/api/settings/", headers=CRON, json=[{"key": "proxy_url", "value": "http://example.test"}],
    )
    assert resp.status_code == 400


async def test_settings_are_not_open_to_tenants(api, auth_headers):
    resp = await api.put(
        "/api/settings/", headers=auth_headers,
        json=[{"key": "auto_sync_enabled", "value": "true"}],
    )
    assert resp.status_code == 401
    assert (await api.get("/api/settings/", headers=auth_headers)).status_code == 401

    settings = (await api.get("/api/settings/", headers=CRON)).json()["settings"]
    assert settings["auto_sync_enabled"] == "false"


async def test_expired_session_token_is_rejected(api, db_session):
    token = await issue_token(db_session, "user-1", expires_at=utcnow() - timedelta(minutes=1))

    resp = await api.get("/api/vehicles", headers={"Authorization": f"Bearer {token.token}"})

    assert resp.status_code == 401
    assert resp.json()["detail"] == "Session expired"
