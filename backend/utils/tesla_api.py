"""Tesla OAuth and Fleet API client.

Thin wrappers around the HTTP endpoints. Higher level behaviour (retries,
wake polling, token lifecycle) lives in ``services``.
"""

import json
import logging
import os
from typing import Any, Callable

import httpx

from utils.proxy import get_http_client, get_proxy_from_env

logger = logging.getLogger("tesla_api")

DEFAULT_AUTH_BASE_URL = "https://auth.tesla.com/oauth2/v3"
DEFAULT_FLEET_API_BASE_URL = "https://fleet-api.prd.eu.vn.cloud.tesla.com"
DEFAULT_REDIRECT_URI = "https://kmtrack.nl/oauth2callback"
DEFAULT_PARTNER_DOMAIN = "kmtrack.nl"

OAUTH_SCOPES = [
    "openid",
    "offline_access",
    "vehicle_device_data",
    "vehicle_cmds",
    "vehicle_charging_cmds",
]

# vehicle_data only returns GPS coordinates when location_data is requested
VEHICLE_DATA_ENDPOINTS = "vehicle_state;drive_state;location_data"


class TeslaApiError(Exception):
    """Structured exception for Tesla API errors."""
    def __init__(self, method: str, status_code: int | None, response_text: str):
        self.method = method
        self.status_code = status_code
        self.response_text = response_text
        try:
            self.response_body = json.loads(response_text)
        except ValueError:
            self.response_body = None
        super().__init__(f"{method} failed ({status_code}): {response_text[:300]}")


def get_client_config() -> tuple[str | None, str | None]:
    return os.environ.get("TESLA_CLIENT_ID"), os.environ.get("TESLA_CLIENT_SECRET")


def get_redirect_uri() -> str:
    return os.environ.get("TESLA_REDIRECT_URI") or DEFAULT_REDIRECT_URI


def get_auth_base_url() -> str:
    return (os.environ.get("TESLA_AUTH_BASE_URL") or DEFAULT_AUTH_BASE_URL).rstrip("/")


def get_fleet_api_base_url() -> str:
    return (os.environ.get("TESLA_FLEET_API_BASE_URL") or DEFAULT_FLEET_API_BASE_URL).rstrip("/")


def get_partner_domain() -> str:
    return os.environ.get("TESLA_PARTNER_DOMAIN") or DEFAULT_PARTNER_DOMAIN


def read_token_payload(resp: httpx.Response) -> dict | None:
    """Decode a successful grant response.

    Returns None when the body is not a JSON object carrying an
    ``access_token``. An unparseable ``expires_in`` is dropped.
    """
    try:
        payload = resp.json()
    except ValueError:
        return None
    if not isinstance(payload, dict) or not payload.get("access_token"):
        return None
    try:
        payload["expires_in"] = int(payload["expires_in"]) if payload.get("expires_in") else None
    except (TypeError, ValueError):
        logger.warning(f"[OAuth] Ignoring invalid expires_in {payload.get('expires_in')!r}")
        payload["expires_in"] = None
    return payload


class TeslaClient:
    """Issues requests against the Tesla auth server and Fleet API.

    ``http_client_factory`` must behave like ``utils.proxy.get_http_client``;
    extra keyword arguments (e.g. ``transport``) are passed through to it.
    ``proxy`` defaults to ``TESLA_HTTP_PROXY``.
    """

    def __init__(
        self,
        fleet_base_url: str | None = None,
        auth_base_url: str | None = None,
        http_client_factory: Callable[..., Any] = get_http_client,
        timeout: float = 30.0,
        proxy: str | None = None,
        **http_kwargs,
    ):
        self.fleet_base_url = (fleet_base_url or get_fleet_api_base_url()).rstrip("/")
        self.auth_base_url = (auth_base_url or get_auth_base_url()).rstrip("/")
        self._http_client_factory = http_client_factory
        self._http_kwargs = http_kwargs
        self.timeout = timeout
        self.proxy = proxy or get_proxy_from_env()

    @property
    def authorize_url(self) -> str:
        return f"{self.auth_base_url}/authorize"

    @property
    def token_url(self) -> str:
        return f"{self.auth_base_url}/token"

    def _client(self, timeout: float | None = None):
        return self._http_client_factory(
            timeout=timeout or self.timeout, proxy=self.proxy, **self._http_kwargs
        )

    # ------------------------------------------------------------------
    # OAuth token endpoint
    # ------------------------------------------------------------------

    async def token_request(self, form: dict[str, str]) -> httpx.Response:
        """POST a grant to the token endpoint and return the raw response."""
        async with self._client() as client:
            return await client.post(
                self.token_url,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )

    # ------------------------------------------------------------------
    # Fleet API
    # ------------------------------------------------------------------

    async def fleet_request(
        self,
        method: str,
        path: str,
        access_token: str,
        json_body: dict | None = None,
        params: dict | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        url = f"{self.fleet_base_url}{path}"
        async with self._client(timeout) as client:
            return await client.request(
                method,
                url,
                json=json_body,
                params=params,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json",
                },
            )

    async def _fleet_json(self, method: str, path: str, access_token: str, **kwargs) -> Any:
        resp = await self.fleet_request(method, path, access_token, **kwargs)
        if not resp.is_success:
            logger.warning(f"[Fleet] {method} {path} failed ({resp.status_code}): {resp.text[:200]}")
            raise TeslaApiError(f"{method} {path}", resp.status_code, resp.text)
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            logger.warning(f"[Fleet] {method} {path} returned a non-JSON body: {resp.text[:200]}")
            raise TeslaApiError(f"{method} {path}", resp.status_code, resp.text)
        return payload.get("response")

    async def list_vehicles(self, access_token: str) -> list[dict]:
        return await self._fleet_json("GET", "/api/1/vehicles", access_token) or []

    async def get_vehicle(self, vehicle_id: str, access_token: str) -> dict:
        return await self._fleet_json("GET", f"/api/1/vehicles/{vehicle_id}", access_token) or {}

    async def wake_up(self, vehicle_id: str, access_token: str) -> dict:
        return await self._fleet_json(
            "POST", f"/api/1/vehicles/{vehicle_id}/wake_up", access_token, json_body={}
        ) or {}

    async def vehicle_data(self, vehicle_id: str, access_token: str) -> httpx.Response:
        """Raw vehicle_data response; callers classify failures themselves."""
        return await self.fleet_request(
            "GET",
            f"/api/1/vehicles/{vehicle_id}/vehicle_data",
            access_token,
            params={"endpoints": VEHICLE_DATA_ENDPOINTS},
        )

    async def register_partner_account(self, partner_token: str, domain: str) -> httpx.Response:
        return await self.fleet_request(
            "POST", "/api/1/partner_accounts", partner_token, json_body={"domain": domain}
        )
