"""Outbound HTTP client factory for Tesla traffic.

The optional egress proxy is deployment configuration (``TESLA_HTTP_PROXY``),
read once by each ``TeslaClient`` and passed in explicitly. It is never
changed at runtime.
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx

logger = logging.getLogger("http")


def get_proxy_from_env() -> str | None:
    url = (os.environ.get("TESLA_HTTP_PROXY") or "").strip().rstrip("/")
    return url or None


async def _mark_start(request: httpx.Request) -> None:
    request.extensions["kmtrack_started"] = time.monotonic()


async def _log_response(response: httpx.Response) -> None:
    request = response.request
    started = request.extensions.get("kmtrack_started")
    elapsed_ms = (time.monotonic() - started) * 1000 if started else 0
    # Path only: query strings and bodies may carry OAuth codes or tokens
    logger.debug(
        f"{request.method} {request.url.host}{request.url.path} -> "
        f"{response.status_code} ({elapsed_ms:.0f}ms)"
    )


@asynccontextmanager
async def get_http_client(
    timeout: float = 30.0,
    proxy: str | None = None,
    **kwargs,
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield an AsyncClient wired with request logging and an optional proxy.

    A caller-supplied ``transport`` takes precedence over the proxy.
    """
    extra_hooks = kwargs.pop("event_hooks", {})
    hooks = {
        "request": [_mark_start, *extra_hooks.get("request", [])],
        "response": [_log_response, *extra_hooks.get("response", [])],
    }

    if proxy and "transport" not in kwargs:
        kwargs["proxy"] = proxy

    async with httpx.AsyncClient(timeout=timeout, event_hooks=hooks, **kwargs) as client:
        yield client
