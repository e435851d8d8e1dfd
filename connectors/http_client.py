"""
httpx helpers shared by connectors.

``build_async_client`` centralises timeouts/headers; ``make_graph_fetch``
turns a client plus an access token into the authenticated fetch the
profile aggregator expects.
"""

from __future__ import annotations

from typing import Dict, Optional

import httpx

from config.settings import config
from connectors.aggregator import FetchFn, FetchResponse


def build_async_client(
    transport: Optional[httpx.AsyncBaseTransport] = None,
    *,
    timeout_seconds: Optional[float] = None,
) -> httpx.AsyncClient:
    """Create an ``httpx.AsyncClient`` with the configured timeout."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_seconds or config.http_timeout_seconds),
        headers={"Accept": "application/json"},
        transport=transport,
    )


def make_graph_fetch(client: httpx.AsyncClient, access_token: str) -> FetchFn:
    """Authenticated GET bound to one access token."""
    headers = {"Authorization": f"Bearer {access_token}"}

    async def fetch(uri: str, params: Dict[str, str]) -> FetchResponse:
        resp = await client.get(uri, params=params, headers=headers)
        return FetchResponse(status_code=resp.status_code, body=resp.content)

    return fetch
