"""
Connector API routes — provider listing, authorization URL, OAuth callback.

Route prefix: /api/v1/connectors
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import time
from base64 import b64decode, b64encode
from typing import Any, Dict

import httpx
from fastapi import APIRouter, HTTPException, Query, status

from config.settings import config
from connectors.errors import ConnectorError
from connectors.registry import ConnectorRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connectors"])

# ── State token helpers (CSRF protection) ──────────────────────────────


def _sign(raw: bytes) -> str:
    return hmac.new(config.oauth_state_secret.encode(), raw, hashlib.sha256).hexdigest()[:16]


def _create_state(provider: str) -> str:
    """Create an opaque state string encoding provider + nonce + expiry."""
    payload = json.dumps(
        {
            "provider": provider,
            "nonce": secrets.token_urlsafe(8),
            "exp": int(time.time()) + config.oauth_state_ttl_seconds,
        }
    )
    raw = payload.encode()
    return b64encode(raw).decode() + "." + _sign(raw)


def _verify_state(state: str, provider: str) -> None:
    """Verify the state token was issued by us for this provider. Raises on failure."""
    try:
        parts = state.split(".", 1)
        if len(parts) != 2:
            raise ValueError("bad format")
        raw = b64decode(parts[0])
        if not hmac.compare_digest(parts[1], _sign(raw)):
            raise ValueError("bad signature")
        payload = json.loads(raw)
        if payload.get("exp", 0) < time.time():
            raise ValueError("state expired")
        if payload.get("provider") != provider:
            raise ValueError("provider mismatch")
    except (ValueError, TypeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid or expired OAuth state: {exc}",
        )


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("/providers")
async def list_providers() -> list[dict]:
    """List all known connector providers and their configuration status."""
    registry = ConnectorRegistry()
    return registry.list_providers()


@router.get("/{provider}/auth-url")
async def get_auth_url(provider: str) -> Dict[str, str]:
    """Get the OAuth authorization URL for a provider."""
    registry = ConnectorRegistry()
    connector = registry.get(provider)
    if not connector:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Provider '{provider}' not found or not configured",
        )

    return {"auth_url": connector.get_auth_url(_create_state(provider)), "provider": provider}


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: str = Query(...),
    state: str = Query(...),
) -> Dict[str, Any]:
    """
    OAuth callback — the identity provider redirects here after consent.

    Exchanges the code, loads the enriched profile and returns the
    credentials.  A failed profile enrichment fails the login.
    """
    _verify_state(state, provider)

    registry = ConnectorRegistry()
    connector = registry.get(provider)
    if not connector:
        raise HTTPException(404, f"Provider '{provider}' not available")

    try:
        credentials = await connector.handle_callback(code)
    except ConnectorError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Failed obtaining {provider} user profile: {exc}",
        )
    except (httpx.HTTPError, ValueError) as exc:
        logger.error("OAuth callback failed for %s: %s", provider, exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Token exchange with {provider} failed",
        )

    logger.info(
        "OAuth login: provider=%s account=%s",
        provider,
        credentials.get("account_label") or "<unknown>",
    )
    return credentials
