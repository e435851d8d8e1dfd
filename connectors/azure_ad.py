"""
AzureADConnector — OAuth2 (v1 endpoints) for Azure Active Directory.

Besides the code exchange, the connector enriches the user profile from the
directory Graph API: every configured entity (plus ``/me`` unless disabled)
is fetched in parallel and merged into one profile by ``ProfileAggregator``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import urlencode

import httpx

from config.settings import config
from connectors.aggregator import FetchFn, ProfileAggregator
from connectors.base import BaseConnector
from connectors.entities import Profile, ProviderSettings, resolve_settings
from connectors.errors import ConnectorError
from connectors.http_client import build_async_client, make_graph_fetch

logger = logging.getLogger(__name__)

# callback(None) on success, callback(error) on failure
ProfileCallback = Callable[[Optional[ConnectorError]], Any]


class AzureADConnector(BaseConnector):
    """OAuth2 connector for Azure AD with Graph profile enrichment."""

    protocol = "oauth2"
    use_params_auth = True

    def __init__(
        self,
        options: Optional[Mapping[str, Any]] = None,
        *,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        aggregator: Optional[ProfileAggregator] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Parameters
        ----------
        options       : raw provider options (tenant, entities, …).  Falls
                        back to the ``AZURE_AD_*`` settings when omitted.
        aggregator    : profile aggregator; one capped at
                        ``profile_max_concurrency`` by default.
        transport     : optional httpx transport (tests use MockTransport).

        Raises ConfigError when the options are invalid.
        """
        self.settings: ProviderSettings = resolve_settings(
            options if options is not None else config.azure_ad_options()
        )
        self._client_id = client_id if client_id is not None else config.azure_ad_client_id
        self._client_secret = (
            client_secret if client_secret is not None else config.azure_ad_client_secret
        )
        self._aggregator = aggregator or ProfileAggregator(config.profile_max_concurrency)
        self._transport = transport

    @property
    def provider_name(self) -> str:
        return "azure-ad"

    @property
    def display_name(self) -> str:
        return "Azure AD"

    # ── Endpoints ───────────────────────────────────────────────────────

    @property
    def authorization_endpoint(self) -> str:
        return f"{self.settings.provider_base}/oauth2/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"{self.settings.provider_base}/oauth2/token"

    @property
    def provider_params(self) -> Dict[str, str]:
        return {"resource": self.settings.resource}

    def is_configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    def _redirect_uri(self) -> str:
        return f"{config.oauth_redirect_base}/api/v1/connectors/{self.provider_name}/callback"

    # ── OAuth flow ──────────────────────────────────────────────────────

    def get_auth_url(self, state: str) -> str:
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri(),
            "response_type": "code",
            "state": state,
            **self.provider_params,
        }
        return f"{self.authorization_endpoint}?{urlencode(params)}"

    async def handle_callback(self, code: str) -> Dict[str, Any]:
        """Exchange auth code for tokens, then load the directory profile."""
        async with build_async_client(self._transport) as client:
            token_data = await self._token_request(
                client,
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self._redirect_uri(),
                },
            )

            credentials: Dict[str, Any] = {
                "provider": self.provider_name,
                "access_token": token_data["access_token"],
                "refresh_token": token_data.get("refresh_token"),
                "expires_in": int(token_data.get("expires_in", 3600)),
            }

            outcome: List[Optional[ConnectorError]] = []
            await self.profile(
                credentials,
                token_data,
                make_graph_fetch(client, token_data["access_token"]),
                outcome.append,
            )

        if outcome[0] is not None:
            logger.warning("Azure AD login rejected — profile enrichment failed: %s", outcome[0])
            raise outcome[0]

        profile = credentials.get("profile") or {}
        credentials["account_id"] = profile.get("id") or ""
        credentials["account_label"] = profile.get("username") or profile.get("email") or ""
        return credentials

    async def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        """Use refresh token to get a new access token."""
        async with build_async_client(self._transport) as client:
            data = await self._token_request(
                client,
                {"grant_type": "refresh_token", "refresh_token": refresh_token},
            )

        return {
            "access_token": data["access_token"],
            "expires_in": int(data.get("expires_in", 3600)),
            "refresh_token": data.get("refresh_token"),
        }

    async def _token_request(
        self, client: httpx.AsyncClient, form: Dict[str, str]
    ) -> Dict[str, Any]:
        # Params auth: client credentials travel in the form body.
        resp = await client.post(
            self.token_endpoint,
            data={
                **form,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                **self.provider_params,
            },
        )
        resp.raise_for_status()
        data = resp.json()

        if "error" in data:
            raise ValueError(
                f"Azure AD OAuth error: {data.get('error_description', data['error'])}"
            )
        if not data.get("access_token"):
            raise ValueError("Azure AD OAuth error: token response has no access_token")
        return data

    # ── Profile enrichment ──────────────────────────────────────────────

    async def profile(
        self,
        credentials: Dict[str, Any],
        params: Mapping[str, Any],
        fetch: FetchFn,
        callback: ProfileCallback,
    ) -> None:
        """
        Fetch every configured entity and install the merged profile.

        ``params`` is the raw token response; entity requests only need the
        authenticated ``fetch``.  On success ``credentials["profile"]`` is set
        (when at least one entity is configured) and ``callback(None)`` runs;
        on failure ``callback(error)`` runs and credentials stay untouched.
        """
        entities = self.settings.entities

        def _complete(result: Any) -> None:
            if isinstance(result, ConnectorError):
                callback(result)
                return
            if entities:
                credentials["profile"] = result
            callback(None)

        logger.debug(
            "Loading Azure AD profile for tenant %s (token params: %s)",
            self.settings.tenant,
            sorted(params),
        )
        await self._aggregator.run(
            entities,
            fetch,
            self.settings.resource_uri,
            self.settings.query_params,
            _complete,
            params_for=self.settings.params_for,
        )

    async def load_profile(self, fetch: FetchFn) -> Profile:
        """Coroutine variant: return the merged profile or raise."""
        return await self._aggregator.aggregate(
            self.settings.entities,
            fetch,
            self.settings.resource_uri,
            self.settings.query_params,
            params_for=self.settings.params_for,
        )
