"""
BaseConnector — abstract interface for all OAuth2 identity connectors.

Every provider subclasses this and implements the endpoint properties plus
the code-exchange / refresh methods.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict


class BaseConnector(ABC):
    """Abstract base for all OAuth2 connectors."""

    protocol: str = "oauth2"
    use_params_auth: bool = False

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique slug, e.g. 'azure-ad'."""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    # ── Endpoints ───────────────────────────────────────────────────────

    @property
    @abstractmethod
    def authorization_endpoint(self) -> str:
        ...

    @property
    @abstractmethod
    def token_endpoint(self) -> str:
        ...

    @property
    def provider_params(self) -> Dict[str, str]:
        """Extra params sent on the authorization redirect."""
        return {}

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    def get_auth_url(self, state: str) -> str:
        """
        Build the provider's OAuth2 authorization URL.

        Parameters
        ----------
        state : str
            Opaque, signed state string (CSRF protection).
        """
        ...

    @abstractmethod
    async def handle_callback(self, code: str) -> Dict[str, Any]:
        """
        Exchange the authorization code for tokens and load the profile.

        Returns
        -------
        dict with keys:
            access_token, refresh_token, expires_in,
            account_id, account_label, profile (when one was loaded)
        """
        ...

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        """
        Refresh an expired access token.

        Returns
        -------
        dict with keys: access_token, expires_in, (optional) refresh_token
        """
        ...

    # ── Helpers ─────────────────────────────────────────────────────────

    def is_configured(self) -> bool:
        """True if client credentials are present."""
        return True

    def describe(self) -> Dict[str, Any]:
        """Provider descriptor consumed by the auth layer."""
        return {
            "protocol": self.protocol,
            "useParamsAuth": self.use_params_auth,
            "auth": self.authorization_endpoint,
            "token": self.token_endpoint,
            "providerParams": dict(self.provider_params),
        }
