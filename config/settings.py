"""
Application settings loaded from environment variables.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # ── Azure AD connector ──────────────────────────────────────────────
    azure_ad_tenant: str = ""               # e.g. "contoso.onmicrosoft.com"
    azure_ad_client_id: str = ""
    azure_ad_client_secret: str = ""
    azure_ad_resource: str = "https://graph.windows.net/"
    azure_ad_graph_uri: str = "https://graph.windows.net/"
    azure_ad_provider_uri: str = "https://login.windows.net/"
    azure_ad_api_version: str = "1.6"
    azure_ad_request_me: bool = True

    # ── Profile enrichment ──────────────────────────────────────────────
    profile_max_concurrency: int = 16   # cap on parallel entity fetches per login
    http_timeout_seconds: float = 20.0

    # ── Security Secrets ──────────────────────────────────────────────────
    oauth_state_secret: str = "change-me-oauth-state"   # HMAC secret for OAuth CSRF state
    oauth_state_ttl_seconds: int = 600
    oauth_redirect_base: str = "http://localhost:8000"  # base URL for OAuth callbacks

    # ── Server ───────────────────────────────────────────────────────────
    port: int = 8000
    host: str = "0.0.0.0"
    debug: bool = False
    cors_origins: list = ["*"]

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
    }

    def azure_ad_options(self, tenant: Optional[str] = None) -> dict:
        """Raw provider options built from the environment."""
        return {
            "tenant": tenant if tenant is not None else self.azure_ad_tenant,
            "resource": self.azure_ad_resource,
            "graphUri": self.azure_ad_graph_uri,
            "providerUri": self.azure_ad_provider_uri,
            "apiVersion": self.azure_ad_api_version,
            "requestMe": self.azure_ad_request_me,
        }


config = Settings()
