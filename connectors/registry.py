"""
ConnectorRegistry — discovers and provides access to all connectors.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from config.settings import config
from connectors.azure_ad import AzureADConnector
from connectors.base import BaseConnector
from connectors.errors import ConfigError

logger = logging.getLogger(__name__)

# ── Connector factories — add new providers here ──────────────────────────
# A factory returns None when the provider's settings are absent.


def _azure_ad_from_config() -> Optional[BaseConnector]:
    if not config.azure_ad_tenant:
        return None
    return AzureADConnector()


_FACTORIES: Dict[str, Callable[[], Optional[BaseConnector]]] = {
    "azure-ad": _azure_ad_from_config,
}


class ConnectorRegistry:
    """Singleton registry for all OAuth connectors."""

    _instance: Optional["ConnectorRegistry"] = None

    def __new__(cls) -> "ConnectorRegistry":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._connectors = {}
            cls._instance._skipped = {}
            cls._instance._discovered = False
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Destroy singleton — only useful in test teardown."""
        cls._instance = None

    def discover(self) -> None:
        """Build and register every connector whose settings are complete."""
        if self._discovered:
            return
        for name, factory in _FACTORIES.items():
            try:
                conn = factory()
            except ConfigError as exc:
                self._skipped[name] = str(exc)
                logger.error("Connector %s has invalid configuration: %s", name, exc)
                continue
            if conn is None:
                self._skipped[name] = "settings not provided"
                logger.warning("Connector %s skipped — settings not provided", name)
                continue
            if conn.is_configured():
                self.register(conn)
            else:
                self._skipped[name] = "missing client_id/secret"
                logger.warning(
                    "Connector %s skipped — not configured (missing client_id/secret)",
                    name,
                )
        self._discovered = True

    def register(self, conn: BaseConnector) -> None:
        self._connectors[conn.provider_name] = conn
        logger.info("Connector registered: %s (%s)", conn.display_name, conn.provider_name)

    def get(self, provider: str) -> Optional[BaseConnector]:
        """Get a connector by provider name."""
        return self._connectors.get(provider)

    def list_providers(self) -> List[Dict[str, object]]:
        """Return info about all known connectors."""
        providers: List[Dict[str, object]] = [
            {
                "provider": c.provider_name,
                "display_name": c.display_name,
                "configured": True,
            }
            for c in self._connectors.values()
        ]
        providers.extend(
            {"provider": name, "display_name": name, "configured": False, "reason": reason}
            for name, reason in self._skipped.items()
        )
        return providers

    def list_configured(self) -> List[str]:
        """Return names of configured connectors."""
        return list(self._connectors.keys())
