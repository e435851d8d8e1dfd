"""
connectors — OAuth2 identity connectors.

Provides:
  • Provider option validation and entity compilation (entities.py)
  • Parallel profile enrichment from directory entities (aggregator.py)
  • The Azure AD connector (auth URL, code exchange, refresh, profile)
  • A registry and FastAPI routes to drive a login end to end

Each provider is a subclass of BaseConnector.
"""
