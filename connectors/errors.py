"""
Connector exceptions.

``ConfigError`` is raised synchronously while a connector is built.
``FetchError`` and ``HandlerError`` surface from a profile aggregation and
fail the whole login.
"""

from __future__ import annotations

from typing import Optional


class ConnectorError(Exception):
    """Base class for every connector failure."""


class ConfigError(ConnectorError):
    """Invalid or missing provider configuration."""


class FetchError(ConnectorError):
    """A single entity request failed (non-2xx, transport error or timeout)."""

    def __init__(self, path: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{path}: {message}")
        self.path = path
        self.status_code = status_code


class HandlerError(ConnectorError):
    """A profile handler raised while processing an entity response."""

    def __init__(self, path: str, cause: BaseException):
        super().__init__(f"{path}: handler failed: {cause}")
        self.path = path
        self.cause = cause
