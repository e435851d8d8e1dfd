"""
Azure AD provider options — validation, defaults and entity compilation.

Raw options (camelCase or snake_case keys) are validated once when the
connector is built and compiled into an immutable ``ProviderSettings``.
Every declared entity ends up as a uniform ``EntitySpec`` carrying a
``handler(profile, data)`` callable, so the aggregator never needs to know
whether the caller supplied a property name or a custom function.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from connectors.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_GRAPH_URI = "https://graph.windows.net/"
DEFAULT_PROVIDER_URI = "https://login.windows.net/"
DEFAULT_API_VERSION = "1.6"

SELF_PATH = "/me"

Profile = Dict[str, Any]
ProfileHandler = Callable[[Profile, Any], None]


# ═══════════════════════════════════════════════════════════════════════════════
# Raw options
# ═══════════════════════════════════════════════════════════════════════════════


class EntityOptions(BaseModel):
    """One entity as declared by the caller."""

    model_config = ConfigDict(extra="forbid")

    path: str = Field(min_length=1)
    property: Optional[str] = None
    handler: Optional[Callable[..., Any]] = None
    params: Dict[str, Union[bool, int, float, str]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _require_property_or_handler(self) -> "EntityOptions":
        if self.handler is None and not self.property:
            raise ValueError("entity requires property or handler")
        return self


class ProviderOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    tenant: str = Field(min_length=1)
    resource: str = DEFAULT_GRAPH_URI
    graph_uri: str = Field(DEFAULT_GRAPH_URI, alias="graphUri")
    provider_uri: str = Field(DEFAULT_PROVIDER_URI, alias="providerUri")
    api_version: str = Field(DEFAULT_API_VERSION, alias="apiVersion")
    request_me: bool = Field(True, alias="requestMe")
    entities: List[EntityOptions] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════════
# Resolved settings
# ═══════════════════════════════════════════════════════════════════════════════


class EntitySpec(BaseModel):
    """A compiled entity: where to fetch and how to fold the result in."""

    model_config = ConfigDict(frozen=True)

    path: str
    handler: Callable[..., Any]
    params: Dict[str, str] = Field(default_factory=dict)


class ProviderSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    resource: str
    graph_uri: str
    provider_uri: str
    api_version: str
    tenant: str
    request_me: bool
    entities: Tuple[EntitySpec, ...] = ()

    @property
    def resource_uri(self) -> str:
        """Graph root for this tenant; entity paths are appended to it."""
        return _join(self.graph_uri, self.tenant)

    @property
    def provider_base(self) -> str:
        """Login-service root for this tenant."""
        return _join(self.provider_uri, self.tenant)

    @property
    def query_params(self) -> Dict[str, str]:
        return {"api-version": self.api_version}

    def params_for(self, entity: EntitySpec) -> Dict[str, str]:
        """Common query params overlaid with the entity's own params."""
        return {**self.query_params, **entity.params}


# ═══════════════════════════════════════════════════════════════════════════════
# Handlers
# ═══════════════════════════════════════════════════════════════════════════════


def map_self_profile(profile: Profile, data: Mapping[str, Any]) -> None:
    """Fold the ``/me`` payload into the standard profile fields."""
    profile["id"] = data.get("objectId")
    profile["username"] = data.get("userPrincipalName")
    profile["displayName"] = data.get("displayName")
    profile["email"] = data.get("mail")
    profile["name"] = {
        "first": data.get("givenName"),
        "last": data.get("surname"),
    }
    profile["raw"] = data


def assign_property(key: str) -> ProfileHandler:
    """Handler that stores the whole payload under ``profile[key]``."""

    def _assign(profile: Profile, data: Any) -> None:
        profile[key] = data

    _assign.__name__ = f"assign_{key}"
    return _assign


# ═══════════════════════════════════════════════════════════════════════════════
# Resolution
# ═══════════════════════════════════════════════════════════════════════════════


def resolve_settings(raw_options: Optional[Mapping[str, Any]]) -> ProviderSettings:
    """
    Validate raw options and compile them into ``ProviderSettings``.

    Raises
    ------
    ConfigError
        Tenant missing/empty, an entity without property or handler, or any
        other invalid option.  No partial settings are ever returned.
    """
    if raw_options is None:
        raw_options = {}
    if not isinstance(raw_options, Mapping):
        raise ConfigError("options must be a mapping")

    tenant = raw_options.get("tenant")
    if not isinstance(tenant, str) or not tenant:
        raise ConfigError("tenant required")

    try:
        options = ProviderOptions.model_validate(dict(raw_options))
    except ValidationError as exc:
        raise ConfigError(_describe(exc)) from exc

    entities = [_compile_entity(e) for e in options.entities]
    if options.request_me:
        entities.append(EntitySpec(path=SELF_PATH, handler=map_self_profile))

    settings = ProviderSettings(
        resource=options.resource,
        graph_uri=options.graph_uri,
        provider_uri=options.provider_uri,
        api_version=options.api_version,
        tenant=options.tenant,
        request_me=options.request_me,
        entities=tuple(entities),
    )
    logger.debug(
        "Resolved Azure AD settings for tenant %s with %d entities",
        settings.tenant,
        len(settings.entities),
    )
    return settings


def _compile_entity(entity: EntityOptions) -> EntitySpec:
    # A custom handler wins over a property name.
    handler = entity.handler if entity.handler is not None else assign_property(entity.property)
    return EntitySpec(
        path=entity.path,
        handler=handler,
        params={k: _query_value(v) for k, v in entity.params.items()},
    )


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _join(base: str, tenant: str) -> str:
    return base.rstrip("/") + "/" + tenant


def _describe(exc: ValidationError) -> str:
    messages: List[str] = []
    for err in exc.errors():
        cause = (err.get("ctx") or {}).get("error")
        if cause is not None:
            messages.append(str(cause))
        else:
            loc = ".".join(str(p) for p in err["loc"])
            messages.append(f"{loc}: {err['msg']}")
    return "; ".join(messages)
