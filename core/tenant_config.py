"""
core/tenant_config.py -- Versioned per-tenant configuration document.

The dashboard writes this document and the sync scheduler reads it, so both
sides go through the same pydantic model instead of a free-form JSON blob.
Unknown keys are rejected; anything that fails validation surfaces as
ConfigError.

Documents written before the version field existed used camelCase keys and
called the sync flag "cronEnabled". Those are accepted on read (alias
choices) and written back in the current snake_case form.

Layer rule: no imports from api/, auth/ or proxy/.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from core.errors import ConfigError

CURRENT_VERSION = 1


class _Document(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
    )


class NotificationType(str, Enum):
    none = "none"
    bark = "bark"
    pushover = "pushover"


class BarkSettings(_Document):
    server_url: str = Field(default="https://api.day.app", max_length=255)
    device_key: str = Field(default="", max_length=255)
    group: str = Field(default="SubStore", max_length=64)


class PushoverSettings(_Document):
    user_key: str = Field(default="", max_length=255)
    app_token: str = Field(default="", max_length=255)


class NotificationSettings(_Document):
    type: NotificationType = NotificationType.none
    bark: BarkSettings = Field(default_factory=BarkSettings)
    pushover: PushoverSettings = Field(default_factory=PushoverSettings)


class TenantConfig(_Document):
    """Tenant-owned settings.

    sync_enabled decides whether the tenant takes part in scheduled sync
    sweeps. surge_version / surge_build are passed through to the engine's
    client emulation and are opaque to the gateway.
    """

    version: int = CURRENT_VERSION
    sync_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("sync_enabled", "syncEnabled", "cronEnabled"),
    )
    surge_version: str = Field(default="5.0.0", max_length=32)
    surge_build: str = Field(default="2000", max_length=32)
    notification: NotificationSettings = Field(default_factory=NotificationSettings)

    @field_validator("version")
    @classmethod
    def check_version(cls, value: int) -> int:
        if value < 1 or value > CURRENT_VERSION:
            raise ValueError(f"unsupported config version {value}")
        return value


def parse_tenant_config(raw: str | dict[str, Any] | None) -> TenantConfig:
    """Build a TenantConfig from stored JSON text or a request dict.

    None and empty strings produce the default document. Raises ConfigError
    on invalid JSON or a document that fails validation.
    """
    if raw is None or raw == "":
        return TenantConfig()
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigError("Tenant config is not valid JSON.", detail=str(exc)) from exc
    if not isinstance(raw, dict):
        raise ConfigError("Tenant config must be a JSON object.")
    try:
        config = TenantConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError("Tenant config failed validation.", detail=str(exc.errors())) from exc
    # Legacy documents are upgraded in place on the next write.
    return config.model_copy(update={"version": CURRENT_VERSION})


def dump_tenant_config(config: TenantConfig) -> str:
    """Serialize for storage, always in the current snake_case form."""
    return config.model_dump_json()
