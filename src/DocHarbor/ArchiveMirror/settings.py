# === NAVMAP v1 ===
# {
#   "module": "DocHarbor.ArchiveMirror.settings",
#   "purpose": "Pydantic configuration models and YAML loading for the archive mirror",
#   "sections": [
#     {"id": "channel-kind", "name": "ChannelKind", "anchor": "class-channelkind", "kind": "class"},
#     {"id": "version-configuration", "name": "VersionConfiguration", "anchor": "class-versionconfiguration", "kind": "class"},
#     {"id": "endpoint-configuration", "name": "EndpointConfiguration", "anchor": "class-endpointconfiguration", "kind": "class"},
#     {"id": "http-settings", "name": "HttpSettings", "anchor": "class-httpsettings", "kind": "class"},
#     {"id": "cache-settings", "name": "CacheSettings", "anchor": "class-cachesettings", "kind": "class"},
#     {"id": "refresh-settings", "name": "RefreshSettings", "anchor": "class-refreshsettings", "kind": "class"},
#     {"id": "logging-settings", "name": "LoggingSettings", "anchor": "class-loggingsettings", "kind": "class"},
#     {"id": "mirror-settings", "name": "MirrorSettings", "anchor": "class-mirrorsettings", "kind": "class"},
#     {"id": "load-settings", "name": "load_settings", "anchor": "function-load-settings", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Configuration models for the archive mirror.

Settings are split into small frozen domain models (HTTP, cache, refresh,
logging) hung off a single :class:`MirrorSettings` root.  The root is a
``pydantic-settings`` model so any scalar can be overridden from the
environment using the ``DOCHARBOR_`` prefix and ``__`` as the nesting
delimiter, for example ``DOCHARBOR_CACHE__REFRESH_AFTER_SEC=60``.  Endpoint
and version lists come from a YAML file::

    storage: /var/lib/docharbor
    endpoints:
      - name: foo
        versions:
          - name: dev
            type: snapshot
            asset_url: https://repo.example.org/snapshots/org/example/foo/1.0-SNAPSHOT/{asset}
"""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any, List, Mapping, Optional
from urllib.parse import quote

import platformdirs
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .storage import validate_identifier

__all__ = [
    "CONFIG_ENV_VAR",
    "DEFAULT_STORAGE_ROOT",
    "ChannelKind",
    "VersionConfiguration",
    "EndpointConfiguration",
    "HttpSettings",
    "CacheSettings",
    "RefreshSettings",
    "LoggingSettings",
    "MirrorSettings",
    "load_settings",
]

CONFIG_ENV_VAR = "DOCHARBOR_CONFIG"
DEFAULT_STORAGE_ROOT = Path(platformdirs.user_data_dir("docharbor")) / "archives"
_ASSET_PLACEHOLDER = "{asset}"


class ChannelKind(str, Enum):
    """Release channel of a configured version."""

    RELEASE = "RELEASE"
    SNAPSHOT = "SNAPSHOT"


class VersionConfiguration(BaseModel):
    """A named version of an endpoint and the URL builder for its assets."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: ChannelKind = ChannelKind.RELEASE
    asset_url: str = Field(
        description=(
            "Asset URL template; either contains an '{asset}' placeholder or is a base "
            "URL the asset name is appended to"
        ),
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        """Reject version names that cannot be used as a storage file name."""

        return validate_identifier(value, kind="version")

    @field_validator("type", mode="before")
    @classmethod
    def normalise_type(cls, value: Any) -> Any:
        """Accept channel kinds in any letter case."""

        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("asset_url")
    @classmethod
    def validate_asset_url(cls, value: str) -> str:
        """Require an absolute HTTP(S) URL."""

        stripped = value.strip()
        if not stripped.lower().startswith(("http://", "https://")):
            raise ValueError("asset_url must be an absolute http(s) URL")
        return stripped

    @property
    def is_moving(self) -> bool:
        """Return ``True`` for channels whose artifact changes over time."""

        return self.type is ChannelKind.SNAPSHOT

    def asset(self, name: str) -> str:
        """Return the URL of asset ``name`` for this version."""

        encoded = quote(name)
        if _ASSET_PLACEHOLDER in self.asset_url:
            return self.asset_url.replace(_ASSET_PLACEHOLDER, encoded)
        return f"{self.asset_url.rstrip('/')}/{encoded}"


class EndpointConfiguration(BaseModel):
    """A documented project and its ordered list of versions."""

    model_config = ConfigDict(frozen=True)

    name: str
    versions: List[VersionConfiguration] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        """Reject project names that cannot be used as a storage directory."""

        return validate_identifier(value, kind="project")

    @model_validator(mode="after")
    def check_unique_versions(self) -> "EndpointConfiguration":
        """Ensure version names are unique within the endpoint."""

        seen: set[str] = set()
        for version in self.versions:
            if version.name in seen:
                raise ValueError(f"duplicate version '{version.name}' for endpoint '{self.name}'")
            seen.add(version.name)
        return self

    def version(self, name: str) -> Optional[VersionConfiguration]:
        """Return the version named ``name`` or ``None``."""

        for candidate in self.versions:
            if candidate.name == name:
                return candidate
        return None


class HttpSettings(BaseModel):
    """HTTP client settings shared by metadata and artifact requests."""

    model_config = ConfigDict(frozen=True)

    user_agent: str = Field(default="DocHarbor", description="User-Agent header value")
    http2: bool = Field(default=False, description="Enable HTTP/2 support")
    timeout_connect: float = Field(default=5.0, gt=0.0, le=60.0)
    timeout_read: float = Field(default=30.0, gt=0.0, le=600.0)
    timeout_write: float = Field(default=30.0, gt=0.0, le=600.0)
    timeout_pool: float = Field(default=5.0, gt=0.0, le=60.0)
    pool_max_connections: int = Field(default=16, ge=1, le=1024)
    pool_keepalive_max: int = Field(default=8, ge=0, le=1024)
    trust_env: bool = Field(
        default=True,
        description="Honor HTTP(S)_PROXY and NO_PROXY environment variables",
    )


class CacheSettings(BaseModel):
    """Archive cache tuning."""

    model_config = ConfigDict(frozen=True)

    refresh_after_sec: float = Field(
        default=600.0,
        gt=0.0,
        description="Age after which an accessed entry is reloaded in the background",
    )
    max_entries: Optional[int] = Field(
        default=None,
        ge=1,
        description="Maximum number of open archives; None keeps every loaded archive",
    )
    reload_workers: int = Field(default=2, ge=1, le=32)


class RefreshSettings(BaseModel):
    """Schedule of the snapshot refresh job."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    interval_sec: float = Field(default=900.0, gt=0.0)
    initial_delay_sec: float = Field(default=0.0, ge=0.0)
    classifier: str = Field(default="javadoc", min_length=1)


class LoggingSettings(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(frozen=True)

    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    log_dir: Optional[Path] = Field(default=None, description="Directory for JSON log files")
    json_console: bool = Field(default=False, description="Emit JSON on the console handler")
    max_log_size_mb: int = Field(default=100, gt=0)
    retention_days: int = Field(default=30, ge=1)

    @field_validator("level")
    @classmethod
    def validate_level(cls, value: str) -> str:
        """Normalise logging levels and ensure they match the supported set."""

        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR"}
        upper = value.upper()
        if upper not in valid_levels:
            raise ValueError(f"level must be one of {valid_levels}")
        return upper


class MirrorSettings(BaseSettings):
    """Root configuration for the archive mirror service."""

    model_config = SettingsConfigDict(
        env_prefix="DOCHARBOR_",
        env_nested_delimiter="__",
        extra="ignore",
        frozen=True,
    )

    storage: Path = Field(default=DEFAULT_STORAGE_ROOT, description="Root of the artifact tree")
    endpoints: List[EndpointConfiguration] = Field(default_factory=list)
    http: HttpSettings = Field(default_factory=HttpSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    refresh: RefreshSettings = Field(default_factory=RefreshSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("storage", mode="before")
    @classmethod
    def expand_storage(cls, value: Any) -> Any:
        """Expand ``~`` in the storage root."""

        if isinstance(value, (str, Path)):
            return Path(value).expanduser()
        return value

    @model_validator(mode="after")
    def check_unique_endpoints(self) -> "MirrorSettings":
        """Ensure endpoint names are unique."""

        names = [endpoint.name for endpoint in self.endpoints]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate endpoints: {', '.join(duplicates)}")
        return self

    def endpoint(self, name: str) -> Optional[EndpointConfiguration]:
        """Return the endpoint named ``name`` or ``None``."""

        for candidate in self.endpoints:
            if candidate.name == name:
                return candidate
        return None


def _load_raw_yaml(config_path: Path) -> Mapping[str, object]:
    if not config_path.is_file():
        raise ConfigurationError(f"Configuration file not found: {config_path}")
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Configuration file {config_path} is not valid YAML: {exc}") from exc
    except OSError as exc:
        raise ConfigurationError(f"Could not read configuration file {config_path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Configuration file {config_path} must contain a mapping")
    return data


def load_settings(path: Optional[Path] = None) -> MirrorSettings:
    """Load settings from ``path`` or the ``DOCHARBOR_CONFIG`` file.

    Without either, defaults and environment overrides apply and no endpoint
    is configured.
    """

    if path is None:
        env_value = os.environ.get(CONFIG_ENV_VAR, "").strip()
        path = Path(env_value) if env_value else None

    raw: Mapping[str, object] = _load_raw_yaml(Path(path).expanduser()) if path else {}
    try:
        return MirrorSettings(**dict(raw))
    except PydanticValidationError as exc:
        source = str(path) if path else "environment"
        raise ConfigurationError(f"Invalid configuration ({source}): {exc}") from exc
