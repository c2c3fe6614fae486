# === NAVMAP v1 ===
# {
#   "module": "CollectorKit.ToolManager.settings",
#   "purpose": "Configuration models, environment overrides, and default directories",
#   "sections": [
#     {"id": "logging", "name": "LoggingConfiguration", "anchor": "class-loggingconfiguration", "kind": "class"},
#     {"id": "download", "name": "DownloadConfiguration", "anchor": "class-downloadconfiguration", "kind": "class"},
#     {"id": "scan", "name": "ScanConfiguration", "anchor": "class-scanconfiguration", "kind": "class"},
#     {"id": "package", "name": "PackageConfiguration", "anchor": "class-packageconfiguration", "kind": "class"},
#     {"id": "defaults", "name": "DefaultsConfig", "anchor": "class-defaultsconfig", "kind": "class"},
#     {"id": "resolved", "name": "ResolvedConfig", "anchor": "class-resolvedconfig", "kind": "class"},
#     {"id": "env", "name": "EnvironmentOverrides", "anchor": "class-environmentoverrides", "kind": "class"},
#     {"id": "load-config", "name": "load_config", "anchor": "function-load-config", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Configuration models, YAML loading, and environment overrides.

Settings are plain pydantic models grouped under :class:`DefaultsConfig`.  A
YAML file may override any field through a top-level ``defaults:`` block and
``TOOLMGR_*`` environment variables are applied last.  The memoised
:func:`get_default_config` is what library entry points fall back to when
callers do not pass an explicit configuration.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import platformdirs
import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

__all__ = [
    "APP_NAME",
    "DEFAULT_CACHE_DIR",
    "DEFAULT_LOG_DIR",
    "DefaultsConfig",
    "DownloadConfiguration",
    "EnvironmentOverrides",
    "LoggingConfiguration",
    "PackageConfiguration",
    "ResolvedConfig",
    "ScanConfiguration",
    "get_default_config",
    "invalidate_default_config_cache",
    "load_config",
    "load_raw_yaml",
]

APP_NAME = "toolmgr"
DEFAULT_CACHE_DIR = Path(platformdirs.user_cache_dir(APP_NAME)) / "tools"
DEFAULT_LOG_DIR = Path(platformdirs.user_log_dir(APP_NAME))


class LoggingConfiguration(BaseModel):
    """Logging-related configuration."""

    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    max_log_size_mb: int = Field(default=50, gt=0, description="Maximum size of rotated log files")
    retention_days: int = Field(default=14, ge=1, description="Retention period for log files")
    log_dir: Optional[Path] = Field(default=None, description="Directory for JSONL log files")

    @field_validator("level")
    @classmethod
    def validate_level(cls, value: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR"}
        upper = value.upper()
        if upper not in valid_levels:
            raise ValueError(f"level must be one of {sorted(valid_levels)}")
        return upper

    model_config = {"validate_assignment": True}


class DownloadConfiguration(BaseModel):
    """HTTP, retry, and concurrency settings for tool downloads."""

    max_retries: int = Field(default=3, ge=0, le=10)
    backoff_factor: float = Field(default=1.0, ge=0.0, le=60.0)
    timeout_sec: float = Field(default=60.0, gt=0.0, le=3600.0)
    connect_timeout_sec: float = Field(default=10.0, gt=0.0, le=120.0)
    concurrent_downloads: int = Field(default=3, ge=1, le=16)
    chunk_size: int = Field(default=1 << 16, ge=1024)
    user_agent: str = Field(default="toolmgr/1.0 (+offline-collector)")
    github_api_url: str = Field(default="https://api.github.com")
    github_token: Optional[str] = Field(default=None, repr=False)
    follow_redirects: bool = Field(default=True)

    model_config = {"validate_assignment": True}

    def request_headers(self) -> Dict[str, str]:
        """Return headers attached to every outbound request."""

        return {"User-Agent": self.user_agent}

    def github_headers(self) -> Dict[str, str]:
        """Return headers for GitHub API calls, including auth when configured."""

        headers = {**self.request_headers(), "Accept": "application/vnd.github+json"}
        if self.github_token:
            headers["Authorization"] = f"Bearer {self.github_token}"
        return headers


class ScanConfiguration(BaseModel):
    """Which files under a scan root count as artifact definitions."""

    extensions: List[str] = Field(default_factory=lambda: [".yaml", ".yml"])
    include_patterns: List[str] = Field(default_factory=lambda: ["*"])
    follow_symlinks: bool = Field(default=False)

    @field_validator("extensions")
    @classmethod
    def normalize_extensions(cls, value: List[str]) -> List[str]:
        normalized = []
        for item in value:
            item = item.strip().lower()
            if not item:
                continue
            normalized.append(item if item.startswith(".") else f".{item}")
        if not normalized:
            raise ValueError("at least one extension is required")
        return normalized

    model_config = {"validate_assignment": True}


class PackageConfiguration(BaseModel):
    """Package assembly options applied when callers do not override them."""

    compress: bool = Field(default=False)

    model_config = {"validate_assignment": True}


class DefaultsConfig(BaseModel):
    """Collection of default settings for every operation."""

    cache_dir: Path = Field(default=DEFAULT_CACHE_DIR)
    http: DownloadConfiguration = Field(default_factory=DownloadConfiguration)
    scan: ScanConfiguration = Field(default_factory=ScanConfiguration)
    package: PackageConfiguration = Field(default_factory=PackageConfiguration)
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)

    model_config = {"validate_assignment": True, "extra": "forbid"}


class ResolvedConfig(BaseModel):
    """Materialised configuration after YAML and environment overrides."""

    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    source: Optional[Path] = None

    @classmethod
    def from_defaults(cls) -> "ResolvedConfig":
        """Construct a configuration populated with default values only."""

        defaults = DefaultsConfig()
        _apply_env_overrides(defaults)
        return cls(defaults=defaults)

    def config_hash(self) -> str:
        """Deterministic hash of the effective configuration (secrets excluded)."""

        payload = self.defaults.model_dump(mode="json")
        payload["http"].pop("github_token", None)
        text = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]

    model_config = {"validate_assignment": True}


class EnvironmentOverrides(BaseSettings):
    """Pydantic settings model exposing environment-derived overrides."""

    max_retries: Optional[int] = Field(default=None, alias="TOOLMGR_MAX_RETRIES")
    timeout_sec: Optional[float] = Field(default=None, alias="TOOLMGR_TIMEOUT_SEC")
    backoff_factor: Optional[float] = Field(default=None, alias="TOOLMGR_BACKOFF_FACTOR")
    concurrent_downloads: Optional[int] = Field(
        default=None, alias="TOOLMGR_CONCURRENT_DOWNLOADS"
    )
    github_token: Optional[str] = Field(default=None, alias="TOOLMGR_GITHUB_TOKEN")
    log_level: Optional[str] = Field(default=None, alias="TOOLMGR_LOG_LEVEL")
    log_dir: Optional[Path] = Field(default=None, alias="TOOLMGR_LOG_DIR")
    cache_dir: Optional[Path] = Field(default=None, alias="TOOLMGR_CACHE_DIR")

    model_config = SettingsConfigDict(env_prefix="TOOLMGR_", case_sensitive=False, extra="ignore")


def _apply_env_overrides(defaults: DefaultsConfig) -> None:
    """Mutate ``defaults`` in place with any ``TOOLMGR_*`` environment values."""

    try:
        env = EnvironmentOverrides()
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid TOOLMGR_* environment override: {exc}") from exc

    logger = logging.getLogger("CollectorKit.ToolManager")
    http_fields = ("max_retries", "timeout_sec", "backoff_factor", "concurrent_downloads")
    try:
        for name in http_fields:
            value = getattr(env, name)
            if value is not None:
                setattr(defaults.http, name, value)
                logger.info(
                    "config overridden by env var",
                    extra={"stage": "config", "key": f"http.{name}"},
                )
        if env.github_token:
            defaults.http.github_token = env.github_token
        if env.log_dir is not None:
            defaults.logging.log_dir = env.log_dir
        if env.log_level:
            defaults.logging.level = env.log_level
        if env.cache_dir is not None:
            defaults.cache_dir = env.cache_dir
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid TOOLMGR_* environment override: {exc}") from exc


def load_raw_yaml(path: Path) -> Mapping[str, Any]:
    """Read ``path`` and return its top-level mapping."""

    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Configuration file {path} is not valid YAML: {exc}") from exc
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise ConfigError(f"Configuration file {path} must contain a mapping")
    return payload


def load_config(path: Optional[Path] = None) -> ResolvedConfig:
    """Load configuration from ``path`` (if given) and apply environment overrides."""

    if path is None:
        return ResolvedConfig.from_defaults()

    raw = load_raw_yaml(path)
    unknown = set(raw) - {"defaults"}
    if unknown:
        raise ConfigError(f"Unknown top-level configuration keys: {', '.join(sorted(unknown))}")
    try:
        defaults = DefaultsConfig.model_validate(raw.get("defaults") or {})
    except PydanticValidationError as exc:
        messages = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        raise ConfigError(f"Configuration validation failed: {messages}") from exc
    _apply_env_overrides(defaults)
    return ResolvedConfig(defaults=defaults, source=path)


_DEFAULT_CONFIG_LOCK = threading.RLock()
_DEFAULT_CONFIG_CACHE: Optional[ResolvedConfig] = None


def get_default_config(*, copy: bool = False) -> ResolvedConfig:
    """Return a memoised :class:`ResolvedConfig` constructed from defaults."""

    global _DEFAULT_CONFIG_CACHE  # noqa: PLW0603

    with _DEFAULT_CONFIG_LOCK:
        if _DEFAULT_CONFIG_CACHE is None:
            _DEFAULT_CONFIG_CACHE = ResolvedConfig.from_defaults()
        cached = _DEFAULT_CONFIG_CACHE
    if copy:
        return cached.model_copy(deep=True)
    return cached


def invalidate_default_config_cache() -> None:
    """Invalidate the cached default configuration."""

    global _DEFAULT_CONFIG_CACHE  # noqa: PLW0603

    with _DEFAULT_CONFIG_LOCK:
        _DEFAULT_CONFIG_CACHE = None
