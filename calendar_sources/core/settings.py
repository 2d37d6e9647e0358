"""Settings loading and validation.

This module provides a minimal, type-safe configuration loader for the project.

Design principles:
- Fail-fast: invalid fields raise a readable error that includes field path
- No side effects: this module only parses/validates configuration; no network/IO init
- Every section is optional; omitted fields fall back to the defaults below
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

ONE_HOUR = 60 * 60
ONE_DAY = 24 * ONE_HOUR
ONE_WEEK = 7 * ONE_DAY


class SettingsError(ValueError):
    """Raised when settings are missing or invalid."""


@dataclass(frozen=True)
class RegistrySettings:
    default_cache_duration: float = ONE_WEEK
    max_cache_size: int = 100
    request_timeout: float = 30.0
    auto_update: bool = False
    update_interval: float = ONE_DAY


@dataclass(frozen=True)
class CacheSettings:
    cleanup_interval: float = ONE_HOUR
    storage_dir: str | None = None
    storage_max_size_mb: float = 10.0


@dataclass(frozen=True)
class HttpSettings:
    user_agent: str = "calendar-sources/0.1"
    max_redirects: int = 10
    request_timeout: float = 30.0


@dataclass(frozen=True)
class GitHubSettings:
    api_base_url: str = "https://api.github.com"
    ref: str | None = None
    token: str | None = None


@dataclass(frozen=True)
class LocalSettings:
    base_directory: str = "."


@dataclass(frozen=True)
class HostSettings:
    url: str | None = None
    debug: bool = False
    data_path: str | None = None


@dataclass(frozen=True)
class ObservabilitySettings:
    log_level: str = "INFO"


@dataclass(frozen=True)
class Settings:
    registry: RegistrySettings = field(default_factory=RegistrySettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    http: HttpSettings = field(default_factory=HttpSettings)
    github: GitHubSettings = field(default_factory=GitHubSettings)
    local: LocalSettings = field(default_factory=LocalSettings)
    host: HostSettings = field(default_factory=HostSettings)
    observability: ObservabilitySettings = field(default_factory=ObservabilitySettings)


def default_settings() -> Settings:
    return Settings()


def _optional_section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise SettingsError(f"Invalid section type: {key}")
    return value


def _as_str(value: Any, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise SettingsError(f"Invalid value for {path}: expected non-empty string")
    return value


def _as_optional_str(value: Any, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path)


def _as_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise SettingsError(f"Invalid value for {path}: expected int")
    return value


def _as_positive_int(value: Any, path: str) -> int:
    number = _as_int(value, path)
    if number <= 0:
        raise SettingsError(f"Invalid value for {path}: expected positive int")
    return number


def _as_bool(value: Any, path: str) -> bool:
    if not isinstance(value, bool):
        raise SettingsError(f"Invalid value for {path}: expected bool")
    return value


def _as_float(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SettingsError(f"Invalid value for {path}: expected float")
    return float(value)


def _as_positive_float(value: Any, path: str) -> float:
    number = _as_float(value, path)
    if number <= 0:
        raise SettingsError(f"Invalid value for {path}: expected positive number")
    return number


def validate_settings(settings: Settings) -> None:
    """Validate cross-field invariants."""

    if settings.http.max_redirects < 1:
        raise SettingsError("Invalid value for http.max_redirects: must be at least 1")
    if not settings.github.api_base_url.startswith(("https://", "http://")):
        raise SettingsError("Invalid value for github.api_base_url: expected http(s) URL")
    level = settings.observability.log_level.upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise SettingsError(f"Invalid value for observability.log_level: {level}")


def parse_settings(raw_obj: Mapping[str, Any]) -> Settings:
    """Build `Settings` from an already-parsed mapping."""

    defaults = Settings()

    registry_raw = _optional_section(raw_obj, "registry")
    cache_raw = _optional_section(raw_obj, "cache")
    http_raw = _optional_section(raw_obj, "http")
    github_raw = _optional_section(raw_obj, "github")
    local_raw = _optional_section(raw_obj, "local")
    host_raw = _optional_section(raw_obj, "host")
    observability_raw = _optional_section(raw_obj, "observability")

    registry = RegistrySettings(
        default_cache_duration=_as_positive_float(
            registry_raw.get(
                "default_cache_duration", defaults.registry.default_cache_duration
            ),
            "registry.default_cache_duration",
        ),
        max_cache_size=_as_positive_int(
            registry_raw.get("max_cache_size", defaults.registry.max_cache_size),
            "registry.max_cache_size",
        ),
        request_timeout=_as_positive_float(
            registry_raw.get("request_timeout", defaults.registry.request_timeout),
            "registry.request_timeout",
        ),
        auto_update=_as_bool(
            registry_raw.get("auto_update", defaults.registry.auto_update),
            "registry.auto_update",
        ),
        update_interval=_as_positive_float(
            registry_raw.get("update_interval", defaults.registry.update_interval),
            "registry.update_interval",
        ),
    )

    cache = CacheSettings(
        cleanup_interval=_as_positive_float(
            cache_raw.get("cleanup_interval", defaults.cache.cleanup_interval),
            "cache.cleanup_interval",
        ),
        storage_dir=_as_optional_str(cache_raw.get("storage_dir"), "cache.storage_dir"),
        storage_max_size_mb=_as_positive_float(
            cache_raw.get("storage_max_size_mb", defaults.cache.storage_max_size_mb),
            "cache.storage_max_size_mb",
        ),
    )

    http = HttpSettings(
        user_agent=_as_str(
            http_raw.get("user_agent", defaults.http.user_agent), "http.user_agent"
        ),
        max_redirects=_as_int(
            http_raw.get("max_redirects", defaults.http.max_redirects), "http.max_redirects"
        ),
        request_timeout=_as_positive_float(
            http_raw.get("request_timeout", defaults.http.request_timeout),
            "http.request_timeout",
        ),
    )

    github = GitHubSettings(
        api_base_url=_as_str(
            github_raw.get("api_base_url", defaults.github.api_base_url),
            "github.api_base_url",
        ).rstrip("/"),
        ref=_as_optional_str(github_raw.get("ref"), "github.ref"),
        token=_as_optional_str(github_raw.get("token"), "github.token"),
    )

    local = LocalSettings(
        base_directory=_as_str(
            local_raw.get("base_directory", defaults.local.base_directory),
            "local.base_directory",
        ),
    )

    host = HostSettings(
        url=_as_optional_str(host_raw.get("url"), "host.url"),
        debug=_as_bool(host_raw.get("debug", defaults.host.debug), "host.debug"),
        data_path=_as_optional_str(host_raw.get("data_path"), "host.data_path"),
    )

    observability = ObservabilitySettings(
        log_level=_as_str(
            observability_raw.get("log_level", defaults.observability.log_level),
            "observability.log_level",
        ),
    )

    settings = Settings(
        registry=registry,
        cache=cache,
        http=http,
        github=github,
        local=local,
        host=host,
        observability=observability,
    )

    validate_settings(settings)
    return settings


def load_settings(path: str | Path) -> Settings:
    """Load settings from a YAML file."""

    settings_path = Path(path)
    if not settings_path.exists():
        raise SettingsError(f"Settings file not found: {settings_path}")

    try:
        raw_obj = yaml.safe_load(settings_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise SettingsError(f"Invalid YAML in settings file: {settings_path}") from e

    if raw_obj is None:
        raw_obj = {}
    if not isinstance(raw_obj, Mapping):
        raise SettingsError(f"Invalid settings root: expected mapping in {settings_path}")

    return parse_settings(raw_obj)
