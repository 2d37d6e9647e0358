"""Best-effort classification of the host as local / development.

The detector looks at the host application's base URL, its debug flag, its
data path and the versions of loaded sibling extensions. The result is
memoized until `clear_cache()`; the policies derived from it drive cache
bypass, request timeouts and dev-marker headers.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence
from urllib.parse import urlsplit

from calendar_sources.observability.logger import get_logger

logger = get_logger(__name__)

LOCALHOST_PATTERNS = ("localhost", "127.0.0.1", "0.0.0.0", "::1")
DEV_PORTS = frozenset(
    [3000, 3001, 3002, 3003]
    + [4000, 4001, 4002, 4003]
    + [5000, 5001, 5002, 5003]
    + [8000, 8001, 8002, 8003]
    + [8080, 8081, 8082, 8083]
    + [9000, 9001, 9002, 9003]
    + [30000]
)
DEV_HOSTNAMES = (
    "dev.",
    "development.",
    "test.",
    "testing.",
    "staging.",
    "local.",
    ".local",
    ".test",
    ".dev",
)
DEV_INDICATORS = ("dev", "development", "test", "testing", "staging", "local", "debug")
DATA_PATH_MARKERS = ("dev", "test", "local")
HOST_DEFAULT_PORT = 30000
DEV_TIMEOUT_MULTIPLIER = 3

CONFIDENCE_LOW = "low"
CONFIDENCE_MEDIUM = "medium"
CONFIDENCE_HIGH = "high"

ENV_HOST_URL = "CALENDAR_SOURCES_HOST_URL"
ENV_DEBUG = "CALENDAR_SOURCES_DEBUG"
ENV_DATA_PATH = "CALENDAR_SOURCES_DATA_PATH"


def is_localhost_hostname(hostname: str) -> bool:
    """Loopback names and addresses, brackets allowed, plus `*.localhost`."""

    host = hostname.strip("[]").lower()
    return host in LOCALHOST_PATTERNS or host.endswith(".localhost")


def is_dev_port(port: int | None) -> bool:
    return port is not None and port in DEV_PORTS


def has_dev_hostname_pattern(hostname: str) -> bool:
    """Match `DEV_HOSTNAMES`: `dev.` is a prefix, `.test` a suffix, the rest substrings."""

    host = hostname.lower()
    for pattern in DEV_HOSTNAMES:
        if pattern.startswith("."):
            if host.endswith(pattern):
                return True
        elif pattern.endswith("."):
            if host.startswith(pattern):
                return True
        elif pattern in host:
            return True
    return False


def has_dev_query(query: str) -> bool:
    text = query.lower()
    return any(indicator in text for indicator in DEV_INDICATORS)


def _looks_like_dev_build(version: str) -> bool:
    text = version.lower()
    return (
        "dev" in text
        or "alpha" in text
        or "beta" in text
        or text.startswith("0.0.")
    )


def _safe_port(parts: Any) -> int | None:
    try:
        return parts.port
    except ValueError:
        return None


@dataclass(frozen=True)
class HostContext:
    """What the detector knows about the host application.

    `extensions` holds objects exposing `version` (the loaded sibling
    extensions); only their versions are inspected.
    """

    url: str | None = None
    debug: bool = False
    data_path: str | None = None
    extensions: Sequence[Any] = field(default_factory=tuple)

    @classmethod
    def from_env(cls) -> "HostContext":
        """Read the `CALENDAR_SOURCES_*` variables; unset values stay empty."""

        debug_raw = os.environ.get(ENV_DEBUG, "").strip().lower()
        return cls(
            url=os.environ.get(ENV_HOST_URL) or None,
            debug=debug_raw in {"1", "true", "yes", "on"},
            data_path=os.environ.get(ENV_DATA_PATH) or None,
        )


@dataclass(frozen=True)
class EnvironmentInfo:
    """Outcome of one detection pass; `indicators` names every signal that fired."""

    is_localhost: bool
    is_development: bool
    hostname: str
    port: int | None
    protocol: str
    indicators: tuple[str, ...]
    confidence: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_localhost": self.is_localhost,
            "is_development": self.is_development,
            "hostname": self.hostname,
            "port": self.port,
            "protocol": self.protocol,
            "indicators": list(self.indicators),
            "confidence": self.confidence,
        }


class DevEnvironmentDetector:
    """Memoizing environment classifier.

    One instance is shared by the registry and its handlers; tests build
    their own with a fixed `HostContext`.
    """

    def __init__(self, context_provider: Callable[[], HostContext] | None = None) -> None:
        self._context_provider = context_provider or HostContext.from_env
        self._cached_info: EnvironmentInfo | None = None

    def get_environment_info(self) -> EnvironmentInfo:
        """Classify the host once and reuse the answer until `clear_cache()`."""

        if self._cached_info is None:
            self._cached_info = self._detect(self._context_provider())
            logger.debug("Development environment detected: %s", self._cached_info.to_dict())
        return self._cached_info

    def clear_cache(self) -> None:
        self._cached_info = None

    def is_localhost(self) -> bool:
        return self.get_environment_info().is_localhost

    def is_development(self) -> bool:
        return self.get_environment_info().is_development

    def should_use_dev_mode(self) -> bool:
        """Loopback hosts, or development detected with high confidence."""

        info = self.get_environment_info()
        return info.is_localhost or (info.is_development and info.confidence == CONFIDENCE_HIGH)

    def should_disable_caching(self) -> bool:
        """Only loopback hosts bypass the cache."""

        return self.get_environment_info().is_localhost

    def should_enable_debug_logging(self) -> bool:
        """Any development signal turns on DEBUG logging at bootstrap."""

        return self.get_environment_info().is_development

    @property
    def timeout_multiplier(self) -> int:
        return DEV_TIMEOUT_MULTIPLIER if self.is_development() else 1

    def get_dev_timeout(self, default_timeout: float) -> float:
        """Scale a timeout for development hosts.

        Args:
            default_timeout: Timeout in seconds for a production host.

        Returns:
            `default_timeout`, tripled when the host looks like development.
        """

        return default_timeout * self.timeout_multiplier

    def get_dev_headers(self) -> dict[str, str]:
        """Marker headers for development hosts; loopback also asks for no caching."""

        headers: dict[str, str] = {}
        if not self.is_development():
            return headers

        headers["X-Development-Mode"] = "true"
        if self.should_disable_caching():
            headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
            headers["Pragma"] = "no-cache"
            headers["Expires"] = "0"
        return headers

    @staticmethod
    def is_dev_url(url: str) -> bool:
        """True for loopback hosts, dev ports or dev hostname patterns."""

        try:
            parts = urlsplit(url if "://" in url else f"https://{url}")
        except ValueError:
            return False
        hostname = (parts.hostname or "").lower()
        if not hostname:
            return False
        return (
            is_localhost_hostname(hostname)
            or is_dev_port(_safe_port(parts))
            or has_dev_hostname_pattern(hostname)
        )

    def _detect(self, context: HostContext) -> EnvironmentInfo:
        """Collect indicators from every signal in `context`.

        A loopback hostname is high confidence on its own. Every other
        indicator marks the host as development and lifts low confidence to
        medium; the host default port on loopback lifts it to high.
        """

        indicators: list[str] = []
        is_localhost = False
        is_development = False
        confidence = CONFIDENCE_LOW

        hostname = ""
        port: int | None = None
        protocol = ""
        query = ""
        if context.url:
            try:
                parts = urlsplit(context.url)
                hostname = (parts.hostname or "").lower()
                port = _safe_port(parts)
                protocol = parts.scheme
                query = parts.query
            except ValueError:
                logger.debug("Unparseable host URL: %s", context.url)

        def lift() -> None:
            nonlocal confidence, is_development
            is_development = True
            if confidence == CONFIDENCE_LOW:
                confidence = CONFIDENCE_MEDIUM

        if hostname and is_localhost_hostname(hostname):
            is_localhost = True
            is_development = True
            confidence = CONFIDENCE_HIGH
            indicators.append("localhost-hostname")

        if is_dev_port(port):
            indicators.append("dev-port")
            lift()

        if hostname and has_dev_hostname_pattern(hostname):
            indicators.append("dev-hostname-pattern")
            lift()

        if query and has_dev_query(query):
            indicators.append("dev-url-params")
            lift()

        if context.debug:
            indicators.append("host-debug-mode")
            lift()

        versions = [str(getattr(ext, "version", "") or "") for ext in context.extensions]
        if any(_looks_like_dev_build(version) for version in versions if version):
            indicators.append("host-dev-extensions")
            lift()

        if context.data_path:
            data_path = context.data_path.lower()
            if any(marker in data_path for marker in DATA_PATH_MARKERS):
                indicators.append("host-dev-data-path")
                lift()

        if is_localhost and port == HOST_DEFAULT_PORT:
            confidence = CONFIDENCE_HIGH
            indicators.append("host-default-port")

        return EnvironmentInfo(
            is_localhost=is_localhost,
            is_development=is_development,
            hostname=hostname,
            port=port,
            protocol=protocol,
            indicators=tuple(indicators),
            confidence=confidence,
        )
