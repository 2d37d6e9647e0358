"""Sibling-extension handler (`module:` protocol).

Location format: `extension-name/path/to/file.json`. A bare
`extension-name` means the extension's `index.json`.

The host application publishes its installed extensions in an
`ExtensionCatalog`; files are then fetched from the extension's served path
with the web-location GET contract.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Iterator

import httpx

from calendar_sources.core.errors import ExtensionUnavailableError, MalformedIdentifierError
from calendar_sources.core.types import LoadCalendarOptions
from calendar_sources.libs.protocol.base_handler import BaseProtocolHandler
from calendar_sources.libs.protocol.https_handler import HttpsProtocolHandler
from calendar_sources.libs.protocol.utils import (
    INDEX_FILENAME,
    SUPPORTED_EXTENSIONS,
    file_extension,
    has_file_extension,
    normalize_calendar_location,
)
from calendar_sources.observability.logger import get_logger

logger = get_logger(__name__)

_EXTENSION_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(frozen=True)
class ExtensionInfo:
    """A sibling extension as the host reports it. `path` overrides `/modules/<name>`."""

    name: str
    active: bool = True
    version: str | None = None
    path: str | None = None

    @property
    def base_path(self) -> str:
        return (self.path or f"/modules/{self.name}").rstrip("/")


class ExtensionCatalog:
    """Installed sibling extensions, keyed by name."""

    def __init__(self, extensions: Iterable[ExtensionInfo] = ()) -> None:
        self._extensions: dict[str, ExtensionInfo] = {}
        for extension in extensions:
            self.register(extension)

    def register(self, extension: ExtensionInfo) -> None:
        self._extensions[extension.name] = extension

    def remove(self, name: str) -> bool:
        return self._extensions.pop(name, None) is not None

    def get(self, name: str) -> ExtensionInfo | None:
        return self._extensions.get(name)

    def values(self) -> list[ExtensionInfo]:
        return list(self._extensions.values())

    def __iter__(self) -> Iterator[ExtensionInfo]:
        return iter(self.values())

    def __len__(self) -> int:
        return len(self._extensions)


def split_extension_path(location: str) -> tuple[str, str]:
    """`my-ext/calendars/a.json` -> (`my-ext`, `calendars/a.json`)."""

    name, sep, file_path = location.strip("/").partition("/")
    if not sep or not name or not file_path:
        raise MalformedIdentifierError(
            f"Invalid module path format: {location}. Expected: module-name/path/to/file.json",
            location=location,
        )
    return name, file_path


class ModuleProtocolHandler(BaseProtocolHandler):
    """Loads calendars shipped by sibling extensions."""

    protocol = "module"

    def __init__(
        self,
        settings: Any = None,
        *,
        environment: Any = None,
        extensions: ExtensionCatalog | None = None,
        http: HttpsProtocolHandler | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        host_url: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(settings, environment=environment, **kwargs)
        self.extensions = extensions if extensions is not None else ExtensionCatalog()
        self.http = http or HttpsProtocolHandler(
            self.settings, environment=self.environment, transport=transport
        )
        self.host_url = host_url or self.settings.host.url

    def can_handle(self, location: str) -> bool:
        if "://" in location:
            return False

        parts = location.split("#", 1)[0].split("/")
        if len(parts) < 2 or not _EXTENSION_NAME_RE.match(parts[0]):
            return False

        filename = parts[-1]
        if has_file_extension(filename):
            return file_extension(filename) in SUPPORTED_EXTENSIONS
        return True

    def normalize_location(self, location: str) -> str:
        # a bare extension name means its root index
        stripped = location.strip("/")
        if stripped and "/" not in stripped and not has_file_extension(stripped):
            return f"{stripped}/{INDEX_FILENAME}"
        return normalize_calendar_location(location)

    def describe_context(self, location: str) -> str:
        name, _, file_path = location.strip("/").partition("/")
        if file_path == INDEX_FILENAME:
            return f"Module {name}"
        return f"module:{location}"

    def get_extension(self, name: str) -> ExtensionInfo:
        """Raises ExtensionUnavailableError when missing or inactive."""

        extension = self.extensions.get(name)
        if extension is None:
            raise ExtensionUnavailableError(f"Module {name} not found", location=name)
        if not extension.active:
            raise ExtensionUnavailableError(f"Module {name} is not active", location=name)
        return extension

    def lookup_extension(self, location: str) -> ExtensionInfo | None:
        """The active extension named by `location`, or None."""

        name = location.split("#", 1)[0].strip("/").split("/", 1)[0]
        extension = self.extensions.get(name)
        if extension is None or not extension.active:
            return None
        return extension

    def file_url(self, extension: ExtensionInfo, file_path: str) -> str:
        """Absolute URL of a file shipped by `extension`.

        Absolute `path` values are used as-is; relative ones hang off the host
        URL, which must then be configured.
        """

        base = extension.base_path
        if "://" in base:
            return f"{base}/{file_path}"
        if not self.host_url:
            raise ExtensionUnavailableError(
                f"Cannot resolve module {extension.name}: host URL is not configured",
                location=extension.name,
            )
        return f"{self.host_url.rstrip('/')}/{base.lstrip('/')}/{file_path}"

    async def _fetch_document(
        self, location: str, options: LoadCalendarOptions
    ) -> tuple[Any, str | None]:
        name, file_path = split_extension_path(location)
        extension = self.get_extension(name)
        url = self.file_url(extension, file_path)
        logger.debug("Loading from module URL: %s", url)

        data, _ = await self.http.fetch_json(url, options)
        return data, extension.version

    async def _current_version(self, location: str, options: LoadCalendarOptions) -> str | None:
        name, _ = split_extension_path(location)
        return self.get_extension(name).version
