"""Filesystem handler (`local:` protocol).

Accepts absolute POSIX paths, drive-qualified paths (`C:\\...`), `./` and
`../` paths, and bare relative paths. Relative paths resolve against
`local.base_directory`. The file's modification time (ISO-8601, UTC) is the
version tag. The registry never caches filesystem sources.
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from calendar_sources.core.errors import (
    AccessDeniedError,
    MalformedJSONError,
    NotFoundError,
    RemoteRequestError,
    RequestTimeoutError,
)
from calendar_sources.core.types import LoadCalendarOptions
from calendar_sources.libs.protocol.base_handler import BaseProtocolHandler
from calendar_sources.libs.protocol.utils import (
    INDEX_FILENAME,
    has_file_extension,
    has_supported_extension,
    normalize_calendar_location,
    parse_document,
)
from calendar_sources.observability.logger import get_logger

logger = get_logger(__name__)

_DRIVE_RE = re.compile(r"^[A-Za-z]:[\\/]")


def _mtime_tag(path: Path) -> str:
    modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    return modified.isoformat()


class LocalProtocolHandler(BaseProtocolHandler):
    """Loads calendars from the local filesystem."""

    protocol = "local"

    def __init__(
        self,
        settings: Any = None,
        *,
        environment: Any = None,
        base_directory: str | Path | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(settings, environment=environment, **kwargs)
        self.base_directory = Path(base_directory or self.settings.local.base_directory)

    def can_handle(self, location: str) -> bool:
        if "://" in location:
            return False

        path = location.split("#", 1)[0]
        explicit = (
            path.startswith("/")
            or bool(_DRIVE_RE.match(path))
            or path.startswith(("./", "../"))
        )
        if explicit:
            return not has_file_extension(path) or has_supported_extension(path)

        return has_file_extension(path) and has_supported_extension(path)

    def resolve_path(self, location: str) -> Path:
        """Absolute and drive-qualified paths stand alone; others join `base_directory`."""

        if location.startswith("/") or _DRIVE_RE.match(location):
            return Path(location)
        return self.base_directory / location

    async def normalize_target(self, location: str) -> str:
        """Map an existing directory to its `index.json`.

        The directory check touches the filesystem, so it runs in a worker
        thread. Other locations get the usual `.json` defaulting.
        """

        if not has_file_extension(location):
            is_dir = await asyncio.to_thread(self.resolve_path(location).is_dir)
            if is_dir:
                return f"{location.rstrip('/')}/{INDEX_FILENAME}"
        return normalize_calendar_location(location)

    def describe_context(self, location: str) -> str:
        return f"local:{location}"

    async def _fetch_document(
        self, location: str, options: LoadCalendarOptions
    ) -> tuple[Any, str | None]:
        path = self.resolve_path(location)
        logger.debug("Loading calendar from local file: %s", path)
        text, version_tag = await self._run_io(self._read, path, location, options)
        return parse_document(text, location), version_tag

    async def _current_version(self, location: str, options: LoadCalendarOptions) -> str | None:
        path = self.resolve_path(location)
        return await self._run_io(_mtime_tag, path, location, options)

    @staticmethod
    def _read(path: Path) -> tuple[str, str]:
        return path.read_text(encoding="utf-8"), _mtime_tag(path)

    async def _run_io(self, func: Any, path: Path, location: str, options: LoadCalendarOptions) -> Any:
        timeout = self.effective_timeout(options)
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, path), timeout=timeout)
        except asyncio.TimeoutError as error:
            raise RequestTimeoutError(
                f"Reading local file {location} timed out (timeout: {int(timeout * 1000)}ms)",
                location=location,
            ) from error
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as error:
            raise NotFoundError(f"Local file not found: {location}", location=location) from error
        except PermissionError as error:
            raise AccessDeniedError(
                f"Permission denied accessing local file: {location}", location=location
            ) from error
        except UnicodeDecodeError as error:
            raise MalformedJSONError(
                f"Local file is not valid UTF-8: {location}", location=location
            ) from error
        except OSError as error:
            raise RemoteRequestError(
                f"Error loading local file {location}: {error}", location=location
            ) from error
