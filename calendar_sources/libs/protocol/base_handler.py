"""Protocol handler contract.

Every handler follows the same flow for `fetch_calendar`:

1. split an optional `#calendar-id` selector off the location
2. normalize the location (`foo` -> `foo.json`, `a/b` -> `a/b/index.json`)
3. for index locations: load and validate the index, select one entry,
   resolve its file relative to the index
4. load the document and validate the calendar payload

Subclasses only implement the transport: `_fetch_document` and, for cheap
staleness checks, `_current_version`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar

from calendar_sources.core.environment import DevEnvironmentDetector
from calendar_sources.core.settings import Settings, default_settings
from calendar_sources.core.types import (
    CalendarData,
    CalendarIndexEntry,
    FetchedCalendar,
    LoadCalendarOptions,
)
from calendar_sources.libs.protocol.utils import (
    is_index_location,
    normalize_calendar_location,
    parse_location_with_calendar_id,
    resolve_index_entry_path,
    select_calendar_from_index,
    validate_calendar_collection_index,
    validate_calendar_payload,
)
from calendar_sources.observability.logger import get_logger

logger = get_logger(__name__)


class BaseProtocolHandler(ABC):
    """Abstract base class for protocol handlers."""

    protocol: ClassVar[str] = ""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        environment: DevEnvironmentDetector | None = None,
        **_: Any,
    ) -> None:
        self.settings = settings or default_settings()
        self.environment = environment or DevEnvironmentDetector()

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    @abstractmethod
    def can_handle(self, location: str) -> bool:
        """Syntactic check only; dispatch goes by protocol prefix."""

    async def load_calendar(
        self, location: str, options: LoadCalendarOptions | None = None
    ) -> CalendarData:
        """Load and validate one calendar; see `fetch_calendar` for the flow."""

        fetched = await self.fetch_calendar(location, options)
        return fetched.calendar

    async def fetch_calendar(
        self, location: str, options: LoadCalendarOptions | None = None
    ) -> FetchedCalendar:
        """Resolve `location`, load the document and validate it.

        Args:
            location: Handler-specific location, optionally with `#calendar-id`.
            options: Per-call options; defaults apply when omitted.

        Returns:
            The validated calendar and the version tag the source reported.

        Raises:
            CalendarSourceError: Any load failure, as its specific subclass.
        """

        options = options or LoadCalendarOptions()
        target = await self.resolve_target(location, options)
        logger.debug("Loading calendar via %s: %s", self.protocol, target)

        data, version_tag = await self._fetch_document(target, options)
        calendar = validate_calendar_payload(data, self.describe_context(target))
        logger.info("Loaded calendar '%s' via %s", calendar["id"], self.protocol)
        return FetchedCalendar(calendar=calendar, version_tag=version_tag)

    async def check_for_updates(
        self,
        location: str,
        last_version_tag: str | None = None,
        options: LoadCalendarOptions | None = None,
    ) -> bool:
        """True when the source reports a different (or no) version tag.

        Never raises: failures are logged and reported as "unchanged".
        """

        options = options or LoadCalendarOptions()
        try:
            target = await self.resolve_target(location, options)
            current = await self._current_version(target, options)
        except NotImplementedError:
            return False
        except Exception as error:  # noqa: BLE001 - update checks are fail-safe
            logger.debug("Update check failed for %s:%s: %s", self.protocol, location, error)
            return False

        if current is None or last_version_tag is None:
            return True
        return current != last_version_tag

    @property
    def supports_update_checks(self) -> bool:
        return type(self)._current_version is not BaseProtocolHandler._current_version

    # ------------------------------------------------------------------
    # Location handling (overridable)
    # ------------------------------------------------------------------

    def normalize_location(self, location: str) -> str:
        return normalize_calendar_location(location)

    async def normalize_target(self, location: str) -> str:
        """Async normalization hook for handlers that must touch I/O."""

        return self.normalize_location(location)

    def describe_context(self, location: str) -> str:
        return f"{self.protocol}:{location}"

    def resolve_entry_location(self, index_location: str, entry: CalendarIndexEntry) -> str:
        return resolve_index_entry_path(index_location, entry.file)

    async def resolve_target(self, location: str, options: LoadCalendarOptions) -> str:
        """Turn a caller location into the concrete document to load."""

        base, calendar_id = parse_location_with_calendar_id(location)
        normalized = await self.normalize_target(base)
        if not is_index_location(normalized):
            return normalized

        raw_index, _ = await self._fetch_document(normalized, options)
        context = self.describe_context(normalized)
        index = validate_calendar_collection_index(raw_index, context)
        entry = select_calendar_from_index(index, calendar_id, context)
        logger.debug("Selected '%s' from collection index %s", entry.id, context)
        return self.resolve_entry_location(normalized, entry)

    # ------------------------------------------------------------------
    # Transport hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _fetch_document(
        self, location: str, options: LoadCalendarOptions
    ) -> tuple[Any, str | None]:
        """Load and parse one document; return (data, version tag)."""

    async def _current_version(self, location: str, options: LoadCalendarOptions) -> str | None:
        raise NotImplementedError(f"{self.protocol} handler does not support update checks")

    def effective_timeout(self, options: LoadCalendarOptions) -> float:
        """Timeout in seconds, scaled up on development hosts."""

        base = options.timeout if options.timeout is not None else self.settings.http.request_timeout
        return self.environment.get_dev_timeout(base)
