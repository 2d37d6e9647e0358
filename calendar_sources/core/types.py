"""Core data types shared by the cache, the handlers and the registry.

Rules:
- times are epoch seconds (float)
- records are JSON-serializable via to_dict()/from_dict()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

CalendarData = dict[str, Any]
ExternalCalendarId = str
CalendarProtocol = str
CalendarLocation = str

EVENT_LOADED = "calendar-loaded"
EVENT_CACHED = "calendar-cached"
EVENT_ERROR = "calendar-error"
EVENT_UPDATED = "calendar-updated"


def source_key(protocol: str, location: str) -> ExternalCalendarId:
    """Join a protocol and location into the `protocol:location` key.

    Callers pass the parts already normalized (lowercase protocol, stripped
    location), so every path to the same source shares one key.
    """

    return f"{protocol}:{location}"


@dataclass
class ExternalCalendarSource:
    """A configured external calendar source."""

    protocol: CalendarProtocol
    location: CalendarLocation
    namespace: str | None = None
    calendar_id: str | None = None
    label: str | None = None
    description: str | None = None
    enabled: bool = True
    trusted: bool = False
    last_checked: float | None = None

    @property
    def key(self) -> ExternalCalendarId:
        """Registry key, `protocol:location`."""

        return source_key(self.protocol, self.location)

    def to_dict(self) -> dict[str, Any]:
        return {
            "protocol": self.protocol,
            "location": self.location,
            "namespace": self.namespace,
            "calendar_id": self.calendar_id,
            "label": self.label,
            "description": self.description,
            "enabled": self.enabled,
            "trusted": self.trusted,
            "last_checked": self.last_checked,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExternalCalendarSource":
        return cls(
            protocol=str(data.get("protocol", "")),
            location=str(data.get("location", "")),
            namespace=data.get("namespace"),
            calendar_id=data.get("calendar_id"),
            label=data.get("label"),
            description=data.get("description"),
            enabled=bool(data.get("enabled", True)),
            trusted=bool(data.get("trusted", False)),
            last_checked=data.get("last_checked"),
        )


@dataclass
class CachedCalendarData:
    """A cached calendar with its storage and expiry times."""

    calendar: CalendarData
    cached_at: float
    expires_at: float
    source: ExternalCalendarSource
    etag: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "calendar": dict(self.calendar),
            "cached_at": self.cached_at,
            "expires_at": self.expires_at,
            "source": self.source.to_dict(),
            "etag": self.etag,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CachedCalendarData":
        calendar = data["calendar"]
        if not isinstance(calendar, Mapping):
            raise ValueError("Cached calendar must be an object")
        return cls(
            calendar=dict(calendar),
            cached_at=float(data["cached_at"]),
            expires_at=float(data["expires_at"]),
            source=ExternalCalendarSource.from_dict(data["source"]),
            etag=data.get("etag"),
        )


@dataclass
class CacheEntry:
    """Cache slot; `last_accessed` orders LRU eviction and reload on startup."""

    data: CachedCalendarData
    last_accessed: float

    def to_dict(self) -> dict[str, Any]:
        return {"data": self.data.to_dict(), "last_accessed": self.last_accessed}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CacheEntry":
        return cls(
            data=CachedCalendarData.from_dict(data["data"]),
            last_accessed=float(data["last_accessed"]),
        )


@dataclass(frozen=True)
class CacheStats:
    """Snapshot of cache counters. `hit_rate` is 0.0 before the first lookup."""

    total_cached: int
    hits: int
    misses: int
    hit_rate: float
    size_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_cached": self.total_cached,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hit_rate,
            "size_bytes": self.size_bytes,
        }


@dataclass(frozen=True)
class CalendarIndexEntry:
    """One calendar listed in a collection index."""

    id: str
    name: str
    file: str
    description: str | None = None
    tags: list[str] | None = None
    author: str | None = None
    version: str | None = None
    metadata: dict[str, Any] | None = None

    @property
    def label(self) -> str:
        return f"{self.id} ({self.name})"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CalendarIndexEntry":
        tags = data.get("tags")
        metadata = data.get("metadata")
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            file=str(data["file"]),
            description=data.get("description"),
            tags=list(tags) if isinstance(tags, list) else None,
            author=data.get("author"),
            version=data.get("version"),
            metadata=dict(metadata) if isinstance(metadata, Mapping) else None,
        )


@dataclass(frozen=True)
class CalendarCollectionIndex:
    """Manifest listing the calendars available at one location."""

    name: str
    calendars: list[CalendarIndexEntry] = field(default_factory=list)
    description: str | None = None
    version: str | None = None
    metadata: dict[str, Any] | None = None

    @property
    def calendar_ids(self) -> list[str]:
        return [entry.id for entry in self.calendars]


@dataclass
class LoadCalendarOptions:
    """Per-call options for loading an external calendar.

    `enable_dev_mode=None` defers to environment detection; `False` overrides it.
    `timeout` is in seconds; `None` uses the registry's configured request timeout.
    """

    use_cache: bool = True
    force_refresh: bool = False
    skip_cache: bool = False
    skip_module_cache: bool = False
    enable_dev_mode: bool | None = None
    timeout: float | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class FetchedCalendar:
    """A validated payload plus the version tag the source reported for it."""

    calendar: CalendarData
    version_tag: str | None = None


@dataclass
class LoadCalendarResult:
    """Outcome of `load_external_calendar`; failures carry `error` and `error_type`."""

    success: bool
    calendar: CalendarData | None = None
    error: str | None = None
    error_type: str | None = None
    from_cache: bool = False
    source: ExternalCalendarSource | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "calendar": self.calendar,
            "error": self.error,
            "error_type": self.error_type,
            "from_cache": self.from_cache,
            "source": self.source.to_dict() if self.source is not None else None,
        }


@dataclass(frozen=True)
class ExternalCalendarEvent:
    """Payload delivered to registry listeners."""

    type: str
    calendar_id: ExternalCalendarId
    calendar: CalendarData | None = None
    error: str | None = None
