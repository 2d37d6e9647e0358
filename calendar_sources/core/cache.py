"""LRU + TTL cache for loaded external calendars, optionally persisted to disk.

Keys are external calendar ids (`protocol:location`). Rules:
- `set` on an existing key updates in place; at capacity exactly one
  least-recently-accessed entry is evicted before inserting
- expired entries are misses unless `include_expired=True`
- `has` / `is_expired` never refresh access time
- a periodic sweep removes expired entries while an event loop is running

With `storage_dir` configured every entry is also written to its own JSON file
stamped with `CACHE_FORMAT_VERSION`. Entries are reloaded on startup; files
with another format version, expired files and unreadable files are dropped.
The directory is capped at `storage_max_size_mb`, oldest saves first out.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Callable

from calendar_sources.core.types import (
    CacheEntry,
    CachedCalendarData,
    CacheStats,
    CalendarData,
    ExternalCalendarSource,
)
from calendar_sources.observability.logger import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_SIZE = 100
DEFAULT_TTL = 7 * 24 * 60 * 60
DEFAULT_CLEANUP_INTERVAL = 60 * 60
DEFAULT_STORAGE_MAX_SIZE_MB = 10.0
CACHE_FORMAT_VERSION = "1.0.0"
STORAGE_SUFFIX = ".json"


@dataclass(frozen=True)
class CacheConfig:
    """Cache limits. `storage_dir=None` keeps the cache in memory only."""

    max_size: int = DEFAULT_MAX_SIZE
    default_ttl: float = DEFAULT_TTL
    cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL
    storage_dir: str | None = None
    storage_max_size_mb: float = DEFAULT_STORAGE_MAX_SIZE_MB

    def __post_init__(self) -> None:
        if isinstance(self.max_size, bool) or not isinstance(self.max_size, int) or self.max_size < 1:
            raise ValueError(f"Cache max_size must be an integer of at least 1, got {self.max_size!r}")
        if self.default_ttl <= 0:
            raise ValueError(f"Cache default_ttl must be positive, got {self.default_ttl!r}")
        if self.cleanup_interval <= 0:
            raise ValueError(f"Cache cleanup_interval must be positive, got {self.cleanup_interval!r}")
        if self.storage_max_size_mb <= 0:
            raise ValueError(
                f"Cache storage_max_size_mb must be positive, got {self.storage_max_size_mb!r}"
            )


@dataclass(frozen=True)
class StorageInfo:
    """Disk usage of the persistent layer, as reported by `get_storage_info()`."""

    enabled: bool
    directory: str | None
    size_bytes: int
    max_size_bytes: int
    entry_count: int


def estimate_size(calendar: CalendarData) -> int:
    """Approximate in-memory size: two bytes per serialized character."""

    try:
        return len(json.dumps(calendar, default=str)) * 2
    except (TypeError, ValueError):
        return 0


class CacheStorage:
    """Directory of versioned JSON files, one per cache key.

    File names are the SHA-256 of the key; the key itself is stored inside the
    file. Write failures are logged and never reach the in-memory cache.
    """

    def __init__(
        self,
        directory: str | Path,
        *,
        max_size_mb: float = DEFAULT_STORAGE_MAX_SIZE_MB,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = Path(directory)
        self.max_size_bytes = int(max_size_mb * 1024 * 1024)
        self._clock = clock

    def path_for(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.directory / f"{digest}{STORAGE_SUFFIX}"

    def load(self) -> dict[str, CacheEntry]:
        """Read every compatible, unexpired entry; drop the rest from disk."""

        entries: dict[str, CacheEntry] = {}
        skipped = 0
        for path in self._files():
            record = self._read(path)
            if record is None:
                skipped += 1
                continue
            key, entry, _ = record
            entries[key] = entry

        if entries or skipped:
            logger.debug(
                "Loaded %d cache entries from %s, skipped %d", len(entries), self.directory, skipped
            )
        return entries

    def save(self, key: str, entry: CacheEntry) -> bool:
        """Persist one entry.

        Args:
            key: Cache key.
            entry: Entry to write.

        Returns:
            True when the entry is on disk. False when it would not fit under
            the size cap even after pruning, or when the write failed.
        """

        payload = json.dumps(
            {
                "version": CACHE_FORMAT_VERSION,
                "saved_at": self._clock(),
                "key": key,
                "entry": entry.to_dict(),
            },
            default=str,
        )
        path = self.path_for(key)
        new_size = len(payload.encode("utf-8"))
        if new_size > self.max_size_bytes:
            logger.debug("Not persisting %s: entry larger than the storage limit", key)
            return False

        if self._size_without(path) + new_size > self.max_size_bytes:
            self.prune(reserve_bytes=new_size, keep=path)
            if self._size_without(path) + new_size > self.max_size_bytes:
                logger.debug("Not persisting %s: storage limit reached", key)
                return False

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            path.write_text(payload, encoding="utf-8")
        except OSError as error:
            logger.warning("Failed to persist cache entry %s: %s", key, error)
            return False
        return True

    def remove(self, key: str) -> None:
        """Delete the file for `key`, if any."""

        self._unlink(self.path_for(key))

    def clear(self) -> None:
        for path in self._files():
            self._unlink(path)
        logger.debug("Cleared persisted cache entries in %s", self.directory)

    def prune(self, *, reserve_bytes: int = 0, keep: Path | None = None) -> int:
        """Drop files that no longer load, then the oldest saves until the
        directory (plus `reserve_bytes`) fits the size cap.

        Returns:
            Number of files removed.
        """

        removed = 0
        survivors: list[tuple[float, Path, int]] = []
        for path in self._files():
            record = self._read(path)
            if record is None:
                removed += 1
                continue
            _, _, saved_at = record
            if path == keep:
                continue
            survivors.append((saved_at, path, _file_size(path)))

        total = sum(size for _, _, size in survivors)
        survivors.sort(key=lambda item: item[0])
        for _, path, size in survivors:
            if total + reserve_bytes <= self.max_size_bytes:
                break
            self._unlink(path)
            total -= size
            removed += 1

        if removed:
            logger.debug("Pruned %d persisted cache entries from %s", removed, self.directory)
        return removed

    def size_bytes(self) -> int:
        return sum(_file_size(path) for path in self._files())

    def info(self) -> StorageInfo:
        files = self._files()
        return StorageInfo(
            enabled=True,
            directory=str(self.directory),
            size_bytes=sum(_file_size(path) for path in files),
            max_size_bytes=self.max_size_bytes,
            entry_count=len(files),
        )

    def _files(self) -> list[Path]:
        if not self.directory.is_dir():
            return []
        return sorted(self.directory.glob(f"*{STORAGE_SUFFIX}"))

    def _size_without(self, path: Path) -> int:
        return self.size_bytes() - (_file_size(path) if path.exists() else 0)

    def _read(self, path: Path) -> tuple[str, CacheEntry, float] | None:
        """Parse one file; incompatible, expired or corrupt files are deleted."""

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            if raw.get("version") != CACHE_FORMAT_VERSION:
                logger.debug("Dropping cache file %s with format version %r", path.name, raw.get("version"))
                self._unlink(path)
                return None
            key = str(raw["key"])
            entry = CacheEntry.from_dict(raw["entry"])
            saved_at = float(raw.get("saved_at", 0.0))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as error:
            logger.warning("Dropping unreadable cache file %s: %s", path.name, error)
            self._unlink(path)
            return None
        except (AttributeError, KeyError, TypeError, ValueError) as error:
            logger.warning("Dropping malformed cache file %s: %s", path.name, error)
            self._unlink(path)
            return None

        if self._clock() > entry.data.expires_at:
            self._unlink(path)
            return None
        return key, entry, saved_at

    @staticmethod
    def _unlink(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as error:
            logger.warning("Failed to remove cache file %s: %s", path, error)


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


class ExternalCalendarCache:
    """In-memory LRU cache of loaded calendars with optional disk persistence."""

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or CacheConfig()
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._sizes: dict[str, int] = {}
        self._hits = 0
        self._misses = 0
        self._cleanup_task: asyncio.Task[None] | None = None
        self._destroyed = False
        self._storage = self._build_storage()
        self._load_from_storage()
        self._ensure_cleanup_task()

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def set(
        self,
        key: str,
        calendar: CalendarData,
        source: ExternalCalendarSource,
        expires_at: float | None = None,
        etag: str | None = None,
    ) -> CachedCalendarData:
        """Store a calendar.

        Args:
            key: External calendar id.
            calendar: Validated calendar payload.
            source: Source the calendar was loaded from.
            expires_at: Absolute expiry (epoch seconds). Defaults to
                `now + default_ttl`.
            etag: Version tag reported by the source, if any.

        Returns:
            The stored record.
        """

        now = self._clock()
        data = CachedCalendarData(
            calendar=calendar,
            cached_at=now,
            expires_at=now + self._config.default_ttl if expires_at is None else expires_at,
            source=source,
            etag=etag,
        )

        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self._config.max_size:
            self._evict_lru()

        entry = CacheEntry(data=data, last_accessed=now)
        self._entries[key] = entry
        self._sizes[key] = estimate_size(calendar)
        if self._storage is not None:
            self._storage.save(key, entry)
        logger.debug("Cached external calendar %s (expires at %.0f)", key, data.expires_at)
        self._ensure_cleanup_task()
        return data

    def get(self, key: str, *, include_expired: bool = False) -> CachedCalendarData | None:
        """Look up a calendar and record a hit or a miss.

        A hit refreshes the entry's access time. Expired entries are misses
        unless `include_expired` is set.
        """

        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        if not include_expired and self._is_entry_expired(entry):
            self._misses += 1
            return None

        entry.last_accessed = self._clock()
        # most recently touched entries live at the end
        self._entries[key] = self._entries.pop(key)
        self._hits += 1
        return entry.data

    def has(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not self._is_entry_expired(entry)

    def delete(self, key: str) -> bool:
        removed = self._entries.pop(key, None)
        self._sizes.pop(key, None)
        if self._storage is not None:
            self._storage.remove(key)
        return removed is not None

    def clear(self) -> None:
        self._entries.clear()
        self._sizes.clear()
        self._hits = 0
        self._misses = 0
        if self._storage is not None:
            self._storage.clear()

    def size(self) -> int:
        return len(self._entries)

    def keys(self) -> list[str]:
        return list(self._entries)

    def is_expired(self, key: str) -> bool:
        """True when the key is missing or past its expiry."""

        entry = self._entries.get(key)
        return entry is None or self._is_entry_expired(entry)

    def has_valid_etag(self, key: str, etag: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.data.etag == etag

    def get_etag(self, key: str) -> str | None:
        entry = self._entries.get(key)
        return entry.data.etag if entry is not None else None

    def cleanup_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""

        expired = [key for key, entry in self._entries.items() if self._is_entry_expired(entry)]
        for key in expired:
            self.delete(key)
        if expired:
            logger.debug("Removed %d expired external calendar(s)", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Configuration and stats
    # ------------------------------------------------------------------

    def configure(self, **changes: Any) -> CacheConfig:
        """Apply a partial configuration update.

        Lowering `max_size` evicts immediately. Changing the storage settings
        switches to the new directory without reloading it.

        Raises:
            ValueError: For unknown settings or out-of-range values; the
                current configuration is left untouched.
        """

        unknown = set(changes) - set(asdict(self._config))
        if unknown:
            raise ValueError(f"Unknown cache setting(s): {', '.join(sorted(unknown))}")

        old_config = self._config
        self._config = replace(self._config, **changes)
        if self._config.max_size != old_config.max_size:
            self._enforce_max_size()

        if (self._config.storage_dir, self._config.storage_max_size_mb) != (
            old_config.storage_dir,
            old_config.storage_max_size_mb,
        ):
            self._storage = self._build_storage()

        if "cleanup_interval" in changes and self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None
            self._ensure_cleanup_task()

        logger.debug("External calendar cache configured: %s", asdict(self._config))
        return self._config

    def get_configuration(self) -> CacheConfig:
        return self._config

    def get_stats(self) -> CacheStats:
        total_requests = self._hits + self._misses
        hit_rate = self._hits / total_requests if total_requests > 0 else 0.0
        return CacheStats(
            total_cached=len(self._entries),
            hits=self._hits,
            misses=self._misses,
            hit_rate=hit_rate,
            size_bytes=sum(self._sizes.values()),
        )

    def get_storage_info(self) -> StorageInfo:
        if self._storage is None:
            return StorageInfo(
                enabled=False, directory=None, size_bytes=0, max_size_bytes=0, entry_count=0
            )
        return self._storage.info()

    def prune_storage(self) -> int:
        """Prune the disk layer now; 0 when persistence is disabled."""

        return self._storage.prune() if self._storage is not None else 0

    def destroy(self) -> None:
        """Stop the sweep and drop in-memory state; persisted files are kept."""

        self._destroyed = True
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None
        self._entries.clear()
        self._sizes.clear()
        self._hits = 0
        self._misses = 0

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build_storage(self) -> CacheStorage | None:
        if self._config.storage_dir is None:
            return None
        return CacheStorage(
            self._config.storage_dir,
            max_size_mb=self._config.storage_max_size_mb,
            clock=self._clock,
        )

    def _load_from_storage(self) -> None:
        if self._storage is None:
            return
        loaded = self._storage.load()
        for key, entry in sorted(loaded.items(), key=lambda item: item[1].last_accessed):
            self._entries[key] = entry
            self._sizes[key] = estimate_size(entry.data.calendar)
        self._enforce_max_size()

    def _is_entry_expired(self, entry: CacheEntry) -> bool:
        return self._clock() > entry.data.expires_at

    def _evict_lru(self) -> None:
        if not self._entries:
            return
        # min() keeps the first of equal timestamps, i.e. the least recently touched
        oldest_key = min(self._entries, key=lambda k: self._entries[k].last_accessed)
        self.delete(oldest_key)
        logger.debug("Evicted least recently used external calendar %s", oldest_key)

    def _enforce_max_size(self) -> None:
        while len(self._entries) > self._config.max_size:
            self._evict_lru()

    def _ensure_cleanup_task(self) -> None:
        if self._destroyed or self._cleanup_task is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cleanup_task = loop.create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.cleanup_interval)
            self.cleanup_expired()
