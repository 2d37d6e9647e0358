"""External calendar registry.

The registry is the single entry point for loading external calendars:

- dispatches `protocol:location` ids to the handler registered for the
  protocol (one handler per protocol)
- decides per call whether the cache may be used, consults it, and stores
  fresh loads together with the source's version tag
- converts every failure into a `LoadCalendarResult` and emits
  `calendar-loaded` / `calendar-cached` / `calendar-error` events
- keeps the list of configured sources and, when enabled, re-checks them
  periodically (`calendar-updated`)
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import asdict, dataclass, replace
from typing import Any, Awaitable, Callable, Iterable, Union

from calendar_sources.core.cache import CacheConfig, ExternalCalendarCache
from calendar_sources.core.calendar_ids import (
    build_composite_id,
    namespace_display_name,
    parse_external_calendar_id,
    parse_location_namespace,
    resolve_id_conflict,
)
from calendar_sources.core.environment import DevEnvironmentDetector
from calendar_sources.core.errors import (
    UNEXPECTED_ERROR_KIND,
    ProtocolNotRegisteredError,
    error_kind,
)
from calendar_sources.core.types import (
    EVENT_CACHED,
    EVENT_ERROR,
    EVENT_LOADED,
    EVENT_UPDATED,
    CacheStats,
    ExternalCalendarEvent,
    ExternalCalendarId,
    ExternalCalendarSource,
    LoadCalendarOptions,
    LoadCalendarResult,
    source_key,
)
from calendar_sources.libs.protocol.base_handler import BaseProtocolHandler
from calendar_sources.libs.protocol.function_handler import as_protocol_handler
from calendar_sources.libs.protocol.utils import file_extension, is_prerelease_version
from calendar_sources.observability.logger import get_logger

logger = get_logger(__name__)

EventListener = Callable[[ExternalCalendarEvent], Union[None, Awaitable[None]]]

_EVENT_SHORT_TYPES = {
    EVENT_LOADED: "loaded",
    EVENT_CACHED: "cached",
    EVENT_ERROR: "error",
    EVENT_UPDATED: "updated",
}


@dataclass(frozen=True)
class RegistryConfig:
    """Registry tuning. Out-of-range values raise ValueError on construction."""

    default_cache_duration: float = 7 * 24 * 60 * 60
    max_cache_size: int = 100
    request_timeout: float = 30.0
    auto_update: bool = False
    update_interval: float = 24 * 60 * 60

    def __post_init__(self) -> None:
        size = self.max_cache_size
        if isinstance(size, bool) or not isinstance(size, int) or size < 1:
            raise ValueError(f"max_cache_size must be an integer of at least 1, got {size!r}")
        for name in ("default_cache_duration", "request_timeout", "update_interval"):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value!r}")


class ExternalCalendarRegistry:
    """Coordinates protocol handlers, the cache and configured sources."""

    def __init__(
        self,
        *,
        cache: ExternalCalendarCache | None = None,
        environment: DevEnvironmentDetector | None = None,
        config: RegistryConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Build a registry with no handlers registered.

        Args:
            cache: Shared cache; a fresh in-memory one sized from `config` when omitted.
            environment: Host classifier driving cache bypass.
            config: Registry tuning; defaults when omitted.
            clock: Epoch-seconds source for cache times and `last_checked`.
        """

        self._config = config or RegistryConfig()
        self._clock = clock
        self.cache = cache or ExternalCalendarCache(
            CacheConfig(
                max_size=self._config.max_cache_size,
                default_ttl=self._config.default_cache_duration,
            ),
            clock=clock,
        )
        self.environment = environment or DevEnvironmentDetector()
        self._handlers: dict[str, BaseProtocolHandler] = {}
        self._sources: dict[ExternalCalendarId, ExternalCalendarSource] = {}
        self._listeners: dict[str, list[EventListener]] = {}
        self._auto_update_task: asyncio.Task[None] | None = None
        self._destroyed = False
        self._ensure_auto_update()

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def register_handler(self, handler: Any) -> BaseProtocolHandler:
        """Register the handler for its protocol.

        Args:
            handler: A `BaseProtocolHandler`, or a bare object with `protocol`
                and `load_calendar` which is wrapped in a
                `FunctionProtocolHandler`.

        Returns:
            The handler as registered.

        Raises:
            ValueError: When the protocol already has a handler.
            TypeError: When `handler` is neither shape.
        """

        handler = as_protocol_handler(handler)
        protocol = handler.protocol
        if protocol in self._handlers:
            raise ValueError(f"Protocol {protocol} already registered")
        self._handlers[protocol] = handler
        logger.debug("Registered protocol handler: %s", protocol)
        return handler

    def unregister_handler(self, protocol: str) -> bool:
        removed = self._handlers.pop(protocol, None) is not None
        if removed:
            logger.debug("Unregistered protocol handler: %s", protocol)
        return removed

    def has_handler(self, protocol: str) -> bool:
        return protocol in self._handlers

    def get_handler(self, protocol: str) -> BaseProtocolHandler | None:
        return self._handlers.get(protocol)

    def get_registered_protocols(self) -> list[str]:
        return list(self._handlers)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @staticmethod
    def parse_external_calendar_id(external_id: ExternalCalendarId) -> tuple[str, str]:
        return parse_external_calendar_id(external_id)

    @staticmethod
    def derive_identity(
        external_id: ExternalCalendarId,
        calendar_id: str | None = None,
        existing_ids: Iterable[str] = (),
    ) -> str:
        """Collision-free composite id (`namespace/calendar-id`) for a source."""

        protocol, location = parse_external_calendar_id(external_id)
        parsed = parse_location_namespace(protocol, location)
        bare_id = calendar_id or _strip_extension(parsed.calendar_id)
        return resolve_id_conflict(build_composite_id(parsed.namespace, bare_id), existing_ids)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load_external_calendar(
        self,
        external_id: ExternalCalendarId,
        options: LoadCalendarOptions | None = None,
    ) -> LoadCalendarResult:
        """Load one calendar. Never raises; failures come back as results."""

        self._ensure_auto_update()
        options = options or LoadCalendarOptions()
        if options.timeout is None:
            options = replace(options, timeout=self._config.request_timeout)

        try:
            protocol, location = parse_external_calendar_id(external_id)
            cache_key = source_key(protocol, location)
            handler = self._handlers.get(protocol)
            if handler is None:
                raise ProtocolNotRegisteredError(
                    f"No handler found for protocol: {protocol}", location=external_id
                )

            skip_cache = self._should_skip_cache(protocol, location, options, handler)
            if not skip_cache and options.use_cache and not options.force_refresh:
                cached = self.cache.get(cache_key)
                if cached is not None:
                    await self._emit(EVENT_CACHED, external_id, calendar=cached.calendar)
                    return LoadCalendarResult(
                        success=True,
                        calendar=cached.calendar,
                        from_cache=True,
                        source=cached.source,
                    )

            fetched = await handler.fetch_calendar(location, options)
            if self._destroyed:
                logger.debug("Registry destroyed while loading %s; result not cached", external_id)
                return LoadCalendarResult(success=True, calendar=fetched.calendar)

            source = self._fresh_source(protocol, location)
            if skip_cache:
                logger.debug("Not caching %s", external_id)
            else:
                self.cache.set(
                    cache_key,
                    fetched.calendar,
                    source,
                    self._clock() + self._config.default_cache_duration,
                    etag=fetched.version_tag,
                )

            await self._emit(EVENT_LOADED, external_id, calendar=fetched.calendar)
            return LoadCalendarResult(
                success=True,
                calendar=fetched.calendar,
                from_cache=False,
                source=source,
            )
        except Exception as error:  # noqa: BLE001 - converted into a failure result
            kind = error_kind(error)
            message = str(error) or error.__class__.__name__
            if kind == UNEXPECTED_ERROR_KIND:
                logger.exception("Unexpected error loading external calendar %s", external_id)
            else:
                logger.error("Failed to load external calendar %s: %s", external_id, message)

            if not self._destroyed:
                await self._emit(EVENT_ERROR, external_id, error=message)
            return LoadCalendarResult(success=False, error=message, error_type=kind)

    async def check_for_updates(self, external_id: ExternalCalendarId) -> bool:
        """Ask the handler whether the source changed since it was cached."""

        try:
            protocol, location = parse_external_calendar_id(external_id)
        except ValueError:
            return False

        handler = self._handlers.get(protocol)
        if handler is None or not handler.supports_update_checks:
            return False

        options = LoadCalendarOptions(timeout=self._config.request_timeout)
        last_tag = self.cache.get_etag(source_key(protocol, location))
        try:
            return await handler.check_for_updates(location, last_tag, options)
        except Exception as error:  # noqa: BLE001 - update checks are fail-safe
            logger.debug("Update check failed for %s: %s", external_id, error)
            return False

    async def refresh_sources(self) -> list[ExternalCalendarId]:
        """Reload every enabled source that reports a change."""

        updated: list[ExternalCalendarId] = []
        for key, source in list(self._sources.items()):
            if self._destroyed:
                break
            if not source.enabled:
                continue

            changed = await self.check_for_updates(key)
            source.last_checked = self._clock()
            if not changed or self._destroyed:
                continue

            result = await self.load_external_calendar(key, LoadCalendarOptions(force_refresh=True))
            if result.success:
                updated.append(key)
                await self._emit(EVENT_UPDATED, key, calendar=result.calendar)

        if updated:
            logger.info("Updated %d external calendar source(s)", len(updated))
        return updated

    # ------------------------------------------------------------------
    # Source bookkeeping
    # ------------------------------------------------------------------

    def add_external_source(self, source: ExternalCalendarSource) -> ExternalCalendarSource:
        """Add a configured source, or merge into the one with the same key.

        New sources get `namespace`, `calendar_id` and `label` filled from
        their location when not given. On merge, fields passed as `None` keep
        the existing value.

        Returns:
            The source as stored.
        """

        key = source.key
        existing = self._sources.get(key)
        if existing is not None:
            merged = replace(
                existing,
                **{name: value for name, value in asdict(source).items() if value is not None},
            )
            self._sources[key] = merged
            logger.debug("Updated external calendar source: %s", key)
            return merged

        parsed = parse_location_namespace(source.protocol, source.location)
        filled = replace(
            source,
            namespace=source.namespace or parsed.namespace,
            calendar_id=source.calendar_id or parsed.calendar_id,
            label=source.label or namespace_display_name(key) or parsed.calendar_id,
        )
        self._sources[key] = filled
        logger.debug("Added external calendar source: %s", key)
        return filled

    def remove_external_source(self, external_id: ExternalCalendarId) -> bool:
        """Forget a configured source and drop its cached calendar.

        Returns:
            True when the source existed.
        """

        protocol, location = parse_external_calendar_id(external_id)
        key = source_key(protocol, location)
        removed = self._sources.pop(key, None) is not None
        if removed:
            self.cache.delete(key)
            logger.debug("Removed external calendar source: %s", key)
        return removed

    def update_external_source(
        self, external_id: ExternalCalendarId, **updates: Any
    ) -> ExternalCalendarSource | None:
        """Patch a configured source. Returns None when it is unknown.

        Raises:
            ValueError: When `updates` touches `protocol` or `location`.
        """

        protocol, location = parse_external_calendar_id(external_id)
        key = source_key(protocol, location)
        source = self._sources.get(key)
        if source is None:
            return None

        immutable = {"protocol", "location"} & set(updates)
        if immutable:
            raise ValueError(f"Cannot update {', '.join(sorted(immutable))} of a source; re-add it")
        updated = replace(source, **updates)
        self._sources[key] = updated
        logger.debug("Updated external calendar source: %s", key)
        return updated

    def get_external_sources(self) -> list[ExternalCalendarSource]:
        return list(self._sources.values())

    # ------------------------------------------------------------------
    # Configuration, cache and events
    # ------------------------------------------------------------------

    def configure(self, **changes: Any) -> RegistryConfig:
        """Apply a partial registry configuration update.

        `max_cache_size` and `default_cache_duration` are forwarded to the
        cache; changing `auto_update` or `update_interval` restarts the
        periodic refresh.

        Raises:
            ValueError: For unknown settings or out-of-range values; nothing
                is changed in that case.
        """

        unknown = set(changes) - set(asdict(self._config))
        if unknown:
            raise ValueError(f"Unknown registry setting(s): {', '.join(sorted(unknown))}")

        self._config = replace(self._config, **changes)

        cache_changes: dict[str, Any] = {}
        if "max_cache_size" in changes:
            cache_changes["max_size"] = self._config.max_cache_size
        if "default_cache_duration" in changes:
            cache_changes["default_ttl"] = self._config.default_cache_duration
        if cache_changes:
            self.cache.configure(**cache_changes)

        if {"auto_update", "update_interval"} & set(changes):
            self._cancel_auto_update()
            self._ensure_auto_update()

        logger.debug("External calendar registry configured: %s", asdict(self._config))
        return self._config

    def get_configuration(self) -> RegistryConfig:
        return self._config

    def get_cache_stats(self) -> CacheStats:
        return self.cache.get_stats()

    def clear_cache(self) -> None:
        self.cache.clear()

    def on(self, event_type: str, listener: EventListener) -> None:
        """Subscribe `listener` to one of the `EVENT_*` types."""

        self._listeners.setdefault(event_type, []).append(listener)

    def off(self, event_type: str, listener: EventListener) -> None:
        listeners = self._listeners.get(event_type)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def destroy(self) -> None:
        """Stop auto-update and forget all registered state; in-flight loads are not cached."""

        self._destroyed = True
        self._cancel_auto_update()
        self.cache.destroy()
        self._handlers.clear()
        self._sources.clear()
        self._listeners.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _should_skip_cache(
        self,
        protocol: str,
        location: str,
        options: LoadCalendarOptions,
        handler: BaseProtocolHandler,
    ) -> bool:
        if protocol == "local":
            logger.debug("Skipping cache for local file: %s", location)
            return True

        if options.enable_dev_mode:
            logger.debug("Skipping cache in explicit dev mode: %s", location)
            return True

        if options.enable_dev_mode is None:
            env = self.environment
            dev_url = protocol == "https" and env.is_dev_url(location)
            if env.should_disable_caching() or env.should_use_dev_mode() or dev_url:
                logger.debug(
                    "Skipping cache for localhost/development environment: %s", location
                )
                return True

        if options.skip_cache:
            return True

        if protocol == "module":
            if options.skip_module_cache:
                return True
            return self._is_prerelease_extension(location, handler)

        return False

    def _is_prerelease_extension(self, location: str, handler: BaseProtocolHandler) -> bool:
        lookup = getattr(handler, "lookup_extension", None)
        if lookup is None:
            return False

        extension = lookup(location)
        if extension is None:
            return False

        version = extension.version or ""
        if is_prerelease_version(version):
            logger.debug(
                "Module %s detected as development version (%s), skipping cache",
                extension.name,
                version,
            )
            return True
        return False

    def _fresh_source(self, protocol: str, location: str) -> ExternalCalendarSource:
        key = source_key(protocol, location)
        configured = self._sources.get(key)
        if configured is not None:
            return replace(configured, last_checked=self._clock())

        parsed = parse_location_namespace(protocol, location)
        return ExternalCalendarSource(
            protocol=protocol,
            location=location,
            namespace=parsed.namespace,
            calendar_id=parsed.calendar_id,
            label=namespace_display_name(key) or parsed.calendar_id,
            last_checked=self._clock(),
        )

    async def _emit(
        self,
        event_type: str,
        calendar_id: ExternalCalendarId,
        *,
        calendar: Any = None,
        error: str | None = None,
    ) -> None:
        listeners = list(self._listeners.get(event_type, ()))
        if not listeners:
            return

        event = ExternalCalendarEvent(
            type=_EVENT_SHORT_TYPES.get(event_type, event_type),
            calendar_id=calendar_id,
            calendar=calendar,
            error=error,
        )
        for listener in listeners:
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:  # noqa: BLE001 - one listener must not break the others
                logger.exception("Error in event listener for %s", event_type)

    def _ensure_auto_update(self) -> None:
        if self._destroyed or not self._config.auto_update or self._auto_update_task is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._auto_update_task = loop.create_task(self._auto_update_loop())

    def _cancel_auto_update(self) -> None:
        if self._auto_update_task is not None:
            self._auto_update_task.cancel()
            self._auto_update_task = None

    async def _auto_update_loop(self) -> None:
        while not self._destroyed:
            await asyncio.sleep(self._config.update_interval)
            if self._destroyed:
                return
            await self.refresh_sources()


def _strip_extension(calendar_id: str) -> str:
    extension = file_extension(calendar_id)
    if extension is None:
        return calendar_id
    return calendar_id[: -(len(extension) + 1)]
