"""Composition root: wires settings, environment, cache, handlers and registry."""

from __future__ import annotations

from typing import Callable

import httpx

from calendar_sources.core.cache import CacheConfig, ExternalCalendarCache
from calendar_sources.core.environment import DevEnvironmentDetector, HostContext
from calendar_sources.core.registry import ExternalCalendarRegistry, RegistryConfig
from calendar_sources.core.settings import Settings, default_settings
from calendar_sources.libs.protocol import (
    ExtensionCatalog,
    HttpsProtocolHandler,
    ProtocolHandlerFactory,
)
from calendar_sources.observability.logger import get_logger

DEFAULT_PROTOCOLS = ("https", "github", "module", "local")


def host_context_provider(settings: Settings, extensions: ExtensionCatalog) -> Callable[[], HostContext]:
    """Settings win over environment variables; extensions are read lazily."""

    def provide() -> HostContext:
        from_env = HostContext.from_env()
        return HostContext(
            url=settings.host.url or from_env.url,
            debug=settings.host.debug or from_env.debug,
            data_path=settings.host.data_path or from_env.data_path,
            extensions=tuple(extensions.values()),
        )

    return provide


def build_registry(
    settings: Settings | None = None,
    *,
    environment: DevEnvironmentDetector | None = None,
    extensions: ExtensionCatalog | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    protocols: tuple[str, ...] = DEFAULT_PROTOCOLS,
) -> ExternalCalendarRegistry:
    """Build a registry with the built-in handlers sharing one HTTP handler."""

    settings = settings or default_settings()
    logger = get_logger(level=settings.observability.log_level)

    extensions = extensions if extensions is not None else ExtensionCatalog()
    environment = environment or DevEnvironmentDetector(
        host_context_provider(settings, extensions)
    )

    if environment.should_enable_debug_logging():
        logger.setLevel("DEBUG")
        logger.debug("Development environment detected; debug logging enabled")

    registry_settings = settings.registry
    cache = ExternalCalendarCache(
        CacheConfig(
            max_size=registry_settings.max_cache_size,
            default_ttl=registry_settings.default_cache_duration,
            cleanup_interval=settings.cache.cleanup_interval,
            storage_dir=settings.cache.storage_dir,
            storage_max_size_mb=settings.cache.storage_max_size_mb,
        )
    )
    registry = ExternalCalendarRegistry(
        cache=cache,
        environment=environment,
        config=RegistryConfig(
            default_cache_duration=registry_settings.default_cache_duration,
            max_cache_size=registry_settings.max_cache_size,
            request_timeout=registry_settings.request_timeout,
            auto_update=registry_settings.auto_update,
            update_interval=registry_settings.update_interval,
        ),
    )

    http = HttpsProtocolHandler(settings, environment=environment, transport=transport)
    shared = {"https": http}
    for protocol in protocols:
        handler = shared.get(protocol) or ProtocolHandlerFactory.create(
            protocol,
            settings,
            environment=environment,
            http=http,
            extensions=extensions,
            transport=transport,
        )
        registry.register_handler(handler)

    return registry
