"""Factory that builds protocol handlers by protocol name.

Registration maps a protocol string (`https`, `github`, ...) to a handler
class; `create` instantiates it with the shared settings and collaborators.
Callers never branch on the protocol themselves.
"""

from __future__ import annotations

from typing import Any

from calendar_sources.libs.protocol.base_handler import BaseProtocolHandler


class ProtocolHandlerFactory:
    """Registry-based protocol handler factory."""

    _PROVIDERS: dict[str, type[BaseProtocolHandler]] = {}

    @classmethod
    def register_provider(cls, name: str, provider_cls: type[BaseProtocolHandler]) -> None:
        """Register a handler class under a protocol name (case-insensitive)."""

        normalized_name = name.strip().lower()
        if not normalized_name:
            raise ValueError("Provider name cannot be empty")

        if not isinstance(provider_cls, type) or not issubclass(provider_cls, BaseProtocolHandler):
            raise ValueError("Provider class must inherit from BaseProtocolHandler")

        cls._PROVIDERS[normalized_name] = provider_cls

    @classmethod
    def create(cls, protocol: str, settings: Any = None, **kwargs: Any) -> BaseProtocolHandler:
        """Instantiate the handler registered for `protocol`.

        Extra keyword arguments (environment, transport, extensions, ...) are
        passed to the handler constructor.
        """

        if not isinstance(protocol, str) or not protocol.strip():
            raise ValueError("Missing required argument: protocol")

        normalized_name = protocol.strip().lower()
        provider_cls = cls._PROVIDERS.get(normalized_name)
        if provider_cls is None:
            available = ", ".join(cls.list_providers()) or "(none)"
            raise ValueError(
                f"Unsupported protocol '{protocol}'. Available protocols: {available}"
            )

        return provider_cls(settings, **kwargs)

    @classmethod
    def list_providers(cls) -> list[str]:
        return sorted(cls._PROVIDERS)
