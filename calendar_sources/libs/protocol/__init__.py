"""Protocol handlers and default provider registration.

`from calendar_sources.libs.protocol import ProtocolHandlerFactory` is enough
to build any of the built-in handlers.
"""

from calendar_sources.libs.protocol.base_handler import BaseProtocolHandler
from calendar_sources.libs.protocol.function_handler import (
    FunctionProtocolHandler,
    as_protocol_handler,
)
from calendar_sources.libs.protocol.github_handler import GitHubProtocolHandler
from calendar_sources.libs.protocol.handler_factory import ProtocolHandlerFactory
from calendar_sources.libs.protocol.https_handler import HttpsProtocolHandler
from calendar_sources.libs.protocol.local_handler import LocalProtocolHandler
from calendar_sources.libs.protocol.module_handler import (
    ExtensionCatalog,
    ExtensionInfo,
    ModuleProtocolHandler,
)

# Built-in handlers are registered on import.
if "https" not in ProtocolHandlerFactory._PROVIDERS:
    ProtocolHandlerFactory.register_provider("https", HttpsProtocolHandler)
if "github" not in ProtocolHandlerFactory._PROVIDERS:
    ProtocolHandlerFactory.register_provider("github", GitHubProtocolHandler)
if "module" not in ProtocolHandlerFactory._PROVIDERS:
    ProtocolHandlerFactory.register_provider("module", ModuleProtocolHandler)
if "local" not in ProtocolHandlerFactory._PROVIDERS:
    ProtocolHandlerFactory.register_provider("local", LocalProtocolHandler)

__all__ = [
    "BaseProtocolHandler",
    "ExtensionCatalog",
    "ExtensionInfo",
    "FunctionProtocolHandler",
    "GitHubProtocolHandler",
    "HttpsProtocolHandler",
    "LocalProtocolHandler",
    "ModuleProtocolHandler",
    "ProtocolHandlerFactory",
    "as_protocol_handler",
]
