"""Adapter for handlers that are only a protocol name plus a load function.

Third-party code can register a loader without subclassing
`BaseProtocolHandler`:

    registry.register_handler(FunctionProtocolHandler("dropbox", load_from_dropbox))

or pass any object with `protocol` and `load_calendar` attributes (and no
`can_handle`) to `as_protocol_handler`. The load function receives the raw
location, may be sync or async, and its result goes through the same payload
validation as the built-in handlers. Locations are passed through untouched:
no `.json` defaulting and no collection-index resolution.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Union

from calendar_sources.core.errors import RequestTimeoutError
from calendar_sources.core.types import CalendarData, LoadCalendarOptions
from calendar_sources.libs.protocol.base_handler import BaseProtocolHandler
from calendar_sources.observability.logger import get_logger

logger = get_logger(__name__)

LoadFunction = Callable[[str], Union[CalendarData, Awaitable[CalendarData]]]

URL_SCHEMES = ("https://", "http://", "ftp://", "file://")


class FunctionProtocolHandler(BaseProtocolHandler):
    """Wraps a load function in the protocol handler contract."""

    def __init__(
        self,
        protocol: str,
        load: LoadFunction,
        settings: Any = None,
        *,
        environment: Any = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(settings, environment=environment, **kwargs)
        normalized = protocol.strip().lower() if isinstance(protocol, str) else ""
        if not normalized:
            raise ValueError("Protocol name cannot be empty")
        if not callable(load):
            raise ValueError(f"Load function for protocol {normalized} must be callable")
        self.protocol = normalized
        self._load = load

    def can_handle(self, location: str) -> bool:
        if not location or not location.strip():
            return False
        return not location.lower().startswith(URL_SCHEMES)

    async def resolve_target(self, location: str, options: LoadCalendarOptions) -> str:
        return location

    async def _fetch_document(
        self, location: str, options: LoadCalendarOptions
    ) -> tuple[Any, str | None]:
        logger.debug("Loading calendar via wrapped handler (%s): %s", self.protocol, location)
        outcome = self._load(location)
        if not inspect.isawaitable(outcome):
            return outcome, None

        timeout = self.effective_timeout(options)
        try:
            return await asyncio.wait_for(outcome, timeout=timeout), None
        except asyncio.TimeoutError as error:
            raise RequestTimeoutError(
                f"Loading {self.protocol}:{location} timed out (timeout: {int(timeout * 1000)}ms)",
                location=location,
            ) from error


def as_protocol_handler(handler: Any) -> BaseProtocolHandler:
    """Return `handler` as a full protocol handler.

    Raises:
        TypeError: When `handler` is neither a `BaseProtocolHandler` nor an
            object with a `protocol` string and a callable `load_calendar`.
    """

    if isinstance(handler, BaseProtocolHandler):
        return handler

    protocol = getattr(handler, "protocol", None)
    load = getattr(handler, "load_calendar", None)
    if isinstance(protocol, str) and callable(load) and not hasattr(handler, "can_handle"):
        return FunctionProtocolHandler(protocol, load)

    raise TypeError(
        "Invalid protocol handler: expected a BaseProtocolHandler or an object "
        "with `protocol` and `load_calendar`"
    )
