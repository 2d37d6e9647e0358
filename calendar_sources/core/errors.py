"""Error taxonomy for external calendar loading.

Every failure raised by a protocol handler derives from `CalendarSourceError`.
The class-level `kind` is the stable identifier reported in failure results.
"""

from __future__ import annotations

from datetime import datetime


class CalendarSourceError(RuntimeError):
    """Base class for all calendar source failures."""

    kind = "calendar-source-error"

    def __init__(self, message: str, *, location: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.location = location

    def to_dict(self) -> dict[str, object]:
        return {"kind": self.kind, "message": self.message, "location": self.location}


class ProtocolNotRegisteredError(CalendarSourceError):
    kind = "protocol-not-registered"


class MalformedIdentifierError(CalendarSourceError, ValueError):
    kind = "malformed-identifier"


class NotFoundError(CalendarSourceError):
    kind = "not-found"


class AccessDeniedError(CalendarSourceError):
    kind = "access-denied"


class ServerError(CalendarSourceError):
    kind = "server-error"


class RemoteRequestError(CalendarSourceError):
    """Non-2xx responses without a dedicated class, and transport failures."""

    kind = "request-failed"


class RateLimitedError(CalendarSourceError):
    kind = "rate-limited"

    def __init__(
        self,
        message: str,
        *,
        location: str | None = None,
        reset_at: datetime | None = None,
    ) -> None:
        super().__init__(message, location=location)
        self.reset_at = reset_at


class RequestTimeoutError(CalendarSourceError):
    kind = "timeout"


class MalformedJSONError(CalendarSourceError):
    kind = "malformed-json"


class MalformedPayloadError(CalendarSourceError):
    kind = "malformed-payload"


class AmbiguousSelectionError(CalendarSourceError):
    kind = "ambiguous-selection"


class SelectionNotFoundError(CalendarSourceError):
    kind = "selection-not-found"


class EmptyCollectionError(CalendarSourceError):
    kind = "empty-collection"


class IndexIntegrityError(CalendarSourceError):
    kind = "index-integrity"


class RedirectError(CalendarSourceError):
    kind = "invalid-redirect"


class InsecureRedirectError(RedirectError):
    kind = "insecure-redirect"


class SuspiciousRedirectError(RedirectError):
    kind = "suspicious-redirect"


class TooManyRedirectsError(RedirectError):
    kind = "too-many-redirects"


class ExtensionUnavailableError(CalendarSourceError):
    kind = "extension-unavailable"


UNEXPECTED_ERROR_KIND = "unexpected"


def error_kind(error: BaseException) -> str:
    """Return the taxonomy kind for an exception (``unexpected`` for foreign ones)."""

    if isinstance(error, CalendarSourceError):
        return error.kind
    return UNEXPECTED_ERROR_KIND
