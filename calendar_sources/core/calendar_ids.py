"""External calendar id parsing and collision-safe display identities.

An external id is `<protocol>:<location>`. The location may carry a
namespace in one of three shapes:

- URL-shaped:   `github.com/user/repo/calendar.json`, `https://host/a/b.json`
- slash-shaped: `rayners/dark-sun-calendar`
- colon-shaped: `rayners:my-calendar`

The namespace is used for labels and for composite ids such as
`gh/user/repo/test-calendar`; it never affects which calendar is selected.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

from calendar_sources.core.errors import MalformedIdentifierError

KNOWN_HOSTS = {
    "github.com": "gh",
    "www.github.com": "gh",
    "raw.githubusercontent.com": "gh",
    "api.github.com": "gh",
    "gitlab.com": "gl",
    "www.gitlab.com": "gl",
    "bitbucket.org": "bb",
    "www.bitbucket.org": "bb",
}
HOST_DISPLAY_NAMES = {"gh": "GitHub", "gl": "GitLab", "bb": "Bitbucket"}

_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")
_UNSAFE_RE = re.compile(r"[^a-z0-9._/-]+")
_REPEATED_DASH_RE = re.compile(r"-{2,}")
_REPEATED_SLASH_RE = re.compile(r"/{2,}")


@dataclass(frozen=True)
class LocationNamespace:
    namespace: str | None
    calendar_id: str
    base_location: str


def parse_external_calendar_id(external_id: str) -> tuple[str, str]:
    """Split on the first `:` into (protocol, location)."""

    if not isinstance(external_id, str):
        raise MalformedIdentifierError("External calendar id must be a string")

    protocol, sep, location = external_id.partition(":")
    protocol = protocol.strip()
    if not sep or not protocol or not location.strip():
        raise MalformedIdentifierError(
            f"Invalid external calendar id: {external_id!r} (expected 'protocol:location')",
            location=external_id,
        )
    return protocol.lower(), location.strip()


def parse_location_namespace(protocol: str, location: str) -> LocationNamespace:
    base, _, fragment = location.partition("#")
    path = _SCHEME_RE.sub("", base.strip()).replace("\\", "/").strip("/")
    fragment = fragment.strip()

    if fragment:
        return LocationNamespace(namespace=path or None, calendar_id=fragment, base_location=base)

    if "/" in path:
        namespace, _, calendar_id = path.rpartition("/")
        return LocationNamespace(namespace=namespace or None, calendar_id=calendar_id, base_location=base)

    if ":" in path:
        namespace, _, calendar_id = path.partition(":")
        if namespace and calendar_id:
            return LocationNamespace(namespace=namespace, calendar_id=calendar_id, base_location=base)

    return LocationNamespace(namespace=None, calendar_id=path, base_location=base)


def sanitize_namespace(value: str) -> str:
    """Normalize a namespace into a safe, lower-case, slash-separated token."""

    text = _SCHEME_RE.sub("", value.strip()).replace("\\", "/").strip("/").lower()
    segments = [segment for segment in text.split("/") if segment]
    if segments and segments[0] in KNOWN_HOSTS:
        segments[0] = KNOWN_HOSTS[segments[0]]
    segments = [segment[:-4] if segment.endswith(".git") else segment for segment in segments]

    cleaned = _UNSAFE_RE.sub("-", "/".join(segments))
    cleaned = _REPEATED_DASH_RE.sub("-", cleaned)
    cleaned = _REPEATED_SLASH_RE.sub("/", cleaned)
    return cleaned.strip("-/")


def build_composite_id(namespace: str | None, calendar_id: str) -> str:
    if not namespace:
        return calendar_id
    sanitized = sanitize_namespace(namespace)
    return f"{sanitized}/{calendar_id}" if sanitized else calendar_id


def generate_unique_calendar_id(external_id: str, calendar_id: str) -> str:
    """Composite id for a calendar loaded from `external_id`."""

    protocol, location = parse_external_calendar_id(external_id)
    parsed = parse_location_namespace(protocol, location)
    return build_composite_id(parsed.namespace, calendar_id)


def resolve_id_conflict(proposed: str, existing: Iterable[str]) -> str:
    taken = set(existing)
    if proposed not in taken:
        return proposed

    counter = 1
    while f"{proposed}-{counter}" in taken:
        counter += 1
    return f"{proposed}-{counter}"


def namespace_display_name(external_id: str) -> str | None:
    """Human label for the namespace of an external id (`GitHub: user/repo`)."""

    protocol, location = parse_external_calendar_id(external_id)
    namespace = parse_location_namespace(protocol, location).namespace
    if not namespace:
        return None

    sanitized = sanitize_namespace(namespace)
    head, _, rest = sanitized.partition("/")
    if head in HOST_DISPLAY_NAMES and rest:
        return f"{HOST_DISPLAY_NAMES[head]}: {rest}"
    return f"Source: {namespace}"
