"""Location and collection-index helpers shared by every protocol handler.

A location is either a direct document reference (`calendars/gregorian.json`)
or a collection-index reference. Index references are recognised by the
conventional index filename, or by a directory-shaped path which
normalization turns into `<dir>/index.json`.

The directory-shape rule is string sniffing and therefore ambiguous; it is
exposed as `is_directory_shaped` and can be replaced per call.
"""

from __future__ import annotations

import json
import posixpath
import re
from typing import Any, Callable, Mapping
from urllib.parse import urljoin

import yaml

from calendar_sources.core.errors import (
    AmbiguousSelectionError,
    EmptyCollectionError,
    IndexIntegrityError,
    MalformedJSONError,
    MalformedPayloadError,
    SelectionNotFoundError,
)
from calendar_sources.core.types import (
    CalendarCollectionIndex,
    CalendarData,
    CalendarIndexEntry,
)

INDEX_FILENAME = "index.json"
DEFAULT_EXTENSION = ".json"
SUPPORTED_EXTENSIONS = ("json", "yml", "yaml")
YAML_EXTENSIONS = ("yml", "yaml")
REQUIRED_CALENDAR_LISTS = ("months", "weekdays")
PRERELEASE_MARKERS = ("dev", "alpha", "beta", "snapshot", "pre", "rc")

_EXTENSION_RE = re.compile(r"\.([A-Za-z0-9]+)$")
_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")

DirectoryHeuristic = Callable[[str], bool]


def _split_suffix(location: str) -> tuple[str, str, str]:
    """Split `location` into (scheme+authority prefix, path, query suffix)."""

    prefix = ""
    rest = location
    scheme_match = _SCHEME_RE.match(rest)
    if scheme_match:
        after_scheme = rest[scheme_match.end():]
        slash = after_scheme.find("/")
        if slash == -1:
            slash = len(after_scheme)
        prefix = rest[: scheme_match.end() + slash]
        rest = after_scheme[slash:]

    query = ""
    query_start = rest.find("?")
    if query_start != -1:
        query = rest[query_start:]
        rest = rest[:query_start]
    return prefix, rest, query


def _path_of(location: str) -> str:
    return _split_suffix(location)[1]


def _last_segment(path: str) -> str:
    return path.rstrip("/").replace("\\", "/").rsplit("/", 1)[-1]


def file_extension(path: str) -> str | None:
    """Return the lower-case extension of the last path segment, if any."""

    match = _EXTENSION_RE.search(_last_segment(_path_of(path)))
    return match.group(1).lower() if match else None


def has_file_extension(path: str) -> bool:
    return file_extension(path) is not None


def has_supported_extension(path: str) -> bool:
    return file_extension(path) in SUPPORTED_EXTENSIONS


def parse_location_with_calendar_id(location: str) -> tuple[str, str | None]:
    """Split `base#calendar-id` on the first `#`.

    An empty fragment is treated as no selection.
    """

    base, sep, fragment = location.partition("#")
    if not sep:
        return location, None
    fragment = fragment.strip()
    return base, fragment or None


def is_directory_shaped(path: str) -> bool:
    """Default heuristic: trailing slash, or several segments and no extension."""

    if not path:
        return False
    if path.endswith("/"):
        return True
    segments = [s for s in path.replace("\\", "/").split("/") if s and s not in (".", "..")]
    return len(segments) > 1 and not has_file_extension(path)


def normalize_calendar_location(
    location: str,
    *,
    index_filename: str = INDEX_FILENAME,
    default_extension: str = DEFAULT_EXTENSION,
    directory_heuristic: DirectoryHeuristic = is_directory_shaped,
) -> str:
    """Make a location point at a concrete document.

    Examples:
        `foo` -> `foo.json`
        `owner/repo` -> `owner/repo/index.json`
        `foo.yaml` -> `foo.yaml`
    """

    prefix, path, query = _split_suffix(location.strip())
    if not path or path == "/":
        if prefix:
            return f"{prefix}/{index_filename}{query}"
        return location

    if directory_heuristic(path):
        path = f"{path.rstrip('/')}/{index_filename}"
    elif not has_file_extension(path):
        path = f"{path}{default_extension}"

    return f"{prefix}{path}{query}"


def is_index_location(location: str, index_filename: str = INDEX_FILENAME) -> bool:
    return _last_segment(_path_of(location)) == index_filename


def parse_document(text: str, location: str) -> Any:
    """Parse JSON (default) or YAML (`.yml`/`.yaml`) text."""

    if file_extension(location) in YAML_EXTENSIONS:
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as error:
            raise MalformedJSONError(
                f"Invalid YAML in {location}: {error}", location=location
            ) from error

    try:
        return json.loads(text)
    except json.JSONDecodeError as error:
        raise MalformedJSONError(
            f"Invalid JSON in {location}: {error.msg} (line {error.lineno})",
            location=location,
        ) from error


def validate_calendar_payload(data: Any, location: str | None = None) -> CalendarData:
    """Check the minimal calendar shape and return the payload."""

    where = f" from {location}" if location else ""
    if not isinstance(data, Mapping):
        raise MalformedPayloadError(
            f"Invalid calendar data{where}: expected an object", location=location
        )

    missing: list[str] = []
    calendar_id = data.get("id")
    if not isinstance(calendar_id, str) or not calendar_id.strip():
        missing.append("id")
    for key in REQUIRED_CALENDAR_LISTS:
        value = data.get(key)
        if not isinstance(value, list) or not value:
            missing.append(key)

    if missing:
        raise MalformedPayloadError(
            f"Invalid calendar data{where}: missing or empty {', '.join(missing)}",
            location=location,
        )
    return dict(data)


def validate_calendar_collection_index(
    data: Any, location: str | None = None
) -> CalendarCollectionIndex:
    """Validate a collection index document and build `CalendarCollectionIndex`."""

    where = f" at {location}" if location else ""
    if not isinstance(data, Mapping):
        raise IndexIntegrityError(f"Invalid calendar index{where}: expected an object", location=location)

    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise IndexIntegrityError(f"Invalid calendar index{where}: missing name", location=location)

    raw_calendars = data.get("calendars")
    if not isinstance(raw_calendars, list):
        raise IndexIntegrityError(
            f"Invalid calendar index{where}: 'calendars' must be a list", location=location
        )

    entries: list[CalendarIndexEntry] = []
    seen: dict[str, int] = {}
    for position, raw_entry in enumerate(raw_calendars):
        if not isinstance(raw_entry, Mapping):
            raise IndexIntegrityError(
                f"Invalid calendar index{where}: entry {position} is not an object",
                location=location,
            )
        for field_name in ("id", "name", "file"):
            value = raw_entry.get(field_name)
            if not isinstance(value, str) or not value.strip():
                raise IndexIntegrityError(
                    f"Invalid calendar index{where}: entry {position} is missing '{field_name}'",
                    location=location,
                )

        entry = CalendarIndexEntry.from_dict(raw_entry)
        if entry.id in seen:
            raise IndexIntegrityError(
                f"Duplicate calendar id '{entry.id}' at positions {seen[entry.id]} and {position}",
                location=location,
            )
        seen[entry.id] = position
        entries.append(entry)

    metadata = data.get("metadata")
    return CalendarCollectionIndex(
        name=name,
        calendars=entries,
        description=data.get("description"),
        version=data.get("version"),
        metadata=dict(metadata) if isinstance(metadata, Mapping) else None,
    )


def select_calendar_from_index(
    index: CalendarCollectionIndex,
    calendar_id: str | None,
    context: str,
) -> CalendarIndexEntry:
    """Pick one entry from an index.

    - explicit id: that entry, or SelectionNotFound listing every id
    - no id: the only entry, EmptyCollection for none, AmbiguousSelection for many
    """

    if calendar_id:
        for entry in index.calendars:
            if entry.id == calendar_id:
                return entry
        available = ", ".join(index.calendar_ids) or "(none)"
        raise SelectionNotFoundError(
            f"Calendar '{calendar_id}' not found in {context}. Available calendars: {available}",
            location=context,
        )

    if not index.calendars:
        raise EmptyCollectionError(f"No calendars found in {context}", location=context)

    if len(index.calendars) == 1:
        return index.calendars[0]

    listing = ", ".join(entry.label for entry in index.calendars)
    raise AmbiguousSelectionError(
        f"Multiple calendars found in {context}. Specify one with '#calendar-id'. "
        f"Available: {listing}",
        location=context,
    )


def is_absolute_reference(path: str) -> bool:
    return path.startswith("/") or bool(_SCHEME_RE.match(path))


def resolve_index_entry_path(index_location: str, file: str) -> str:
    """Resolve an index entry's `file` relative to the index's directory."""

    if is_absolute_reference(file):
        return file

    if _SCHEME_RE.match(index_location):
        return urljoin(index_location, file)

    directory = posixpath.dirname(index_location.replace("\\", "/"))
    if not directory:
        return posixpath.normpath(file)
    joined = posixpath.normpath(posixpath.join(directory, file))
    if index_location.startswith("./") and not joined.startswith((".", "/")):
        joined = f"./{joined}"
    return joined


def is_prerelease_version(version: str | None) -> bool:
    """Heuristic for development builds of sibling extensions."""

    if version is None:
        return False
    text = version.strip().lower()
    if not text:
        return True
    if text.startswith("0.0.") or "-" in text:
        return True
    return any(marker in text for marker in PRERELEASE_MARKERS)
