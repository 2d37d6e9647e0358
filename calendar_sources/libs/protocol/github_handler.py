"""Code-hosting handler (`github:` protocol).

Locations:
- `owner/repo`                  repository collection index (`index.json`)
- `owner/repo#calendar-id`      one calendar from the repository index
- `owner/repo/dir`              `dir/index.json` inside the repository
- `owner/repo/path/file.json`   a single file

Files are read through the REST contents endpoint; the returned blob `sha`
is the version tag.
"""

from __future__ import annotations

import base64
import binascii
import os
import re
from datetime import datetime, timezone
from typing import Any, Mapping

import httpx

from calendar_sources.core.errors import (
    MalformedIdentifierError,
    MalformedJSONError,
    RateLimitedError,
)
from calendar_sources.core.types import CalendarIndexEntry, LoadCalendarOptions
from calendar_sources.libs.protocol.base_handler import BaseProtocolHandler
from calendar_sources.libs.protocol.https_handler import HttpsProtocolHandler
from calendar_sources.libs.protocol.utils import (
    INDEX_FILENAME,
    parse_document,
    resolve_index_entry_path,
)
from calendar_sources.observability.logger import get_logger

logger = get_logger(__name__)

GITHUB_ACCEPT = "application/vnd.github.v3+json"
TOKEN_ENV_VAR = "GITHUB_TOKEN"

_OWNER_RE = re.compile(r"^[A-Za-z0-9-]+$")
_REPO_RE = re.compile(r"^[A-Za-z0-9._-]+$")


def split_repository_path(location: str) -> tuple[str, str, str]:
    """`owner/repo/a/b.json` -> (`owner`, `repo`, `a/b.json`)."""

    parts = [part for part in location.strip("/").split("/") if part]
    if len(parts) < 3:
        raise MalformedIdentifierError(
            f"Invalid GitHub path format: {location}. "
            "Expected: user/repo or user/repo/path/to/file.json",
            location=location,
        )
    return parts[0], parts[1], "/".join(parts[2:])


def _reset_time(headers: Mapping[str, str]) -> datetime | None:
    raw = headers.get("x-ratelimit-reset")
    if not raw:
        return None
    try:
        return datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


class GitHubProtocolHandler(BaseProtocolHandler):
    """Loads calendars from GitHub repositories."""

    protocol = "github"

    def __init__(
        self,
        settings: Any = None,
        *,
        environment: Any = None,
        http: HttpsProtocolHandler | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        token: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(settings, environment=environment, **kwargs)
        self.http = http or HttpsProtocolHandler(
            self.settings, environment=self.environment, transport=transport
        )
        github_settings = self.settings.github
        self.api_base_url = github_settings.api_base_url.rstrip("/")
        self.ref = github_settings.ref
        self.token = token or github_settings.token or os.environ.get(TOKEN_ENV_VAR)

    def can_handle(self, location: str) -> bool:
        """`owner/repo` with an optional path; query-like file names are refused."""

        if location.startswith(("https://", "http://")):
            return False

        parts = location.split("#", 1)[0].split("/")
        if len(parts) < 2:
            return False
        if not _OWNER_RE.match(parts[0]) or not _REPO_RE.match(parts[1]):
            return False
        if len(parts) > 2:
            filename = parts[-1]
            return "?" not in filename and "&" not in filename
        return True

    def describe_context(self, location: str) -> str:
        parts = location.strip("/").split("/")
        if len(parts) == 3 and parts[2] == INDEX_FILENAME:
            return f"Repository {parts[0]}/{parts[1]}"
        return f"github:{location}"

    def resolve_entry_location(self, index_location: str, entry: CalendarIndexEntry) -> str:
        """Index entries starting with `/` are relative to the repository root."""

        if entry.file.startswith("/"):
            owner, repo, _ = split_repository_path(index_location)
            return f"{owner}/{repo}{entry.file}"
        return resolve_index_entry_path(index_location, entry.file)

    def contents_url(self, owner: str, repo: str, path: str) -> str:
        return f"{self.api_base_url}/repos/{owner}/{repo}/contents/{path}"

    # ------------------------------------------------------------------
    # Transport hooks
    # ------------------------------------------------------------------

    async def _fetch_document(
        self, location: str, options: LoadCalendarOptions
    ) -> tuple[Any, str | None]:
        payload, _ = await self._get_contents(location, options)

        content = payload.get("content")
        encoding = payload.get("encoding")
        if not isinstance(content, str):
            raise MalformedJSONError(f"GitHub response for {location} has no content", location=location)

        if encoding == "base64":
            try:
                text = base64.b64decode(content, validate=False).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as error:
                raise MalformedJSONError(
                    f"Failed to decode base64 content from GitHub file {location}",
                    location=location,
                ) from error
        else:
            text = content

        sha = payload.get("sha")
        logger.debug("Fetched GitHub file %s (SHA: %s)", location, sha)
        return parse_document(text, location), sha if isinstance(sha, str) else None

    async def _current_version(self, location: str, options: LoadCalendarOptions) -> str | None:
        payload, _ = await self._get_contents(location, options)
        sha = payload.get("sha")
        return sha if isinstance(sha, str) and sha else None

    async def _get_contents(
        self, location: str, options: LoadCalendarOptions
    ) -> tuple[dict[str, Any], httpx.Response]:
        """Call the contents endpoint for one file.

        Returns:
            The decoded file object (`content`, `encoding`, `sha`, ...) and the
            raw response.

        Raises:
            RateLimitedError: The API quota is exhausted.
            MalformedJSONError: The API answered with something other than a
                file object.
        """

        owner, repo, path = split_repository_path(location)
        url = self.contents_url(owner, repo, path)

        extra_headers = {"Accept": GITHUB_ACCEPT}
        if self.token:
            extra_headers["Authorization"] = f"Bearer {self.token}"
        params = {"ref": self.ref} if self.ref else None

        response = await self.http.request(
            "GET", url, options, extra_headers=extra_headers, params=params
        )
        self._raise_for_rate_limit(response, url)
        self.http.raise_for_status(response, url)

        try:
            payload = response.json()
        except ValueError as error:
            raise MalformedJSONError(f"Invalid JSON from GitHub API for {location}", location=location) from error
        if not isinstance(payload, dict):
            raise MalformedJSONError(
                f"Unexpected GitHub API response for {location}: expected a file object",
                location=location,
            )
        return payload, response

    @staticmethod
    def _raise_for_rate_limit(response: httpx.Response, url: str) -> None:
        if response.status_code not in (403, 429):
            return
        if response.headers.get("x-ratelimit-remaining") != "0":
            return

        reset_at = _reset_time(response.headers)
        when = reset_at.isoformat() if reset_at else "unknown"
        raise RateLimitedError(
            f"GitHub rate limit exceeded. Resets at {when}", location=url, reset_at=reset_at
        )
