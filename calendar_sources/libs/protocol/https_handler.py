"""Web-location handler (`https:` protocol).

Requests go through `httpx.AsyncClient` with automatic redirect following
disabled; redirects are followed here so every hop can be checked:

- at most `http.max_redirects` requests per load (TooManyRedirects after that)
- 301/302/303 switch to GET (HEAD stays HEAD) and drop
  Authorization / Content-Type / Content-Length
- 307/308 keep method and headers
- targets must be HTTPS, and must not be loopback or private addresses
  unless the original request was itself loopback

The code-hosting and sibling-extension handlers reuse `request()` and
`fetch_json()` so they share this network contract.
"""

from __future__ import annotations

import asyncio
import ipaddress
import re
import socket
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Mapping
from urllib.parse import urljoin

import httpx

from calendar_sources.core.environment import LOCALHOST_PATTERNS
from calendar_sources.core.errors import (
    AccessDeniedError,
    InsecureRedirectError,
    NotFoundError,
    RateLimitedError,
    RedirectError,
    RemoteRequestError,
    RequestTimeoutError,
    ServerError,
    SuspiciousRedirectError,
    TooManyRedirectsError,
)
from calendar_sources.core.types import LoadCalendarOptions
from calendar_sources.libs.protocol.base_handler import BaseProtocolHandler
from calendar_sources.libs.protocol.utils import normalize_calendar_location, parse_document
from calendar_sources.observability.logger import get_logger

logger = get_logger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
METHOD_REWRITE_STATUSES = frozenset({301, 302, 303})
HEADERS_STRIPPED_ON_REWRITE = ("Authorization", "Content-Type", "Content-Length")
PRIVATE_NETWORKS = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
)

_DOMAIN_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]*(\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}(:\d+)?(/.*)?$")
_LOCALHOST_RE = re.compile(r"^localhost(:\d+)?(/.*)?$", re.IGNORECASE)
_NUMERIC_HOST_RE = re.compile(r"^(0x[0-9a-f]*|\d+)(\.(0x[0-9a-f]*|\d+)){0,3}$", re.IGNORECASE)


def parse_ip_host(host: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    """Parse a URL host as an IP address the way the system resolver would.

    Shorthand, decimal and hex IPv4 forms (`127.1`, `2130706433`,
    `0x7f000001`) are accepted, and IPv4-mapped IPv6 addresses are unwrapped.
    """

    name = host.strip("[]").lower()
    try:
        address: ipaddress.IPv4Address | ipaddress.IPv6Address = ipaddress.ip_address(name)
    except ValueError:
        if not _NUMERIC_HOST_RE.match(name):
            return None
        try:
            address = ipaddress.IPv4Address(socket.inet_aton(name))
        except OSError:
            return None

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def is_loopback_host(host: str) -> bool:
    name = host.strip("[]").lower()
    if name in LOCALHOST_PATTERNS or name.endswith(".localhost"):
        return True
    address = parse_ip_host(name)
    return address is not None and (address.is_loopback or address.is_unspecified)


def is_private_host(host: str) -> bool:
    """True for RFC 1918 addresses in any spelling `parse_ip_host` accepts."""

    address = parse_ip_host(host)
    if address is None:
        return False
    return any(address in network for network in PRIVATE_NETWORKS if address.version == network.version)


def to_url(location: str) -> str:
    """Bare locations default to HTTPS."""

    if location.startswith(("https://", "http://")):
        return location
    return f"https://{location}"


def strip_scheme(location: str) -> str:
    for scheme in ("https://", "http://"):
        if location.startswith(scheme):
            return location[len(scheme):]
    return location


def version_tag_from(headers: Mapping[str, str]) -> str | None:
    """ETag, falling back to Last-Modified."""

    return headers.get("etag") or headers.get("last-modified")


def _retry_after(headers: Mapping[str, str]) -> datetime | None:
    raw = headers.get("retry-after")
    if not raw:
        return None
    if raw.strip().isdigit():
        return datetime.now(timezone.utc) + timedelta(seconds=int(raw.strip()))
    try:
        return parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None


class HttpsProtocolHandler(BaseProtocolHandler):
    """Loads calendars from web locations."""

    protocol = "https"

    def __init__(
        self,
        settings: Any = None,
        *,
        environment: Any = None,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(settings, environment=environment, **kwargs)
        self.transport = transport
        self.user_agent = self.settings.http.user_agent
        self.max_redirects = self.settings.http.max_redirects

    def can_handle(self, location: str) -> bool:
        """Explicit `https://` URLs, bare domains with a TLD, and `localhost`."""

        if location.startswith("https://"):
            return True
        if "://" in location:
            return False
        return bool(_DOMAIN_RE.match(location) or _LOCALHOST_RE.match(location))

    def normalize_location(self, location: str) -> str:
        # shape decisions see host + path, so bare and explicit URLs agree
        scheme = "http://" if location.startswith("http://") else "https://"
        return f"{scheme}{normalize_calendar_location(strip_scheme(location))}"

    def describe_context(self, location: str) -> str:
        return to_url(location)

    # ------------------------------------------------------------------
    # Shared network contract
    # ------------------------------------------------------------------

    def build_headers(
        self,
        options: LoadCalendarOptions,
        extra: Mapping[str, str] | None = None,
    ) -> httpx.Headers:
        """Internal headers first; caller headers win on conflict."""

        headers = httpx.Headers({"Accept": "application/json", "User-Agent": self.user_agent})
        headers.update(self.environment.get_dev_headers())
        if extra:
            headers.update(extra)
        headers.update(options.headers)
        return headers

    async def request(
        self,
        method: str,
        url: str,
        options: LoadCalendarOptions,
        *,
        extra_headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        """Send one request, following redirects under the security policy.

        Returns the first non-redirect response, whatever its status.
        """

        timeout = self.effective_timeout(options)
        headers = self.build_headers(options, extra_headers)
        target = httpx.URL(to_url(url), params=params) if params else httpx.URL(to_url(url))

        try:
            async with httpx.AsyncClient(
                follow_redirects=False,
                timeout=timeout,
                transport=self.transport,
            ) as client:
                return await asyncio.wait_for(
                    self._follow_redirects(client, method.upper(), target, headers),
                    timeout=timeout,
                )
        except (httpx.TimeoutException, asyncio.TimeoutError) as error:
            raise RequestTimeoutError(
                f"Request timed out for {target} (timeout: {int(timeout * 1000)}ms)",
                location=str(target),
            ) from error
        except httpx.ConnectError as error:
            raise RemoteRequestError(
                f"Connection failed for {target}: {error}", location=str(target)
            ) from error
        except httpx.RequestError as error:
            raise RemoteRequestError(
                f"Request failed for {target}: {error}", location=str(target)
            ) from error

    async def fetch_json(
        self,
        url: str,
        options: LoadCalendarOptions,
        *,
        extra_headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
    ) -> tuple[Any, httpx.Response]:
        """GET `url`, map error statuses, parse the body (JSON or YAML)."""

        response = await self.request(
            "GET", url, options, extra_headers=extra_headers, params=params
        )
        self.raise_for_status(response, url)
        return parse_document(response.text, url), response

    def raise_for_status(self, response: httpx.Response, url: str) -> None:
        """Map a non-2xx response to the matching load error.

        Raises:
            NotFoundError: 404.
            AccessDeniedError: 401 or 403.
            RateLimitedError: 429, with `reset_at` from Retry-After when present.
            ServerError: 5xx.
            RemoteRequestError: Any other non-2xx status.
        """

        status = response.status_code
        if 200 <= status < 300:
            return

        reason = response.reason_phrase or ""
        if status == 404:
            raise NotFoundError(f"Calendar not found: {url} ({status} {reason})".rstrip(), location=url)
        if status in (401, 403):
            raise AccessDeniedError(f"Access forbidden: {url} ({status} {reason})".rstrip(), location=url)
        if status == 429:
            raise RateLimitedError(
                f"Rate limited: {url} ({status})",
                location=url,
                reset_at=_retry_after(response.headers),
            )
        if status >= 500:
            raise ServerError(f"Server error: {url} ({status} {reason})".rstrip(), location=url)
        raise RemoteRequestError(f"HTTP error: {url} ({status} {reason})".rstrip(), location=url)

    # ------------------------------------------------------------------
    # Handler hooks
    # ------------------------------------------------------------------

    async def _fetch_document(
        self, location: str, options: LoadCalendarOptions
    ) -> tuple[Any, str | None]:
        data, response = await self.fetch_json(to_url(location), options)
        return data, version_tag_from(response.headers)

    async def _current_version(self, location: str, options: LoadCalendarOptions) -> str | None:
        url = to_url(location)
        response = await self.request("HEAD", url, options)
        if not response.is_success:
            raise RemoteRequestError(f"Update check failed: {url} ({response.status_code})", location=url)
        return version_tag_from(response.headers)

    # ------------------------------------------------------------------
    # Redirect handling
    # ------------------------------------------------------------------

    async def _follow_redirects(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: httpx.URL,
        headers: httpx.Headers,
    ) -> httpx.Response:
        original_is_loopback = is_loopback_host(url.host)
        current_url = url
        current_method = method
        current_headers = httpx.Headers(headers)

        for _ in range(self.max_redirects):
            response = await client.request(current_method, current_url, headers=current_headers)
            if response.status_code not in REDIRECT_STATUSES:
                return response

            location_header = response.headers.get("location")
            if not location_header:
                raise RedirectError(
                    f"Redirect response ({response.status_code}) missing Location header",
                    location=str(current_url),
                )

            next_url = httpx.URL(urljoin(str(current_url), location_header))
            self._check_redirect_target(next_url, original_is_loopback)

            if response.status_code in METHOD_REWRITE_STATUSES:
                if current_method != "HEAD":
                    current_method = "GET"
                for name in HEADERS_STRIPPED_ON_REWRITE:
                    if name in current_headers:
                        del current_headers[name]

            logger.debug("Following %d redirect: %s -> %s", response.status_code, current_url, next_url)
            current_url = next_url

        raise TooManyRedirectsError(
            f"Too many redirects (max {self.max_redirects}) for {url}", location=str(url)
        )

    def _check_redirect_target(self, target: httpx.URL, original_is_loopback: bool) -> None:
        """Reject redirect hops that downgrade to HTTP or reach internal hosts.

        Raises:
            InsecureRedirectError: The target is not HTTPS.
            SuspiciousRedirectError: The target is loopback or private while the
                original request was not loopback.
        """

        if target.scheme != "https":
            raise InsecureRedirectError(
                f"Insecure redirect to non-HTTPS URL: {target}", location=str(target)
            )

        host = target.host
        if original_is_loopback:
            return
        if is_loopback_host(host) or is_private_host(host):
            raise SuspiciousRedirectError(
                f"Suspicious redirect to local or private address: {target}", location=str(target)
            )
