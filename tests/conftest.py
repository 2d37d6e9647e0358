"""Shared fixtures: calendar payloads, fixed host environments, HTTP mocks."""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest

from calendar_sources.core.environment import DevEnvironmentDetector, HostContext

REMOTE_HOST_URL = "https://vtt.example.org"
LOOPBACK_HOST_URL = "http://localhost:30000"


def make_calendar(calendar_id: str = "gregorian", **extra: Any) -> dict[str, Any]:
    calendar: dict[str, Any] = {
        "id": calendar_id,
        "months": [{"name": "January", "days": 31}],
        "weekdays": [{"name": "Monday"}],
    }
    calendar.update(extra)
    return calendar


def json_response(data: Any, status_code: int = 200, **headers: str) -> httpx.Response:
    return httpx.Response(
        status_code,
        content=json.dumps(data).encode("utf-8"),
        headers={"Content-Type": "application/json", **headers},
    )


class RecordingTransport(httpx.MockTransport):
    """MockTransport that remembers every request it served."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: list[httpx.Request] = []

        def record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(record)


@pytest.fixture
def calendar_factory() -> Callable[..., dict[str, Any]]:
    return make_calendar


@pytest.fixture
def remote_environment() -> DevEnvironmentDetector:
    """A production-looking host: no dev signals at all."""

    return DevEnvironmentDetector(lambda: HostContext(url=REMOTE_HOST_URL))


@pytest.fixture
def loopback_environment() -> DevEnvironmentDetector:
    return DevEnvironmentDetector(lambda: HostContext(url=LOOPBACK_HOST_URL))


@pytest.fixture
def respond() -> Callable[..., httpx.Response]:
    """`respond(data, status_code=200, **headers)` builds a JSON response."""

    return json_response


@pytest.fixture
def recording_transport() -> Callable[[Callable[[httpx.Request], httpx.Response]], RecordingTransport]:
    return RecordingTransport
