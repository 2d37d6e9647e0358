"""Unit tests for the filesystem handler."""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path

import pytest

from calendar_sources.core.errors import MalformedJSONError, MalformedPayloadError, NotFoundError
from calendar_sources.core.settings import default_settings
from calendar_sources.libs.protocol.local_handler import LocalProtocolHandler


def write_json(path: Path, data) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


@pytest.fixture
def handler(tmp_path, remote_environment) -> LocalProtocolHandler:
    return LocalProtocolHandler(default_settings(), environment=remote_environment, base_directory=tmp_path)


@pytest.mark.unit
class TestLoadCalendar:
    @pytest.mark.asyncio
    async def test_absolute_path(self, handler, tmp_path, calendar_factory) -> None:
        path = write_json(tmp_path / "cal.json", calendar_factory("harptos"))

        fetched = await handler.fetch_calendar(str(path))

        assert fetched.calendar["id"] == "harptos"
        assert fetched.version_tag is not None
        assert fetched.version_tag.endswith("+00:00")

    @pytest.mark.asyncio
    async def test_relative_to_base_directory(self, handler, tmp_path, calendar_factory) -> None:
        write_json(tmp_path / "calendars" / "golarion.json", calendar_factory("golarion"))

        calendar = await handler.load_calendar("./calendars/golarion.json")

        assert calendar["id"] == "golarion"

    @pytest.mark.asyncio
    async def test_bare_name_gets_json_extension(self, handler, tmp_path, calendar_factory) -> None:
        write_json(tmp_path / "gregorian.json", calendar_factory())
        assert (await handler.load_calendar("gregorian"))["id"] == "gregorian"

    @pytest.mark.asyncio
    async def test_yaml_document(self, handler, tmp_path) -> None:
        (tmp_path / "cal.yaml").write_text(
            "id: yaml-cal\nmonths:\n  - name: First\n    days: 30\nweekdays:\n  - name: Oneday\n",
            encoding="utf-8",
        )

        assert (await handler.load_calendar("cal.yaml"))["id"] == "yaml-cal"

    @pytest.mark.asyncio
    async def test_directory_loads_index(self, handler, tmp_path, calendar_factory) -> None:
        write_json(
            tmp_path / "pack" / "index.json",
            {
                "name": "Pack",
                "calendars": [
                    {"id": "a", "name": "A", "file": "a.json"},
                    {"id": "b", "name": "B", "file": "nested/b.json"},
                ],
            },
        )
        write_json(tmp_path / "pack" / "nested" / "b.json", calendar_factory("b"))

        calendar = await handler.load_calendar("pack#b")

        assert calendar["id"] == "b"

    @pytest.mark.asyncio
    async def test_directory_check_runs_off_the_event_loop(self, handler, tmp_path, monkeypatch) -> None:
        (tmp_path / "pack").mkdir()
        loop_thread = threading.get_ident()
        check_threads: list[int] = []
        original_is_dir = Path.is_dir

        def recording_is_dir(self: Path) -> bool:
            check_threads.append(threading.get_ident())
            return original_is_dir(self)

        monkeypatch.setattr(Path, "is_dir", recording_is_dir)

        assert await handler.normalize_target("pack") == "pack/index.json"
        assert await handler.normalize_target("single") == "single.json"
        assert check_threads
        assert loop_thread not in check_threads

    @pytest.mark.asyncio
    async def test_missing_file(self, handler) -> None:
        with pytest.raises(NotFoundError, match="Local file not found"):
            await handler.load_calendar("./nope.json")

    @pytest.mark.asyncio
    async def test_invalid_json(self, handler, tmp_path) -> None:
        (tmp_path / "broken.json").write_text("{broken", encoding="utf-8")

        with pytest.raises(MalformedJSONError):
            await handler.load_calendar("broken.json")

    @pytest.mark.asyncio
    async def test_not_utf8(self, handler, tmp_path) -> None:
        (tmp_path / "latin.json").write_bytes(b'{"id": "\xff"}')

        with pytest.raises(MalformedJSONError):
            await handler.load_calendar("latin.json")

    @pytest.mark.asyncio
    async def test_payload_validation(self, handler, tmp_path) -> None:
        write_json(tmp_path / "empty.json", {"id": "empty", "months": [], "weekdays": []})

        with pytest.raises(MalformedPayloadError):
            await handler.load_calendar("empty.json")


@pytest.mark.unit
class TestCheckForUpdates:
    @pytest.mark.asyncio
    async def test_modification_time_is_the_version(self, handler, tmp_path, calendar_factory) -> None:
        path = write_json(tmp_path / "cal.json", calendar_factory())
        tag = (await handler.fetch_calendar("cal.json")).version_tag

        assert await handler.check_for_updates("cal.json", tag) is False

        stat = path.stat()
        os.utime(path, (stat.st_atime, stat.st_mtime + 60))

        assert await handler.check_for_updates("cal.json", tag) is True

    @pytest.mark.asyncio
    async def test_missing_file_is_unchanged(self, handler) -> None:
        assert await handler.check_for_updates("gone.json", "whatever") is False


@pytest.mark.unit
class TestCanHandle:
    @pytest.mark.parametrize(
        "location,expected",
        [
            ("/srv/calendars/a.json", True),
            ("/srv/calendars", True),
            ("C:\\calendars\\a.json", True),
            ("./calendars/a.yaml", True),
            ("../shared", True),
            ("calendars/a.json", True),
            ("calendars/a", False),
            ("/srv/notes.txt", False),
            ("https://example.com/a.json", False),
        ],
    )
    def test_can_handle(self, location: str, expected: bool) -> None:
        assert LocalProtocolHandler(default_settings()).can_handle(location) is expected
