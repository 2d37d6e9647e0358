"""Unit tests for location normalization and document parsing helpers."""

from __future__ import annotations

import pytest

from calendar_sources.core.errors import MalformedJSONError, MalformedPayloadError
from calendar_sources.libs.protocol.utils import (
    file_extension,
    has_file_extension,
    has_supported_extension,
    is_index_location,
    is_prerelease_version,
    normalize_calendar_location,
    parse_document,
    parse_location_with_calendar_id,
    resolve_index_entry_path,
    validate_calendar_payload,
)


@pytest.mark.unit
class TestNormalizeCalendarLocation:
    """Locations are turned into concrete document references."""

    def test_bare_name_gets_default_extension(self) -> None:
        assert normalize_calendar_location("foo") == "foo.json"

    def test_multi_segment_extensionless_path_gets_index(self) -> None:
        assert normalize_calendar_location("owner/repo") == "owner/repo/index.json"

    def test_trailing_slash_gets_index(self) -> None:
        assert normalize_calendar_location("calendars/") == "calendars/index.json"

    def test_supported_extension_unchanged(self) -> None:
        assert normalize_calendar_location("foo.yaml") == "foo.yaml"
        assert normalize_calendar_location("a/b/c.json") == "a/b/c.json"

    def test_index_path_unchanged(self) -> None:
        assert normalize_calendar_location("x/index.json") == "x/index.json"

    def test_url_query_is_preserved(self) -> None:
        assert (
            normalize_calendar_location("https://example.com/cal.json?v=2")
            == "https://example.com/cal.json?v=2"
        )

    def test_dot_segments_do_not_count_as_directories(self) -> None:
        assert normalize_calendar_location("./foo") == "./foo.json"

    def test_custom_heuristic_overrides_directory_detection(self) -> None:
        result = normalize_calendar_location("owner/repo", directory_heuristic=lambda _: False)
        assert result == "owner/repo.json"


@pytest.mark.unit
class TestExtensions:
    def test_extension_detection(self) -> None:
        assert has_file_extension("a/b.json")
        assert not has_file_extension("a/b")
        assert file_extension("cal.YAML") == "yaml"

    def test_supported_extensions(self) -> None:
        assert has_supported_extension("cal.yml")
        assert not has_supported_extension("cal.txt")

    def test_index_location(self) -> None:
        assert is_index_location("owner/repo/index.json")
        assert is_index_location("https://example.com/index.json?x=1")
        assert not is_index_location("owner/repo/other.json")


@pytest.mark.unit
class TestFragmentParsing:
    def test_split_on_first_hash(self) -> None:
        assert parse_location_with_calendar_id("owner/repo#gregorian") == ("owner/repo", "gregorian")

    def test_no_fragment(self) -> None:
        assert parse_location_with_calendar_id("owner/repo") == ("owner/repo", None)

    def test_empty_fragment_is_no_selection(self) -> None:
        assert parse_location_with_calendar_id("owner/repo#") == ("owner/repo", None)


@pytest.mark.unit
class TestResolveIndexEntryPath:
    def test_relative_to_index_directory(self) -> None:
        assert resolve_index_entry_path("owner/repo/index.json", "cals/a.json") == "owner/repo/cals/a.json"

    def test_parent_reference(self) -> None:
        assert resolve_index_entry_path("a/b/index.json", "../c.json") == "a/c.json"

    def test_url_index(self) -> None:
        assert (
            resolve_index_entry_path("https://example.com/cals/index.json", "harptos.json")
            == "https://example.com/cals/harptos.json"
        )

    def test_absolute_and_qualified_paths_kept(self) -> None:
        assert resolve_index_entry_path("a/index.json", "/srv/cal.json") == "/srv/cal.json"
        assert resolve_index_entry_path("a/index.json", "https://x.org/c.json") == "https://x.org/c.json"

    def test_dot_relative_index_keeps_prefix(self) -> None:
        assert resolve_index_entry_path("./cals/index.json", "a.json") == "./cals/a.json"


@pytest.mark.unit
class TestParseDocument:
    def test_json(self) -> None:
        assert parse_document('{"id": "x"}', "cal.json") == {"id": "x"}

    def test_yaml(self) -> None:
        assert parse_document("id: x\nmonths: [a]\n", "cal.yaml") == {"id": "x", "months": ["a"]}

    def test_invalid_json(self) -> None:
        with pytest.raises(MalformedJSONError, match="Invalid JSON"):
            parse_document("{not json", "cal.json")

    def test_invalid_yaml(self) -> None:
        with pytest.raises(MalformedJSONError, match="Invalid YAML"):
            parse_document("id: [unclosed", "cal.yml")


@pytest.mark.unit
class TestValidateCalendarPayload:
    def test_valid_payload(self, calendar_factory) -> None:
        calendar = calendar_factory("harptos")
        assert validate_calendar_payload(calendar)["id"] == "harptos"

    @pytest.mark.parametrize("missing", ["id", "months", "weekdays"])
    def test_missing_field(self, calendar_factory, missing: str) -> None:
        calendar = calendar_factory()
        del calendar[missing]
        with pytest.raises(MalformedPayloadError, match=missing):
            validate_calendar_payload(calendar)

    def test_empty_months_rejected(self, calendar_factory) -> None:
        with pytest.raises(MalformedPayloadError):
            validate_calendar_payload(calendar_factory(months=[]))

    def test_non_object_rejected(self) -> None:
        with pytest.raises(MalformedPayloadError, match="expected an object"):
            validate_calendar_payload(["not", "a", "calendar"])


@pytest.mark.unit
class TestPrereleaseVersion:
    @pytest.mark.parametrize("version", ["1.0.0-beta.1", "2.0.0dev", "0.0.3", "", "1.2.0-rc1", "3.0-snapshot"])
    def test_prerelease(self, version: str) -> None:
        assert is_prerelease_version(version)

    @pytest.mark.parametrize("version", ["1.0.0", "2.3.4", "13.0"])
    def test_release(self, version: str) -> None:
        assert not is_prerelease_version(version)
