"""Unit tests for the LRU + TTL external calendar cache."""

from __future__ import annotations

import asyncio
import json

import pytest

from calendar_sources.core.cache import (
    CACHE_FORMAT_VERSION,
    CacheConfig,
    CacheStorage,
    ExternalCalendarCache,
    estimate_size,
)
from calendar_sources.core.types import ExternalCalendarSource


class FakeClock:
    """Manually advanced clock (epoch seconds)."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def source() -> ExternalCalendarSource:
    return ExternalCalendarSource(protocol="https", location="example.com/cal.json")


def _cache(clock: FakeClock, **config) -> ExternalCalendarCache:
    return ExternalCalendarCache(CacheConfig(**config), clock=clock)


@pytest.mark.unit
class TestCacheBasics:
    def test_set_then_get(self, clock, source, calendar_factory) -> None:
        cache = _cache(clock)
        cache.set("https:a", calendar_factory("a"), source, etag="v1")

        cached = cache.get("https:a")

        assert cached is not None
        assert cached.calendar["id"] == "a"
        assert cached.etag == "v1"
        assert cached.cached_at == clock.now

    def test_set_existing_key_updates_in_place(self, clock, source, calendar_factory) -> None:
        cache = _cache(clock, max_size=2)
        cache.set("k1", calendar_factory("a"), source)
        cache.set("k2", calendar_factory("b"), source)
        cache.set("k1", calendar_factory("a2"), source)

        assert cache.size() == 2
        assert cache.get("k1").calendar["id"] == "a2"
        assert cache.has("k2")

    def test_delete_and_clear(self, clock, source, calendar_factory) -> None:
        cache = _cache(clock)
        cache.set("k", calendar_factory(), source)
        cache.get("k")
        cache.get("missing")

        assert cache.delete("k") is True
        assert cache.delete("k") is False

        cache.set("k", calendar_factory(), source)
        cache.clear()
        stats = cache.get_stats()
        assert stats.total_cached == 0
        assert stats.hits == 0
        assert stats.misses == 0
        assert stats.size_bytes == 0


@pytest.mark.unit
class TestExpiry:
    def test_expired_entry_is_a_miss(self, clock, source, calendar_factory) -> None:
        cache = _cache(clock, default_ttl=60)
        cache.set("k", calendar_factory(), source)

        clock.advance(61)

        assert cache.get("k") is None
        assert cache.get("k", include_expired=True) is not None
        assert cache.is_expired("k")
        assert not cache.has("k")

    def test_entry_valid_until_exactly_expires_at(self, clock, source, calendar_factory) -> None:
        cache = _cache(clock, default_ttl=60)
        cache.set("k", calendar_factory(), source)

        clock.advance(60)

        assert cache.has("k")
        assert not cache.is_expired("k")

    def test_absolute_expiry(self, clock, source, calendar_factory) -> None:
        cache = _cache(clock, default_ttl=60)
        data = cache.set("k", calendar_factory(), source, clock.now + 3600)

        assert data.expires_at == clock.now + 3600
        clock.advance(120)
        assert cache.has("k")
        clock.advance(3481)
        assert not cache.has("k")

    def test_expiry_in_the_past_is_immediately_stale(self, clock, source, calendar_factory) -> None:
        cache = _cache(clock)
        cache.set("k", calendar_factory(), source, clock.now - 1, etag="v1")

        assert cache.get("k") is None
        assert cache.get_etag("k") == "v1"

    def test_default_expiry_uses_default_ttl(self, clock, source, calendar_factory) -> None:
        cache = _cache(clock, default_ttl=60)
        assert cache.set("k", calendar_factory(), source).expires_at == clock.now + 60

    def test_missing_key_counts_as_expired(self, clock) -> None:
        assert _cache(clock).is_expired("nope")

    def test_cleanup_expired(self, clock, source, calendar_factory) -> None:
        cache = _cache(clock, default_ttl=60)
        cache.set("old", calendar_factory(), source)
        clock.advance(30)
        cache.set("new", calendar_factory(), source)
        clock.advance(40)

        removed = cache.cleanup_expired()

        assert removed == 1
        assert cache.keys() == ["new"]


@pytest.mark.unit
class TestEviction:
    def test_evicts_exactly_one_least_recently_accessed(self, clock, source, calendar_factory) -> None:
        cache = _cache(clock, max_size=3)
        for key in ("a", "b", "c"):
            cache.set(key, calendar_factory(key), source)
            clock.advance(1)

        cache.get("a")
        clock.advance(1)
        cache.set("d", calendar_factory("d"), source)

        assert cache.size() == 3
        assert sorted(cache.keys()) == ["a", "c", "d"]

    def test_ties_evict_oldest_insertion(self, clock, source, calendar_factory) -> None:
        cache = _cache(clock, max_size=2)
        cache.set("a", calendar_factory("a"), source)
        cache.set("b", calendar_factory("b"), source)
        cache.set("c", calendar_factory("c"), source)

        assert sorted(cache.keys()) == ["b", "c"]

    def test_has_does_not_refresh_access_time(self, clock, source, calendar_factory) -> None:
        cache = _cache(clock, max_size=2)
        cache.set("a", calendar_factory("a"), source)
        clock.advance(1)
        cache.set("b", calendar_factory("b"), source)
        clock.advance(1)

        assert cache.has("a")
        assert not cache.is_expired("a")
        cache.set("c", calendar_factory("c"), source)

        assert sorted(cache.keys()) == ["b", "c"]

    def test_lowering_max_size_evicts_immediately(self, clock, source, calendar_factory) -> None:
        cache = _cache(clock, max_size=5)
        for key in ("a", "b", "c", "d"):
            cache.set(key, calendar_factory(key), source)
            clock.advance(1)

        cache.configure(max_size=2)

        assert sorted(cache.keys()) == ["c", "d"]
        assert cache.get_configuration().max_size == 2

    def test_unknown_setting_rejected(self, clock) -> None:
        with pytest.raises(ValueError, match="bogus"):
            _cache(clock).configure(bogus=1)

    @pytest.mark.parametrize("max_size", [0, -3, True, 2.5])
    def test_invalid_max_size_rejected(self, max_size) -> None:
        with pytest.raises(ValueError, match="max_size"):
            CacheConfig(max_size=max_size)

    def test_configure_rejects_zero_max_size_and_keeps_limit(self, clock, source, calendar_factory) -> None:
        cache = _cache(clock, max_size=1)

        with pytest.raises(ValueError, match="max_size"):
            cache.configure(max_size=0)

        cache.set("a", calendar_factory("a"), source)
        cache.set("b", calendar_factory("b"), source)
        assert cache.get_configuration().max_size == 1
        assert cache.size() == 1

    @pytest.mark.parametrize("field", ["default_ttl", "cleanup_interval", "storage_max_size_mb"])
    def test_non_positive_durations_rejected(self, field: str) -> None:
        with pytest.raises(ValueError, match=field):
            CacheConfig(**{field: 0})


@pytest.mark.unit
class TestStats:
    def test_hit_rate_zero_without_requests(self, clock) -> None:
        assert _cache(clock).get_stats().hit_rate == 0

    def test_hits_and_misses(self, clock, source, calendar_factory) -> None:
        cache = _cache(clock)
        cache.set("k", calendar_factory(), source)
        cache.get("k")
        cache.get("k")
        cache.get("other")
        cache.has("k")

        stats = cache.get_stats()

        assert stats.hits == 2
        assert stats.misses == 1
        assert stats.hit_rate == pytest.approx(2 / 3)
        assert stats.total_cached == 1

    def test_size_bytes_tracks_payloads(self, clock, source, calendar_factory) -> None:
        cache = _cache(clock)
        calendar = calendar_factory()
        cache.set("k", calendar, source)

        assert cache.get_stats().size_bytes == estimate_size(calendar) > 0

        cache.delete("k")
        assert cache.get_stats().size_bytes == 0

    def test_has_valid_etag(self, clock, source, calendar_factory) -> None:
        cache = _cache(clock)
        cache.set("k", calendar_factory(), source, etag='"abc"')

        assert cache.has_valid_etag("k", '"abc"')
        assert not cache.has_valid_etag("k", '"def"')
        assert not cache.has_valid_etag("missing", '"abc"')


@pytest.mark.unit
class TestCleanupTask:
    @pytest.mark.asyncio
    async def test_sweep_runs_inside_event_loop(self, source, calendar_factory) -> None:
        clock = FakeClock()
        cache = ExternalCalendarCache(
            CacheConfig(default_ttl=10, cleanup_interval=0.01), clock=clock
        )
        cache.set("k", calendar_factory(), source)
        clock.advance(11)

        await asyncio.sleep(0.05)

        assert cache.keys() == []
        cache.destroy()

    @pytest.mark.asyncio
    async def test_destroy_cancels_sweep_and_clears(self, clock, source, calendar_factory) -> None:
        cache = _cache(clock)
        cache.set("k", calendar_factory(), source)

        cache.destroy()

        assert cache.size() == 0
        assert cache._cleanup_task is None


# -----------------------------------------------------------------------------
# Persistence
# -----------------------------------------------------------------------------


def _stored_cache(clock: FakeClock, directory, **config) -> ExternalCalendarCache:
    return ExternalCalendarCache(CacheConfig(storage_dir=str(directory), **config), clock=clock)


@pytest.mark.unit
class TestPersistence:
    def test_entries_survive_a_restart(self, tmp_path, clock, source, calendar_factory) -> None:
        first = _stored_cache(clock, tmp_path)
        first.set("https:example.com/cal.json", calendar_factory("harptos"), source, clock.now + 600, etag="v1")
        first.destroy()

        second = _stored_cache(clock, tmp_path)
        cached = second.get("https:example.com/cal.json")

        assert cached is not None
        assert cached.calendar["id"] == "harptos"
        assert cached.etag == "v1"
        assert cached.expires_at == clock.now + 600
        assert cached.source == source

    def test_expired_files_are_dropped_on_load(self, tmp_path, clock, source, calendar_factory) -> None:
        first = _stored_cache(clock, tmp_path)
        first.set("k", calendar_factory(), source, clock.now + 10)
        clock.advance(11)

        second = _stored_cache(clock, tmp_path)

        assert second.size() == 0
        assert list(tmp_path.glob("*.json")) == []

    def test_other_format_versions_are_dropped(self, tmp_path, clock, source, calendar_factory) -> None:
        first = _stored_cache(clock, tmp_path)
        first.set("k", calendar_factory(), source)
        stored = next(tmp_path.glob("*.json"))
        payload = json.loads(stored.read_text(encoding="utf-8"))
        assert payload["version"] == CACHE_FORMAT_VERSION
        payload["version"] = "0.0.1"
        stored.write_text(json.dumps(payload), encoding="utf-8")

        second = _stored_cache(clock, tmp_path)

        assert second.size() == 0
        assert not stored.exists()

    def test_corrupt_files_are_dropped(self, tmp_path, clock) -> None:
        (tmp_path / "garbage.json").write_text("{not json", encoding="utf-8")
        (tmp_path / "list.json").write_text("[1, 2]", encoding="utf-8")

        cache = _stored_cache(clock, tmp_path)

        assert cache.size() == 0
        assert list(tmp_path.glob("*.json")) == []

    def test_delete_eviction_and_clear_reach_the_disk(self, tmp_path, clock, source, calendar_factory) -> None:
        cache = _stored_cache(clock, tmp_path, max_size=2)
        for key in ("a", "b", "c"):
            cache.set(key, calendar_factory(key), source)
            clock.advance(1)
        assert cache.get_storage_info().entry_count == 2

        cache.delete("c")
        assert cache.get_storage_info().entry_count == 1

        cache.clear()
        assert cache.get_storage_info().entry_count == 0

    def test_reload_respects_max_size(self, tmp_path, clock, source, calendar_factory) -> None:
        first = _stored_cache(clock, tmp_path, max_size=5)
        for key in ("a", "b", "c"):
            first.set(key, calendar_factory(key), source)
            clock.advance(1)

        second = _stored_cache(clock, tmp_path, max_size=2)

        assert sorted(second.keys()) == ["b", "c"]

    def test_size_cap_prunes_oldest_saves(self, tmp_path, clock, source, calendar_factory) -> None:
        measure = CacheStorage(tmp_path / "measure", clock=clock)
        cache = _stored_cache(clock, tmp_path / "measure")
        cache.set("a", calendar_factory("a"), source)
        one_entry_mb = measure.size_bytes() / (1024 * 1024)

        capped = _stored_cache(clock, tmp_path / "capped", storage_max_size_mb=one_entry_mb * 2.5)
        for key in ("a", "b", "c"):
            capped.set(key, calendar_factory(key), source)
            clock.advance(1)

        info = capped.get_storage_info()
        assert info.entry_count == 2
        assert info.size_bytes <= info.max_size_bytes
        assert capped.size() == 3

        reloaded = _stored_cache(clock, tmp_path / "capped", storage_max_size_mb=one_entry_mb * 2.5)
        assert sorted(reloaded.keys()) == ["b", "c"]

    def test_storage_disabled_by_default(self, clock) -> None:
        info = _cache(clock).get_storage_info()

        assert info.enabled is False
        assert _cache(clock).prune_storage() == 0

    def test_unwritable_directory_keeps_memory_cache(self, tmp_path, clock, source, calendar_factory) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        cache = _stored_cache(clock, blocker / "cache")

        cache.set("k", calendar_factory(), source)

        assert cache.get("k") is not None
