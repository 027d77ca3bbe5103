from __future__ import annotations

from senior_trends.repositories.database import Database
from senior_trends.repositories.response_cache_repository import ResponseCacheRepository
from senior_trends.services.ttl_cache import TtlCache, make_cache_key


class _Clock:
    def __init__(self, current: float = 1_000.0) -> None:
        self.current = current

    def __call__(self) -> float:
        return self.current


def test_entry_expires_exactly_at_ttl() -> None:
    clock = _Clock()
    cache = TtlCache(default_ttl_seconds=10, clock=clock)
    cache.set("search_channels:시니어", ["c1", "c2"])

    clock.current = 1_009.5
    assert cache.get("search_channels:시니어") == ["c1", "c2"]

    clock.current = 1_010.0
    assert cache.get("search_channels:시니어") is None


def test_per_entry_ttl_overrides_default() -> None:
    clock = _Clock()
    cache = TtlCache(default_ttl_seconds=3600, clock=clock)
    cache.set("short", "value", ttl_seconds=1)

    clock.current += 1
    assert cache.get("short") is None


def test_entries_are_reloaded_from_storage(database: Database) -> None:
    clock = _Clock()
    repository = ResponseCacheRepository(database)
    TtlCache(repository, default_ttl_seconds=60, clock=clock).set(
        "uploads_playlist:c1", "UUc1"
    )

    fresh_process = TtlCache(ResponseCacheRepository(database), clock=clock)
    clock.current += 30
    assert fresh_process.get("uploads_playlist:c1") == "UUc1"

    clock.current += 30
    assert fresh_process.get("uploads_playlist:c1") is None


def test_lru_cap_evicts_least_recently_used() -> None:
    cache = TtlCache(max_entries=2, clock=_Clock())
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1

    cache.set("c", 3)

    assert len(cache) == 2
    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3


def test_purge_expired_drops_memory_and_storage(database: Database) -> None:
    clock = _Clock()
    repository = ResponseCacheRepository(database)
    cache = TtlCache(repository, default_ttl_seconds=10, clock=clock)
    cache.set("old", "x")
    clock.current += 5
    cache.set("new", "y")

    clock.current += 6
    assert cache.purge_expired() == 1
    assert len(cache) == 1
    assert repository.get("old") is None
    assert repository.get("new") is not None


def test_cache_key_is_stable_across_argument_order() -> None:
    first = make_cache_key("playlist_uploads", "UUc1", limit=50, after="2026-03-01")
    second = make_cache_key("playlist_uploads", "UUc1", after="2026-03-01", limit=50)

    assert first == second
    assert make_cache_key("uploads_playlist", "c1") == "uploads_playlist:c1"
    assert make_cache_key("search_channels", "시니어", limit=None) != make_cache_key(
        "search_channels", "시니어", limit=10
    )
