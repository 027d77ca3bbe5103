from __future__ import annotations

import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from senior_trends.repositories.response_cache_repository import ResponseCacheRepository

LOGGER = logging.getLogger("senior_trends.cache")


@dataclass(frozen=True)
class _CacheEntry:
    value: Any
    stored_at: float
    ttl_seconds: float


def make_cache_key(operation: str, entity_id: str, **extra: object) -> str:
    """Build a stable key from (operation type, entity id, extra params)."""
    if not extra:
        return f"{operation}:{entity_id}"
    encoded_extra = json.dumps(extra, sort_keys=True, ensure_ascii=False, default=str)
    return f"{operation}:{entity_id}:{encoded_extra}"


class TtlCache:
    """
    Time-boxed memo for expensive list responses.

    Entries live in memory and are mirrored to the response cache table so that
    discovery results survive a restart inside the TTL window. An entry is a hit
    only while `now - stored_at < ttl`. The in-memory layer is LRU-capped at
    `max_entries`; evicted entries can still be reloaded from storage.
    """

    def __init__(
        self,
        repository: ResponseCacheRepository | None = None,
        *,
        default_ttl_seconds: float = 6 * 3600,
        max_entries: int | None = 5_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._repository = repository
        self._default_ttl_seconds = max(0.0, default_ttl_seconds)
        self._max_entries = max_entries if max_entries is None else max(1, max_entries)
        self._clock = clock
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None and self._repository is not None:
            stored = self._repository.get(key)
            if stored is not None:
                entry = _CacheEntry(
                    value=stored.value,
                    stored_at=stored.stored_at,
                    ttl_seconds=stored.ttl_seconds,
                )
                self._remember(key, entry)

        if entry is None:
            return None

        if self._clock() - entry.stored_at >= entry.ttl_seconds:
            self._entries.pop(key, None)
            return None

        self._entries.move_to_end(key)
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self._default_ttl_seconds if ttl_seconds is None else max(0.0, ttl_seconds)
        entry = _CacheEntry(value=value, stored_at=self._clock(), ttl_seconds=ttl)
        self._remember(key, entry)
        if self._repository is not None:
            self._repository.upsert(
                cache_key=key,
                value=value,
                stored_at=entry.stored_at,
                ttl_seconds=entry.ttl_seconds,
            )

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [
            key
            for key, entry in self._entries.items()
            if now - entry.stored_at >= entry.ttl_seconds
        ]
        for key in expired:
            del self._entries[key]
        purged = len(expired)
        if self._repository is not None:
            purged = max(purged, self._repository.purge_expired(now=now))
        if purged:
            LOGGER.debug("purged expired cache entries count=%s", purged)
        return purged

    def _remember(self, key: str, entry: _CacheEntry) -> None:
        self._entries[key] = entry
        self._entries.move_to_end(key)
        if self._max_entries is None:
            return
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
