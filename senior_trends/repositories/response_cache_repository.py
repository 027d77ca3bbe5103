from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from senior_trends.repositories.database import Database


@dataclass(frozen=True)
class CachedResponse:
    cache_key: str
    value: Any
    stored_at: float
    ttl_seconds: float


class ResponseCacheRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, cache_key: str) -> CachedResponse | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT cache_key, value_json, stored_at, ttl_seconds
                FROM response_cache
                WHERE cache_key = ?
                """,
                (cache_key,),
            ).fetchone()

        if row is None:
            return None
        try:
            value = json.loads(str(row["value_json"]))
        except json.JSONDecodeError:
            return None
        return CachedResponse(
            cache_key=str(row["cache_key"]),
            value=value,
            stored_at=float(row["stored_at"]),
            ttl_seconds=float(row["ttl_seconds"]),
        )

    def upsert(self, *, cache_key: str, value: Any, stored_at: float, ttl_seconds: float) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO response_cache (cache_key, value_json, stored_at, ttl_seconds)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    value_json = excluded.value_json,
                    stored_at = excluded.stored_at,
                    ttl_seconds = excluded.ttl_seconds
                """,
                (cache_key, json.dumps(value, ensure_ascii=False), stored_at, ttl_seconds),
            )

    def delete(self, cache_key: str) -> None:
        with self._db.connection() as conn:
            conn.execute("DELETE FROM response_cache WHERE cache_key = ?", (cache_key,))

    def purge_expired(self, *, now: float) -> int:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM response_cache WHERE stored_at + ttl_seconds <= ?",
                (now,),
            )
            return int(cursor.rowcount)
