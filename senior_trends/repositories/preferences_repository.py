from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace

from senior_trends.repositories.common import utc_now_iso
from senior_trends.repositories.database import Database

LOGGER = logging.getLogger("senior_trends.preferences")

SCAN_PREFIX = "scan."
COST_PREFIX = "cost."
COST_OVERRIDE_FIELDS: tuple[str, ...] = ("search", "channels", "playlist_items", "videos")


@dataclass(frozen=True)
class ScanPreferences:
    channel_cap: int = 50
    max_items_per_channel: int = 50
    concurrency: int = 6
    velocity_weight: float = 1.0
    engagement_weight: float = 3.0
    max_age_days: int = 7
    cost_overrides: dict[str, int] = field(default_factory=dict)


_NUMERIC_FIELDS: dict[str, type[int] | type[float]] = {
    item.name: int if item.type in ("int", int) else float
    for item in fields(ScanPreferences)
    if item.name != "cost_overrides"
}


class PreferencesRepository:
    """Scan tunables stored as namespaced strings (`scan.*`, `cost.*`)."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def load(self, defaults: ScanPreferences) -> ScanPreferences:
        with self._db.connection() as conn:
            rows = conn.execute("SELECT pref_key, value_text FROM preferences").fetchall()

        updates: dict[str, int | float] = {}
        cost_overrides = dict(defaults.cost_overrides)
        for row in rows:
            key = str(row["pref_key"])
            raw_value = str(row["value_text"])
            if key.startswith(SCAN_PREFIX):
                name = key.removeprefix(SCAN_PREFIX)
                parsed = _parse_number(raw_value, _NUMERIC_FIELDS.get(name))
                if parsed is None:
                    LOGGER.warning(
                        "ignoring invalid stored preference key=%s value=%s", key, raw_value
                    )
                    continue
                updates[name] = parsed
            elif key.startswith(COST_PREFIX):
                name = key.removeprefix(COST_PREFIX)
                cost = _parse_number(raw_value, int) if name in COST_OVERRIDE_FIELDS else None
                if cost is None or cost < 0:
                    LOGGER.warning(
                        "ignoring invalid stored cost override key=%s value=%s", key, raw_value
                    )
                    continue
                cost_overrides[name] = int(cost)

        return replace(defaults, cost_overrides=cost_overrides, **updates)

    def save(self, preferences: ScanPreferences) -> None:
        now_iso = utc_now_iso()
        values: dict[str, str] = {
            f"{SCAN_PREFIX}{name}": str(getattr(preferences, name)) for name in _NUMERIC_FIELDS
        }
        for name, cost in preferences.cost_overrides.items():
            if name in COST_OVERRIDE_FIELDS:
                values[f"{COST_PREFIX}{name}"] = str(cost)

        with self._db.connection() as conn:
            conn.execute("DELETE FROM preferences WHERE pref_key LIKE ?", (f"{COST_PREFIX}%",))
            conn.executemany(
                """
                INSERT INTO preferences (pref_key, value_text, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(pref_key) DO UPDATE SET
                    value_text = excluded.value_text,
                    updated_at = excluded.updated_at
                """,
                [(key, value, now_iso) for key, value in values.items()],
            )


def _parse_number(
    raw_value: str,
    number_type: type[int] | type[float] | None,
) -> int | float | None:
    if number_type is None:
        return None
    try:
        parsed = number_type(raw_value.strip())
    except ValueError:
        return None
    if parsed < 0:
        return None
    return parsed
