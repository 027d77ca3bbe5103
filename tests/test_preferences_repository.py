from __future__ import annotations

from senior_trends.repositories.database import Database
from senior_trends.repositories.preferences_repository import (
    PreferencesRepository,
    ScanPreferences,
)


def test_defaults_are_returned_when_nothing_is_stored(database: Database) -> None:
    defaults = ScanPreferences(channel_cap=30)
    assert PreferencesRepository(database).load(defaults) == defaults


def test_saved_preferences_round_trip(database: Database) -> None:
    repository = PreferencesRepository(database)
    saved = ScanPreferences(
        channel_cap=10_000,
        max_items_per_channel=20,
        concurrency=4,
        velocity_weight=1.5,
        engagement_weight=2.0,
        max_age_days=3,
        cost_overrides={"search": 120},
    )

    repository.save(saved)

    assert repository.load(ScanPreferences()) == saved


def test_saving_drops_cleared_cost_overrides(database: Database) -> None:
    repository = PreferencesRepository(database)
    repository.save(ScanPreferences(cost_overrides={"search": 120, "videos": 2}))
    repository.save(ScanPreferences(cost_overrides={"videos": 3}))

    assert repository.load(ScanPreferences()).cost_overrides == {"videos": 3}


def test_invalid_stored_values_fall_back_to_defaults(database: Database) -> None:
    with database.connection() as conn:
        conn.executemany(
            "INSERT INTO preferences (pref_key, value_text, updated_at) VALUES (?, ?, ?)",
            [
                ("scan.channel_cap", "lots", "2026-03-01T00:00:00+00:00"),
                ("scan.concurrency", "-2", "2026-03-01T00:00:00+00:00"),
                ("scan.velocity_weight", "0.5", "2026-03-01T00:00:00+00:00"),
                ("scan.unknown", "1", "2026-03-01T00:00:00+00:00"),
                ("cost.search", "-1", "2026-03-01T00:00:00+00:00"),
                ("cost.bogus", "5", "2026-03-01T00:00:00+00:00"),
            ],
        )

    loaded = PreferencesRepository(database).load(ScanPreferences())

    assert loaded.channel_cap == 50
    assert loaded.concurrency == 6
    assert loaded.velocity_weight == 0.5
    assert loaded.cost_overrides == {}
