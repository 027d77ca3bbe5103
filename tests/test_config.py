from __future__ import annotations

import pytest
from pydantic import ValidationError

from senior_trends.config import AppSettings, clamp_concurrency, load_settings, split_api_keys
from tests.fakes import FAKE_BASE_URL


def test_paths_default_inside_data_dir(settings: AppSettings) -> None:
    assert settings.db_path == settings.data_dir / "state.db"
    assert settings.log_dir == settings.data_dir / "logs"
    assert settings.data_dir.is_absolute()
    assert settings.youtube_api_base_url == FAKE_BASE_URL


def test_explicit_db_path_is_kept(settings: AppSettings, monkeypatch: pytest.MonkeyPatch) -> None:
    custom = settings.data_dir.parent / "elsewhere" / "ledger.db"
    monkeypatch.setenv("SENIOR_TRENDS_DB_PATH", str(custom))

    assert load_settings().db_path == custom


def test_seed_api_keys_are_split_and_deduplicated(
    settings: AppSettings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("SENIOR_TRENDS_SEED_API_KEYS", "AIzaOne, AIzaTwo\nAIzaOne,,AIzaThree")

    assert load_settings().seed_api_key_list == ["AIzaOne", "AIzaTwo", "AIzaThree"]
    assert split_api_keys("  ") == []


def test_concurrency_is_clamped(settings: AppSettings, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SENIOR_TRENDS_DEFAULT_CONCURRENCY", "40")
    assert load_settings().default_concurrency == 16
    assert clamp_concurrency(0) == 1
    assert clamp_concurrency(6) == 6


def test_blank_region_disables_the_parameter(
    settings: AppSettings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("SENIOR_TRENDS_YOUTUBE_REGION_CODE", " ")
    assert load_settings().youtube_region_code is None


@pytest.mark.parametrize(("raw_value", "expected"), [("off", False), ("1", True), ("maybe", True)])
def test_telemetry_flag_parsing(
    settings: AppSettings,
    monkeypatch: pytest.MonkeyPatch,
    raw_value: str,
    expected: bool,
) -> None:
    monkeypatch.setenv("SENIOR_TRENDS_TELEMETRY_ENABLED", raw_value)
    assert load_settings().telemetry_enabled is expected


@pytest.mark.parametrize(
    ("env_name", "raw_value"),
    [
        ("SENIOR_TRENDS_QUOTA_DISABLE_FRACTION", "1.5"),
        ("SENIOR_TRENDS_DAILY_QUOTA_LIMIT", "0"),
        ("SENIOR_TRENDS_TELEMETRY_SINK", "otlp"),
        ("SENIOR_TRENDS_YOUTUBE_API_BASE_URL", "  "),
    ],
)
def test_invalid_settings_are_rejected(
    settings: AppSettings,
    monkeypatch: pytest.MonkeyPatch,
    env_name: str,
    raw_value: str,
) -> None:
    monkeypatch.setenv(env_name, raw_value)
    with pytest.raises(ValidationError):
        load_settings()
