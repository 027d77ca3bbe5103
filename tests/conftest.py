from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from senior_trends.config import AppSettings, load_settings
from senior_trends.dependencies import reset_cached_dependencies
from senior_trends.main import create_app
from senior_trends.repositories.database import Database
from tests.fakes import FAKE_BASE_URL, FakeYouTubeApi


@pytest.fixture(autouse=True)
def _restore_application_loggers() -> Iterator[None]:  # pyright: ignore[reportUnusedFunction]
    yield
    for logger_name in ("senior_trends", "senior_trends.telemetry"):
        logger = logging.getLogger(logger_name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.propagate = True


@pytest.fixture
def settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[AppSettings]:
    data_dir = tmp_path / "runtime-data"
    monkeypatch.setenv("SENIOR_TRENDS_DATA_DIR", str(data_dir))
    monkeypatch.setenv("SENIOR_TRENDS_YOUTUBE_API_BASE_URL", FAKE_BASE_URL)
    monkeypatch.setenv("SENIOR_TRENDS_TELEMETRY_SINK", "none")
    monkeypatch.setenv("SENIOR_TRENDS_FETCH_BASE_DELAY_MS", "0")
    monkeypatch.setenv("SENIOR_TRENDS_INTER_BATCH_DELAY_MS", "0")
    monkeypatch.delenv("SENIOR_TRENDS_SEED_API_KEYS", raising=False)
    reset_cached_dependencies()
    yield load_settings()
    reset_cached_dependencies()


@pytest.fixture
def database(settings: AppSettings) -> Database:
    db = Database(settings.db_path)
    db.initialize()
    return db


@pytest.fixture
def youtube_api() -> FakeYouTubeApi:
    return FakeYouTubeApi()


@pytest.fixture
def client(settings: AppSettings) -> Iterator[TestClient]:
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client
