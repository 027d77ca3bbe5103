from __future__ import annotations

import asyncio
import random
import signal
from pathlib import Path

import httpx
import pytest
from click.testing import CliRunner

from senior_trends.cli.commands.scan import run_until_interrupted
from senior_trends.cli.main import main
from senior_trends.cli.tiers import KeywordTiers
from senior_trends.config import AppSettings
from senior_trends.repositories.database import Database
from senior_trends.services.scan_service import ScanService
from senior_trends.services.synthetic_videos import SyntheticVideoGenerator
from tests.fakes import KEY_ALPHA, KEY_BRAVO, FakeVideo, FakeYouTubeApi


@pytest.fixture
def runner(settings: AppSettings) -> CliRunner:
    return CliRunner()


def test_keys_add_list_remove(runner: CliRunner) -> None:
    added = runner.invoke(main, ["keys", "add", KEY_ALPHA, KEY_BRAVO, KEY_ALPHA])
    assert added.exit_code == 0
    assert added.output.count("Added") == 2
    assert "Already registered" in added.output
    assert KEY_ALPHA not in added.output

    listed = runner.invoke(main, ["keys", "list"])
    assert listed.exit_code == 0
    assert "AIza...0000" in listed.output
    assert "active" in listed.output

    removed = runner.invoke(main, ["keys", "remove", KEY_ALPHA])
    assert removed.exit_code == 0
    missing = runner.invoke(main, ["keys", "remove", KEY_ALPHA])
    assert missing.exit_code == 1
    assert "Not registered" in missing.output


def test_keys_list_when_empty(runner: CliRunner) -> None:
    result = runner.invoke(main, ["keys", "list"])
    assert result.exit_code == 0
    assert "No API keys registered" in result.output


def test_quota_command(runner: CliRunner) -> None:
    runner.invoke(main, ["keys", "add", KEY_ALPHA])

    result = runner.invoke(main, ["quota"])

    assert result.exit_code == 0
    assert "QUOTA" in result.output
    assert "10,000 remaining" in result.output


def test_scan_without_keys_prints_simulated_results(runner: CliRunner) -> None:
    result = runner.invoke(main, ["scan", "-k", "시니어", "--count", "3", "--category", "tech"])

    assert result.exit_code == 0, result.output
    assert "simulated" in result.output
    assert "3 shown" in result.output


def test_scan_requires_keywords(runner: CliRunner) -> None:
    result = runner.invoke(main, ["scan"])
    assert result.exit_code == 1
    assert "at least one --keyword" in result.output


def test_scan_rejects_invalid_tiers_file(runner: CliRunner, tmp_path: Path) -> None:
    tiers_file = tmp_path / "tiers.yaml"
    tiers_file.write_text("secondary: [[운동]]\n", encoding="utf-8")

    result = runner.invoke(main, ["scan", "--tiers", str(tiers_file)])

    assert result.exit_code == 1
    assert "Invalid tiers file" in result.output


def test_keyword_tiers_load(tmp_path: Path) -> None:
    tiers_file = tmp_path / "tiers.yaml"
    tiers_file.write_text(
        "primary:\n  - 시니어\n  - ' 노후 '\nsecondary:\n  - [운동, 체조]\n  - 요리\n",
        encoding="utf-8",
    )

    tiers = KeywordTiers.load(tiers_file)

    assert tiers.primary == ["시니어", "노후"]
    assert tiers.secondary == [["운동", "체조"], ["요리"]]


def test_keyword_tiers_reject_non_list_secondary(tmp_path: Path) -> None:
    tiers_file = tmp_path / "tiers.yaml"
    tiers_file.write_text("primary: [시니어]\nsecondary: 운동\n", encoding="utf-8")

    with pytest.raises(ValueError):
        KeywordTiers.load(tiers_file)


def test_scan_rejects_unparseable_time_range(runner: CliRunner) -> None:
    result = runner.invoke(main, ["scan", "-k", "시니어", "--time-range", "abc"])

    assert result.exit_code == 1
    assert "Invalid scan options" in result.output


def test_keyboard_interrupt_returns_partial_scan(
    settings: AppSettings,
    database: Database,
    youtube_api: FakeYouTubeApi,
) -> None:
    youtube_api.channel_search["시니어"] = ["c1", "c2", "c3"]
    for channel_id in ("c1", "c2", "c3"):
        youtube_api.add_channel(
            channel_id,
            [FakeVideo(f"{channel_id}-v0", channel_id, "시니어 건강 체조", views=8_000)],
        )
    service = ScanService(
        settings,
        database,
        http_client_factory=youtube_api.client,
        synthetic=SyntheticVideoGenerator(random.Random(5)),
    )
    service.add_credential(KEY_ALPHA)
    interrupts: list[str] = []

    def interrupt_on_first_listing(request: httpx.Request) -> None:
        if request.url.path.endswith("/playlistItems") and not interrupts:
            interrupts.append(request.url.params["playlistId"])
            signal.raise_signal(signal.SIGINT)

    youtube_api.on_request = interrupt_on_first_listing
    request = service.build_request(["시니어"], concurrency=1)

    result = asyncio.run(run_until_interrupted(service, request, mode="pipeline"))

    assert interrupts == ["UUc1"]
    assert result.state == "cancelled"
    assert result.message is not None and "interrupted from keyboard" in result.message
