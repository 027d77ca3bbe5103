from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest

from senior_trends.services.credential_pool import CredentialPool
from senior_trends.services.scan_pipeline import (
    ScanPipeline,
    ScanProgress,
    ScanRequest,
    ScanResult,
    filter_by_title_tiers,
)
from senior_trends.services.ttl_cache import TtlCache
from senior_trends.services.video_records import VideoRecord
from senior_trends.telemetry import TelemetryClient
from tests.fakes import (
    KEY_ALPHA,
    KEY_BRAVO,
    FakeVideo,
    FakeYouTubeApi,
    build_pipeline,
    make_pool,
)


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Any) -> None:
        self.events.append((event_name, dict(attributes)))


def _channel_videos(channel_id: str, count: int, *, views: int = 5_000) -> list[FakeVideo]:
    return [
        FakeVideo(
            video_id=f"{channel_id}-v{index}",
            channel_id=channel_id,
            title=f"{channel_id} 시니어 건강 영상 {index}",
            views=views + index * 1_000,
            age_hours=6 + index,
        )
        for index in range(count)
    ]


def _scan(
    api: FakeYouTubeApi,
    pool: CredentialPool,
    request: ScanRequest,
    *,
    direct: bool = False,
    progress_factory: Any = None,
    **pipeline_kwargs: Any,
) -> ScanResult:
    async def scenario() -> ScanResult:
        async with api.client() as http_client:
            pipeline = build_pipeline(http_client, pool, **pipeline_kwargs)
            progress = progress_factory(pipeline) if progress_factory is not None else None
            if direct:
                return await pipeline.search_direct(request, progress=progress)
            return await pipeline.run(request, progress=progress)

    return asyncio.run(scenario())


def test_missing_channel_is_skipped_without_aborting(
    youtube_api: FakeYouTubeApi,
    caplog: pytest.LogCaptureFixture,
) -> None:
    youtube_api.channel_search["시니어"] = ["c1", "c2"]
    youtube_api.add_channel("c1", _channel_videos("c1", 3))
    youtube_api.missing_channels.add("c2")

    with caplog.at_level(logging.WARNING):
        result = _scan(youtube_api, make_pool(KEY_ALPHA), ScanRequest(keywords=("시니어",)))

    assert result.state == "done"
    assert {video.video_id for video in result.videos} == {"c1-v0", "c1-v1", "c1-v2"}
    assert result.channels_discovered == 2
    assert result.channels_processed == 2
    assert result.used_simulated is False
    assert any(
        "channel_id=c2" in record.getMessage() and "not_found" in record.getMessage()
        for record in caplog.records
    )


def test_zero_quota_returns_only_simulated_records_without_network(
    youtube_api: FakeYouTubeApi,
) -> None:
    pool = make_pool(KEY_ALPHA, KEY_BRAVO, usage={KEY_ALPHA: 10_000, KEY_BRAVO: 10_000})
    youtube_api.channel_search["시니어"] = ["c1"]
    youtube_api.add_channel("c1", _channel_videos("c1", 3))

    result = _scan(youtube_api, pool, ScanRequest(keywords=("시니어",), result_count=12))

    assert youtube_api.requests == []
    assert result.state == "done"
    assert len(result.videos) == 12
    assert all(video.is_simulated for video in result.videos)
    assert result.used_simulated is True
    assert result.simulated_count == 12
    assert [video.rank for video in result.videos] == list(range(1, 13))


def test_empty_pool_returns_simulated_records(youtube_api: FakeYouTubeApi) -> None:
    pool = make_pool()

    result = _scan(youtube_api, pool, ScanRequest(keywords=("시니어",), result_count=3))

    assert youtube_api.requests == []
    assert len(result.videos) == 3
    assert all(video.is_simulated for video in result.videos)


def test_cancel_during_expansion_keeps_only_finished_channels(
    youtube_api: FakeYouTubeApi,
) -> None:
    channels = [f"c{index}" for index in range(1, 6)]
    youtube_api.channel_search["시니어"] = channels
    for channel_id in channels:
        youtube_api.add_channel(channel_id, _channel_videos(channel_id, 2))
    requests_at_cancel: list[int] = []

    def progress_factory(pipeline: ScanPipeline) -> Any:
        def on_progress(update: ScanProgress) -> None:
            if update.state == "expanding" and update.processed == 2 and not requests_at_cancel:
                requests_at_cancel.append(len(youtube_api.requests))
                assert pipeline.cancel_active_scan("stop pressed") is True

        return on_progress

    result = _scan(
        youtube_api,
        make_pool(KEY_ALPHA),
        ScanRequest(keywords=("시니어",), concurrency=1),
        progress_factory=progress_factory,
    )

    assert result.state == "cancelled"
    assert requests_at_cancel
    assert len(youtube_api.requests) == requests_at_cancel[0]
    assert youtube_api.calls("videos")[-1].url.params["part"] == "id"
    assert {video.channel_id for video in result.videos} == {"c1", "c2"}
    assert len(result.videos) == 4
    assert all(video.view_count == 0 for video in result.videos)
    assert result.message is not None and "stop pressed" in result.message


def test_quota_running_out_mid_scan_backfills_simulated_records(
    youtube_api: FakeYouTubeApi,
) -> None:
    youtube_api.channel_search["시니어"] = ["c1"]
    youtube_api.add_channel("c1", _channel_videos("c1", 4))
    pool = make_pool(KEY_ALPHA)
    stats_calls: list[httpx.Request] = []

    def exhaust_after_first_batch(request: httpx.Request) -> None:
        if request.url.path.endswith("/videos") and request.url.params.get("part") != "id":
            stats_calls.append(request)
            if len(stats_calls) == 2:
                state = pool.ledger.credential_state(KEY_ALPHA)
                assert state is not None
                pool.ledger.record_usage(
                    KEY_ALPHA, pool.ledger.disable_threshold_units - state.usage_units
                )
                youtube_api.exhausted_keys.add(KEY_ALPHA)

    youtube_api.on_request = exhaust_after_first_batch
    sink = _CaptureSink()

    result = _scan(
        youtube_api,
        pool,
        ScanRequest(keywords=("시니어",), result_count=5),
        batch_size=2,
        telemetry=TelemetryClient(enabled=True, sink=sink),
    )

    real = [video for video in result.videos if not video.is_simulated]
    simulated = [video for video in result.videos if video.is_simulated]
    assert result.state == "done"
    assert len(real) == 2
    assert len(simulated) == 3
    assert result.simulated_count == 3
    assert [video.rank for video in result.videos] == [1, 2, 3, 4, 5]
    assert result.message is not None and "simulated" in result.message
    assert ("scan.fallback", {"scan_id": result.scan_id, "reason": "partial", "count": 3}) in (
        sink.events
    )


def test_one_quota_rejection_with_headroom_skips_only_that_channel(
    youtube_api: FakeYouTubeApi,
) -> None:
    youtube_api.channel_search["시니어"] = ["c1", "c2", "c3"]
    for channel_id in ("c1", "c2", "c3"):
        youtube_api.add_channel(channel_id, _channel_videos(channel_id, 2))
    youtube_api.fail_requests(
        lambda request: (
            request.url.path.endswith("/channels") and request.url.params.get("id") == "c1"
        ),
        403,
        "quotaExceeded",
    )
    pool = make_pool(KEY_ALPHA)

    result = _scan(youtube_api, pool, ScanRequest(keywords=("시니어",), concurrency=1))

    assert result.state == "done"
    assert not result.used_simulated
    assert result.simulated_count == 0
    assert {video.channel_id for video in result.videos} == {"c2", "c3"}
    assert all(not video.is_simulated for video in result.videos)
    assert result.channels_discovered == 3
    state = pool.ledger.credential_state(KEY_ALPHA)
    assert state is not None and state.status == "active"


def test_unparseable_time_range_fails_before_any_request(youtube_api: FakeYouTubeApi) -> None:
    youtube_api.channel_search["시니어"] = ["c1"]
    youtube_api.add_channel("c1", _channel_videos("c1", 2))

    with pytest.raises(ValueError):
        _scan(
            youtube_api,
            make_pool(KEY_ALPHA),
            ScanRequest(keywords=("시니어",), time_range="abc"),
        )

    assert youtube_api.requests == []


def test_failed_statistics_batch_is_skipped_and_next_batch_survives(
    youtube_api: FakeYouTubeApi,
) -> None:
    youtube_api.channel_search["시니어"] = ["c1"]
    youtube_api.add_channel("c1", _channel_videos("c1", 4))

    def is_stats_batch(request: httpx.Request) -> bool:
        return (
            request.url.path.endswith("/videos")
            and request.url.params.get("part") != "id"
            and "c1-v0" in request.url.params.get("id", "").split(",")
        )

    youtube_api.fail_requests(is_stats_batch, 503, "backendError")

    result = _scan(
        youtube_api,
        make_pool(KEY_ALPHA),
        ScanRequest(keywords=("시니어",)),
        batch_size=2,
    )

    stats_calls = [
        request for request in youtube_api.calls("videos") if request.url.params["part"] != "id"
    ]
    assert len(stats_calls) == 2
    surviving_ids = set(stats_calls[1].url.params["id"].split(","))
    assert result.state == "done"
    assert result.simulated_count == 0
    assert {video.video_id for video in result.videos} == surviving_ids
    assert "c1-v0" not in surviving_ids
    assert all(video.view_count > 0 for video in result.videos)


def test_upload_listing_error_leaves_other_channels_expanded(
    youtube_api: FakeYouTubeApi,
) -> None:
    youtube_api.channel_search["시니어"] = ["c1", "c2", "c3"]
    for channel_id in ("c1", "c2", "c3"):
        youtube_api.add_channel(channel_id, _channel_videos(channel_id, 2))
    youtube_api.fail_requests(
        lambda request: request.url.params.get("playlistId") == "UUc1",
        500,
        "backendError",
    )

    result = _scan(
        youtube_api,
        make_pool(KEY_ALPHA),
        ScanRequest(keywords=("시니어",), concurrency=1),
    )

    assert result.state == "done"
    assert result.simulated_count == 0
    assert {video.channel_id for video in result.videos} == {"c2", "c3"}
    assert len(result.videos) == 4


def test_results_are_truncated_but_background_pool_keeps_everything(
    youtube_api: FakeYouTubeApi,
) -> None:
    youtube_api.channel_search["시니어"] = ["c1", "c2"]
    youtube_api.add_channel("c1", _channel_videos("c1", 4))
    youtube_api.add_channel("c2", _channel_videos("c2", 4, views=50_000))

    result = _scan(
        youtube_api,
        make_pool(KEY_ALPHA),
        ScanRequest(keywords=("시니어",), result_count=3, sort_by="views"),
    )

    assert len(result.videos) == 3
    assert len(result.background_pool) == 8
    assert [video.video_id for video in result.videos] == ["c2-v3", "c2-v2", "c2-v1"]
    assert result.units_spent > 0


def test_title_tiers_filter_collected_records(youtube_api: FakeYouTubeApi) -> None:
    youtube_api.channel_search["시니어"] = ["c1"]
    youtube_api.add_channel(
        "c1",
        [
            FakeVideo("v-walk", "c1", "매일 걷기 운동 루틴"),
            FakeVideo("v-food", "c1", "무릎에 좋은 음식"),
            FakeVideo("v-news", "c1", "오늘의 뉴스"),
        ],
    )

    result = _scan(
        youtube_api,
        make_pool(KEY_ALPHA),
        ScanRequest(keywords=("시니어",), title_filters=(("운동",), ("음식", "요리"))),
    )

    assert {video.video_id for video in result.videos} == {"v-walk", "v-food"}


def test_filter_by_title_tiers_without_tiers_keeps_everything() -> None:
    published_at = datetime(2026, 3, 1, tzinfo=UTC)
    videos = [
        VideoRecord("v1", "Morning Stretch", "c1", "건강TV", published_at),
        VideoRecord("v2", "아침 스트레칭", "c1", "건강TV", published_at),
    ]

    assert filter_by_title_tiers(videos, []) == videos
    assert filter_by_title_tiers(videos, [[" "]]) == videos
    assert filter_by_title_tiers(videos, [["stretch"]]) == [videos[0]]


def test_discovery_results_are_served_from_cache(youtube_api: FakeYouTubeApi) -> None:
    youtube_api.channel_search["시니어"] = ["c1"]
    youtube_api.add_channel("c1", _channel_videos("c1", 2))
    cache = TtlCache(default_ttl_seconds=3600)
    pool = make_pool(KEY_ALPHA)

    _scan(youtube_api, pool, ScanRequest(keywords=("시니어",)), cache=cache)
    searches_after_first = len(youtube_api.calls("search"))
    playlists_after_first = len(youtube_api.calls("playlistItems"))
    second = _scan(youtube_api, pool, ScanRequest(keywords=("시니어",)), cache=cache)

    assert searches_after_first == 1
    assert len(youtube_api.calls("search")) == 1
    assert len(youtube_api.calls("playlistItems")) == playlists_after_first
    assert {video.video_id for video in second.videos} == {"c1-v0", "c1-v1"}


def test_rejected_key_rotates_to_next_credential(youtube_api: FakeYouTubeApi) -> None:
    youtube_api.channel_search["시니어"] = ["c1"]
    youtube_api.add_channel("c1", _channel_videos("c1", 2))
    youtube_api.rejected_keys.add(KEY_ALPHA)
    pool = make_pool(KEY_ALPHA, KEY_BRAVO)

    result = _scan(youtube_api, pool, ScanRequest(keywords=("시니어",)))

    assert result.state == "done"
    assert len(result.videos) == 2
    state = pool.ledger.credential_state(KEY_ALPHA)
    assert state is not None and state.status == "error"


def test_progress_reports_every_stage(youtube_api: FakeYouTubeApi) -> None:
    youtube_api.channel_search["시니어"] = ["c1", "c2"]
    youtube_api.add_channel("c1", _channel_videos("c1", 2))
    youtube_api.add_channel("c2", _channel_videos("c2", 2))
    updates: list[ScanProgress] = []

    _scan(
        youtube_api,
        make_pool(KEY_ALPHA),
        ScanRequest(keywords=("시니어",)),
        progress_factory=lambda _: updates.append,
    )

    states = [update.state for update in updates]
    assert states[0] == "discovering"
    assert "expanding" in states
    assert "fetching_stats" in states
    assert states[-1] == "done"
    assert updates[-1].percent == 100.0
    assert all(update.percent <= 99.0 for update in updates[:-1])


def test_direct_search_uses_composite_scores_and_subscribers(
    youtube_api: FakeYouTubeApi,
) -> None:
    videos = [
        FakeVideo("d1", "ch-a", "시니어 요가", views=120_000, likes=6_000),
        FakeVideo("d2", "ch-b", "시니어 스마트폰 배우기", views=8_000, likes=100),
    ]
    youtube_api.add_videos(videos)
    youtube_api.video_search["시니어"] = ["d1", "d2"]
    youtube_api.subscribers = {"ch-a": 10_000, "ch-b": 200_000}

    result = _scan(
        youtube_api,
        make_pool(KEY_ALPHA),
        ScanRequest(keywords=("시니어",), result_count=10),
        direct=True,
    )

    assert result.state == "done"
    assert [video.video_id for video in result.videos] == ["d1", "d2"]
    assert result.videos[0].subscriber_count == 10_000
    assert all(0 <= video.virality_score <= 1000 for video in result.videos)
    [search_request] = youtube_api.calls("search")
    assert search_request.url.params["type"] == "video"
    assert search_request.url.params["order"] == "viewCount"
    assert "publishedAfter" in search_request.url.params
    assert youtube_api.calls("playlistItems") == []
