from __future__ import annotations

import asyncio
import logging
import math
import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Literal

from structlog.contextvars import bound_contextvars

from senior_trends.services.cancellation import CancellationToken
from senior_trends.services.channel_discovery import ChannelDiscovery, VideoSearch
from senior_trends.services.errors import YouTubeServiceError, quota_is_spent
from senior_trends.services.quota_ledger import mask_api_key
from senior_trends.services.scoring import (
    ScoringStrategy,
    build_scorer,
    compute_scores,
    parse_time_range,
    sort_and_rank,
)
from senior_trends.services.statistics_fetcher import StatisticsFetcher
from senior_trends.services.synthetic_videos import SyntheticVideoGenerator
from senior_trends.services.upload_expansion import UploadExpansion
from senior_trends.services.video_records import (
    FormatTag,
    UploadedVideo,
    VideoRecord,
    dedupe_videos,
    video_record_from_upload,
)
from senior_trends.services.youtube_gateway import YouTubeGateway
from senior_trends.telemetry import TelemetryClient

LOGGER = logging.getLogger("senior_trends.pipeline")

NO_CHANNEL_CAP = 10_000
UNCAPPED_PAGE_ESTIMATE = 5
DEFAULT_SCORING_BY_MODE: dict[str, str] = {"pipeline": "velocity", "direct": "composite"}


ScanState = Literal[
    "idle",
    "discovering",
    "expanding",
    "fetching_stats",
    "scoring",
    "done",
    "cancelled",
]


@dataclass(frozen=True)
class ScanProgress:
    state: ScanState
    processed: int
    total: int
    discovered_video_ids: int
    current_action: str
    percent: float


ProgressCallback = Callable[[ScanProgress], None]


@dataclass(frozen=True)
class ScanRequest:
    keywords: tuple[str, ...]
    title_filters: tuple[tuple[str, ...], ...] = ()
    result_count: int = 50
    channel_cap: int = 50
    max_items_per_channel: int = 50
    concurrency: int = 6
    time_range: str | int | float | None = "7d"
    format_filter: FormatTag | None = None
    sort_by: str = "score"
    scoring: str | None = None
    velocity_weight: float = 1.0
    engagement_weight: float = 3.0
    category: str = "all"

    @property
    def uncapped(self) -> bool:
        return self.channel_cap >= NO_CHANNEL_CAP


@dataclass
class ScanResult:
    scan_id: str
    state: ScanState
    videos: list[VideoRecord] = field(default_factory=list)
    background_pool: list[VideoRecord] = field(default_factory=list)
    used_simulated: bool = False
    simulated_count: int = 0
    message: str | None = None
    units_spent: int = 0
    channels_discovered: int = 0
    channels_processed: int = 0


@dataclass
class _ScanRun:
    """Mutable working set of one scan; survives into the error path."""

    scan_id: str
    request: ScanRequest
    token: CancellationToken
    progress: ProgressCallback | None
    started_units: int
    budget_units: int
    now: datetime
    state: ScanState = "idle"
    channels: list[str] = field(default_factory=list)
    channels_processed: int = 0
    uploads: dict[str, UploadedVideo] = field(default_factory=dict)
    source_keywords: dict[str, str] = field(default_factory=dict)
    records: list[VideoRecord] = field(default_factory=list)
    quota_exhausted: bool = False


class ScanPipeline:
    """
    Keyword scan orchestrator.

    `run` walks discovering, expanding, fetching_stats and scoring, sharing one
    cancellation token across every request. When the pool has no quota left
    the scan is answered with simulated records without touching the network;
    when quota runs out midway the shortfall is backfilled with simulated
    records. Unexpected errors are caught here and whatever was collected is
    still returned.
    """

    def __init__(
        self,
        gateway: YouTubeGateway,
        discovery: ChannelDiscovery,
        expansion: UploadExpansion,
        statistics: StatisticsFetcher,
        *,
        video_search: VideoSearch | None = None,
        synthetic: SyntheticVideoGenerator | None = None,
        telemetry: TelemetryClient | None = None,
        page_size: int = 50,
        batch_size: int = 50,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._gateway = gateway
        self._discovery = discovery
        self._expansion = expansion
        self._statistics = statistics
        self._video_search = video_search or VideoSearch(gateway)
        self._synthetic = synthetic or SyntheticVideoGenerator()
        self._telemetry = telemetry or TelemetryClient.disabled()
        self._page_size = max(1, page_size)
        self._batch_size = max(1, batch_size)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._active_token: CancellationToken | None = None
        self._state: ScanState = "idle"

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._active_token is not None

    def cancel_active_scan(self, reason: str = "user requested stop") -> bool:
        token = self._active_token
        if token is None or token.cancelled:
            return False
        token.cancel(reason)
        LOGGER.info("scan cancellation requested reason=%s", reason)
        return True

    async def run(
        self,
        request: ScanRequest,
        *,
        progress: ProgressCallback | None = None,
        cancellation: CancellationToken | None = None,
    ) -> ScanResult:
        scan = self._start(request, progress, cancellation, mode="pipeline")
        with bound_contextvars(scan_id=scan.scan_id):
            try:
                return await self._run_pipeline(scan)
            except Exception as exc:
                return self._finish_after_failure(scan, exc)
            finally:
                self._active_token = None

    async def search_direct(
        self,
        request: ScanRequest,
        *,
        progress: ProgressCallback | None = None,
        cancellation: CancellationToken | None = None,
    ) -> ScanResult:
        """Keyword video search, statistics and composite scoring, no channel expansion."""
        scan = self._start(request, progress, cancellation, mode="direct")
        with bound_contextvars(scan_id=scan.scan_id):
            try:
                return await self._run_direct(scan)
            except Exception as exc:
                return self._finish_after_failure(scan, exc)
            finally:
                self._active_token = None

    def _start(
        self,
        request: ScanRequest,
        progress: ProgressCallback | None,
        cancellation: CancellationToken | None,
        *,
        mode: str,
    ) -> _ScanRun:
        # Bad input fails here, before any quota is spent.
        parse_time_range(request.time_range)
        if request.scoring is None:
            request = replace(request, scoring=DEFAULT_SCORING_BY_MODE[mode])
        token = cancellation or CancellationToken()
        self._active_token = token
        self._expansion.reset_run_state()
        scan = _ScanRun(
            scan_id=uuid.uuid4().hex[:12],
            request=request,
            token=token,
            progress=progress,
            started_units=self._gateway.units_spent,
            budget_units=self._estimate_budget(request, mode=mode),
            now=self._clock(),
        )
        self._telemetry.emit(
            "scan.start",
            scan_id=scan.scan_id,
            mode=mode,
            keywords=len(request.keywords),
            result_count=request.result_count,
            budget_units=scan.budget_units,
        )
        LOGGER.info(
            "scan started scan_id=%s mode=%s keywords=%s result_count=%s budget_units=%s",
            scan.scan_id,
            mode,
            len(request.keywords),
            request.result_count,
            scan.budget_units,
        )
        return scan

    async def _run_pipeline(self, scan: _ScanRun) -> ScanResult:
        request = scan.request
        if not await self._ensure_quota(scan):
            return self._finish_simulated(scan, "no API quota remaining; showing simulated results")

        self._transition(scan, "discovering")
        self._report(scan, processed=0, total=len(request.keywords), action="discovering channels")
        channel_cap = None if request.uncapped else request.channel_cap
        scan.channels = await self._discovery.discover_seed_channels(
            request.keywords,
            channel_cap,
            cancellation=scan.token,
        )
        scan.quota_exhausted = scan.quota_exhausted or self._discovery.quota_exhausted
        if scan.token.cancelled:
            return self._finish(scan)

        self._transition(scan, "expanding")
        await self._expand_channels(scan)
        if scan.token.cancelled:
            return self._finish(scan)

        self._transition(scan, "fetching_stats")
        self._report(
            scan,
            processed=0,
            total=len(scan.uploads),
            action=f"fetching statistics for {len(scan.uploads)} videos",
        )
        scan.records = await self._statistics.fetch_video_stats_bulk(
            list(scan.uploads),
            source_keywords=scan.source_keywords,
            cancellation=scan.token,
        )
        scan.quota_exhausted = scan.quota_exhausted or self._statistics.quota_exhausted
        return self._finish(scan)

    async def _run_direct(self, scan: _ScanRun) -> ScanResult:
        request = scan.request
        if not await self._ensure_quota(scan):
            return self._finish_simulated(scan, "no API quota remaining; showing simulated results")

        self._transition(scan, "discovering")
        self._report(scan, processed=0, total=len(request.keywords), action="searching videos")
        max_age_days = parse_time_range(request.time_range)
        published_after = scan.now - timedelta(days=max_age_days) if max_age_days else None
        scan.source_keywords = await self._video_search.search_video_ids(
            request.keywords,
            max(1, request.result_count),
            published_after=published_after,
            cancellation=scan.token,
        )
        scan.quota_exhausted = scan.quota_exhausted or self._video_search.quota_exhausted
        if scan.token.cancelled:
            return self._finish(scan)

        self._transition(scan, "fetching_stats")
        self._report(
            scan,
            processed=0,
            total=len(scan.source_keywords),
            action=f"fetching statistics for {len(scan.source_keywords)} videos",
        )
        records = await self._statistics.fetch_video_stats_bulk(
            list(scan.source_keywords),
            source_keywords=scan.source_keywords,
            cancellation=scan.token,
        )
        scan.quota_exhausted = scan.quota_exhausted or self._statistics.quota_exhausted

        channel_ids = [record.channel_id for record in records if record.channel_id]
        subscribers: dict[str, int] = {}
        if channel_ids and not scan.token.cancelled:
            subscribers = await self._statistics.fetch_channel_subscribers(
                channel_ids,
                cancellation=scan.token,
            )
            scan.quota_exhausted = scan.quota_exhausted or self._statistics.quota_exhausted
        scan.records = [
            replace(record, subscriber_count=subscribers.get(record.channel_id))
            for record in records
        ]
        return self._finish(scan)

    async def _ensure_quota(self, scan: _ScanRun) -> bool:
        """Confirm one working key exists. Zero pool-wide quota skips the network."""
        pool = self._gateway.pool
        ledger = pool.ledger
        ledger.check_and_reset()
        if len(pool) == 0 or ledger.total_remaining_units() <= 0:
            LOGGER.warning(
                "no quota available at scan start credentials=%s remaining_units=%s",
                len(pool),
                ledger.total_remaining_units(),
            )
            return False

        for _ in range(len(pool)):
            if scan.token.cancelled:
                return True
            candidate = pool.select_credential()
            if candidate is None:
                break
            try:
                if await self._gateway.verify_credential(candidate, cancellation=scan.token):
                    LOGGER.info("credential check succeeded key=%s", mask_api_key(candidate))
                    return True
            except YouTubeServiceError as exc:
                LOGGER.warning(
                    "credential check failed key=%s error=%s",
                    mask_api_key(candidate),
                    exc,
                )
                continue
            LOGGER.warning("credential check rejected key=%s", mask_api_key(candidate))

        scan.quota_exhausted = True
        return False

    async def _expand_channels(self, scan: _ScanRun) -> None:
        request = scan.request
        total = len(scan.channels)
        max_age_days = parse_time_range(request.time_range)
        published_after = scan.now - timedelta(days=max_age_days) if max_age_days else None
        max_items = None if request.uncapped else max(1, request.max_items_per_channel)
        stop_workers = asyncio.Event()

        queue: asyncio.Queue[str] = asyncio.Queue()
        for channel_id in scan.channels:
            queue.put_nowait(channel_id)

        self._report(scan, processed=0, total=total, action=f"expanding {total} channels")

        async def worker(worker_id: int) -> None:
            while not queue.empty():
                if scan.token.cancelled or stop_workers.is_set():
                    return
                channel_id = queue.get_nowait()
                try:
                    uploads = await self._expand_one(
                        scan,
                        channel_id,
                        max_items=max_items,
                        published_after=published_after,
                    )
                except YouTubeServiceError as exc:
                    if quota_is_spent(exc):
                        LOGGER.warning(
                            "expansion halted, quota exhausted worker=%s channel_id=%s error=%s",
                            worker_id,
                            channel_id,
                            exc,
                        )
                        scan.quota_exhausted = True
                        stop_workers.set()
                        return
                    LOGGER.warning("channel skipped channel_id=%s error=%s", channel_id, exc)
                    uploads = []

                if scan.token.cancelled:
                    return
                for upload in uploads:
                    scan.uploads.setdefault(upload.video_id, upload)
                scan.channels_processed += 1
                self._report(
                    scan,
                    processed=scan.channels_processed,
                    total=total,
                    action=f"expanded channel {channel_id}",
                )
                if self._expansion.quota_exhausted:
                    scan.quota_exhausted = True
                    stop_workers.set()
                    return

        concurrency = max(1, min(request.concurrency, total)) if total else 0
        await asyncio.gather(*(worker(index) for index in range(concurrency)))
        LOGGER.info(
            "expansion finished channels=%s processed=%s video_ids=%s cancelled=%s",
            total,
            scan.channels_processed,
            len(scan.uploads),
            scan.token.cancelled,
        )

    async def _expand_one(
        self,
        scan: _ScanRun,
        channel_id: str,
        *,
        max_items: int | None,
        published_after: datetime | None,
    ) -> list[UploadedVideo]:
        playlist_id = await self._expansion.get_uploads_playlist_id(
            channel_id,
            cancellation=scan.token,
        )
        if playlist_id is None or scan.token.cancelled:
            return []
        return await self._expansion.fetch_recent_uploads(
            playlist_id,
            max_items,
            channel_id=channel_id,
            published_after=published_after,
            cancellation=scan.token,
        )

    def _finish(self, scan: _ScanRun) -> ScanResult:
        request = scan.request
        cancelled = scan.token.cancelled
        self._transition(scan, "scoring")

        records = self._collected_records(scan)
        scorer = self._scorer_for(request)
        scored = compute_scores(
            records,
            time_range=request.time_range,
            format_filter=request.format_filter,
            scorer=scorer,
            now=scan.now,
        )
        background_pool = sort_and_rank(
            filter_by_title_tiers(dedupe_videos(scored), request.title_filters),
            request.sort_by,
        )
        videos = background_pool[: max(0, request.result_count)]

        simulated: list[VideoRecord] = []
        shortfall = request.result_count - len(videos)
        if scan.quota_exhausted and not cancelled and shortfall > 0:
            simulated = self._simulated_records(scan, shortfall, scorer=scorer)
            videos = _rerank([*videos, *simulated])
            background_pool = [*background_pool, *simulated]
            self._telemetry.emit(
                "scan.fallback", scan_id=scan.scan_id, reason="partial", count=len(simulated)
            )
            LOGGER.warning(
                "quota ran out mid-scan, backfilled simulated records real=%s simulated=%s",
                len(videos) - len(simulated),
                len(simulated),
            )

        final_state = "cancelled" if cancelled else "done"
        self._transition(scan, final_state)
        message = None
        if cancelled:
            message = f"scan stopped: {scan.token.reason}; showing {len(videos)} collected results"
        elif simulated:
            message = (
                f"API quota ran out during the scan; {len(simulated)} of {len(videos)} "
                "results are simulated"
            )
        return self._result(
            scan,
            state=final_state,
            videos=videos,
            background_pool=background_pool,
            simulated_count=len(simulated),
            message=message,
        )

    def _finish_simulated(self, scan: _ScanRun, message: str) -> ScanResult:
        request = scan.request
        self._transition(scan, "scoring")
        simulated = sort_and_rank(
            self._simulated_records(scan, request.result_count, scorer=self._scorer_for(request)),
            request.sort_by,
        )
        self._telemetry.emit(
            "scan.fallback", scan_id=scan.scan_id, reason="no_quota", count=len(simulated)
        )
        self._transition(scan, "done")
        return self._result(
            scan,
            state="done",
            videos=simulated,
            background_pool=list(simulated),
            simulated_count=len(simulated),
            message=message,
        )

    def _finish_after_failure(self, scan: _ScanRun, exc: Exception) -> ScanResult:
        LOGGER.exception("scan failed scan_id=%s state=%s", scan.scan_id, scan.state)
        request = scan.request
        try:
            partial = sort_and_rank(
                dedupe_videos(
                    compute_scores(
                        self._collected_records(scan),
                        scorer=self._scorer_for(request),
                        now=scan.now,
                    )
                ),
                request.sort_by,
            )
        except Exception:
            LOGGER.exception("could not assemble partial results scan_id=%s", scan.scan_id)
            partial = []
        final_state = "cancelled" if scan.token.cancelled else "done"
        self._transition(scan, final_state)
        return self._result(
            scan,
            state=final_state,
            videos=partial[: max(0, request.result_count)],
            background_pool=partial,
            simulated_count=0,
            message=(
                f"scan did not complete ({type(exc).__name__}); "
                f"showing {len(partial)} partial results"
            ),
        )

    def _collected_records(self, scan: _ScanRun) -> list[VideoRecord]:
        """Fetched records, plus counts-free records for uploads a cancel left unfetched."""
        if not scan.token.cancelled:
            return list(scan.records)
        fetched = {record.video_id for record in scan.records}
        pending = [
            video_record_from_upload(upload, now=scan.now)
            for video_id, upload in scan.uploads.items()
            if video_id not in fetched
        ]
        return [*scan.records, *pending]

    def _simulated_records(
        self,
        scan: _ScanRun,
        count: int,
        *,
        scorer: ScoringStrategy,
    ) -> list[VideoRecord]:
        keyword = scan.request.keywords[0] if scan.request.keywords else None
        generated = self._synthetic.generate(
            count,
            category=scan.request.category,
            now=scan.now,
            source_keyword=keyword,
        )
        return compute_scores(generated, scorer=scorer, now=scan.now)

    def _scorer_for(self, request: ScanRequest) -> ScoringStrategy:
        return build_scorer(
            request.scoring or "velocity",
            velocity_weight=request.velocity_weight,
            engagement_weight=request.engagement_weight,
        )

    def _result(
        self,
        scan: _ScanRun,
        *,
        state: ScanState,
        videos: list[VideoRecord],
        background_pool: list[VideoRecord],
        simulated_count: int,
        message: str | None,
    ) -> ScanResult:
        units_spent = self._gateway.units_spent - scan.started_units
        self._report(
            scan,
            processed=len(videos),
            total=len(videos),
            action=message or "scan complete",
            percent=100.0,
        )
        self._telemetry.emit(
            "scan.finish",
            scan_id=scan.scan_id,
            state=state,
            results=len(videos),
            simulated=simulated_count,
            units_spent=units_spent,
        )
        LOGGER.info(
            "scan finished state=%s results=%s pool=%s simulated=%s units_spent=%s",
            state,
            len(videos),
            len(background_pool),
            simulated_count,
            units_spent,
        )
        return ScanResult(
            scan_id=scan.scan_id,
            state=state,
            videos=videos,
            background_pool=background_pool,
            used_simulated=simulated_count > 0,
            simulated_count=simulated_count,
            message=message,
            units_spent=units_spent,
            channels_discovered=len(scan.channels),
            channels_processed=scan.channels_processed,
        )

    def _transition(self, scan: _ScanRun, state: ScanState) -> None:
        LOGGER.debug("scan state change from=%s to=%s", scan.state, state)
        scan.state = state
        self._state = state

    def _report(
        self,
        scan: _ScanRun,
        *,
        processed: int,
        total: int,
        action: str,
        percent: float | None = None,
    ) -> None:
        if scan.progress is None:
            return
        if percent is None:
            spent = self._gateway.units_spent - scan.started_units
            percent = min(99.0, spent / scan.budget_units * 100) if scan.budget_units else 0.0
        scan.progress(
            ScanProgress(
                state=scan.state,
                processed=processed,
                total=total,
                discovered_video_ids=len(scan.uploads) or len(scan.source_keywords),
                current_action=action,
                percent=round(percent, 1),
            )
        )

    def _estimate_budget(self, request: ScanRequest, *, mode: str) -> int:
        """Rough unit budget of a full scan; progress is reported against it."""
        costs = self._gateway.cost_model
        keywords = max(1, len(request.keywords))
        if mode == "direct":
            search_pages = math.ceil(max(1, request.result_count) / self._page_size)
            lookups = math.ceil(keywords * max(1, request.result_count) / self._batch_size)
            lookup_cost = lookups * (costs.videos + costs.channels)
            return keywords * search_pages * costs.search + lookup_cost

        if request.uncapped:
            channels_per_keyword = UNCAPPED_PAGE_ESTIMATE * self._page_size
            items_per_channel = UNCAPPED_PAGE_ESTIMATE * self._page_size
        else:
            channels_per_keyword = max(1, request.channel_cap)
            items_per_channel = max(1, request.max_items_per_channel)
        channels = keywords * channels_per_keyword
        discovery = keywords * math.ceil(channels_per_keyword / self._page_size) * costs.search
        expansion = channels * (
            costs.channels + math.ceil(items_per_channel / self._page_size) * costs.playlist_items
        )
        statistics = math.ceil(channels * items_per_channel / self._batch_size) * costs.videos
        return costs.videos + discovery + expansion + statistics


def filter_by_title_tiers(
    videos: Iterable[VideoRecord],
    tiers: Sequence[Sequence[str]],
) -> list[VideoRecord]:
    """
    Keep videos whose title contains any keyword from the secondary tiers.

    Filtering runs over already-collected records only. Empty tiers keep all.
    """
    needles = [keyword.strip().casefold() for tier in tiers for keyword in tier if keyword.strip()]
    if not needles:
        return list(videos)
    return [
        video for video in videos if any(needle in video.title.casefold() for needle in needles)
    ]


def _rerank(videos: list[VideoRecord]) -> list[VideoRecord]:
    return [replace(video, rank=position) for position, video in enumerate(videos, start=1)]
