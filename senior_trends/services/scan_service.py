from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import replace

import httpx

from senior_trends.config import AppSettings, clamp_concurrency
from senior_trends.repositories.credential_repository import CredentialRepository
from senior_trends.repositories.database import Database
from senior_trends.repositories.preferences_repository import (
    PreferencesRepository,
    ScanPreferences,
)
from senior_trends.repositories.response_cache_repository import ResponseCacheRepository
from senior_trends.services.cancellation import CancellationToken
from senior_trends.services.channel_discovery import ChannelDiscovery, VideoSearch
from senior_trends.services.credential_pool import CredentialPool, CredentialStatusView
from senior_trends.services.fetch_client import RetryingFetchClient
from senior_trends.services.quota_ledger import QuotaLedger, QuotaStats, mask_api_key
from senior_trends.services.scan_pipeline import (
    ProgressCallback,
    ScanPipeline,
    ScanRequest,
    ScanResult,
)
from senior_trends.services.scoring import parse_time_range
from senior_trends.services.statistics_fetcher import StatisticsFetcher
from senior_trends.services.synthetic_videos import SyntheticVideoGenerator
from senior_trends.services.ttl_cache import TtlCache
from senior_trends.services.upload_expansion import UploadExpansion
from senior_trends.services.video_records import FormatTag
from senior_trends.services.youtube_gateway import QuotaCostModel, YouTubeGateway
from senior_trends.telemetry import TelemetryClient

LOGGER = logging.getLogger("senior_trends.service")

HttpClientFactory = Callable[[], httpx.AsyncClient]


class ScanInProgressError(RuntimeError):
    pass


class ScanService:
    """
    Process-wide entry point shared by the HTTP API and the CLI.

    Owns the single quota ledger, credential pool and response cache. Each scan
    gets its own HTTP client and pipeline wired to those shared objects; only one
    scan runs at a time.
    """

    def __init__(
        self,
        settings: AppSettings,
        database: Database,
        *,
        telemetry: TelemetryClient | None = None,
        http_client_factory: HttpClientFactory | None = None,
        synthetic: SyntheticVideoGenerator | None = None,
    ) -> None:
        self._settings = settings
        self._telemetry = telemetry or TelemetryClient.disabled()
        self._http_client_factory = http_client_factory or self._default_http_client
        self._synthetic = synthetic
        self._preferences_repository = PreferencesRepository(database)
        self._ledger = QuotaLedger(
            CredentialRepository(database),
            daily_limit=settings.daily_quota_limit,
            disable_fraction=settings.quota_disable_fraction,
            warning_fraction=settings.quota_warning_fraction,
        )
        self._pool = CredentialPool(
            self._ledger,
            min_recovery_units=settings.min_recovery_units,
            error_threshold=settings.error_threshold,
        )
        self._cache = TtlCache(
            ResponseCacheRepository(database),
            default_ttl_seconds=settings.cache_ttl_seconds,
            max_entries=settings.cache_max_entries,
        )
        self._active_pipeline: ScanPipeline | None = None

        for api_key in settings.seed_api_key_list:
            if self._ledger.register(api_key):
                LOGGER.info("seed credential registered key=%s", mask_api_key(api_key))

    @property
    def pool(self) -> CredentialPool:
        return self._pool

    @property
    def cache(self) -> TtlCache:
        return self._cache

    def list_credentials(self) -> list[CredentialStatusView]:
        return self._pool.status_views()

    def add_credential(self, api_key: str) -> bool:
        normalized = api_key.strip()
        if not normalized:
            raise ValueError("api_key must not be empty")
        added = self._ledger.register(normalized)
        LOGGER.info("credential add key=%s added=%s", mask_api_key(normalized), added)
        return added

    def remove_credential(self, api_key: str) -> bool:
        removed = self._ledger.remove(api_key.strip())
        LOGGER.info("credential remove key=%s removed=%s", mask_api_key(api_key), removed)
        return removed

    def reset_credential(self, api_key: str) -> bool:
        return self._pool.reset_credential(api_key.strip())

    def quota_stats(self) -> QuotaStats:
        self._ledger.check_and_reset()
        return self._ledger.aggregate_stats()

    def get_preferences(self) -> ScanPreferences:
        return self._preferences_repository.load(self._default_preferences())

    def update_preferences(self, preferences: ScanPreferences) -> ScanPreferences:
        normalized = replace(preferences, concurrency=clamp_concurrency(preferences.concurrency))
        self._preferences_repository.save(normalized)
        return self.get_preferences()

    def build_request(
        self,
        keywords: Sequence[str],
        *,
        title_filters: Sequence[Sequence[str]] = (),
        result_count: int = 50,
        time_range: str | int | float | None = None,
        format_filter: FormatTag | None = None,
        sort_by: str = "score",
        scoring: str | None = None,
        category: str = "all",
        channel_cap: int | None = None,
        max_items_per_channel: int | None = None,
        concurrency: int | None = None,
    ) -> ScanRequest:
        """
        Scan request with unset tunables filled from stored preferences.

        Raises ValueError for an unparseable time range.
        """
        preferences = self.get_preferences()
        resolved_time_range = time_range if time_range is not None else preferences.max_age_days
        parse_time_range(resolved_time_range)
        return ScanRequest(
            keywords=tuple(keyword.strip() for keyword in keywords if keyword.strip()),
            title_filters=tuple(tuple(tier) for tier in title_filters if tier),
            result_count=result_count,
            channel_cap=channel_cap if channel_cap is not None else preferences.channel_cap,
            max_items_per_channel=(
                max_items_per_channel
                if max_items_per_channel is not None
                else preferences.max_items_per_channel
            ),
            concurrency=clamp_concurrency(
                concurrency if concurrency is not None else preferences.concurrency
            ),
            time_range=resolved_time_range,
            format_filter=format_filter,
            sort_by=sort_by,
            scoring=scoring,
            velocity_weight=preferences.velocity_weight,
            engagement_weight=preferences.engagement_weight,
            category=category,
        )

    async def run_scan(
        self,
        request: ScanRequest,
        *,
        mode: str = "pipeline",
        progress: ProgressCallback | None = None,
        cancellation: CancellationToken | None = None,
    ) -> ScanResult:
        if self._active_pipeline is not None:
            raise ScanInProgressError("a scan is already running")

        preferences = self.get_preferences()
        async with self._http_client_factory() as http_client:
            pipeline = self._build_pipeline(http_client, preferences)
            self._active_pipeline = pipeline
            try:
                if mode == "direct":
                    return await pipeline.search_direct(
                        request,
                        progress=progress,
                        cancellation=cancellation,
                    )
                return await pipeline.run(request, progress=progress, cancellation=cancellation)
            finally:
                self._active_pipeline = None
                self._cache.purge_expired()

    def cancel_scan(self) -> bool:
        pipeline = self._active_pipeline
        if pipeline is None:
            return False
        return pipeline.cancel_active_scan()

    def _build_pipeline(
        self,
        http_client: httpx.AsyncClient,
        preferences: ScanPreferences,
    ) -> ScanPipeline:
        settings = self._settings
        cost_model = QuotaCostModel(
            search=settings.cost_search,
            channels=settings.cost_channels,
            playlist_items=settings.cost_playlist_items,
            videos=settings.cost_videos,
        ).with_overrides(preferences.cost_overrides)
        fetch_client = RetryingFetchClient(
            http_client,
            self._pool,
            max_retries=settings.fetch_max_retries,
            base_delay_ms=settings.fetch_base_delay_ms,
            telemetry=self._telemetry,
        )
        gateway = YouTubeGateway(
            fetch_client,
            self._pool,
            base_url=settings.youtube_api_base_url,
            cost_model=cost_model,
        )
        return ScanPipeline(
            gateway,
            ChannelDiscovery(
                gateway,
                self._cache,
                page_size=settings.page_size,
                region_code=settings.youtube_region_code,
                relevance_language=settings.youtube_relevance_language,
            ),
            UploadExpansion(gateway, self._cache, page_size=settings.page_size),
            StatisticsFetcher(
                gateway,
                batch_size=settings.batch_size,
                inter_batch_delay_ms=settings.inter_batch_delay_ms,
            ),
            video_search=VideoSearch(
                gateway,
                page_size=settings.page_size,
                region_code=settings.youtube_region_code,
                relevance_language=settings.youtube_relevance_language,
            ),
            synthetic=self._synthetic,
            telemetry=self._telemetry,
            page_size=settings.page_size,
            batch_size=settings.batch_size,
        )

    def _default_preferences(self) -> ScanPreferences:
        settings = self._settings
        return ScanPreferences(
            channel_cap=settings.default_channel_cap,
            max_items_per_channel=settings.default_max_items_per_channel,
            concurrency=settings.default_concurrency,
            velocity_weight=settings.default_velocity_weight,
            engagement_weight=settings.default_engagement_weight,
            max_age_days=settings.default_max_age_days,
        )

    def _default_http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._settings.http_timeout_seconds)
