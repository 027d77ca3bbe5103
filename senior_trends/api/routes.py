from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from structlog.contextvars import bind_contextvars, reset_contextvars

from senior_trends.dependencies import get_scan_service
from senior_trends.models.scan_contracts import (
    CancelResponse,
    CredentialCreateRequest,
    CredentialMutationResponse,
    CredentialResponse,
    PreferencesPayload,
    QuotaResponse,
    ScanRequestPayload,
    ScanResponse,
    VideoResponse,
)
from senior_trends.repositories.preferences_repository import ScanPreferences
from senior_trends.services.quota_ledger import mask_api_key
from senior_trends.services.scan_pipeline import ScanResult
from senior_trends.services.scan_service import ScanInProgressError, ScanService
from senior_trends.services.video_records import VideoRecord

router = APIRouter()

ScanServiceDep = Annotated[ScanService, Depends(get_scan_service)]


@router.get(
    "/credentials",
    response_model=list[CredentialResponse],
    tags=["credentials"],
    operation_id="list_credentials",
)
def list_credentials(service: ScanServiceDep) -> list[CredentialResponse]:
    return [
        CredentialResponse(
            masked_key=view.masked_key,
            status=view.status,
            usage_units=view.usage_units,
            remaining_units=view.remaining_units,
            error_count=view.error_count,
            warning=view.warning,
            last_validated_at=view.last_validated_at,
        )
        for view in service.list_credentials()
    ]


@router.post(
    "/credentials",
    response_model=CredentialMutationResponse,
    status_code=201,
    tags=["credentials"],
    operation_id="add_credential",
)
def add_credential(
    request: CredentialCreateRequest,
    service: ScanServiceDep,
) -> CredentialMutationResponse:
    if not service.add_credential(request.api_key):
        raise HTTPException(status_code=409, detail="credential already registered")
    return CredentialMutationResponse(ok=True, masked_key=mask_api_key(request.api_key))


@router.delete(
    "/credentials/{api_key}",
    response_model=CredentialMutationResponse,
    tags=["credentials"],
    operation_id="remove_credential",
)
def remove_credential(api_key: str, service: ScanServiceDep) -> CredentialMutationResponse:
    if not service.remove_credential(api_key):
        raise HTTPException(status_code=404, detail="credential not found")
    return CredentialMutationResponse(ok=True, masked_key=mask_api_key(api_key))


@router.post(
    "/credentials/{api_key}/reset",
    response_model=CredentialMutationResponse,
    tags=["credentials"],
    operation_id="reset_credential",
)
def reset_credential(api_key: str, service: ScanServiceDep) -> CredentialMutationResponse:
    if not service.reset_credential(api_key):
        raise HTTPException(status_code=404, detail="credential not found")
    return CredentialMutationResponse(ok=True, masked_key=mask_api_key(api_key))


@router.get("/quota", response_model=QuotaResponse, tags=["quota"], operation_id="get_quota")
def get_quota(service: ScanServiceDep) -> QuotaResponse:
    stats = service.quota_stats()
    return QuotaResponse(
        total_credentials=stats.total_credentials,
        active_credentials=stats.active_credentials,
        limited_credentials=stats.limited_credentials,
        error_credentials=stats.error_credentials,
        total_used_units=stats.total_used_units,
        total_available_units=stats.total_available_units,
        total_remaining_units=stats.total_remaining_units,
        utilization_percent=stats.utilization_percent,
        next_reset_at=stats.next_reset_at,
    )


@router.get(
    "/preferences",
    response_model=PreferencesPayload,
    tags=["preferences"],
    operation_id="get_preferences",
)
def get_preferences(service: ScanServiceDep) -> PreferencesPayload:
    return _preferences_payload(service.get_preferences())


@router.put(
    "/preferences",
    response_model=PreferencesPayload,
    tags=["preferences"],
    operation_id="update_preferences",
)
def update_preferences(
    payload: PreferencesPayload,
    service: ScanServiceDep,
) -> PreferencesPayload:
    updated = service.update_preferences(
        ScanPreferences(
            channel_cap=payload.channel_cap,
            max_items_per_channel=payload.max_items_per_channel,
            concurrency=payload.concurrency,
            velocity_weight=payload.velocity_weight,
            engagement_weight=payload.engagement_weight,
            max_age_days=payload.max_age_days,
            cost_overrides=dict(payload.cost_overrides),
        )
    )
    return _preferences_payload(updated)


@router.post("/scans", response_model=ScanResponse, tags=["scans"], operation_id="run_scan")
async def run_scan(payload: ScanRequestPayload, service: ScanServiceDep) -> ScanResponse:
    request = service.build_request(
        payload.keywords,
        title_filters=payload.title_filters,
        result_count=payload.result_count,
        time_range=payload.time_range,
        format_filter=payload.format_filter,
        sort_by=payload.sort_by,
        scoring=payload.scoring,
        category=payload.category,
        channel_cap=payload.channel_cap,
        max_items_per_channel=payload.max_items_per_channel,
        concurrency=payload.concurrency,
    )
    context_tokens = bind_contextvars(scan_mode=payload.mode)
    try:
        result = await service.run_scan(request, mode=payload.mode)
    except ScanInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    finally:
        reset_contextvars(**context_tokens)
    return _scan_response(result)


@router.post(
    "/scans/cancel",
    response_model=CancelResponse,
    tags=["scans"],
    operation_id="cancel_scan",
)
def cancel_scan(service: ScanServiceDep) -> CancelResponse:
    return CancelResponse(cancelled=service.cancel_scan())


def _preferences_payload(preferences: ScanPreferences) -> PreferencesPayload:
    return PreferencesPayload(
        channel_cap=preferences.channel_cap,
        max_items_per_channel=preferences.max_items_per_channel,
        concurrency=preferences.concurrency,
        velocity_weight=preferences.velocity_weight,
        engagement_weight=preferences.engagement_weight,
        max_age_days=preferences.max_age_days,
        cost_overrides=dict(preferences.cost_overrides),
    )


def _scan_response(result: ScanResult) -> ScanResponse:
    return ScanResponse(
        scan_id=result.scan_id,
        state=result.state,
        message=result.message,
        used_simulated=result.used_simulated,
        simulated_count=result.simulated_count,
        units_spent=result.units_spent,
        channels_discovered=result.channels_discovered,
        channels_processed=result.channels_processed,
        background_pool_size=len(result.background_pool),
        videos=[_video_response(video) for video in result.videos],
    )


def _video_response(video: VideoRecord) -> VideoResponse:
    return VideoResponse(
        rank=video.rank,
        video_id=video.video_id,
        title=video.title,
        channel_id=video.channel_id,
        channel_title=video.channel_title,
        url=video.url,
        published_at=video.published_at,
        duration_seconds=video.duration_seconds,
        format=video.format_tag,
        view_count=video.view_count,
        like_count=video.like_count,
        comment_count=video.comment_count,
        subscriber_count=video.subscriber_count,
        velocity=video.velocity,
        engagement_rate=video.engagement_rate,
        growth_rate=video.growth_rate,
        freshness_score=video.freshness_score,
        virality_score=video.virality_score,
        is_simulated=video.is_simulated,
        source_keyword=video.source_keyword,
        category=video.category,
    )
