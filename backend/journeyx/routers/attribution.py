"""Multi-touch attribution endpoints.

WHAT:
    Provides API endpoints for:
    - Single-conversion attribution (compute + permanent store)
    - Reading a stored attribution back
    - One slice of bulk attribution
    - Bulk analysis over stored attributions

WHY:
    Reporting needs per-conversion journeys and credit splits; backfills
    need a resumable bulk path that fits inside short request budgets.

REFERENCES:
    - journeyx/services/attribution_service.py
    - journeyx/services/batch_attribution.py
    - journeyx/services/attribution_analysis.py
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..deps import Settings, get_kv_client, get_settings
from ..exceptions import InvalidBatchRequestError
from ..schemas import (
    AnalysisRequest,
    BatchAttributionRequest,
    BatchAttributionResponse,
    MultiTouchRequest,
    MultiTouchResponse,
    StoredAttributionResponse,
)
from ..services.attribution_analysis import analyze_stored_attributions
from ..services.attribution_service import AttributionService
from ..services.batch_attribution import BatchAttributionRunner, BatchRequest
from ..services.batch_progress import Deadline
from ..services.kv_client import KVClient

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/attribution",
    tags=["Attribution"],
)


def get_attribution_service(
    kv: KVClient = Depends(get_kv_client),
    settings: Settings = Depends(get_settings),
) -> AttributionService:
    return AttributionService.from_settings(kv, settings)


def get_batch_runner(
    kv: KVClient = Depends(get_kv_client),
    settings: Settings = Depends(get_settings),
) -> BatchAttributionRunner:
    return BatchAttributionRunner.from_settings(kv, settings)


@router.post(
    "/multi-touch",
    response_model=MultiTouchResponse,
    summary="Attribute one conversion",
    description="""
    Reconstruct the customer journey of one conversion, split its value
    across first-click, last-click, linear, time-decay and position-based
    models, and store the result permanently.

    Returns 404 when the conversion is not in the conversion index.
    """
)
async def multi_touch_attribution(
    payload: MultiTouchRequest,
    service: AttributionService = Depends(get_attribution_service),
):
    """Compute and store one multi-touch attribution.

    WHAT: Conversion lookup, journey reconstruction, all five models
    WHY: Single source for "where did this sale come from"

    Raises:
        HTTPException 404 if the conversion is unknown
        StorageVerificationError if the stored result cannot be read back
    """
    conversion = await service.get_conversion(payload.email, payload.timestamp)
    if conversion is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Conversion not found for {payload.email} at {payload.timestamp}",
        )

    result = await service.attribute(conversion, payload.half_life_hours)
    storage = await service.store_result(result)
    return MultiTouchResponse(success=True, attribution=result, storage=storage)


@router.get(
    "/results",
    response_model=StoredAttributionResponse,
    summary="Read a stored attribution",
)
async def get_attribution_result(
    email: str = Query(..., description="Customer email"),
    timestamp: str = Query(..., description="Conversion timestamp"),
    service: AttributionService = Depends(get_attribution_service),
):
    result = await service.get_stored_result(email, timestamp)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No stored attribution for {email} at {timestamp}",
        )
    return StoredAttributionResponse(found=True, attribution=result)


@router.post(
    "/batch",
    response_model=BatchAttributionResponse,
    summary="Run one bulk attribution slice",
    description="""
    Attribute up to `limit` conversions selected by `query_type`, stopping
    early at the slice deadline. Call again with the same body until
    `is_complete` is true; progress is persisted between calls.
    """
)
async def batch_attribution(
    payload: BatchAttributionRequest,
    runner: BatchAttributionRunner = Depends(get_batch_runner),
    settings: Settings = Depends(get_settings),
):
    request = BatchRequest(
        query_type=payload.query_type,
        date=payload.date,
        emails=payload.emails,
        limit=payload.limit,
        resume_from=payload.resume_from,
        date_range=payload.date_range.model_dump() if payload.date_range else None,
        half_life_hours=payload.half_life_hours,
        restart=payload.restart,
    )
    try:
        request.validate()
    except InvalidBatchRequestError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_user_message())

    deadline = Deadline(settings.SLICE_BUDGET_SECONDS, settings.SLICE_SAFETY_MARGIN_SECONDS)
    return await runner.run_slice(request, deadline)


@router.post(
    "/analysis",
    summary="Analyze stored attributions",
    description="""
    Aggregate stored attribution results over a look-back window: totals,
    credit per model, and how each source fares under each model.
    """
)
async def attribution_analysis(
    payload: AnalysisRequest,
    kv: KVClient = Depends(get_kv_client),
    settings: Settings = Depends(get_settings),
):
    return await analyze_stored_attributions(
        kv,
        date_range_days=payload.date_range_days,
        limit=payload.limit,
        include_conversion_only=payload.include_conversion_only,
        source_comparison=payload.source_comparison,
        scan_count=settings.SCAN_COUNT,
        max_pages=settings.SCAN_MAX_PAGES,
        fetch_concurrency=settings.FETCH_CONCURRENCY,
    )
