"""Index building and index query endpoints.

WHAT:
    - One time-boxed slice of the pageview index build
    - One time-boxed slice of the conversion index build
    - Lookups into the session/IP/landing/source indexes and a key summary

WHY:
    Index builds are long-running; each call does as much as fits in its
    budget, checkpoints, and reports whether more calls are needed.

REFERENCES:
    - journeyx/services/index_builder.py
    - journeyx/services/conversion_index_builder.py
    - journeyx/services/index_query.py
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..deps import Settings, get_kv_client, get_settings
from ..schemas import IndexBuildRequest, IndexBuildResponse
from ..services.batch_progress import Deadline
from ..services.conversion_index_builder import ConversionIndexJob
from ..services.index_builder import PageviewIndexJob
from ..services.index_query import IndexQueryService, query_by_kind
from ..services.kv_client import KVClient

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/attribution/indexes",
    tags=["Attribution Indexes"],
)

QUERY_KINDS = ("session", "ip", "landing", "source")


def _deadline(payload: IndexBuildRequest, settings: Settings) -> Deadline:
    budget = payload.max_seconds or settings.SLICE_BUDGET_SECONDS
    return Deadline(budget, settings.SLICE_SAFETY_MARGIN_SECONDS)


@router.post(
    "/pageviews/build",
    response_model=IndexBuildResponse,
    summary="Run one pageview index build slice",
    description="""
    Scan raw pageviews from the stored resume point and merge them into the
    session, IP, landing page and source indexes until the slice budget is
    spent. Repeat until `is_complete` is true.
    """
)
async def build_pageview_indexes(
    payload: IndexBuildRequest,
    kv: KVClient = Depends(get_kv_client),
    settings: Settings = Depends(get_settings),
):
    job = PageviewIndexJob.from_settings(kv, settings)
    return await job.run_slice(_deadline(payload, settings), resume_from=payload.resume_from, restart=payload.restart)


@router.post(
    "/conversions/build",
    response_model=IndexBuildResponse,
    summary="Run one conversion index build slice",
)
async def build_conversion_indexes(
    payload: IndexBuildRequest,
    kv: KVClient = Depends(get_kv_client),
    settings: Settings = Depends(get_settings),
):
    job = ConversionIndexJob.from_settings(kv, settings)
    return await job.run_slice(_deadline(payload, settings), resume_from=payload.resume_from, restart=payload.restart)


@router.get(
    "/{kind}",
    summary="Query an index",
    description="""
    `kind` is one of session, ip, landing, source (requires `value`) or
    summary (bounded key counts per index family).
    """
)
async def query_index(
    kind: str,
    value: Optional[str] = Query(None, description="Session id, IP, landing page or source"),
    limit: int = Query(50, ge=0, le=500, description="Maximum pageviews returned"),
    details: bool = Query(True, description="Include pageview entries"),
    max_pages: int = Query(20, ge=1, le=1000, description="Scan page cap for kind=summary"),
    kv: KVClient = Depends(get_kv_client),
    settings: Settings = Depends(get_settings),
):
    service = IndexQueryService(kv, scan_count=settings.SCAN_COUNT)
    if kind == "summary":
        return await service.summary(max_pages=max_pages)
    if kind not in QUERY_KINDS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown index kind '{kind}'. Use one of: {', '.join(QUERY_KINDS + ('summary',))}",
        )
    if not value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Query parameter 'value' is required for kind '{kind}'",
        )
    return await query_by_kind(service, kind, value, limit, details)
