"""Background job endpoints.

WHAT:
    Enqueue one slice of an index build or bulk attribution job on the ARQ
    worker instead of running it inside the request.
"""

import logging

from fastapi import APIRouter, HTTPException, status

from ..schemas import JobEnqueueRequest, JobEnqueueResponse
from ..workers.arq_enqueue import ENQUEUEABLE_JOBS, enqueue_job

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/attribution/jobs",
    tags=["Attribution Jobs"],
)


@router.post(
    "/{job_name}",
    response_model=JobEnqueueResponse,
    summary="Enqueue a background slice",
    description="""
    `job_name` is one of build_pageview_indexes, build_conversion_indexes,
    batch_attribution. `params` are passed to the job as keyword arguments.
    """
)
async def enqueue_background_job(job_name: str, payload: JobEnqueueRequest):
    if job_name not in ENQUEUEABLE_JOBS:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown job '{job_name}'. Use one of: {', '.join(ENQUEUEABLE_JOBS)}",
        )
    result = await enqueue_job(job_name, **payload.params)
    return JobEnqueueResponse(**result)
