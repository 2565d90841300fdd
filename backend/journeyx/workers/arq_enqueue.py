"""ARQ job enqueueing utilities.

WHAT:
    Async helpers to enqueue attribution slices to the ARQ worker.

WHY:
    - Lets HTTP callers kick off a slice without holding the request open
    - Creates the ARQ Redis pool on demand and reuses it

USAGE:
    from journeyx.workers.arq_enqueue import enqueue_job

    await enqueue_job("build_pageview_indexes", restart=True)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from arq import create_pool
from arq.connections import ArqRedis

from journeyx.workers.arq_worker import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)

ENQUEUEABLE_JOBS = (
    "build_pageview_indexes",
    "build_conversion_indexes",
    "batch_attribution",
)

# Global pool reference
_arq_pool: Optional[ArqRedis] = None


async def get_arq_pool() -> ArqRedis:
    """Get or create ARQ Redis pool."""
    global _arq_pool
    if _arq_pool is None:
        logger.info("[ARQ-ENQUEUE] Creating new Redis pool...")
        _arq_pool = await create_pool(get_redis_settings())
        logger.info("[ARQ-ENQUEUE] Redis pool created successfully")
    return _arq_pool


async def reset_arq_pool() -> None:
    """Reset the ARQ pool (useful for testing or reconnection)."""
    global _arq_pool
    if _arq_pool is not None:
        await _arq_pool.close()
        _arq_pool = None
        logger.info("[ARQ-ENQUEUE] Redis pool reset")


async def enqueue_job(job_name: str, **params: Any) -> Dict[str, Any]:
    """Enqueue one slice of a batch job.

    Args:
        job_name: One of ENQUEUEABLE_JOBS
        **params: Keyword arguments forwarded to the job function

    Returns:
        Dict with job_id and status

    Raises:
        ValueError: unknown job_name
    """
    if job_name not in ENQUEUEABLE_JOBS:
        raise ValueError(f"Unknown job '{job_name}'")

    pool = await get_arq_pool()
    job = await pool.enqueue_job(job_name, _queue_name=QUEUE_NAME, **params)

    if job:
        logger.info("[ARQ] Enqueued %s job %s", job_name, job.job_id)
        return {"job_name": job_name, "job_id": job.job_id, "status": "enqueued"}
    else:
        logger.warning("[ARQ] %s job might already exist", job_name)
        return {"job_name": job_name, "job_id": None, "status": "skipped_or_duplicate"}
