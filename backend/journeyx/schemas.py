"""Pydantic schemas for request/response payloads."""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


ResumeTokenValue = Union[Dict[str, Any], int, str]


# =============================================================================
# ATTRIBUTION
# =============================================================================

class MultiTouchRequest(BaseModel):
    """Payload for single-conversion attribution."""

    email: str = Field(
        description="Customer email of the conversion",
        examples=["customer@example.com"]
    )
    timestamp: str = Field(
        description="Conversion timestamp (ISO-8601 or epoch milliseconds)",
        examples=["2025-06-17T06:01:05.941Z"]
    )
    half_life_hours: Optional[float] = Field(
        default=None,
        gt=0,
        description="Time-decay half-life in hours (default 168 = 7 days)",
        examples=[168]
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "email": "customer@example.com",
                "timestamp": "2025-06-17T06:01:05.941Z",
                "half_life_hours": 168
            }
        }
    }


class MultiTouchResponse(BaseModel):
    """Computed and stored attribution for one conversion."""

    success: bool = Field(description="Whether the attribution was computed and stored")
    attribution: Dict[str, Any] = Field(description="Journey, model credits, confidence and insights")
    storage: Dict[str, Any] = Field(description="Storage key and verification status")


class StoredAttributionResponse(BaseModel):
    found: bool
    attribution: Optional[Dict[str, Any]] = None


class DateRange(BaseModel):
    start: str = Field(description="First UTC day, inclusive", examples=["2025-06-01"])
    end: str = Field(description="Last UTC day, inclusive", examples=["2025-06-30"])


class BatchAttributionRequest(BaseModel):
    """Payload for one bulk attribution slice.

    query_type and the parameters it requires are validated by the runner so
    that malformed requests answer 400.
    """

    query_type: str = Field(
        description="Work set: 'date', 'emails' or 'all'",
        examples=["date"]
    )
    date: Optional[str] = Field(default=None, description="UTC day for query_type='date'", examples=["2025-06-17"])
    emails: Optional[List[str]] = Field(default=None, description="Emails for query_type='emails'")
    limit: int = Field(default=50, description="Maximum conversions handled by this slice")
    resume_from: Optional[ResumeTokenValue] = Field(
        default=None,
        description="Resume token returned by a previous slice (overrides the stored one)"
    )
    date_range: Optional[DateRange] = Field(default=None, description="Only conversions in this UTC day range")
    half_life_hours: Optional[float] = Field(default=None, description="Time-decay half-life in hours")
    restart: bool = Field(default=False, description="Start over if the job already completed")

    model_config = {
        "json_schema_extra": {
            "example": {
                "query_type": "date",
                "date": "2025-06-17",
                "limit": 50
            }
        }
    }


class BatchProgressTotals(BaseModel):
    processed: int = 0
    created: int = 0
    failed: int = 0


class BatchAttributionResponse(BaseModel):
    """Result of one bulk attribution slice."""

    query_type: str
    job_key: str
    processed_this_run: int
    created_this_run: int
    failed_this_run: int
    skipped_existing_this_run: int
    not_found_this_run: int = 0
    filtered_this_run: int = 0
    total_progress: BatchProgressTotals
    is_complete: bool
    next_resume_token: Optional[Dict[str, Any]] = None
    processing_time_ms: int
    samples: List[Dict[str, Any]] = Field(default_factory=list)


class AnalysisRequest(BaseModel):
    """Payload for bulk analysis of stored attributions."""

    date_range_days: int = Field(default=30, ge=1, le=3650, description="Look-back window in days")
    limit: int = Field(default=1000, ge=1, le=100000, description="Maximum journeys aggregated")
    include_conversion_only: bool = Field(default=True, description="Keep journeys without touchpoints")
    source_comparison: bool = Field(default=True, description="Add per-source model comparison")


# =============================================================================
# INDEXES
# =============================================================================

class IndexBuildRequest(BaseModel):
    """Payload for one index-building slice."""

    resume_from: Optional[ResumeTokenValue] = Field(default=None, description="Override the stored resume token")
    restart: bool = Field(default=False, description="Rebuild from scratch if the last build completed")
    max_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Wall-clock budget for this slice (default SLICE_BUDGET_SECONDS)"
    )


class IndexBuildResponse(BaseModel):
    job: str
    processed_this_run: int
    created_this_run: int
    failed_this_run: int
    chunks_this_run: int
    total_progress: Dict[str, int]
    is_complete: bool
    next_resume_token: Optional[Dict[str, Any]] = None
    processing_time_ms: int

    model_config = {"extra": "allow"}


# =============================================================================
# JOBS & HEALTH
# =============================================================================

class JobEnqueueRequest(BaseModel):
    params: Dict[str, Any] = Field(default_factory=dict, description="Keyword arguments for the job")


class JobEnqueueResponse(BaseModel):
    job_name: str
    job_id: Optional[str] = None
    status: str = Field(description="'enqueued' or 'skipped_or_duplicate'")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])
    kv_store: str = Field(description="'connected' or 'unavailable'", examples=["connected"])

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "ok",
                "kv_store": "connected"
            }
        }
    }
