"""Conversion extraction and conversion indexes.

WHAT:
    Scans raw conversion keys (current and legacy namespaces), normalizes
    them, and maintains two lookup indexes:
    - conversion_index_v1_email:{email}  -> every conversion for an address
    - conversion_index_v1_date:{day}     -> every conversion on a UTC day

WHY:
    Single and bulk attribution find conversions by (email, timestamp) or by
    day; scanning raw conversion keys per request would be far too slow.

HOW:
    Same chunk loop as the pageview index job (ChunkedScanJob). Conversions
    without a valid email are skipped and counted. Groups merge with the
    stored record by (email, timestamp), newest first, so re-running a chunk
    leaves the index unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from redis.exceptions import RedisError

from journeyx.deps import Settings
from journeyx.exceptions import KVTimeoutError, RecordParseError
from journeyx.services.batch_progress import BatchProgressController, ResumeToken
from journeyx.services.event_scanner import EventScanner, ScanResult, fetch_records, parse_conversion
from journeyx.services.index_builder import ChunkedScanJob, ChunkOutcome, FlushResult
from journeyx.services.key_schema import (
    CONVERSION_INDEX_PROGRESS_KEY,
    conversion_date_index_key,
    conversion_email_index_key,
    utc_day,
)
from journeyx.services.kv_client import KVClient
from journeyx.services.records import Conversion, format_timestamp
from journeyx.utils.concurrency import gather_bounded

logger = logging.getLogger(__name__)

ConversionId = Tuple[str, datetime]


@dataclass
class ConversionAccumulator:
    by_email: Dict[str, Dict[ConversionId, Conversion]] = field(default_factory=dict)
    by_date: Dict[str, Dict[ConversionId, Conversion]] = field(default_factory=dict)

    @property
    def group_count(self) -> int:
        return len(self.by_email) + len(self.by_date)


def accumulate_conversions(
    conversions: Iterable[Conversion],
    accumulator: Optional[ConversionAccumulator] = None,
) -> ConversionAccumulator:
    acc = accumulator if accumulator is not None else ConversionAccumulator()
    for conv in conversions:
        acc.by_email.setdefault(conv.email, {})[conv.identity] = conv
        acc.by_date.setdefault(utc_day(conv.timestamp), {})[conv.identity] = conv
    return acc


def merge_conversions(
    new: Dict[ConversionId, Conversion],
    existing: Optional[Dict[str, Any]],
) -> List[Conversion]:
    """Union stored and new conversions by identity, newest first."""
    merged: Dict[ConversionId, Conversion] = {}
    for raw in (existing or {}).get("conversions") or []:
        try:
            conv = Conversion.from_dict(raw)
        except RecordParseError:
            continue
        merged[conv.identity] = conv
    merged.update(new)
    return sorted(merged.values(), key=lambda c: c.timestamp, reverse=True)


def build_email_index_record(email: str, conversions: List[Conversion], created_at: Optional[str] = None) -> Dict[str, Any]:
    now = format_timestamp(datetime.now(timezone.utc))
    return {
        "email": email,
        "conversion_count": len(conversions),
        "conversions": [c.to_dict() for c in conversions],
        "latest_conversion": conversions[0].timestamp_str if conversions else None,
        "total_revenue": round(sum(c.order_total for c in conversions), 2),
        "created_at": created_at or now,
        "updated_at": now,
        "index_type": "email_conversions",
    }


def build_date_index_record(day: str, conversions: List[Conversion], created_at: Optional[str] = None) -> Dict[str, Any]:
    now = format_timestamp(datetime.now(timezone.utc))
    return {
        "date": day,
        "conversion_count": len(conversions),
        "conversions": [c.to_dict() for c in conversions],
        "total_revenue": round(sum(c.order_total for c in conversions), 2),
        "free_trials": sum(1 for c in conversions if c.order_total == 0),
        "created_at": created_at or now,
        "updated_at": now,
        "index_type": "date_conversions",
    }


class ConversionIndexBuilder:
    """Read-merge-write of email and date conversion indexes."""

    def __init__(self, kv: KVClient, ttl_seconds: int = 2592000, write_concurrency: int = 20):
        self.kv = kv
        self.ttl_seconds = ttl_seconds
        self.write_concurrency = write_concurrency

    async def _write(self, key: str, group_key: str, conversions: Dict[ConversionId, Conversion], kind: str) -> bool:
        try:
            try:
                existing = await self.kv.get_json(key)
            except RecordParseError:
                existing = None
            existing = existing if isinstance(existing, dict) else None
            merged = merge_conversions(conversions, existing)
            created_at = existing.get("created_at") if existing else None
            if kind == "email":
                record = build_email_index_record(group_key, merged, created_at)
            else:
                record = build_date_index_record(group_key, merged, created_at)
            await self.kv.setex_json(key, self.ttl_seconds, record)
            return True
        except (KVTimeoutError, RedisError) as e:
            logger.warning("[INDEX] Failed to write conversion %s index %s: %s", kind, key, e)
            return False

    async def flush(self, acc: ConversionAccumulator) -> FlushResult:
        work = [
            (conversion_email_index_key(email), email, convs, "email") for email, convs in acc.by_email.items()
        ] + [
            (conversion_date_index_key(day), day, convs, "date") for day, convs in acc.by_date.items()
        ]
        outcomes = await gather_bounded(work, lambda item: self._write(*item), limit=self.write_concurrency)
        result = FlushResult(written=sum(1 for ok in outcomes if ok), failed=sum(1 for ok in outcomes if not ok))
        logger.info(
            "[INDEX] Conversion indexes flushed: emails=%d dates=%d written=%d failed=%d",
            len(acc.by_email), len(acc.by_date), result.written, result.failed,
        )
        return result


class ConversionIndexJob(ChunkedScanJob):
    """Resumable extraction of raw conversions into email/date indexes."""

    job_name = "conversion_indexes"
    job_key = CONVERSION_INDEX_PROGRESS_KEY

    def __init__(self, kv: KVClient, scanner: EventScanner, controller: BatchProgressController, builder: ConversionIndexBuilder, **kwargs):
        super().__init__(kv, scanner, controller, **kwargs)
        self.builder = builder

    @classmethod
    def from_settings(cls, kv: KVClient, settings: Settings) -> "ConversionIndexJob":
        return cls(
            kv,
            EventScanner(kv, settings.PAGEVIEW_PATTERNS, settings.CONVERSION_PATTERNS, count=settings.SCAN_COUNT),
            BatchProgressController(kv, ttl_seconds=settings.PROGRESS_TTL_SECONDS),
            ConversionIndexBuilder(kv, ttl_seconds=settings.INDEX_TTL_SECONDS, write_concurrency=settings.WRITE_CONCURRENCY),
            checkpoint_every=settings.INDEX_CHECKPOINT_EVERY_CHUNKS,
            max_chunks=settings.SCAN_MAX_PAGES,
            fetch_concurrency=settings.FETCH_CONCURRENCY,
        )

    def work_shape(self) -> Dict[str, Any]:
        return {"patterns": list(self.scanner.conversion_patterns)}

    async def scan_chunk(self, token: ResumeToken) -> ScanResult:
        return await self.scanner.scan_conversions(token, max_pages=1)

    async def process_chunk(self, keys: List[str]) -> ChunkOutcome:
        if not keys:
            return ChunkOutcome()
        fetched = await fetch_records(self.kv, keys, parse_conversion, concurrency=self.fetch_concurrency)
        accumulator = accumulate_conversions(fetched.records)
        flushed = await self.builder.flush(accumulator)
        return ChunkOutcome(
            processed=len(fetched.records),
            created=flushed.written,
            failed=flushed.failed + fetched.io_failures,
            extra={"skipped": fetched.parse_failures},
        )
