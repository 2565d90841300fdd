"""Batch Attribution Runner.

WHAT:
    Computes and stores attributions for many conversions, one time-boxed
    slice at a time.

WHY:
    A day (or the whole history) of conversions does not fit in a single
    invocation. Each slice does at most `limit` conversions or stops at the
    deadline, checkpoints, and hands back a resume token.

HOW:
    query_type selects the work set and the token kind:
    - date:   conversions in the date index, oldest first      (offset)
    - emails: newest conversion for each requested email       (offset)
    - all:    scan of the email indexes, newest conversion each (cursor +
              offset into the current page)

    Conversions that already have a stored attribution are skipped and
    counted as processed. Per-conversion failures are counted; a failed
    write verification stops the slice after checkpointing and propagates.

REFERENCES:
    - journeyx/services/attribution_service.py
    - journeyx/services/batch_progress.py
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from redis.exceptions import RedisError

from journeyx.deps import Settings
from journeyx.exceptions import (
    InvalidBatchRequestError,
    RecordParseError,
    StorageError,
    StorageVerificationError,
)
from journeyx.services.attribution_service import AttributionService
from journeyx.services.batch_progress import BatchProgress, BatchProgressController, Deadline, ResumeToken
from journeyx.services.event_scanner import EventScanner
from journeyx.services.key_schema import (
    CONVERSION_EMAIL_INDEX_PREFIX,
    batch_attribution_progress_key,
    conversion_date_index_key,
    conversion_email_index_key,
    utc_day,
)
from journeyx.services.kv_client import KVClient
from journeyx.services.records import EMAIL_PATTERN, Conversion

logger = logging.getLogger(__name__)

QUERY_TYPES = ("date", "emails", "all")
DEFAULT_LIMIT = 50
MAX_SAMPLES = 5

EMAIL_INDEX_PATTERN = f"{CONVERSION_EMAIL_INDEX_PREFIX}*"

_DAY_FORMAT_LENGTH = len("YYYY-MM-DD")


def _valid_day(value: Any) -> bool:
    return isinstance(value, str) and len(value) == _DAY_FORMAT_LENGTH and value[4] == "-" and value[7] == "-"


def _is_email_index_key(key: str) -> bool:
    return key.startswith(CONVERSION_EMAIL_INDEX_PREFIX)


# =============================================================================
# REQUEST
# =============================================================================

@dataclass
class BatchRequest:
    query_type: str
    date: Optional[str] = None
    emails: Optional[List[str]] = None
    limit: int = DEFAULT_LIMIT
    resume_from: Any = None
    date_range: Optional[Dict[str, str]] = None
    half_life_hours: Optional[float] = None
    restart: bool = False

    def validate(self) -> "BatchRequest":
        """Normalize in place.

        Raises:
            InvalidBatchRequestError: unknown query_type or missing parameters
        """
        if self.query_type not in QUERY_TYPES:
            raise InvalidBatchRequestError(
                f"query_type must be one of {', '.join(QUERY_TYPES)}, got '{self.query_type}'"
            )
        if self.query_type == "date":
            if not _valid_day(self.date):
                raise InvalidBatchRequestError("query_type 'date' requires date as YYYY-MM-DD")
        if self.query_type == "emails":
            emails = [e.strip().lower() for e in self.emails or [] if e and e.strip()]
            emails = list(dict.fromkeys(emails))
            if not emails:
                raise InvalidBatchRequestError("query_type 'emails' requires a non-empty emails list")
            invalid = [e for e in emails if not EMAIL_PATTERN.match(e)]
            if invalid:
                raise InvalidBatchRequestError(f"Invalid email(s): {', '.join(invalid[:5])}")
            self.emails = emails
        if self.date_range is not None:
            start, end = self.date_range.get("start"), self.date_range.get("end")
            if not (_valid_day(start) and _valid_day(end)) or start > end:
                raise InvalidBatchRequestError("date_range requires start <= end as YYYY-MM-DD")
        if self.limit is None or self.limit < 1:
            raise InvalidBatchRequestError("limit must be at least 1")
        if self.half_life_hours is not None and self.half_life_hours <= 0:
            raise InvalidBatchRequestError("half_life_hours must be positive")
        return self

    @property
    def partition(self) -> str:
        if self.query_type == "date":
            return self.date
        if self.query_type == "emails":
            digest = hashlib.sha1("\n".join(self.emails or []).encode("utf-8")).hexdigest()
            return digest[:16]
        return "all"

    @property
    def job_key(self) -> str:
        return batch_attribution_progress_key(self.query_type, self.partition)

    def work_shape(self) -> Dict[str, Any]:
        shape: Dict[str, Any] = {"query_type": self.query_type, "partition": self.partition}
        if self.query_type == "emails":
            shape["email_count"] = len(self.emails or [])
        if self.date_range:
            shape["date_range"] = dict(self.date_range)
        return shape

    def initial_token(self) -> ResumeToken:
        return ResumeToken.scan_start() if self.query_type == "all" else ResumeToken.offset_start()

    def in_range(self, conversion: Conversion) -> bool:
        if not self.date_range:
            return True
        day = utc_day(conversion.timestamp)
        return self.date_range["start"] <= day <= self.date_range["end"]


# =============================================================================
# RUN STATE
# =============================================================================

@dataclass
class SliceTally:
    processed: int = 0
    created: int = 0
    failed: int = 0
    skipped_existing: int = 0
    not_found: int = 0
    filtered: int = 0
    samples: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def handled(self) -> int:
        return self.processed + self.failed

    def sample(self, entry: Dict[str, Any]) -> None:
        if len(self.samples) < MAX_SAMPLES:
            self.samples.append(entry)


class BatchAttributionRunner:
    """Resumable bulk attribution.

    Usage:
        ```python
        runner = BatchAttributionRunner.from_settings(kv, settings)
        request = BatchRequest(query_type="date", date="2025-06-17").validate()
        summary = await runner.run_slice(request, Deadline(25.0))
        ```
    """

    def __init__(
        self,
        kv: KVClient,
        service: AttributionService,
        controller: BatchProgressController,
        scan_count: int = 100,
        max_pages: int = 200,
    ):
        self.kv = kv
        self.service = service
        self.controller = controller
        self.scanner = EventScanner(kv, [], [], count=scan_count, max_pages=max_pages)
        self.max_pages = max_pages

    @classmethod
    def from_settings(cls, kv: KVClient, settings: Settings) -> "BatchAttributionRunner":
        return cls(
            kv,
            AttributionService.from_settings(kv, settings),
            BatchProgressController(kv, ttl_seconds=settings.PROGRESS_TTL_SECONDS),
            scan_count=settings.SCAN_COUNT,
            max_pages=settings.SCAN_MAX_PAGES,
        )

    # -------------------------------------------------------------------------
    # Work set resolution
    # -------------------------------------------------------------------------

    async def _read_index_conversions(self, key: str) -> List[Conversion]:
        try:
            record = await self.kv.get_json(key)
        except RecordParseError:
            logger.warning("[BATCH] Conversion index %s is unreadable", key)
            return []
        if not isinstance(record, dict):
            return []
        conversions = []
        for raw in record.get("conversions") or []:
            try:
                conversions.append(Conversion.from_dict(raw))
            except RecordParseError:
                continue
        return conversions

    async def date_conversions(self, day: str) -> List[Conversion]:
        """Conversions of one UTC day, oldest first so that new arrivals append."""
        conversions = await self._read_index_conversions(conversion_date_index_key(day))
        return sorted(conversions, key=lambda c: (c.timestamp, c.email))

    async def newest_conversion(self, key: str, request: BatchRequest) -> Optional[Conversion]:
        conversions = [c for c in await self._read_index_conversions(key) if request.in_range(c)]
        if not conversions:
            return None
        return max(conversions, key=lambda c: c.timestamp)

    # -------------------------------------------------------------------------
    # Per-conversion work
    # -------------------------------------------------------------------------

    async def _attribute_one(self, conversion: Conversion, request: BatchRequest, tally: SliceTally) -> None:
        base = {"email": conversion.email, "timestamp": conversion.timestamp_str}
        try:
            if await self.service.attribution_exists(conversion.email, conversion.timestamp_str):
                tally.processed += 1
                tally.skipped_existing += 1
                tally.sample({**base, "status": "skipped_existing"})
                return
            result = await self.service.attribute(conversion, request.half_life_hours)
            await self.service.store_result(result)
        except StorageVerificationError:
            raise
        except (StorageError, RedisError, RecordParseError, ValueError) as e:
            logger.warning("[BATCH] Attribution failed for %s @ %s: %s", conversion.email, conversion.timestamp_str, e)
            tally.failed += 1
            tally.sample({**base, "status": "failed", "error": str(e)})
            return

        tally.processed += 1
        tally.created += 1
        tally.sample({
            **base,
            "status": "created",
            "order_total": conversion.order_total,
            "touchpoints": result["summary"]["total_touchpoints"],
            "confidence": result["confidence"]["score"],
        })

    async def _handle_email_key(self, key: str, request: BatchRequest, tally: SliceTally) -> None:
        try:
            conversion = await self.newest_conversion(key, request)
        except (StorageError, RedisError) as e:
            logger.warning("[BATCH] Could not read %s: %s", key, e)
            tally.failed += 1
            return
        if conversion is None:
            tally.filtered += 1
            return
        await self._attribute_one(conversion, request, tally)

    async def _handle_email(self, email: str, request: BatchRequest, tally: SliceTally) -> None:
        try:
            conversion = await self.newest_conversion(conversion_email_index_key(email), request)
        except (StorageError, RedisError) as e:
            logger.warning("[BATCH] Could not read conversions for %s: %s", email, e)
            tally.failed += 1
            return
        if conversion is None:
            tally.processed += 1
            tally.not_found += 1
            tally.sample({"email": email, "status": "not_found"})
            return
        await self._attribute_one(conversion, request, tally)

    # -------------------------------------------------------------------------
    # Slice loops
    # -------------------------------------------------------------------------

    async def _run_offset(
        self,
        request: BatchRequest,
        token: ResumeToken,
        deadline: Deadline,
        tally: SliceTally,
    ) -> Tuple[ResumeToken, bool]:
        if request.query_type == "date":
            items: Sequence[Any] = [c for c in await self.date_conversions(request.date) if request.in_range(c)]
        else:
            items = request.emails or []

        position = min(token.offset, len(items))
        while position < len(items) and tally.handled + tally.filtered < request.limit:
            if position > token.offset and deadline.expired():
                logger.info("[BATCH] Deadline reached at offset %d/%d", position, len(items))
                break
            item = items[position]
            try:
                if request.query_type == "date":
                    await self._attribute_one(item, request, tally)
                else:
                    await self._handle_email(item, request, tally)
            except StorageVerificationError as e:
                raise _Interrupted(ResumeToken(kind="offset", offset=position), e) from e
            position += 1

        return ResumeToken(kind="offset", offset=position), position >= len(items)

    async def _run_scan(
        self,
        request: BatchRequest,
        token: ResumeToken,
        deadline: Deadline,
        tally: SliceTally,
    ) -> Tuple[ResumeToken, bool]:
        current = ResumeToken(kind="cursor", pattern_index=token.pattern_index, cursor=token.cursor, offset=token.offset)
        pages = 0

        while tally.handled + tally.filtered < request.limit and pages < self.max_pages:
            if pages > 0 and deadline.expired():
                break
            scan = await self.scanner.scan_patterns(
                [EMAIL_INDEX_PATTERN],
                ResumeToken(kind="cursor", pattern_index=current.pattern_index, cursor=current.cursor),
                _is_email_index_key,
                max_pages=1,
            )
            pages += 1
            if scan.stopped_reason == "error":
                break

            page = sorted(scan.keys)
            position = min(current.offset, len(page))
            started_at = position
            while position < len(page) and tally.handled + tally.filtered < request.limit:
                if position > started_at and deadline.expired():
                    break
                try:
                    await self._handle_email_key(page[position], request, tally)
                except StorageVerificationError as e:
                    raise _Interrupted(ResumeToken(
                        kind="cursor", pattern_index=current.pattern_index, cursor=current.cursor, offset=position,
                    ), e) from e
                position += 1

            if position < len(page):
                current = ResumeToken(
                    kind="cursor", pattern_index=current.pattern_index, cursor=current.cursor, offset=position,
                )
                return current, False

            current = scan.token
            if scan.complete:
                return current, True

        return current, False

    async def run_slice(self, request: BatchRequest, deadline: Deadline) -> Dict[str, Any]:
        """Run one slice and return the progress summary.

        Raises:
            InvalidBatchRequestError: malformed request
            StorageVerificationError: a result could not be persisted
        """
        request.validate()
        progress = await self.controller.load_or_create(
            request.job_key,
            request.work_shape(),
            request.initial_token(),
            resume_from=request.resume_from,
            restart=request.restart,
        )
        tally = SliceTally()
        if progress.is_complete:
            logger.info("[BATCH] %s already complete - nothing to do", request.job_key)
            return self._summary(request, progress, tally, deadline)

        logger.info(
            "[BATCH] Slice start: %s limit=%d token=%s",
            request.job_key, request.limit, progress.resume_token.to_dict(),
        )
        try:
            if request.query_type == "all":
                token, complete = await self._run_scan(request, progress.resume_token, deadline, tally)
            else:
                token, complete = await self._run_offset(request, progress.resume_token, deadline, tally)
        except _Interrupted as stop:
            self._bump(progress, tally)
            await self.controller.checkpoint(progress, stop.token)
            logger.error("[BATCH] Slice stopped on storage verification failure: %s", stop.error)
            raise stop.error

        self._bump(progress, tally)
        await self.controller.checkpoint(progress, token, complete=complete)
        summary = self._summary(request, progress, tally, deadline)
        logger.info(
            "[BATCH] Slice done: %s processed=%d created=%d failed=%d skipped=%d complete=%s",
            request.job_key, tally.processed, tally.created, tally.failed,
            tally.skipped_existing, progress.is_complete,
        )
        return summary

    @staticmethod
    def _bump(progress: BatchProgress, tally: SliceTally) -> None:
        progress.bump(
            processed=tally.processed,
            created=tally.created,
            failed=tally.failed,
            skipped_existing=tally.skipped_existing,
            not_found=tally.not_found,
        )

    @staticmethod
    def _summary(request: BatchRequest, progress: BatchProgress, tally: SliceTally, deadline: Deadline) -> Dict[str, Any]:
        return {
            "query_type": request.query_type,
            "job_key": request.job_key,
            "processed_this_run": tally.processed,
            "created_this_run": tally.created,
            "failed_this_run": tally.failed,
            "skipped_existing_this_run": tally.skipped_existing,
            "not_found_this_run": tally.not_found,
            "filtered_this_run": tally.filtered,
            "total_progress": {
                "processed": progress.counters.get("processed", 0),
                "created": progress.counters.get("created", 0),
                "failed": progress.counters.get("failed", 0),
            },
            "is_complete": progress.is_complete,
            "next_resume_token": None if progress.is_complete else progress.resume_token.to_dict(),
            "processing_time_ms": deadline.elapsed_ms(),
            "samples": tally.samples,
        }


class _Interrupted(Exception):
    """Carries the resume point of a slice stopped by a verification failure."""

    def __init__(self, token: ResumeToken, error: StorageVerificationError):
        super().__init__("slice interrupted")
        self.token = token
        self.error = error
