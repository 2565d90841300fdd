"""Event Store Scanner.

WHAT:
    Enumerates raw pageview and conversion keys across every configured
    namespace pattern, page by page, and fetches/normalizes the records
    behind them.

WHY:
    - Raw events live under several historical naming conventions; all of
      them have to be walked and merged into one unique key set
    - Derived keys (indexes, progress, stats) share prefixes with raw keys
      and must never be re-read as raw data
    - Each invocation is time-boxed: scanning must stop early, hand back
      its cursor, and say it is not finished

HOW:
    1. scan_patterns() walks patterns in order from a ResumeToken
    2. Each page is filtered through a whitelist predicate and deduplicated
    3. Stops at cursor "0" on the last pattern, the deadline, or the page cap
    4. fetch_records() loads keys with bounded fan-out and normalizes them

REFERENCES:
    - journeyx/services/key_schema.py: key-shape filters
    - journeyx/services/batch_progress.py: ResumeToken, Deadline
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Generic, List, Optional, Sequence, Tuple, TypeVar

from redis.exceptions import RedisError

from journeyx.exceptions import KVTimeoutError, RecordParseError
from journeyx.services.batch_progress import Deadline, ResumeToken
from journeyx.services.key_schema import (
    is_raw_conversion_key,
    is_raw_pageview_key,
    pattern_prefixes,
)
from journeyx.services.kv_client import TERMINAL_CURSOR, KVClient, decode_json_value
from journeyx.services.records import Conversion, Touchpoint
from journeyx.utils.concurrency import gather_bounded

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ScanResult:
    """Keys collected by one scan run and where the next run starts."""
    keys: List[str]
    token: ResumeToken
    complete: bool
    pages: int = 0
    filtered_out: int = 0
    stopped_reason: Optional[str] = None


@dataclass
class FetchResult(Generic[T]):
    records: List[T] = field(default_factory=list)
    missing: int = 0
    parse_failures: int = 0
    io_failures: int = 0

    @property
    def failed(self) -> int:
        return self.parse_failures + self.io_failures


class EventScanner:
    """Cursor-based enumeration of raw event keys.

    Usage:
        ```python
        scanner = EventScanner(kv, ["attribution_*"], ["conversions:*", "conversion:*"])
        result = await scanner.scan_pageviews(ResumeToken.scan_start(), deadline)
        if not result.complete:
            save(result.token)
        ```
    """

    def __init__(
        self,
        kv: KVClient,
        pageview_patterns: Sequence[str],
        conversion_patterns: Sequence[str],
        count: int = 100,
        max_pages: int = 200,
    ):
        self.kv = kv
        self.pageview_patterns = list(pageview_patterns)
        self.conversion_patterns = list(conversion_patterns)
        self.count = count
        self.max_pages = max_pages
        self._pageview_prefixes = pattern_prefixes(self.pageview_patterns)
        self._conversion_prefixes = pattern_prefixes(self.conversion_patterns)

    async def scan(self, pattern: str, cursor: str) -> Tuple[List[str], str]:
        """One SCAN step: (keys, next_cursor)."""
        next_cursor, keys = await self.kv.scan(cursor, pattern, count=self.count)
        return keys, next_cursor

    async def scan_patterns(
        self,
        patterns: Sequence[str],
        token: ResumeToken,
        key_filter: Callable[[str], bool],
        deadline: Optional[Deadline] = None,
        max_pages: Optional[int] = None,
        max_keys: Optional[int] = None,
    ) -> ScanResult:
        """Walk patterns from token until exhausted, out of time, or capped.

        The returned token points at the first unscanned page. complete is
        True only when every pattern has reached the terminal cursor.
        """
        page_cap = max_pages if max_pages is not None else self.max_pages
        pattern_index = token.pattern_index
        cursor = token.cursor or TERMINAL_CURSOR
        seen = set()
        keys: List[str] = []
        pages = 0
        filtered_out = 0
        stopped_reason = None

        while pattern_index < len(patterns):
            if pages >= page_cap:
                stopped_reason = "page_cap"
                break
            if deadline is not None and pages > 0 and deadline.expired():
                stopped_reason = "deadline"
                break
            if max_keys is not None and len(keys) >= max_keys:
                stopped_reason = "key_cap"
                break

            pattern = patterns[pattern_index]
            try:
                page, next_cursor = await self.scan(pattern, cursor)
            except (KVTimeoutError, RedisError) as e:
                logger.warning("[SCAN] Scan of %s failed at cursor %s: %s", pattern, cursor, e)
                stopped_reason = "error"
                break
            pages += 1

            for key in page:
                if key in seen:
                    continue
                if not key_filter(key):
                    filtered_out += 1
                    continue
                seen.add(key)
                keys.append(key)

            if next_cursor == TERMINAL_CURSOR:
                logger.debug("[SCAN] Pattern %s exhausted", pattern)
                pattern_index += 1
                cursor = TERMINAL_CURSOR
            else:
                cursor = next_cursor

        complete = pattern_index >= len(patterns)
        if stopped_reason:
            logger.info(
                "[SCAN] Stopped (%s) after %d pages, %d keys, pattern %d/%d",
                stopped_reason, pages, len(keys), pattern_index, len(patterns),
            )
        return ScanResult(
            keys=keys,
            token=ResumeToken(kind="cursor", pattern_index=pattern_index, cursor=cursor),
            complete=complete,
            pages=pages,
            filtered_out=filtered_out,
            stopped_reason=stopped_reason,
        )

    def is_pageview_key(self, key: str) -> bool:
        return is_raw_pageview_key(key, self._pageview_prefixes)

    def is_conversion_key(self, key: str) -> bool:
        return is_raw_conversion_key(key, self._conversion_prefixes)

    async def scan_pageviews(self, token: ResumeToken, deadline: Optional[Deadline] = None, **kwargs) -> ScanResult:
        return await self.scan_patterns(self.pageview_patterns, token, self.is_pageview_key, deadline, **kwargs)

    async def scan_conversions(self, token: ResumeToken, deadline: Optional[Deadline] = None, **kwargs) -> ScanResult:
        return await self.scan_patterns(self.conversion_patterns, token, self.is_conversion_key, deadline, **kwargs)


async def fetch_records(
    kv: KVClient,
    keys: Sequence[str],
    parser: Callable[[dict, str], T],
    concurrency: int = 50,
    timeout: Optional[float] = None,
) -> FetchResult[T]:
    """Load and normalize keys with bounded fan-out.

    Per-key failures are counted, never raised: a timeout or connection
    error is an io_failure, malformed JSON or an unusable record is a
    parse_failure, a vanished key is missing.
    """

    async def _load(key: str):
        try:
            raw = await kv.get(key, timeout=timeout)
        except (KVTimeoutError, RedisError) as e:
            logger.debug("[SCAN] Fetch failed for %s: %s", key, e)
            return "io", None
        if raw is None:
            return "missing", None
        try:
            return "ok", parser(decode_json_value(raw, key=key), key)
        except RecordParseError as e:
            logger.debug("[SCAN] Skipping %s: %s", key, e.message)
            return "parse", None

    outcomes = await gather_bounded(list(keys), _load, limit=concurrency)

    result: FetchResult[T] = FetchResult()
    for status, record in outcomes:
        if status == "ok":
            result.records.append(record)
        elif status == "missing":
            result.missing += 1
        elif status == "parse":
            result.parse_failures += 1
        else:
            result.io_failures += 1
    return result


def parse_pageview(data: dict, key: str) -> Touchpoint:
    return Touchpoint.from_dict(data, key=key)


def parse_conversion(data: dict, key: str) -> Conversion:
    return Conversion.from_dict(data, key=key)
