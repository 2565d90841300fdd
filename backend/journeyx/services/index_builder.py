"""Attribution Index Builder.

WHAT:
    Builds four secondary index families over raw pageviews: by session id,
    by IP address, by landing page and by source. One aggregate record per
    group key, written with a TTL.

WHY:
    Journey reconstruction needs "all pageviews for this session/IP" without
    a full scan. Index records are a rebuildable cache, not a source of
    truth, hence the TTL.

HOW:
    1. accumulate_pageviews(): single pass over a chunk into four local maps
    2. IndexBuilder.flush(): one read-merge-write per group at the end of
       the chunk, with bounded fan-out; a failing group is counted, never
       fatal
    3. PageviewIndexJob.run_slice(): chunk loop over the scanner with a
       checkpoint every N chunks and always before returning

MERGE SEMANTICS:
    A group seen again in a later chunk is merged with the stored record:
    pageviews are unioned by (session_id, timestamp), sorted newest first
    and capped; associated value sets are unioned and capped in sorted
    order; earliest/latest take min/max. The retained content therefore
    does not depend on where chunk boundaries fall. Identities pushed out by
    the cap are kept in evicted_ids (newest MAX_TRACKED_EVICTIONS), so
    pageview_count = retained + evicted distinct identities and replaying a
    chunk never changes it. Past the tracking limit the surplus is kept as
    the evicted_untracked counter.

REFERENCES:
    - journeyx/services/key_schema.py: index keys and IP encoding
    - journeyx/services/event_scanner.py: key enumeration and fetching
    - journeyx/services/batch_progress.py: checkpoints
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from redis.exceptions import RedisError

from journeyx.deps import Settings
from journeyx.exceptions import KVTimeoutError, RecordParseError
from journeyx.services.batch_progress import BatchProgress, BatchProgressController, Deadline, ResumeToken
from journeyx.services.event_scanner import EventScanner, ScanResult, fetch_records, parse_pageview
from journeyx.services.key_schema import (
    PAGEVIEW_INDEX_PROGRESS_KEY,
    ip_index_key,
    landing_index_key,
    session_index_key,
    source_index_key,
)
from journeyx.services.kv_client import KVClient
from journeyx.services.records import DIRECT, UNKNOWN, Touchpoint, format_timestamp, parse_timestamp
from journeyx.utils.concurrency import gather_bounded

logger = logging.getLogger(__name__)

INDEX_VERSION = 1
MAX_ASSOCIATED_VALUES = 100
MAX_TRACKED_EVICTIONS = 1000

_ASSOCIATED_FIELDS = ("session_ids", "ip_addresses", "landing_pages", "sources")


# =============================================================================
# ACCUMULATION (pure)
# =============================================================================

@dataclass
class IndexGroup:
    """Pageviews and associated values collected for one group key."""
    index_type: str
    group_key: str
    pageviews: Dict[Tuple[Optional[str], datetime], Touchpoint] = field(default_factory=dict)
    session_ids: set = field(default_factory=set)
    ip_addresses: set = field(default_factory=set)
    landing_pages: set = field(default_factory=set)
    sources: set = field(default_factory=set)

    def add(self, pv: Touchpoint) -> None:
        self.pageviews.setdefault(pv.identity, pv)
        if pv.session_id:
            self.session_ids.add(pv.session_id)
        if pv.ip_address != UNKNOWN:
            self.ip_addresses.add(pv.ip_address)
        if pv.landing_page != UNKNOWN:
            self.landing_pages.add(pv.landing_page)
        self.sources.add(pv.source)

    @property
    def store_key(self) -> str:
        if self.index_type == "session":
            return session_index_key(self.group_key)
        if self.index_type == "ip":
            return ip_index_key(self.group_key)
        if self.index_type == "landing":
            return landing_index_key(self.group_key)
        return source_index_key(self.group_key)


@dataclass
class IndexAccumulator:
    """Per-chunk local state: one map per index family."""
    sessions: Dict[str, IndexGroup] = field(default_factory=dict)
    ips: Dict[str, IndexGroup] = field(default_factory=dict)
    landing_pages: Dict[str, IndexGroup] = field(default_factory=dict)
    sources: Dict[str, IndexGroup] = field(default_factory=dict)

    def groups(self) -> List[IndexGroup]:
        return [
            *self.sessions.values(),
            *self.ips.values(),
            *self.landing_pages.values(),
            *self.sources.values(),
        ]

    @property
    def group_count(self) -> int:
        return len(self.sessions) + len(self.ips) + len(self.landing_pages) + len(self.sources)


def _group(groups: Dict[str, IndexGroup], index_type: str, key: str) -> IndexGroup:
    group = groups.get(key)
    if group is None:
        group = groups[key] = IndexGroup(index_type=index_type, group_key=key)
    return group


def accumulate_pageviews(
    pageviews: Iterable[Touchpoint],
    accumulator: Optional[IndexAccumulator] = None,
) -> IndexAccumulator:
    """Group pageviews into the four index families in a single pass.

    Pageviews without a session id, with an unknown IP or landing page, or
    with the default "direct" source are left out of that family only.
    """
    acc = accumulator if accumulator is not None else IndexAccumulator()
    for pv in pageviews:
        if pv.session_id:
            _group(acc.sessions, "session", pv.session_id).add(pv)
        if pv.ip_address != UNKNOWN:
            _group(acc.ips, "ip", pv.ip_address).add(pv)
        if pv.landing_page != UNKNOWN:
            _group(acc.landing_pages, "landing", pv.landing_page).add(pv)
        if pv.source != DIRECT:
            _group(acc.sources, "source", pv.source).add(pv)
    return acc


def identity_token(identity: Tuple[Optional[str], datetime]) -> str:
    """Stable string form of a pageview identity: "<epoch ms>|<session id>"."""
    session_id, ts = identity
    return f"{int(round(ts.timestamp() * 1000))}|{session_id or ''}"


def _token_ms(token: str) -> int:
    try:
        return int(token.split("|", 1)[0])
    except ValueError:
        return 0


def build_index_record(
    group: IndexGroup,
    max_pageviews: int,
    existing: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Render a group into its stored record, merged with any existing one.

    Pageviews pushed out by the cap leave their identity behind in
    evicted_ids, so merging a pageview that was already counted (a replayed
    chunk, a key SCAN returned twice) never increments pageview_count.
    """
    now = now or datetime.now(timezone.utc)
    merged: Dict[Tuple[Optional[str], datetime], Touchpoint] = {}
    existing = existing if isinstance(existing, dict) else {}

    for raw in existing.get("pageviews") or []:
        try:
            pv = Touchpoint.from_dict(raw)
        except RecordParseError:
            continue
        merged.setdefault(pv.identity, pv)

    evicted = {str(t) for t in existing.get("evicted_ids") or []}
    untracked = int(existing.get("evicted_untracked") or 0)
    if existing and "evicted_ids" not in existing:
        # Records written before eviction tracking: carry the surplus as untracked
        untracked = max(0, int(existing.get("pageview_count") or 0) - len(merged))

    for identity, pv in group.pageviews.items():
        if identity_token(identity) not in evicted:
            merged.setdefault(identity, pv)

    ordered = sorted(merged.values(), key=lambda p: (p.timestamp, p.session_id or ""), reverse=True)
    retained = ordered[:max_pageviews]
    evicted.update(identity_token(p.identity) for p in ordered[max_pageviews:])

    tracked = sorted(evicted, key=lambda t: (_token_ms(t), t), reverse=True)
    untracked += max(0, len(tracked) - MAX_TRACKED_EVICTIONS)
    tracked = tracked[:MAX_TRACKED_EVICTIONS]

    timestamps = [p.timestamp for p in ordered]
    for name in ("earliest_timestamp", "latest_timestamp"):
        ts = parse_timestamp(existing.get(name))
        if ts is not None:
            timestamps.append(ts)

    record: Dict[str, Any] = {
        "index_type": group.index_type,
        "group_key": group.group_key,
        "pageviews": [p.to_dict() for p in retained],
        "pageview_count": len(retained) + len(tracked) + untracked,
        "evicted_ids": tracked,
        "evicted_untracked": untracked,
        "earliest_timestamp": format_timestamp(min(timestamps)),
        "latest_timestamp": format_timestamp(max(timestamps)),
        "created_at": existing.get("created_at") or format_timestamp(now),
        "updated_at": format_timestamp(now),
        "version": INDEX_VERSION,
    }
    for name in _ASSOCIATED_FIELDS:
        values = set(existing.get(name) or []) | getattr(group, name)
        record[name] = sorted(values)[:MAX_ASSOCIATED_VALUES]
    return record


# =============================================================================
# WRITER
# =============================================================================

@dataclass
class FlushResult:
    written: int = 0
    failed: int = 0


class IndexBuilder:
    """Writes accumulated groups to the store, one record per group."""

    def __init__(
        self,
        kv: KVClient,
        ttl_seconds: int = 2592000,
        max_pageviews: int = 50,
        landing_max_pageviews: int = 30,
        write_concurrency: int = 50,
    ):
        self.kv = kv
        self.ttl_seconds = ttl_seconds
        self.max_pageviews = max_pageviews
        self.landing_max_pageviews = landing_max_pageviews
        self.write_concurrency = write_concurrency

    @classmethod
    def from_settings(cls, kv: KVClient, settings: Settings) -> "IndexBuilder":
        return cls(
            kv,
            ttl_seconds=settings.INDEX_TTL_SECONDS,
            max_pageviews=settings.INDEX_MAX_PAGEVIEWS,
            landing_max_pageviews=settings.LANDING_INDEX_MAX_PAGEVIEWS,
            write_concurrency=settings.WRITE_CONCURRENCY,
        )

    def _cap_for(self, group: IndexGroup) -> int:
        return self.landing_max_pageviews if group.index_type == "landing" else self.max_pageviews

    async def write_group(self, group: IndexGroup) -> bool:
        key = group.store_key
        try:
            try:
                existing = await self.kv.get_json(key)
            except RecordParseError:
                logger.warning("[INDEX] Replacing unreadable index record %s", key)
                existing = None
            record = build_index_record(group, self._cap_for(group), existing)
            await self.kv.setex_json(key, self.ttl_seconds, record)
            return True
        except (KVTimeoutError, RedisError) as e:
            logger.warning("[INDEX] Failed to write %s index %s: %s", group.index_type, key, e)
            return False

    async def flush(self, accumulator: IndexAccumulator) -> FlushResult:
        outcomes = await gather_bounded(accumulator.groups(), self.write_group, limit=self.write_concurrency)
        result = FlushResult(written=sum(1 for ok in outcomes if ok), failed=sum(1 for ok in outcomes if not ok))
        logger.info(
            "[INDEX] Flushed %d groups (sessions=%d ips=%d landing=%d sources=%d): written=%d failed=%d",
            accumulator.group_count, len(accumulator.sessions), len(accumulator.ips),
            len(accumulator.landing_pages), len(accumulator.sources), result.written, result.failed,
        )
        return result


# =============================================================================
# TIME-BOXED JOB
# =============================================================================

@dataclass
class ChunkOutcome:
    processed: int = 0
    created: int = 0
    failed: int = 0
    extra: Dict[str, int] = field(default_factory=dict)


class ChunkedScanJob:
    """Scan-driven batch job processed one scan page ("chunk") at a time.

    Subclasses provide the scan, the per-chunk work and the job key. The
    loop checks the deadline at every chunk boundary, checkpoints every
    `checkpoint_every` chunks and always before returning. At least one
    chunk runs per invocation so a slice never ends without progress.
    """

    job_name = "chunked_scan"
    job_key = ""

    def __init__(
        self,
        kv: KVClient,
        scanner: EventScanner,
        controller: BatchProgressController,
        checkpoint_every: int = 10,
        max_chunks: int = 200,
        fetch_concurrency: int = 50,
    ):
        self.kv = kv
        self.scanner = scanner
        self.controller = controller
        self.checkpoint_every = max(1, checkpoint_every)
        self.max_chunks = max_chunks
        self.fetch_concurrency = fetch_concurrency

    def work_shape(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def scan_chunk(self, token: ResumeToken) -> ScanResult:
        raise NotImplementedError

    async def process_chunk(self, keys: List[str]) -> ChunkOutcome:
        raise NotImplementedError

    async def run_slice(
        self,
        deadline: Deadline,
        resume_from: Any = None,
        restart: bool = False,
        max_chunks: Optional[int] = None,
    ) -> Dict[str, Any]:
        progress: BatchProgress = await self.controller.load_or_create(
            self.job_key, self.work_shape(), ResumeToken.scan_start(), resume_from=resume_from, restart=restart
        )
        if progress.is_complete:
            logger.info("[INDEX] %s already complete - nothing to do", self.job_name)
            return self._summary(progress, ChunkOutcome(), 0, deadline)

        chunk_cap = max_chunks if max_chunks is not None else self.max_chunks
        token = progress.resume_token
        run = ChunkOutcome()
        chunks = 0
        since_checkpoint = 0
        complete = False

        while chunks < chunk_cap:
            if chunks > 0 and deadline.expired():
                logger.info("[INDEX] %s deadline reached after %d chunks", self.job_name, chunks)
                break

            scan = await self.scan_chunk(token)
            outcome = await self.process_chunk(scan.keys)
            progress.bump(
                processed=outcome.processed,
                created=outcome.created,
                failed=outcome.failed,
                keys_scanned=len(scan.keys),
                **outcome.extra,
            )
            run.processed += outcome.processed
            run.created += outcome.created
            run.failed += outcome.failed
            for name, value in outcome.extra.items():
                run.extra[name] = run.extra.get(name, 0) + value

            token = scan.token
            chunks += 1
            since_checkpoint += 1

            if scan.complete:
                complete = True
                break
            if scan.stopped_reason == "error":
                break
            if since_checkpoint >= self.checkpoint_every:
                await self.controller.checkpoint(progress, token)
                since_checkpoint = 0

        await self.controller.checkpoint(progress, token, complete=complete)
        return self._summary(progress, run, chunks, deadline)

    def _summary(self, progress: BatchProgress, run: ChunkOutcome, chunks: int, deadline: Deadline) -> Dict[str, Any]:
        summary = {
            "job": self.job_name,
            "processed_this_run": run.processed,
            "created_this_run": run.created,
            "failed_this_run": run.failed,
            "chunks_this_run": chunks,
            "total_progress": dict(progress.counters),
            "is_complete": progress.is_complete,
            "next_resume_token": None if progress.is_complete else progress.resume_token.to_dict(),
            "processing_time_ms": deadline.elapsed_ms(),
        }
        for name, value in run.extra.items():
            summary[f"{name}_this_run"] = value
        return summary


class PageviewIndexJob(ChunkedScanJob):
    """Resumable build of the session/IP/landing-page/source indexes."""

    job_name = "pageview_indexes"
    job_key = PAGEVIEW_INDEX_PROGRESS_KEY

    def __init__(self, kv: KVClient, scanner: EventScanner, controller: BatchProgressController, builder: IndexBuilder, **kwargs):
        super().__init__(kv, scanner, controller, **kwargs)
        self.builder = builder

    @classmethod
    def from_settings(cls, kv: KVClient, settings: Settings) -> "PageviewIndexJob":
        return cls(
            kv,
            EventScanner(kv, settings.PAGEVIEW_PATTERNS, settings.CONVERSION_PATTERNS, count=settings.SCAN_COUNT),
            BatchProgressController(kv, ttl_seconds=settings.PROGRESS_TTL_SECONDS),
            IndexBuilder.from_settings(kv, settings),
            checkpoint_every=settings.INDEX_CHECKPOINT_EVERY_CHUNKS,
            max_chunks=settings.SCAN_MAX_PAGES,
            fetch_concurrency=settings.FETCH_CONCURRENCY,
        )

    def work_shape(self) -> Dict[str, Any]:
        return {"patterns": list(self.scanner.pageview_patterns)}

    async def scan_chunk(self, token: ResumeToken) -> ScanResult:
        return await self.scanner.scan_pageviews(token, max_pages=1)

    async def process_chunk(self, keys: List[str]) -> ChunkOutcome:
        if not keys:
            return ChunkOutcome()
        fetched = await fetch_records(self.kv, keys, parse_pageview, concurrency=self.fetch_concurrency)
        accumulator = accumulate_pageviews(fetched.records)
        flushed = await self.builder.flush(accumulator)
        return ChunkOutcome(
            processed=len(fetched.records),
            created=flushed.written,
            failed=flushed.failed,
            extra={"parse_failures": fetched.failed},
        )
