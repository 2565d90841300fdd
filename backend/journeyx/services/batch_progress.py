"""
Batch Progress Controller.

WHAT:
    Persists a resumable progress record for long-running batch jobs
    (pageview index build, conversion index build, bulk attribution) so
    that a sequence of short, time-boxed invocations completes the job.

WHY:
    Each invocation can be killed at a hard wall-clock limit. Progress has
    to be written before that happens, and the next invocation has to pick
    up exactly where the last one stopped.

STATE TRANSITIONS:
    FRESH → first checkpoint → IN_PROGRESS
    IN_PROGRESS → all work exhausted → COMPLETE
    COMPLETE → restart requested → FRESH

CONCURRENCY:
    No locks. Counter updates are additive against a fresh read of the
    stored record, so overlapping invocations waste work but never lose
    counts.

REFERENCES:
    - journeyx/services/index_builder.py
    - journeyx/services/batch_attribution.py
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from redis.exceptions import RedisError

from journeyx.exceptions import KVTimeoutError, RecordParseError
from journeyx.services.kv_client import KVClient

logger = logging.getLogger(__name__)

MIN_SAFETY_MARGIN_SECONDS = 2.0
MAX_SAFETY_MARGIN_SECONDS = 5.0


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# =============================================================================
# DEADLINE
# =============================================================================

class Deadline:
    """Wall-clock budget for one invocation, minus a safety margin.

    The margin is clamped to 2-5 seconds: enough to persist a checkpoint
    before the host kills the process.
    """

    def __init__(
        self,
        budget_seconds: float,
        safety_margin_seconds: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.budget_seconds = budget_seconds
        self.safety_margin_seconds = min(
            MAX_SAFETY_MARGIN_SECONDS, max(MIN_SAFETY_MARGIN_SECONDS, safety_margin_seconds)
        )
        self._clock = clock
        self._started = clock()

    def elapsed(self) -> float:
        return self._clock() - self._started

    def elapsed_ms(self) -> int:
        return int(self.elapsed() * 1000)

    def remaining(self) -> float:
        return self.budget_seconds - self.safety_margin_seconds - self.elapsed()

    def expired(self) -> bool:
        return self.remaining() <= 0


# =============================================================================
# RESUME TOKEN
# =============================================================================

@dataclass
class ResumeToken:
    """Tagged resumption point.

    kind="cursor": multi-pattern scan position (pattern_index, cursor).
        cursor "0" at a pattern_index means "start of that pattern"; the
        scan is finished once pattern_index passes the last pattern.
    kind="offset": position in an ordered, finite work list.
    A cursor token may also carry an offset: the number of keys of the
    page at that cursor that were already consumed.
    """
    kind: str = "cursor"
    pattern_index: int = 0
    cursor: str = "0"
    offset: int = 0

    @classmethod
    def scan_start(cls) -> "ResumeToken":
        return cls(kind="cursor")

    @classmethod
    def offset_start(cls) -> "ResumeToken":
        return cls(kind="offset")

    def to_dict(self) -> Dict[str, Any]:
        if self.kind == "offset":
            return {"kind": "offset", "offset": self.offset}
        data = {"kind": "cursor", "pattern_index": self.pattern_index, "cursor": self.cursor}
        if self.offset:
            data["offset"] = self.offset
        return data

    @classmethod
    def from_value(cls, value: Any, default_kind: str = "cursor") -> "ResumeToken":
        """Coerce a client-supplied or stored token.

        Accepts the dict form, a bare int (offset) or a bare string (cursor
        of the first pattern, or offset when default_kind is "offset").
        """
        if isinstance(value, ResumeToken):
            return value
        if isinstance(value, dict):
            if value.get("kind") == "offset" or ("offset" in value and "cursor" not in value):
                return cls(kind="offset", offset=max(0, int(value.get("offset") or 0)))
            return cls(
                kind="cursor",
                pattern_index=max(0, int(value.get("pattern_index") or 0)),
                cursor=str(value.get("cursor") or "0"),
                offset=max(0, int(value.get("offset") or 0)),
            )
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(kind="offset", offset=max(0, value))
        if isinstance(value, str) and value.strip():
            text = value.strip()
            if default_kind == "offset" and text.isdigit():
                return cls(kind="offset", offset=int(text))
            return cls(kind="cursor", cursor=text)
        return cls.offset_start() if default_kind == "offset" else cls.scan_start()


# =============================================================================
# PROGRESS RECORD
# =============================================================================

class ProgressState(str, Enum):
    FRESH = "fresh"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


@dataclass
class BatchProgress:
    """
    Persisted progress for one batch job.

    Attributes:
        job_key: Store key of this record
        state: FRESH, IN_PROGRESS or COMPLETE
        resume_token: Where the next invocation starts
        counters: Totals across all invocations (processed/created/failed/...)
        work_shape: Description of the work set the job was started with;
            a mismatch on reload means the token can no longer be trusted
        pending: Deltas accumulated since the last checkpoint (not persisted)
    """
    job_key: str
    state: ProgressState = ProgressState.FRESH
    resume_token: ResumeToken = field(default_factory=ResumeToken.scan_start)
    counters: Dict[str, int] = field(default_factory=lambda: {"processed": 0, "created": 0, "failed": 0})
    work_shape: Dict[str, Any] = field(default_factory=dict)
    started_at: str = field(default_factory=_now_iso)
    last_updated: str = field(default_factory=_now_iso)
    pending: Dict[str, int] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return self.state == ProgressState.COMPLETE

    def bump(self, **deltas: int) -> None:
        """Accumulate counter deltas until the next checkpoint."""
        for name, value in deltas.items():
            if value:
                self.pending[name] = self.pending.get(name, 0) + int(value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_key": self.job_key,
            "state": self.state.value,
            "resume_token": self.resume_token.to_dict(),
            "counters": dict(self.counters),
            "work_shape": self.work_shape,
            "started_at": self.started_at,
            "last_updated": self.last_updated,
            "is_complete": self.is_complete,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BatchProgress":
        try:
            state = ProgressState(data.get("state") or ProgressState.IN_PROGRESS.value)
        except ValueError:
            state = ProgressState.IN_PROGRESS
        counters = {k: int(v) for k, v in (data.get("counters") or {}).items() if isinstance(v, (int, float))}
        for name in ("processed", "created", "failed"):
            counters.setdefault(name, 0)
        return cls(
            job_key=data["job_key"],
            state=state,
            resume_token=ResumeToken.from_value(data.get("resume_token")),
            counters=counters,
            work_shape=data.get("work_shape") or {},
            started_at=data.get("started_at") or _now_iso(),
            last_updated=data.get("last_updated") or _now_iso(),
        )


# =============================================================================
# CONTROLLER
# =============================================================================

class BatchProgressController:
    """Load, checkpoint and complete progress records.

    Usage:
        ```python
        controller = BatchProgressController(kv, ttl_seconds=7200)
        progress = await controller.load_or_create(key, shape, ResumeToken.scan_start())
        progress.bump(processed=100)
        await controller.checkpoint(progress, token)
        ```
    """

    def __init__(self, kv: KVClient, ttl_seconds: int = 7200):
        self.kv = kv
        self.ttl_seconds = ttl_seconds

    async def load(self, job_key: str) -> Optional[BatchProgress]:
        try:
            data = await self.kv.get_json(job_key)
        except RecordParseError:
            logger.warning("[PROGRESS] Unreadable progress record %s - starting fresh", job_key)
            return None
        if not isinstance(data, dict):
            return None
        data.setdefault("job_key", job_key)
        try:
            return BatchProgress.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("[PROGRESS] Malformed progress record %s (%s) - starting fresh", job_key, e)
            return None

    async def _save(self, progress: BatchProgress) -> None:
        progress.last_updated = _now_iso()
        await self.kv.setex_json(progress.job_key, self.ttl_seconds, progress.to_dict())

    async def load_or_create(
        self,
        job_key: str,
        work_shape: Dict[str, Any],
        initial_token: ResumeToken,
        resume_from: Any = None,
        restart: bool = False,
    ) -> BatchProgress:
        """Return the record to work from, persisting it if it is new.

        - No record (or restart of a completed job): FRESH, saved immediately
        - Record whose work_shape differs: counters kept, token re-derived
        - Completed record: returned untouched so callers report completion
        - resume_from: overrides the stored token of an unfinished job
        """
        existing = await self.load(job_key)

        if existing is None or (restart and existing.is_complete):
            progress = BatchProgress(
                job_key=job_key,
                state=ProgressState.FRESH,
                resume_token=initial_token,
                work_shape=work_shape,
            )
            if resume_from is not None:
                progress.resume_token = ResumeToken.from_value(resume_from, initial_token.kind)
            await self._save(progress)
            logger.info("[PROGRESS] Created fresh progress record %s", job_key)
            return progress

        if existing.is_complete:
            return existing

        if existing.work_shape != work_shape:
            logger.warning(
                "[PROGRESS] Work shape changed for %s (%s -> %s) - re-deriving resume point",
                job_key, existing.work_shape, work_shape,
            )
            existing.work_shape = work_shape
            existing.resume_token = initial_token
            await self._save(existing)

        if resume_from is not None:
            existing.resume_token = ResumeToken.from_value(resume_from, initial_token.kind)
            logger.info("[PROGRESS] Resume point for %s overridden to %s", job_key, existing.resume_token.to_dict())

        return existing

    async def checkpoint(
        self,
        progress: BatchProgress,
        token: ResumeToken,
        complete: bool = False,
    ) -> BatchProgress:
        """Persist pending deltas and the new token.

        Counters are re-read from the store and the deltas added on top, so
        a concurrent invocation's increments are not overwritten.
        """
        base = dict(progress.counters)
        try:
            stored = await self.load(progress.job_key)
        except (KVTimeoutError, RedisError) as e:
            logger.warning("[PROGRESS] Could not re-read %s before checkpoint: %s", progress.job_key, e)
            stored = None
        if stored is not None and stored.started_at == progress.started_at:
            base = dict(stored.counters)

        for name, delta in progress.pending.items():
            base[name] = base.get(name, 0) + delta
        progress.counters = base
        progress.pending = {}
        progress.resume_token = token
        progress.state = ProgressState.COMPLETE if complete else ProgressState.IN_PROGRESS

        await self._save(progress)
        logger.info(
            "[PROGRESS] %s checkpoint: state=%s counters=%s token=%s",
            progress.job_key, progress.state.value, progress.counters, token.to_dict(),
        )
        return progress

    async def reset(self, job_key: str) -> None:
        await self.kv.delete(job_key)
