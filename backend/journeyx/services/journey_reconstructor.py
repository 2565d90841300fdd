"""Journey Reconstructor.

WHAT:
    Rebuilds the pre-conversion touchpoint sequence for one conversion from
    the session and IP indexes.

WHY:
    A conversion only carries identifiers (session id, primary IP, the IP it
    converted from). The journey has to be assembled from whichever indexes
    those identifiers hit.

HOW:
    1. session_match      <- session index of conversion.session_id
    2. primary_ip_match   <- IP index of conversion.primary_ip
    3. conversion_ip_match <- IP index of conversion.conversion_ip (if it
       differs from primary_ip)
    Lookups run concurrently; results merge in the order above so a
    pageview found twice keeps the earlier method. Dedup on
    (session_id, timestamp), keep only timestamps strictly before the
    conversion, sort ascending, number from 1.

    A lookup that times out, misses, or returns garbage contributes nothing.
    Zero surviving touchpoints is a conversion-only journey, not an error.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from redis.exceptions import RedisError

from journeyx.exceptions import KVTimeoutError, RecordParseError
from journeyx.services.key_schema import ip_index_key, session_index_key
from journeyx.services.kv_client import KVClient
from journeyx.services.records import (
    CONVERSION_IP_MATCH,
    PRIMARY_IP_MATCH,
    SESSION_MATCH,
    Conversion,
    Touchpoint,
)

logger = logging.getLogger(__name__)

LOOKUP_ORDER = (SESSION_MATCH, PRIMARY_IP_MATCH, CONVERSION_IP_MATCH)


@dataclass(frozen=True)
class JourneyTouchpoint:
    touchpoint: Touchpoint
    attribution_method: str
    touchpoint_position: int

    def to_dict(self) -> Dict[str, Any]:
        data = self.touchpoint.to_dict()
        data["attribution_method"] = self.attribution_method
        data["touchpoint_position"] = self.touchpoint_position
        return data


@dataclass
class CustomerJourney:
    """Chronological touchpoints preceding exactly one conversion."""
    conversion: Conversion
    touchpoints: List[JourneyTouchpoint] = field(default_factory=list)
    methods_used: List[str] = field(default_factory=list)
    lookups: Dict[str, str] = field(default_factory=dict)

    @property
    def conversion_only(self) -> bool:
        return not self.touchpoints

    @property
    def pageviews(self) -> List[Touchpoint]:
        return [jt.touchpoint for jt in self.touchpoints]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "touchpoints": [jt.to_dict() for jt in self.touchpoints],
            "attribution_methods": list(self.methods_used),
            "lookups": dict(self.lookups),
            "conversion_only": self.conversion_only,
        }


def merge_staged_lookups(
    staged: Sequence[Tuple[str, List[Touchpoint]]],
    conversion_timestamp: datetime,
) -> Tuple[List[JourneyTouchpoint], List[str]]:
    """Merge per-method pageview lists into an ordered, deduplicated journey.

    Args:
        staged: (method, pageviews) in lookup priority order
        conversion_timestamp: touchpoints at or after this instant are dropped

    Returns:
        (touchpoints, contributing methods in lookup order)
    """
    seen = set()
    kept: List[Tuple[Touchpoint, str]] = []
    for method, pageviews in staged:
        for pv in pageviews:
            if pv.identity in seen:
                continue
            seen.add(pv.identity)
            if pv.timestamp < conversion_timestamp:
                kept.append((pv, method))

    kept.sort(key=lambda item: (item[0].timestamp, item[0].session_id or ""))
    touchpoints = [
        JourneyTouchpoint(touchpoint=pv, attribution_method=method, touchpoint_position=i)
        for i, (pv, method) in enumerate(kept, start=1)
    ]
    contributing = {jt.attribution_method for jt in touchpoints}
    methods = [method for method, _ in staged if method in contributing]
    return touchpoints, list(dict.fromkeys(methods))


class JourneyReconstructor:
    """Reconstructs customer journeys from session/IP indexes.

    Usage:
        ```python
        reconstructor = JourneyReconstructor(kv, lookup_timeout=2.0)
        journey = await reconstructor.reconstruct(conversion)
        if journey.conversion_only:
            ...
        ```
    """

    def __init__(self, kv: KVClient, lookup_timeout: Optional[float] = None):
        self.kv = kv
        self.lookup_timeout = lookup_timeout

    def plan_lookups(self, conversion: Conversion) -> List[Tuple[str, str]]:
        """(method, index key) pairs for the identifiers this conversion has."""
        plan = []
        if conversion.session_id:
            plan.append((SESSION_MATCH, session_index_key(conversion.session_id)))
        if conversion.primary_ip:
            plan.append((PRIMARY_IP_MATCH, ip_index_key(conversion.primary_ip)))
        if conversion.conversion_ip and conversion.conversion_ip != conversion.primary_ip:
            plan.append((CONVERSION_IP_MATCH, ip_index_key(conversion.conversion_ip)))
        return plan

    async def _lookup(self, method: str, key: str) -> Tuple[str, List[Touchpoint]]:
        try:
            record = await self.kv.get_json(key, timeout=self.lookup_timeout)
        except (KVTimeoutError, RedisError) as e:
            logger.warning("[JOURNEY] %s lookup failed for %s: %s", method, key, e)
            return "error", []
        except RecordParseError:
            logger.warning("[JOURNEY] %s index %s is unreadable", method, key)
            return "error", []

        if not isinstance(record, dict):
            return "not_found", []

        pageviews = []
        for raw in record.get("pageviews") or []:
            try:
                pageviews.append(Touchpoint.from_dict(raw))
            except RecordParseError:
                continue
        return ("found" if pageviews else "empty"), pageviews

    async def reconstruct(self, conversion: Conversion) -> CustomerJourney:
        plan = self.plan_lookups(conversion)
        results = await asyncio.gather(*(self._lookup(method, key) for method, key in plan))

        staged = []
        lookups: Dict[str, str] = {}
        for (method, _key), (status, pageviews) in zip(plan, results):
            lookups[method] = status
            staged.append((method, pageviews))

        touchpoints, methods = merge_staged_lookups(staged, conversion.timestamp)
        logger.info(
            "[JOURNEY] %s @ %s: %d touchpoints via %s",
            conversion.email, conversion.timestamp_str, len(touchpoints), methods or "none",
        )
        return CustomerJourney(conversion=conversion, touchpoints=touchpoints, methods_used=methods, lookups=lookups)
