"""Read-side queries over the pageview indexes.

Lookups by session, IP, landing page and source, plus a bounded key count
per index family. A missing record is a normal answer ({"found": False}).
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

from journeyx.exceptions import RecordParseError
from journeyx.services.batch_progress import ResumeToken
from journeyx.services.event_scanner import EventScanner
from journeyx.services.key_schema import (
    ATTRIBUTION_RESULT_PREFIX,
    CONVERSION_DATE_INDEX_PREFIX,
    CONVERSION_EMAIL_INDEX_PREFIX,
    INDEX_PREFIXES,
    ip_index_key,
    landing_index_key,
    session_index_key,
    source_index_key,
)
from journeyx.services.kv_client import KVClient

logger = logging.getLogger(__name__)

CROSS_USER_PAGEVIEW_THRESHOLD = 20

SUMMARY_FAMILIES = {
    **{f"{kind}_indexes": prefix for kind, prefix in INDEX_PREFIXES.items()},
    "conversion_email_indexes": CONVERSION_EMAIL_INDEX_PREFIX,
    "conversion_date_indexes": CONVERSION_DATE_INDEX_PREFIX,
    "attribution_results": ATTRIBUTION_RESULT_PREFIX,
}


class IndexQueryService:
    """Usage:
        ```python
        queries = IndexQueryService(kv)
        await queries.query_ip("203.0.113.7", limit=10)
        await queries.summary(max_pages=20)
        ```
    """

    def __init__(self, kv: KVClient, scan_count: int = 100):
        self.kv = kv
        self.scan_count = scan_count

    async def _load(self, index_type: str, value: str, key: str, limit: int, details: bool) -> Tuple[Dict[str, Any], List[dict]]:
        try:
            record = await self.kv.get_json(key)
        except RecordParseError:
            logger.warning("[INDEX] Unreadable index record %s", key)
            record = None
        if not isinstance(record, dict):
            return {"found": False, "index_type": index_type, "value": value, "storage_key": key}, []

        pageviews = record.get("pageviews") or []
        response: Dict[str, Any] = {
            "found": True,
            "index_type": index_type,
            "value": value,
            "storage_key": key,
            "pageview_count": record.get("pageview_count", len(pageviews)),
            "retained_pageviews": len(pageviews),
            "earliest_timestamp": record.get("earliest_timestamp"),
            "latest_timestamp": record.get("latest_timestamp"),
            "session_ids": record.get("session_ids") or [],
            "ip_addresses": record.get("ip_addresses") or [],
            "landing_pages": record.get("landing_pages") or [],
            "sources": record.get("sources") or [],
            "updated_at": record.get("updated_at"),
        }
        if details:
            response["pageviews"] = pageviews[:max(0, limit)]
        return response, pageviews

    async def query_session(self, session_id: str, limit: int = 50, details: bool = True) -> Dict[str, Any]:
        response, _ = await self._load("session", session_id, session_index_key(session_id), limit, details)
        return response

    async def query_ip(self, ip: str, limit: int = 50, details: bool = True) -> Dict[str, Any]:
        response, pageviews = await self._load("ip", ip, ip_index_key(ip), limit, details)
        if not response["found"]:
            return response

        response["potential_cross_user_data"] = response["pageview_count"] > CROSS_USER_PAGEVIEW_THRESHOLD
        per_session = Counter(pv.get("session_id") or "unknown" for pv in pageviews if isinstance(pv, dict))
        response["session_analysis"] = {
            "unique_sessions": len(response["session_ids"]),
            "pageviews_per_session": dict(per_session.most_common()),
        }
        return response

    async def query_landing(self, landing_page: str, limit: int = 30, details: bool = True) -> Dict[str, Any]:
        response, _ = await self._load("landing", landing_page, landing_index_key(landing_page), limit, details)
        return response

    async def query_source(self, source: str, limit: int = 50, details: bool = True) -> Dict[str, Any]:
        response, _ = await self._load("source", source, source_index_key(source), limit, details)
        return response

    async def summary(self, max_pages: int = 20) -> Dict[str, Any]:
        """Key counts per family; a count is exact only when complete is True."""
        scanner = EventScanner(self.kv, [], [], count=self.scan_count, max_pages=max_pages)
        families: Dict[str, Any] = {}
        for name, prefix in SUMMARY_FAMILIES.items():
            scan = await scanner.scan_patterns(
                [f"{prefix}*"], ResumeToken.scan_start(), lambda key, p=prefix: key.startswith(p)
            )
            families[name] = {"count": len(scan.keys), "complete": scan.complete, "pages": scan.pages}
        return {"families": families, "max_pages": max_pages}


def query_by_kind(service: IndexQueryService, kind: str, value: Optional[str], limit: int, details: bool):
    """Dispatch table used by the HTTP layer."""
    handlers = {
        "session": service.query_session,
        "ip": service.query_ip,
        "landing": service.query_landing,
        "source": service.query_source,
    }
    return handlers[kind](value, limit=limit, details=details)
