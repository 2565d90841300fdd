"""Multi-touch attribution service.

WHAT:
    End-to-end attribution for a single conversion: look the conversion up
    in the email index, reconstruct its journey, run every model, and store
    the result permanently.

WHY:
    The stored result is the system of record for a computed attribution;
    reporting reads it back by (email, conversion timestamp). A write that
    does not read back is data loss and is raised, never swallowed.

REFERENCES:
    - journeyx/services/journey_reconstructor.py
    - journeyx/services/attribution_calculator.py
    - journeyx/services/batch_attribution.py: bulk driver
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from journeyx.deps import Settings
from journeyx.exceptions import RecordParseError
from journeyx.services import attribution_calculator as calculator
from journeyx.services.journey_reconstructor import CustomerJourney, JourneyReconstructor
from journeyx.services.key_schema import attribution_result_key, conversion_email_index_key
from journeyx.services.kv_client import KVClient
from journeyx.services.records import Conversion, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

RESULT_VERSION = "multi_touch_v1"


def canonical_timestamp(value: str) -> str:
    """Normalize a client-supplied timestamp to the stored key form."""
    parsed = parse_timestamp(value)
    return format_timestamp(parsed) if parsed else str(value)


def build_attribution_result(journey: CustomerJourney, half_life_hours: float) -> Dict[str, Any]:
    """Assemble the stored result for a reconstructed journey (no I/O)."""
    conversion = journey.conversion
    pageviews = journey.pageviews
    models = calculator.calculate(pageviews, conversion.order_total, conversion.timestamp, half_life_hours)
    confidence = calculator.calculate_confidence(
        pageviews,
        journey.methods_used,
        conversion.timestamp,
        primary_ip=conversion.primary_ip,
        conversion_ip=conversion.conversion_ip,
    )

    return {
        "conversion": {
            "email": conversion.email,
            "timestamp": conversion.timestamp_str,
            "order_total": conversion.order_total,
            "order_id": conversion.order_id,
            "primary_ip": conversion.primary_ip,
            "conversion_ip": conversion.conversion_ip,
            "session_id": conversion.session_id,
            "attribution_found": not journey.conversion_only,
            "attribution_method": journey.methods_used[0] if journey.methods_used else None,
            "attribution_score": confidence["score"],
        },
        "journey": journey.to_dict(),
        "summary": calculator.summarize_journey(pageviews, conversion.timestamp),
        "models": models,
        "confidence": confidence,
        "insights": calculator.journey_insights(pageviews, conversion.timestamp, models),
        "half_life_hours": half_life_hours,
        "calculated_at": format_timestamp(datetime.now(timezone.utc)),
        "version": RESULT_VERSION,
    }


class AttributionService:
    """Single-conversion attribution.

    Usage:
        ```python
        service = AttributionService(kv)
        conversion = await service.get_conversion("a@b.com", "2025-06-17T06:01:05.941Z")
        result = await service.attribute(conversion)
        storage = await service.store_result(result)
        ```
    """

    def __init__(
        self,
        kv: KVClient,
        reconstructor: Optional[JourneyReconstructor] = None,
        default_half_life_hours: float = calculator.DEFAULT_HALF_LIFE_HOURS,
    ):
        self.kv = kv
        self.reconstructor = reconstructor or JourneyReconstructor(kv)
        self.default_half_life_hours = default_half_life_hours

    @classmethod
    def from_settings(cls, kv: KVClient, settings: Settings) -> "AttributionService":
        return cls(
            kv,
            JourneyReconstructor(kv, lookup_timeout=settings.KV_TIMEOUT_SECONDS),
            default_half_life_hours=settings.DEFAULT_HALF_LIFE_HOURS,
        )

    async def get_conversion(self, email: str, timestamp: str) -> Optional[Conversion]:
        """Find one conversion in the email index. None when absent."""
        target = parse_timestamp(timestamp)
        if target is None:
            return None
        key = conversion_email_index_key(email.strip().lower())
        try:
            index = await self.kv.get_json(key)
        except RecordParseError:
            logger.warning("[ATTRIBUTION] Conversion index %s is unreadable", key)
            return None
        if not isinstance(index, dict):
            return None

        for raw in index.get("conversions") or []:
            try:
                conversion = Conversion.from_dict(raw)
            except RecordParseError:
                continue
            if conversion.timestamp == target:
                return conversion
        return None

    async def attribute(self, conversion: Conversion, half_life_hours: Optional[float] = None) -> Dict[str, Any]:
        half_life = half_life_hours if half_life_hours is not None else self.default_half_life_hours
        journey = await self.reconstructor.reconstruct(conversion)
        result = build_attribution_result(journey, half_life)
        logger.info(
            "[ATTRIBUTION] %s @ %s: %d touchpoints, confidence=%d",
            conversion.email, conversion.timestamp_str,
            result["summary"]["total_touchpoints"], result["confidence"]["score"],
        )
        return result

    async def store_result(self, result: Dict[str, Any]) -> Dict[str, Any]:
        """Permanently store a result and verify it.

        Raises:
            StorageVerificationError: the read-back found nothing
        """
        conversion = result["conversion"]
        key = attribution_result_key(conversion["email"], conversion["timestamp"])
        await self.kv.set_json_verified(key, result)
        return {"stored_permanently": True, "storage_key": key, "storage_verified": True}

    async def get_stored_result(self, email: str, timestamp: str) -> Optional[Dict[str, Any]]:
        key = attribution_result_key(email.strip().lower(), canonical_timestamp(timestamp))
        try:
            return await self.kv.get_json(key)
        except RecordParseError:
            logger.warning("[ATTRIBUTION] Stored result %s is unreadable", key)
            return None

    async def attribution_exists(self, email: str, timestamp: str) -> bool:
        key = attribution_result_key(email.strip().lower(), canonical_timestamp(timestamp))
        return await self.kv.get(key) is not None
