"""Canonical event records and legacy field mapping.

WHAT:
    Touchpoint (pageview) and Conversion dataclasses, plus the single
    normalization step that turns a stored JSON payload into one of them.

WHY:
    Raw events were written by several generations of the tracking script.
    The same concept shows up under different field names (ssid vs
    session_id, CIP vs conversion_ip, url vs landing_page...). Mapping
    happens once, here, in priority order; nothing downstream looks at raw
    field names.

HOW:
    - from_dict() on each record type tries every known field name in order
    - Timestamps accept ISO strings, epoch milliseconds and epoch seconds
    - Unusable records raise RecordParseError, which callers count and skip
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from journeyx.exceptions import RecordParseError

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

UNKNOWN = "unknown"
DIRECT = "direct"

# Journey lookup methods, in priority order
SESSION_MATCH = "session_match"
PRIMARY_IP_MATCH = "primary_ip_match"
CONVERSION_IP_MATCH = "conversion_ip_match"

_MISSING_VALUES = {"", "unknown", "null", "none", "undefined"}
_EPOCH_MS_THRESHOLD = 10 ** 11
_KEY_TIMESTAMP = re.compile(r"(\d{10,13})$")


# =============================================================================
# HELPERS
# =============================================================================

def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO string or epoch number into an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return _from_epoch(float(value))
    text = str(value).strip()
    if not text:
        return None
    if re.fullmatch(r"\d+(\.\d+)?", text):
        return _from_epoch(float(text))
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _from_epoch(number: float) -> Optional[datetime]:
    if math.isnan(number) or number <= 0:
        return None
    seconds = number / 1000.0 if number > _EPOCH_MS_THRESHOLD else number
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def format_timestamp(ts: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a Z suffix."""
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _first(data: Mapping[str, Any], *names: str) -> Optional[str]:
    """First present, non-placeholder value among the given field names."""
    for name in names:
        value = data.get(name)
        if value is None:
            continue
        text = str(value).strip()
        if text.lower() in _MISSING_VALUES:
            continue
        return text
    return None


def parse_ip_list(value: Any) -> List[str]:
    """Accept a list or a comma-separated string of IPs."""
    if not value:
        return []
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        return []
    ips = []
    for item in items:
        if item is None:
            continue
        text = str(item).strip()
        if text.lower() in _MISSING_VALUES:
            continue
        if text not in ips:
            ips.append(text)
    return ips


def parse_order_total(value: Any) -> float:
    """Float order total; missing or malformed values are 0.0 (free trials)."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        total = float(str(value).strip().lstrip("$"))
    except ValueError:
        return 0.0
    if math.isnan(total) or math.isinf(total) or total < 0:
        return 0.0
    return total


# =============================================================================
# TOUCHPOINT
# =============================================================================

@dataclass(frozen=True)
class Touchpoint:
    """One pageview. Identity for deduplication is (session_id, timestamp)."""
    timestamp: datetime
    session_id: Optional[str]
    ip_address: str = UNKNOWN
    landing_page: str = UNKNOWN
    source: str = DIRECT
    utm_campaign: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_source: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None

    @property
    def identity(self) -> Tuple[Optional[str], datetime]:
        return (self.session_id, self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "session_id": self.session_id,
            "ip_address": self.ip_address,
            "landing_page": self.landing_page,
            "source": self.source,
            "utm_campaign": self.utm_campaign,
            "utm_medium": self.utm_medium,
            "utm_source": self.utm_source,
            "utm_term": self.utm_term,
            "utm_content": self.utm_content,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], key: Optional[str] = None) -> "Touchpoint":
        """Build from a stored pageview or index entry.

        Falls back to the numeric suffix of the raw key when the payload
        carries no timestamp.

        Raises:
            RecordParseError: no usable timestamp
        """
        if not isinstance(data, Mapping):
            raise RecordParseError("Pageview payload is not an object", key=key)

        timestamp = parse_timestamp(data.get("timestamp"))
        if timestamp is None and key:
            match = _KEY_TIMESTAMP.search(key)
            if match:
                timestamp = parse_timestamp(int(match.group(1)))
        if timestamp is None:
            raise RecordParseError("Pageview has no parseable timestamp", key=key)

        utm_source = _first(data, "utm_source")
        return cls(
            timestamp=timestamp,
            session_id=_first(data, "session_id", "ssid", "sessionId"),
            ip_address=_first(data, "ip_address", "ip", "IP") or UNKNOWN,
            landing_page=_first(data, "landing_page", "url", "page_url") or UNKNOWN,
            source=_first(data, "source") or utm_source or DIRECT,
            utm_campaign=_first(data, "utm_campaign", "campaign"),
            utm_medium=_first(data, "utm_medium", "medium"),
            utm_source=utm_source,
            utm_term=_first(data, "utm_term"),
            utm_content=_first(data, "utm_content"),
        )


# =============================================================================
# CONVERSION
# =============================================================================

@dataclass
class Conversion:
    """One conversion (signup or order). order_total may be 0."""
    timestamp: datetime
    email: str
    order_total: float = 0.0
    order_id: Optional[str] = None
    primary_ip: Optional[str] = None
    conversion_ip: Optional[str] = None
    session_id: Optional[str] = None
    unique_ips: List[str] = field(default_factory=list)
    landing_page: Optional[str] = None
    source: Optional[str] = None
    attribution_found: bool = False
    attribution_method: Optional[str] = None
    attribution_score: int = 0
    raw_key: Optional[str] = None

    @property
    def identity(self) -> Tuple[str, datetime]:
        return (self.email, self.timestamp)

    @property
    def timestamp_str(self) -> str:
        return format_timestamp(self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp_str,
            "email": self.email,
            "order_total": self.order_total,
            "order_id": self.order_id,
            "primary_ip": self.primary_ip,
            "conversion_ip": self.conversion_ip,
            "session_id": self.session_id,
            "unique_ips": list(self.unique_ips),
            "landing_page": self.landing_page,
            "source": self.source,
            "attribution_found": self.attribution_found,
            "attribution_method": self.attribution_method,
            "attribution_score": self.attribution_score,
            "raw_key": self.raw_key,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], key: Optional[str] = None) -> "Conversion":
        """Build from a raw conversion or a conversion index entry.

        Raises:
            RecordParseError: missing timestamp or invalid email
        """
        if not isinstance(data, Mapping):
            raise RecordParseError("Conversion payload is not an object", key=key)

        timestamp = parse_timestamp(data.get("timestamp"))
        if timestamp is None:
            raise RecordParseError("Conversion has no parseable timestamp", key=key)

        email = (_first(data, "email") or "").lower()
        if not EMAIL_PATTERN.match(email):
            raise RecordParseError("invalid_email", key=key)

        score = data.get("attribution_score") or 0
        try:
            score = int(score)
        except (TypeError, ValueError):
            score = 0

        return cls(
            timestamp=timestamp,
            email=email,
            order_total=parse_order_total(data.get("order_total")),
            order_id=_first(data, "order_id"),
            primary_ip=_first(data, "primary_ip", "PIP"),
            conversion_ip=_first(data, "conversion_ip", "CIP"),
            session_id=_first(data, "ssid", "session_id", "sessionId"),
            unique_ips=parse_ip_list(data.get("unique_ips")),
            landing_page=_first(data, "landing_page"),
            source=_first(data, "source"),
            attribution_found=bool(data.get("attribution_found") or False),
            attribution_method=_first(data, "attribution_method"),
            attribution_score=score,
            raw_key=data.get("raw_key") or data.get("redis_key") or key,
        )
