"""Store key layout.

WHAT:
    Builders for every derived key the engine reads or writes, the
    key-safe encodings for IPs, landing pages and sources, and the
    whitelist filters that tell raw event keys from derived ones.

WHY:
    The index builder and the journey reconstructor must agree byte for
    byte on index keys; keeping both sides on these helpers is what makes
    that hold.

NOTES:
    IP encoding is injective: '%', '_' and '-' are percent-escaped first,
    then ':' -> '_' and '.' -> '-'. So "2001:db8::1" and "2001.db8..1"
    never share a key.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Iterable, List, Sequence
from urllib.parse import quote, unquote

# Index families
SESSION_INDEX_PREFIX = "attribution_index_v1_session:"
IP_INDEX_PREFIX = "attribution_index_v1_ip:"
LANDING_INDEX_PREFIX = "attribution_index_v1_landing:"
SOURCE_INDEX_PREFIX = "attribution_index_v1_source:"

INDEX_PREFIXES = {
    "session": SESSION_INDEX_PREFIX,
    "ip": IP_INDEX_PREFIX,
    "landing": LANDING_INDEX_PREFIX,
    "source": SOURCE_INDEX_PREFIX,
}

CONVERSION_EMAIL_INDEX_PREFIX = "conversion_index_v1_email:"
CONVERSION_DATE_INDEX_PREFIX = "conversion_index_v1_date:"

ATTRIBUTION_RESULT_PREFIX = "multi_touch_attribution:"

# Progress records
PAGEVIEW_INDEX_PROGRESS_KEY = "attribution_index_building_v1_progress"
CONVERSION_INDEX_PROGRESS_KEY = "conversion_index_building_v1_progress"
BATCH_ATTRIBUTION_PROGRESS_PREFIX = "batch_attribution_progress:"

LANDING_KEY_MAX_LENGTH = 100
SOURCE_KEY_MAX_LENGTH = 50

# Keys sharing the raw pageview prefix that hold derived data
DERIVED_KEY_INFIXES = (
    "_ip_",
    "_session_",
    "_fp_",
    "_screen_",
    "_webgl_",
    "_geo_",
    "_region_",
    "_hw_",
    "pageview_index_",
    "index_v",
    "conversion_index_",
    "attribution_stats_",
    "geo_cache:",
    "_progress",
)

_NUMERIC_SUFFIX = re.compile(r"\d+$")
_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9_-]")

# Characters encodeURIComponent leaves alone, kept for key compatibility
_URI_COMPONENT_SAFE = "!~*'()"


# =============================================================================
# ENCODINGS
# =============================================================================

def encode_ip(ip: str) -> str:
    """Encode an IPv4/IPv6 address into a key-safe, reversible token."""
    escaped = ip.replace("%", "%25").replace("_", "%5F").replace("-", "%2D")
    return escaped.replace(":", "_").replace(".", "-")


def decode_ip(token: str) -> str:
    """Invert encode_ip."""
    return unquote(token.replace("_", ":").replace("-", "."))


def _sanitize(value: str, max_length: int) -> str:
    encoded = quote(value, safe=_URI_COMPONENT_SAFE)
    return _UNSAFE_KEY_CHARS.sub("_", encoded)[:max_length]


def encode_landing_page(landing_page: str) -> str:
    return _sanitize(landing_page, LANDING_KEY_MAX_LENGTH)


def encode_source(source: str) -> str:
    return _sanitize(source, SOURCE_KEY_MAX_LENGTH)


def encode_email(email: str) -> str:
    return quote(email, safe=_URI_COMPONENT_SAFE)


# =============================================================================
# KEY BUILDERS
# =============================================================================

def session_index_key(session_id: str) -> str:
    return f"{SESSION_INDEX_PREFIX}{session_id}"


def ip_index_key(ip: str) -> str:
    return f"{IP_INDEX_PREFIX}{encode_ip(ip)}"


def landing_index_key(landing_page: str) -> str:
    return f"{LANDING_INDEX_PREFIX}{encode_landing_page(landing_page)}"


def source_index_key(source: str) -> str:
    return f"{SOURCE_INDEX_PREFIX}{encode_source(source)}"


def conversion_email_index_key(email: str) -> str:
    return f"{CONVERSION_EMAIL_INDEX_PREFIX}{encode_email(email)}"


def conversion_date_index_key(day: str) -> str:
    return f"{CONVERSION_DATE_INDEX_PREFIX}{day}"


def attribution_result_key(email: str, conversion_timestamp: str) -> str:
    return f"{ATTRIBUTION_RESULT_PREFIX}{email}:{conversion_timestamp}"


def batch_attribution_progress_key(query_type: str, partition: str) -> str:
    return f"{BATCH_ATTRIBUTION_PROGRESS_PREFIX}{query_type}:{partition}"


def utc_day(ts: datetime) -> str:
    """YYYY-MM-DD of a timestamp in UTC."""
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%d")


# =============================================================================
# KEY-SHAPE FILTERS
# =============================================================================

def pattern_prefixes(patterns: Iterable[str]) -> List[str]:
    """Literal prefixes of glob patterns ("attribution_*" -> "attribution_")."""
    prefixes = []
    for pattern in patterns:
        prefix = re.split(r"[*?\[]", pattern, maxsplit=1)[0]
        if prefix:
            prefixes.append(prefix)
    return prefixes


def is_raw_pageview_key(key: str, prefixes: Sequence[str] = ("attribution_",)) -> bool:
    """Whitelist check for raw pageview keys.

    A raw key starts with a pageview prefix, ends in its numeric creation
    timestamp, and carries none of the derived-key infixes.
    """
    if not any(key.startswith(p) for p in prefixes):
        return False
    if not _NUMERIC_SUFFIX.search(key):
        return False
    return not any(infix in key for infix in DERIVED_KEY_INFIXES)


def is_raw_conversion_key(key: str, prefixes: Sequence[str] = ("conversions:", "conversion:")) -> bool:
    if not any(key.startswith(p) for p in prefixes):
        return False
    return "index" not in key and "progress" not in key
