"""
Key Layout Tests (Unit)
=======================

WHAT: Unit tests for index key encodings and raw-key whitelist filters.
WHY: The index builder and the journey reconstructor must produce the same
     key for the same IP, and derived keys must never be re-read as raw events.

REFERENCES:
- backend/journeyx/services/key_schema.py
"""

from datetime import datetime, timezone

import pytest

from journeyx.services.key_schema import (
    batch_attribution_progress_key,
    conversion_email_index_key,
    decode_ip,
    encode_ip,
    encode_landing_page,
    encode_source,
    ip_index_key,
    is_raw_conversion_key,
    is_raw_pageview_key,
    pattern_prefixes,
    utc_day,
)


class TestIpEncoding:
    def test_ipv4_uses_dashes(self) -> None:
        assert encode_ip("192.168.1.10") == "192-168-1-10"

    def test_ipv6_uses_underscores(self) -> None:
        assert encode_ip("2001:db8::1") == "2001_db8__1"

    def test_ipv6_and_dotted_lookalike_do_not_collide(self) -> None:
        """2001:db8::1 and 2001.db8..1 must land in different index records."""
        assert ip_index_key("2001:db8::1") != ip_index_key("2001.db8..1")

    @pytest.mark.parametrize("ip", [
        "2001:db8::1",
        "2001.db8..1",
        "10.0.0.1",
        "fe80::1%eth0",
        "weird_ip-value",
    ])
    def test_decode_inverts_encode(self, ip: str) -> None:
        assert decode_ip(encode_ip(ip)) == ip

    def test_escaped_separators_do_not_collide(self) -> None:
        assert encode_ip("1_2") != encode_ip("1:2")
        assert encode_ip("1-2") != encode_ip("1.2")


class TestValueEncodings:
    def test_landing_page_is_key_safe_and_truncated(self) -> None:
        encoded = encode_landing_page("/pricing?plan=pro&ref=" + "x" * 200)
        assert len(encoded) == 100
        assert all(c.isalnum() or c in "_-" for c in encoded)

    def test_source_truncated_to_50(self) -> None:
        assert len(encode_source("s" * 80)) == 50

    def test_email_key_is_uri_encoded(self) -> None:
        assert conversion_email_index_key("a.b@example.com") == "conversion_index_v1_email:a.b%40example.com"

    def test_batch_progress_key(self) -> None:
        assert batch_attribution_progress_key("date", "2025-06-17") == "batch_attribution_progress:date:2025-06-17"

    def test_utc_day_converts_timezone(self) -> None:
        from datetime import timedelta

        ts = datetime(2025, 6, 17, 1, 30, tzinfo=timezone(timedelta(hours=3)))
        assert utc_day(ts) == "2025-06-16"


class TestRawKeyWhitelist:
    PREFIXES = pattern_prefixes(["attribution_*"])

    def test_pattern_prefixes(self) -> None:
        assert pattern_prefixes(["attribution_*", "conversions:*", "*"]) == ["attribution_", "conversions:"]

    @pytest.mark.parametrize("key", [
        "attribution_abc123_1718604065941",
        "attribution_1718604065941",
    ])
    def test_accepts_raw_pageviews(self, key: str) -> None:
        assert is_raw_pageview_key(key, self.PREFIXES)

    @pytest.mark.parametrize("key", [
        "attribution_index_v1_session:abc_1718604065941",
        "attribution_index_v1_ip:10-0-0-1",
        "attribution_ip_10-0-0-1_1718604065941",
        "attribution_session_abc_1718604065941",
        "attribution_index_building_v1_progress",
        "attribution_stats_2025",
        "attribution_abc",
        "pageview_1718604065941",
    ])
    def test_rejects_derived_or_foreign_keys(self, key: str) -> None:
        assert not is_raw_pageview_key(key, self.PREFIXES)

    def test_conversion_whitelist(self) -> None:
        prefixes = ["conversions:", "conversion:"]
        assert is_raw_conversion_key("conversions:a@b.com:1718604065941", prefixes)
        assert is_raw_conversion_key("conversion:1718604065941", prefixes)
        assert not is_raw_conversion_key("conversion_index_v1_email:a%40b.com", prefixes)
        assert not is_raw_conversion_key("conversion_index_building_v1_progress", prefixes)
