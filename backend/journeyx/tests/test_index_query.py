"""Tests for index lookups and the per-family key summary."""

import pytest

from journeyx.services.index_query import CROSS_USER_PAGEVIEW_THRESHOLD, IndexQueryService, query_by_kind
from journeyx.tests.factories import make_conversion, make_pageview, seed_conversion_indexes, seed_pageview_indexes

OFFICE_IP = "198.51.100.20"


@pytest.fixture
def indexed(fake_redis):
    pageviews = [
        make_pageview("s1", "2025-06-17T08:00:00.000Z", ip="203.0.113.7", source="google", landing_page="/pricing"),
        make_pageview("s1", "2025-06-17T08:05:00.000Z", ip="203.0.113.7", source="google", landing_page="/signup"),
        make_pageview("s2", "2025-06-17T09:00:00.000Z", ip="2001:db8::1", source="facebook", landing_page="/pricing"),
    ]
    # A shared office IP seen across many sessions
    pageviews += [
        make_pageview(f"office{i % 4}", f"2025-06-16T{i:02d}:00:00.000Z", ip=OFFICE_IP, source="linkedin", landing_page="/about")
        for i in range(CROSS_USER_PAGEVIEW_THRESHOLD + 1)
    ]
    seed_pageview_indexes(fake_redis, pageviews)
    seed_conversion_indexes(fake_redis, [make_conversion("a@example.com", "2025-06-17T10:00:00.000Z")])
    return fake_redis


@pytest.mark.asyncio
async def test_query_session(kv, indexed):
    result = await IndexQueryService(kv).query_session("s1", limit=1)

    assert result["found"] is True
    assert result["pageview_count"] == 2
    assert result["retained_pageviews"] == 2
    assert len(result["pageviews"]) == 1
    assert result["pageviews"][0]["landing_page"] == "/signup"
    assert result["sources"] == ["google"]


@pytest.mark.asyncio
async def test_query_ip_handles_ipv6_and_session_breakdown(kv, indexed):
    result = await IndexQueryService(kv).query_ip("2001:db8::1", details=False)

    assert result["found"] is True
    assert result["storage_key"] == "attribution_index_v1_ip:2001_db8__1"
    assert "pageviews" not in result
    assert result["potential_cross_user_data"] is False
    assert result["session_analysis"] == {"unique_sessions": 1, "pageviews_per_session": {"s2": 1}}


@pytest.mark.asyncio
async def test_query_ip_flags_shared_address(kv, indexed):
    result = await IndexQueryService(kv).query_ip(OFFICE_IP)

    assert result["pageview_count"] == CROSS_USER_PAGEVIEW_THRESHOLD + 1
    assert result["potential_cross_user_data"] is True
    assert result["session_analysis"]["unique_sessions"] == 4


@pytest.mark.asyncio
async def test_missing_record_is_not_an_error(kv, indexed):
    service = IndexQueryService(kv)

    assert (await query_by_kind(service, "source", "tiktok", 10, True))["found"] is False
    assert (await service.query_ip("192.0.2.1"))["found"] is False


@pytest.mark.asyncio
async def test_landing_query_uses_encoded_key(kv, indexed):
    result = await IndexQueryService(kv).query_landing("/pricing")

    assert result["found"] is True
    assert result["pageview_count"] == 2
    assert result["session_ids"] == ["s1", "s2"]


@pytest.mark.asyncio
async def test_summary_counts_families(kv, indexed):
    summary = await IndexQueryService(kv, scan_count=5).summary(max_pages=100)

    families = summary["families"]
    assert families["session_indexes"] == {"count": 6, "complete": True, "pages": families["session_indexes"]["pages"]}
    assert families["ip_indexes"]["count"] == 3
    assert families["source_indexes"]["count"] == 3
    assert families["conversion_email_indexes"]["count"] == 1
    assert families["conversion_date_indexes"]["count"] == 1
    assert families["attribution_results"]["count"] == 0


@pytest.mark.asyncio
async def test_summary_page_cap_marks_incomplete(kv, indexed):
    summary = await IndexQueryService(kv, scan_count=2).summary(max_pages=1)

    assert summary["families"]["session_indexes"]["complete"] is False
    assert summary["max_pages"] == 1
