"""Tests for journey reconstruction from the session and IP indexes.

WHAT: Lookup planning, priority-ordered merge, dedup, the before-conversion
      filter and degraded lookups
WHY: A touchpoint found through two identifiers must appear once, and a
     store hiccup on one identifier must not cost the whole journey
"""

from datetime import datetime, timedelta, timezone

import pytest

from journeyx.services.journey_reconstructor import JourneyReconstructor, merge_staged_lookups
from journeyx.services.key_schema import ip_index_key
from journeyx.services.records import (
    CONVERSION_IP_MATCH,
    PRIMARY_IP_MATCH,
    SESSION_MATCH,
    Conversion,
    Touchpoint,
    format_timestamp,
)
from journeyx.tests.factories import make_pageview, seed_pageview_indexes

CONVERTED_AT = datetime(2025, 6, 17, 12, 0, tzinfo=timezone.utc)
HOME_IP = "203.0.113.7"
PHONE_IP = "2001:db8::1"


def _at(hours):
    return format_timestamp(CONVERTED_AT + timedelta(hours=hours))


def _conversion(**kwargs):
    data = {"email": "buyer@example.com", "timestamp": format_timestamp(CONVERTED_AT), "order_total": 49}
    data.update(kwargs)
    return Conversion.from_dict(data)


@pytest.fixture
def cross_device_store(fake_redis):
    """s1 browses from home via google, a facebook visit from home in another
    session, then an email click on the phone just before converting."""
    seed_pageview_indexes(fake_redis, [
        make_pageview("s1", _at(-48), ip=HOME_IP, source="google", landing_page="/pricing"),
        make_pageview("s1", _at(-2), ip=HOME_IP, source="google", landing_page="/signup"),
        make_pageview("s5", _at(-24), ip=HOME_IP, source="facebook", landing_page="/blog"),
        make_pageview("s9", _at(-1), ip=PHONE_IP, source="email", landing_page="/offer"),
        make_pageview("s9", _at(0), ip=PHONE_IP, source="email", landing_page="/thanks"),
        make_pageview("s9", _at(3), ip=PHONE_IP, source="email", landing_page="/account"),
    ])
    return fake_redis


@pytest.mark.asyncio
async def test_cross_device_journey(kv, cross_device_store):
    conversion = _conversion(ssid="s1", PIP=HOME_IP, CIP=PHONE_IP)

    journey = await JourneyReconstructor(kv).reconstruct(conversion)

    assert [(jt.touchpoint.source, jt.attribution_method) for jt in journey.touchpoints] == [
        ("google", SESSION_MATCH),
        ("facebook", PRIMARY_IP_MATCH),
        ("google", SESSION_MATCH),
        ("email", CONVERSION_IP_MATCH),
    ]
    assert [jt.touchpoint_position for jt in journey.touchpoints] == [1, 2, 3, 4]
    assert journey.methods_used == [SESSION_MATCH, PRIMARY_IP_MATCH, CONVERSION_IP_MATCH]
    assert journey.lookups == {SESSION_MATCH: "found", PRIMARY_IP_MATCH: "found", CONVERSION_IP_MATCH: "found"}
    assert journey.conversion_only is False


@pytest.mark.asyncio
async def test_session_only_conversion(kv, cross_device_store):
    journey = await JourneyReconstructor(kv).reconstruct(_conversion(ssid="s1"))

    assert [jt.touchpoint.landing_page for jt in journey.touchpoints] == ["/pricing", "/signup"]
    assert journey.methods_used == [SESSION_MATCH]


@pytest.mark.asyncio
async def test_same_primary_and_conversion_ip_is_one_lookup(kv, cross_device_store):
    reconstructor = JourneyReconstructor(kv)
    conversion = _conversion(PIP=HOME_IP, CIP=HOME_IP)

    assert [method for method, _ in reconstructor.plan_lookups(conversion)] == [PRIMARY_IP_MATCH]
    journey = await reconstructor.reconstruct(conversion)
    assert len(journey.touchpoints) == 3


@pytest.mark.asyncio
async def test_failed_lookup_degrades_to_partial_journey(kv, cross_device_store):
    cross_device_store.fail_reads.add(ip_index_key(HOME_IP))
    conversion = _conversion(ssid="s1", PIP=HOME_IP, CIP=PHONE_IP)

    journey = await JourneyReconstructor(kv).reconstruct(conversion)

    assert journey.lookups[PRIMARY_IP_MATCH] == "error"
    assert [jt.touchpoint.source for jt in journey.touchpoints] == ["google", "google", "email"]
    assert PRIMARY_IP_MATCH not in journey.methods_used


@pytest.mark.asyncio
async def test_unknown_identifiers_give_conversion_only_journey(kv, cross_device_store):
    journey = await JourneyReconstructor(kv).reconstruct(_conversion(ssid="never-seen", PIP="192.0.2.99"))

    assert journey.conversion_only is True
    assert journey.methods_used == []
    assert journey.lookups == {SESSION_MATCH: "not_found", PRIMARY_IP_MATCH: "not_found"}


@pytest.mark.asyncio
async def test_no_identifiers_skips_lookups(kv, fake_redis):
    journey = await JourneyReconstructor(kv).reconstruct(_conversion())

    assert journey.conversion_only is True
    assert journey.lookups == {}
    assert fake_redis.calls == []


def test_merge_keeps_first_method_and_drops_conversion_instant():
    shared = Touchpoint(timestamp=CONVERTED_AT - timedelta(hours=5), session_id="s1", source="google")
    at_conversion = Touchpoint(timestamp=CONVERTED_AT, session_id="s1", source="google")

    touchpoints, methods = merge_staged_lookups(
        [(SESSION_MATCH, [shared, at_conversion]), (PRIMARY_IP_MATCH, [shared])],
        CONVERTED_AT,
    )

    assert [(jt.touchpoint, jt.attribution_method) for jt in touchpoints] == [(shared, SESSION_MATCH)]
    assert methods == [SESSION_MATCH]
