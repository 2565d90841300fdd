"""Tests for conversion extraction into the email and date indexes."""

import pytest

from journeyx.services.batch_progress import Deadline
from journeyx.services.conversion_index_builder import (
    ConversionIndexJob,
    accumulate_conversions,
    merge_conversions,
)
from journeyx.services.key_schema import (
    CONVERSION_INDEX_PROGRESS_KEY,
    conversion_date_index_key,
    conversion_email_index_key,
)
from journeyx.services.records import Conversion
from journeyx.tests.factories import make_conversion


def _seed(fake_redis):
    fake_redis.seed("conversions:a@example.com:1", make_conversion("a@example.com", "2025-06-17T06:01:05.941Z", 49.0, ssid="s1"))
    fake_redis.seed("conversions:a@example.com:2", make_conversion("A@Example.com", "2025-06-18T09:00:00.000Z", 0))
    fake_redis.seed("conversion:1750140000000", make_conversion("b@example.com", "2025-06-17T23:59:59.000Z", "120.50"))
    fake_redis.seed("conversions:bad:3", make_conversion("not-an-email", "2025-06-17T10:00:00.000Z"))
    fake_redis.seed("conversion_index_v1_email:stale%40example.com", {"conversions": []})


async def _build(kv, settings):
    job = ConversionIndexJob.from_settings(kv, settings)
    for _ in range(50):
        summary = await job.run_slice(Deadline(30.0, 3.0))
        if summary["is_complete"]:
            return summary
    raise AssertionError("conversion index build did not complete")


@pytest.mark.asyncio
async def test_build_email_and_date_indexes(kv, fake_redis, settings):
    _seed(fake_redis)

    summary = await _build(kv, settings)

    assert summary["total_progress"]["processed"] == 3
    assert summary["total_progress"]["skipped"] == 1

    email_index = fake_redis.load(conversion_email_index_key("a@example.com"))
    assert email_index["conversion_count"] == 2
    assert [c["timestamp"] for c in email_index["conversions"]] == [
        "2025-06-18T09:00:00.000Z",
        "2025-06-17T06:01:05.941Z",
    ]
    assert email_index["latest_conversion"] == "2025-06-18T09:00:00.000Z"
    assert email_index["total_revenue"] == 49.0

    day = fake_redis.load(conversion_date_index_key("2025-06-17"))
    assert day["conversion_count"] == 2
    assert day["total_revenue"] == 169.5
    assert day["free_trials"] == 0
    assert fake_redis.load(conversion_date_index_key("2025-06-18"))["free_trials"] == 1

    assert fake_redis.load(CONVERSION_INDEX_PROGRESS_KEY)["state"] == "complete"


@pytest.mark.asyncio
async def test_rebuild_leaves_index_unchanged(kv, fake_redis, settings):
    _seed(fake_redis)
    await _build(kv, settings)
    before = fake_redis.load(conversion_email_index_key("a@example.com"))

    job = ConversionIndexJob.from_settings(kv, settings)
    await job.run_slice(Deadline(30.0, 3.0), restart=True)
    await _build(kv, settings)

    after = fake_redis.load(conversion_email_index_key("a@example.com"))
    assert after["conversions"] == before["conversions"]
    assert after["created_at"] == before["created_at"]


def test_merge_prefers_new_and_sorts_newest_first():
    old = Conversion.from_dict(make_conversion("a@example.com", "2025-06-17T06:00:00Z", 10))
    existing = {"conversions": [old.to_dict()]}
    updated = Conversion.from_dict(make_conversion("a@example.com", "2025-06-17T06:00:00Z", 15))
    newer = Conversion.from_dict(make_conversion("a@example.com", "2025-06-19T06:00:00Z", 5))

    acc = accumulate_conversions([updated, newer])
    merged = merge_conversions(acc.by_email["a@example.com"], existing)

    assert [c.order_total for c in merged] == [5.0, 15.0]
    assert set(acc.by_date) == {"2025-06-17", "2025-06-19"}
