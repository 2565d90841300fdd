"""Tests for the pageview index build.

WHAT: Grouping into the four index families, merge semantics across chunks,
      caps, and resumable slices
WHY: Journey reconstruction reads nothing but these records; an index that
     depends on where a slice happened to stop gives different journeys for
     the same data
"""

import pytest

from journeyx.services.batch_progress import Deadline
from journeyx.services.index_builder import (
    IndexGroup,
    PageviewIndexJob,
    accumulate_pageviews,
    build_index_record,
    identity_token,
)
from journeyx.services.key_schema import (
    PAGEVIEW_INDEX_PROGRESS_KEY,
    ip_index_key,
    landing_index_key,
    session_index_key,
    source_index_key,
)
from journeyx.services.records import Touchpoint
from journeyx.tests.factories import make_pageview, pageview_key

IPV6 = "2001:db8::1"

PAGEVIEWS = [
    ("s1", 1750100000000, "203.0.113.7", "google", "/pricing"),
    ("s1", 1750100600000, "203.0.113.7", "google", "/signup"),
    ("s2", 1750110000000, IPV6, "facebook", "/blog"),
    ("s2", 1750110300000, IPV6, "facebook", "/pricing"),
    ("s3", 1750120000000, "198.51.100.2", "", "/"),
    ("s4", 1750130000000, "203.0.113.7", "newsletter", "/pricing"),
    ("s4", 1750130100000, "203.0.113.7", "newsletter", "/features"),
]

VOLATILE_FIELDS = ("created_at", "updated_at")


def _seed(fake_redis):
    for session_id, ms, ip, source, page in PAGEVIEWS:
        fake_redis.seed(pageview_key(session_id, ms), make_pageview(session_id, str(ms), ip=ip, source=source, landing_page=page))
    fake_redis.seed("attribution_index_v1_session:stale", {"pageviews": []})


def _index_snapshot(fake_redis):
    snapshot = {}
    for key in fake_redis.keys("attribution_index_v1_*"):
        record = fake_redis.load(key)
        for name in VOLATILE_FIELDS:
            record.pop(name, None)
        snapshot[key] = record
    return snapshot


async def _run_to_completion(job, max_chunks=None, limit=100):
    summaries = []
    for _ in range(limit):
        summary = await job.run_slice(Deadline(30.0, 3.0), max_chunks=max_chunks)
        summaries.append(summary)
        if summary["is_complete"]:
            return summaries
    raise AssertionError("index build did not complete")


@pytest.mark.asyncio
async def test_build_writes_all_four_families(kv, fake_redis, settings):
    _seed(fake_redis)
    job = PageviewIndexJob.from_settings(kv, settings)

    summaries = await _run_to_completion(job)

    assert summaries[-1]["total_progress"]["processed"] == len(PAGEVIEWS)

    session = fake_redis.load(session_index_key("s1"))
    assert session["pageview_count"] == 2
    assert [pv["landing_page"] for pv in session["pageviews"]] == ["/signup", "/pricing"]
    assert session["sources"] == ["google"]
    assert session["earliest_timestamp"] == "2025-06-16T18:53:20.000Z"

    ip = fake_redis.load(ip_index_key("203.0.113.7"))
    assert ip["pageview_count"] == 4
    assert ip["session_ids"] == ["s1", "s4"]
    assert fake_redis.load(ip_index_key(IPV6))["session_ids"] == ["s2"]

    pricing = fake_redis.load(landing_index_key("/pricing"))
    assert pricing["pageview_count"] == 3
    assert pricing["sources"] == ["facebook", "google", "newsletter"]

    assert fake_redis.load(source_index_key("facebook"))["pageview_count"] == 2
    assert fake_redis.load(source_index_key("direct")) is None


@pytest.mark.asyncio
async def test_chunk_boundaries_do_not_change_index_content(kv, fake_redis, settings):
    from journeyx.services.kv_client import KVClient

    _seed(fake_redis)
    await _run_to_completion(PageviewIndexJob.from_settings(kv, settings), max_chunks=1)

    single_pass_store = type(fake_redis)()
    _seed(single_pass_store)
    single_pass_settings = settings.model_copy(update={"SCAN_COUNT": 1000})
    single_pass_kv = KVClient(single_pass_store, default_timeout=1.0)
    summaries = await _run_to_completion(PageviewIndexJob.from_settings(single_pass_kv, single_pass_settings))

    assert len(summaries) == 1
    assert _index_snapshot(fake_redis) == _index_snapshot(single_pass_store)


@pytest.mark.asyncio
async def test_slices_resume_from_stored_checkpoint(kv, fake_redis, settings):
    _seed(fake_redis)
    job = PageviewIndexJob.from_settings(kv, settings)

    first = await job.run_slice(Deadline(30.0, 3.0), max_chunks=1)

    assert first["is_complete"] is False
    assert first["chunks_this_run"] == 1
    stored = fake_redis.load(PAGEVIEW_INDEX_PROGRESS_KEY)
    assert stored["state"] == "in_progress"
    assert stored["resume_token"]["kind"] == "cursor"
    assert first["next_resume_token"] == stored["resume_token"]

    rest = await _run_to_completion(job)
    assert rest[-1]["total_progress"]["processed"] == len(PAGEVIEWS)

    done = await job.run_slice(Deadline(30.0, 3.0))
    assert done["is_complete"] is True
    assert done["processed_this_run"] == 0
    assert done["next_resume_token"] is None


@pytest.mark.asyncio
async def test_pageview_cap_keeps_newest_and_exact_count(kv, fake_redis, settings):
    _seed(fake_redis)
    capped = settings.model_copy(update={"INDEX_MAX_PAGEVIEWS": 2})

    await _run_to_completion(PageviewIndexJob.from_settings(kv, capped))

    ip = fake_redis.load(ip_index_key("203.0.113.7"))
    assert ip["pageview_count"] == 4
    assert [pv["session_id"] for pv in ip["pageviews"]] == ["s4", "s4"]
    assert ip["earliest_timestamp"] == "2025-06-16T18:53:20.000Z"


@pytest.mark.asyncio
async def test_failing_group_is_counted_not_fatal(kv, fake_redis, settings):
    _seed(fake_redis)
    fake_redis.fail_reads.add(session_index_key("s2"))

    summaries = await _run_to_completion(PageviewIndexJob.from_settings(kv, settings))

    assert summaries[-1]["total_progress"]["failed"] >= 1
    assert fake_redis.load(session_index_key("s2")) is None
    assert fake_redis.load(session_index_key("s1")) is not None


def test_duplicate_pageviews_merge_once():
    raw = make_pageview("s1", "1750100000000")
    pageviews = [Touchpoint.from_dict(raw), Touchpoint.from_dict(dict(raw, url="/other"))]

    acc = accumulate_pageviews(pageviews)

    assert len(acc.sessions["s1"].pageviews) == 1
    record = build_index_record(acc.sessions["s1"], max_pageviews=50)
    assert record["pageview_count"] == 1


def test_rebuilding_same_group_is_idempotent():
    pv = Touchpoint.from_dict(make_pageview("s1", "1750100000000"))
    group = IndexGroup(index_type="session", group_key="s1")
    group.add(pv)

    first = build_index_record(group, max_pageviews=50)
    again = build_index_record(group, max_pageviews=50, existing=first)

    assert again["pageview_count"] == 1
    assert again["pageviews"] == first["pageviews"]
    assert again["created_at"] == first["created_at"]


def _session_group(*epoch_ms):
    group = IndexGroup(index_type="session", group_key="s1")
    for ms in epoch_ms:
        group.add(Touchpoint.from_dict(make_pageview("s1", str(ms))))
    return group


def test_remerging_capped_group_keeps_count():
    group = _session_group(1750100000000, 1750100060000, 1750100120000)

    first = build_index_record(group, max_pageviews=2)
    again = build_index_record(group, max_pageviews=2, existing=first)

    assert first["pageview_count"] == 3
    assert again["pageview_count"] == 3
    oldest = Touchpoint.from_dict(make_pageview("s1", "1750100000000"))
    assert again["evicted_ids"] == [identity_token(oldest.identity)]
    assert [pv["timestamp"] for pv in again["pageviews"]] == [pv["timestamp"] for pv in first["pageviews"]]


def test_new_pageview_after_eviction_is_counted_once():
    first = build_index_record(_session_group(1750100000000, 1750100060000, 1750100120000), max_pageviews=2)

    newer = build_index_record(_session_group(1750100180000), max_pageviews=2, existing=first)
    replayed = build_index_record(_session_group(1750100000000, 1750100180000), max_pageviews=2, existing=newer)

    assert newer["pageview_count"] == 4
    assert replayed["pageview_count"] == 4
    assert len(replayed["evicted_ids"]) == 2


def test_record_without_eviction_tracking_keeps_its_count():
    legacy = build_index_record(_session_group(1750100060000, 1750100120000), max_pageviews=2)
    legacy.pop("evicted_ids")
    legacy.pop("evicted_untracked")
    legacy["pageview_count"] = 5

    again = build_index_record(_session_group(1750100060000, 1750100120000), max_pageviews=2, existing=legacy)

    assert again["pageview_count"] == 5
    assert again["evicted_untracked"] == 3


@pytest.mark.asyncio
async def test_replayed_chunks_after_lost_checkpoint_match_single_pass(kv, fake_redis, settings):
    from journeyx.services.kv_client import KVClient

    capped = settings.model_copy(update={"INDEX_MAX_PAGEVIEWS": 2, "INDEX_CHECKPOINT_EVERY_CHUNKS": 10})
    _seed(fake_redis)
    job = PageviewIndexJob.from_settings(kv, capped)

    await job.run_slice(Deadline(30.0, 3.0), max_chunks=1)
    checkpoint_before_kill = fake_redis.load(PAGEVIEW_INDEX_PROGRESS_KEY)
    await job.run_slice(Deadline(30.0, 3.0), max_chunks=2)
    # The second slice's writes landed but its checkpoint did not
    fake_redis.seed(PAGEVIEW_INDEX_PROGRESS_KEY, checkpoint_before_kill)
    await _run_to_completion(job)

    single_pass_store = type(fake_redis)()
    _seed(single_pass_store)
    single_pass_kv = KVClient(single_pass_store, default_timeout=1.0)
    await _run_to_completion(PageviewIndexJob.from_settings(single_pass_kv, capped.model_copy(update={"SCAN_COUNT": 1000})))

    assert _index_snapshot(fake_redis) == _index_snapshot(single_pass_store)
    assert fake_redis.load(ip_index_key("203.0.113.7"))["pageview_count"] == 4
