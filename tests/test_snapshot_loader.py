import asyncio

import pytest

from core.cache import SnapshotCache
from core.exceptions import VersionUnavailableError
from feed_fakes import FakeReferenceFeed, FakeSnapshotFeed, FakeStopEventFeed, stop_row
from feeds.loader import (
    load_latest_snapshot,
    load_reference_data,
    load_stop_events,
    parse_stop_events,
)
from feeds.params import StopEventQuery


@pytest.mark.asyncio
async def test_latest_snapshot_never_mixes_versions() -> None:
    feed = FakeSnapshotFeed(
        versions={
            1: [{"h3_index": "a", "version": 1}, {"h3_index": "b", "version": 1}],
            2: [{"h3_index": "c", "version": 2}, {"h3_index": "d", "version": 1}],
        },
        latest=2,
    )

    result = await load_latest_snapshot(feed, "hexes")

    assert result.version == 2
    assert [row["h3_index"] for row in result.rows] == ["c"]


@pytest.mark.asyncio
async def test_missing_version_raises() -> None:
    with pytest.raises(VersionUnavailableError):
        await load_latest_snapshot(FakeSnapshotFeed(), "hexes")


@pytest.mark.asyncio
async def test_cache_serves_repeat_reads_until_a_newer_version() -> None:
    cache = SnapshotCache()
    feed = FakeSnapshotFeed(
        versions={1: [{"h3_index": "a"}], 2: [{"h3_index": "b"}]},
        latest=1,
    )

    first = await load_latest_snapshot(feed, "hexes", cache=cache)
    second = await load_latest_snapshot(feed, "hexes", cache=cache)
    assert first is second
    assert feed.page_calls == 1

    feed.latest = 2
    third = await load_latest_snapshot(feed, "hexes", cache=cache)
    assert [row["h3_index"] for row in third.rows] == ["b"]
    assert feed.page_calls == 2
    assert cache.get("hexes", 1) is None
    assert cache.latest_version("hexes") == 2


def test_cache_ignores_writes_for_older_versions() -> None:
    cache = SnapshotCache()
    cache.put("zones", 3, "v3")
    cache.put("zones", 2, "v2")
    assert cache.get("zones", 2) is None
    assert cache.get("zones", 3) == "v3"
    assert not cache.observe("zones", 3)
    assert cache.observe("zones", 4)
    assert cache.get("zones", 3) is None
    cache.clear()
    assert cache.latest_version("zones") is None


@pytest.mark.asyncio
async def test_concurrent_loads_share_one_fetch() -> None:
    cache = SnapshotCache()
    calls = 0

    async def loader() -> str:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0)
        return "rows"

    results = await asyncio.gather(*(cache.get_or_load("hexes", 7, loader) for _ in range(5)))

    assert results == ["rows"] * 5
    assert calls == 1


def test_parse_stop_events_drops_bad_rows_and_filters() -> None:
    rows = [
        stop_row("ok", -12.9, 28.6, severity="WARNING", reasons=["LONG_STOP"]),
        stop_row("minor", -12.9, 28.6, severity="MINOR", reasons=["LONG_STOP"]),
        stop_row("other-reason", -12.9, 28.6, reasons=["NIGHT_STOP"]),
        stop_row("off-map", 123.0, 28.6),
        {"stop_id": "no-coords", "tracker_id": 1},
    ]
    query = StopEventQuery(min_severity="WARNING", risk_reasons=["LONG"])

    events, dropped = parse_stop_events(rows, query)

    assert [e.stop_id for e in events] == ["ok"]
    assert dropped == 2


@pytest.mark.asyncio
async def test_load_stop_events_passes_query_to_feed() -> None:
    feed = FakeStopEventFeed(rows=[stop_row(str(i), -12.9, 28.6) for i in range(5)])
    query = StopEventQuery(tracker_id=4, days_back=30)

    batch = await load_stop_events(feed, query, page_size=2)

    assert len(batch.events) == 5
    assert not batch.truncated
    assert feed.queries == [query, query, query]


@pytest.mark.asyncio
async def test_reference_rows_pass_through_untouched() -> None:
    rows = [{"zone": "Depot", "polygon": None}, {"deviation": 3.2}]

    result = await load_reference_data(FakeReferenceFeed(rows=rows), "safe_zones")

    assert result.rows == rows
