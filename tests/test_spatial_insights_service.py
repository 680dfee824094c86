from typing import Any

import pytest

from analytics.models import InsightLayer, LayerStatus, SpatialInsightsRequest
from analytics.services.spatial_insights_service import SpatialInsightsService
from bottlenecks.models import BottleneckMode
from core.exceptions import StaleResultError
from feed_fakes import (
    FakeCorridorFeed,
    FakeReferenceFeed,
    FakeSnapshotFeed,
    FakeStopEventFeed,
    FakeStopPatternFeed,
    stop_row,
)
from hexgrid.indexer import HexIndexer


def _service(indexer: HexIndexer, **overrides: Any) -> SpatialInsightsService:
    cell = indexer.index(-12.9, 28.6)
    feeds: dict[str, Any] = {
        "stop_feed": FakeStopEventFeed(
            rows=[
                stop_row("a", -12.900, 28.600, risk_score=80, reasons=["LONG_STOP"]),
                stop_row("b", -12.901, 28.601, risk_score=60, reasons=["LONG_STOP_X2"]),
                stop_row("c", -12.920, 28.700, risk_score=40, reasons=["LONG_STOP"]),
            ],
        ),
        "hex_snapshot_feed": FakeSnapshotFeed(
            versions={5: [{"h3_index": cell, "risk_score": 70, "incident_count": 2}]},
            latest=5,
        ),
        "zone_snapshot_feed": FakeSnapshotFeed(),
        "corridor_feed": FakeCorridorFeed(rows=[{"h3_index": cell, "visit_count": 4.2}]),
        "stop_pattern_feed": FakeStopPatternFeed(
            rows=[
                {
                    "h3_index": cell,
                    "stop_count": 3,
                    "visit_count": 2,
                    "unique_trackers": 1,
                    "total_dwell_time_hours": 3.0,
                    "engine_on_hours": 1.0,
                    "engine_off_hours": 2.0,
                },
            ],
        ),
    }
    feeds.update(overrides)
    return SpatialInsightsService(indexer=indexer, **feeds)


@pytest.mark.asyncio
async def test_all_layers_are_built(indexer: HexIndexer) -> None:
    service = _service(indexer, reference_feeds={"safe_zones": FakeReferenceFeed(rows=[{"n": 1}])})

    response = await service.get_insights(
        SpatialInsightsRequest(bottleneck_mode=BottleneckMode.EFFICIENCY),
    )

    assert response.failed_layers == []
    assert set(response.layers) == {"hexes", "zones", "corridors", "bottlenecks", "safe_zones"}
    assert response.summary["hex_count"] == 1
    assert response.summary["zone_regime"] == "static"
    assert response.summary["zones"]["zone_count"] == 0
    assert response.layers["safe_zones"].data.rows == [{"n": 1}]

    bottlenecks = response.feature_collection("bottlenecks")
    assert bottlenecks["features"][0]["properties"]["intensity"] == pytest.approx(1.0)
    corridors = response.feature_collection("corridors")
    ring = corridors["features"][0]["geometry"]["coordinates"][0]
    assert ring[0] == ring[-1]


@pytest.mark.asyncio
async def test_reason_filter_reclusters_zones(indexer: HexIndexer) -> None:
    service = _service(indexer)

    response = await service.get_insights(
        SpatialInsightsRequest(
            layers=[InsightLayer.ZONES],
            reason_filter=["LONG_STOP"],
        ),
    )

    zones = response.layers["zones"]
    assert zones.ok
    assert zones.data.regime.value == "dynamic"
    assert [z.risk_score for z in zones.data.zones] == [70]
    features = response.feature_collection("zones")["features"]
    assert features[0]["geometry"]["type"] == "Polygon"
    assert features[0]["properties"]["incident_count"] == 2


@pytest.mark.asyncio
async def test_one_failing_feed_only_fails_its_layer(indexer: HexIndexer) -> None:
    service = _service(indexer, corridor_feed=FakeCorridorFeed(error=RuntimeError("rpc down")))

    response = await service.get_insights(SpatialInsightsRequest())

    assert response.failed_layers == ["corridors"]
    assert response.layers["corridors"].status is LayerStatus.FAILED
    assert "rpc down" in response.layers["corridors"].error
    assert response.layers["hexes"].ok
    assert response.layers["bottlenecks"].ok
    assert response.feature_collection("corridors")["features"] == []


@pytest.mark.asyncio
async def test_superseded_request_is_discarded(indexer: HexIndexer) -> None:
    holder: dict[str, SpatialInsightsService] = {}

    class SwitchingStopFeed(FakeStopEventFeed):
        async def fetch_stop_events(self, query, *, limit, offset):
            holder["service"].tracker.activate({"tracker_id": 99})
            return await super().fetch_stop_events(query, limit=limit, offset=offset)

    service = _service(indexer, stop_feed=SwitchingStopFeed(rows=[stop_row("a", -12.9, 28.6)]))
    holder["service"] = service

    with pytest.raises(StaleResultError):
        await service.get_insights(SpatialInsightsRequest(layers=[InsightLayer.HEXES]))


@pytest.mark.asyncio
async def test_generation_advances_with_filters(indexer: HexIndexer) -> None:
    service = _service(indexer)

    first = await service.get_insights(SpatialInsightsRequest(layers=[InsightLayer.HEXES]))
    same = await service.get_insights(SpatialInsightsRequest(layers=[InsightLayer.CORRIDORS]))
    changed = await service.get_insights(
        SpatialInsightsRequest(layers=[InsightLayer.HEXES], tracker_id=3),
    )

    assert first.generation == same.generation == 1
    assert changed.generation == 2
