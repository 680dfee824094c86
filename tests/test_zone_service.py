import json

import pytest

from feed_fakes import FakeSnapshotFeed, FakeStopEventFeed, stop_row
from hexgrid.indexer import HexIndexer
from risk.models import StopEvent
from risk.services.clustering import cluster_stop_events
from risk.services.zone_service import (
    ClusteringRegime,
    RiskZoneService,
    build_zone_snapshot,
    risk_zone_from_row,
)

OPEN_SQUARE = [[28.59, -12.91], [28.61, -12.91], [28.61, -12.89], [28.59, -12.89]]


def _zone_row(cluster_id: int, risk_score: float, version: int, **extra) -> dict:
    row = {
        "cluster_id": cluster_id,
        "risk_score": risk_score,
        "incident_count": 4,
        "hex_count": 2,
        "polygon_geojson": json.dumps({"type": "Polygon", "coordinates": [OPEN_SQUARE]}),
        "is_night_dominant": "true",
        "reason_distribution": {"LONG_STOP": 3, "NIGHT_STOP": 1},
        "version": version,
    }
    row.update(extra)
    return row


def test_risk_zone_from_row_closes_polygon_and_derives_center() -> None:
    zone = risk_zone_from_row(_zone_row(5, 72.5, 1), version=1)

    assert zone is not None
    ring = zone.polygon["coordinates"][0]
    assert ring[0] == ring[-1]
    assert zone.risk_score == 73
    assert zone.center_lat == pytest.approx(-12.90)
    assert zone.center_lng == pytest.approx(28.60)
    assert zone.is_night_dominant
    assert zone.primary_reason == "LONG_STOP"


def test_risk_zone_from_row_without_polygon_is_skipped() -> None:
    assert risk_zone_from_row({"cluster_id": 1, "risk_score": 10}) is None
    assert risk_zone_from_row({"cluster_id": 1, "polygon_geojson": "{broken"}) is None


def test_build_zone_snapshot_matches_dynamic_clustering(indexer: HexIndexer) -> None:
    events = [
        StopEvent.model_validate(stop_row("a", -12.900, 28.600, risk_score=80)),
        StopEvent.model_validate(stop_row("b", -12.901, 28.601, risk_score=60)),
    ]
    snapshot = build_zone_snapshot(events, version=9, indexer=indexer)
    dynamic = cluster_stop_events(events, indexer=indexer)

    assert [z.member_ids for z in snapshot] == [z.member_ids for z in dynamic]
    assert [z.polygon for z in snapshot] == [z.polygon for z in dynamic]
    assert snapshot[0].version == 9
    assert dynamic[0].version is None


@pytest.mark.asyncio
async def test_static_regime_reads_only_latest_version(indexer: HexIndexer) -> None:
    snapshot = FakeSnapshotFeed(
        versions={
            1: [_zone_row(1, 90, 1)],
            2: [_zone_row(2, 40, 2), _zone_row(3, 65, 2), _zone_row(4, 99, 1)],
        },
        latest=2,
    )
    stops = FakeStopEventFeed(rows=[stop_row("a", -12.9, 28.6)])
    service = RiskZoneService(stops, snapshot, indexer=indexer)

    result = await service.get_risk_zones()

    assert result.regime is ClusteringRegime.STATIC
    assert result.version == 2
    assert [z.cluster_id for z in result.zones] == [3, 2]
    assert all(z.version == 2 for z in result.zones)
    assert stops.queries == []


@pytest.mark.asyncio
async def test_static_regime_without_version_is_empty(indexer: HexIndexer) -> None:
    service = RiskZoneService(FakeStopEventFeed(), FakeSnapshotFeed(), indexer=indexer)

    result = await service.get_risk_zones()

    assert result.regime is ClusteringRegime.STATIC
    assert result.zones == []
    assert result.version is None


@pytest.mark.asyncio
async def test_reason_filter_switches_to_dynamic_reclustering(indexer: HexIndexer) -> None:
    snapshot = FakeSnapshotFeed(versions={1: [_zone_row(1, 90, 1)]}, latest=1)
    stops = FakeStopEventFeed(
        rows=[
            stop_row("a", -12.900, 28.600, risk_score=80, severity="MINOR", reasons=["LONG_STOP"]),
            stop_row("b", -12.901, 28.601, risk_score=60, reasons=["LONG_STOP_X2"]),
            stop_row("c", -12.902, 28.602, risk_score=10, reasons=["NIGHT_STOP"]),
            stop_row("d", -12.920, 28.700, risk_score=40, reasons=["LONG_STOP"]),
        ],
    )
    service = RiskZoneService(stops, snapshot, indexer=indexer)

    result = await service.get_risk_zones(reason_filter=["LONG_STOP"], tracker_id=1)

    assert result.regime is ClusteringRegime.DYNAMIC
    assert stops.queries[0].min_severity == "MINOR"
    assert stops.queries[0].tracker_id == 1
    assert snapshot.page_calls == 0
    assert len(result.zones) == 1
    assert set(result.zones[0].member_ids) == {"a", "b"}
    assert result.zones[0].risk_score == 70
    assert result.zones[0].reason_distribution == {"LONG_STOP": 3}
    assert {s.stop_id for s in result.stops} == {"a", "b", "d"}


def test_risk_zone_row_folds_suffixed_reason_keys() -> None:
    zone = risk_zone_from_row(
        _zone_row(
            2,
            50,
            1,
            reason_distribution={
                "LONG_STOP": 4,
                "STOP_IN_RISK_ZONE_X3": 1,
                "STOP_IN_RISK_ZONE": 2,
            },
            primary_reason="LONG_STOP",
        ),
    )
    assert zone is not None
    assert zone.reason_distribution == {"LONG_STOP": 4, "STOP_IN_RISK_ZONE": 5}
    assert zone.primary_reason == "STOP_IN_RISK_ZONE"


def test_single_member_zone_row_is_skipped() -> None:
    assert risk_zone_from_row(_zone_row(1, 90, 1, incident_count=1, member_ids=["a"])) is None
    assert risk_zone_from_row(_zone_row(1, 90, 1, incident_count=None, member_ids=["a"])) is None
