import json

import pytest

from core.spatial import is_closed_ring
from hexgrid.indexer import HexIndexer
from risk.models import StopEvent
from risk.services.hex_risk_service import (
    HexRiskService,
    aggregate_hex_cells,
    filter_cells_by_reason,
    hex_cell_from_row,
    mean_risk_score,
)
from feed_fakes import FakeSnapshotFeed, FakeStopEventFeed, stop_row


def _event(stop_id: str, lat: float, lng: float, **kwargs) -> StopEvent:
    return StopEvent.model_validate(stop_row(stop_id, lat, lng, **kwargs))


def test_mean_risk_score_rounds_half_up() -> None:
    events = [_event("a", -12.9, 28.6, risk_score=72), _event("b", -12.9, 28.6, risk_score=73)]
    assert mean_risk_score(events) == 73
    assert mean_risk_score([]) == 0


def test_aggregate_hex_cells_counts_and_reasons(indexer: HexIndexer) -> None:
    events = [
        _event(
            "a",
            -12.9,
            28.6,
            risk_score=90,
            severity="CRITICAL",
            reasons=["STOP_IN_RISK_ZONE_X2"],
            is_night=True,
        ),
        _event("b", -12.9, 28.6, risk_score=50, reasons=["LONG_STOP", "STOP_IN_RISK_ZONE"]),
        _event("c", -15.4, 28.3, risk_score=20, severity="MINOR"),
        _event("bad", 95.0, 28.3, risk_score=100),
    ]

    cells = aggregate_hex_cells(events, indexer, version=4)

    assert len(cells) == 2
    top, bottom = cells
    assert top.risk_score == 70
    assert top.incident_count == 2
    assert top.critical_count == 1
    assert top.warning_count == 1
    assert top.night_incident_count == 1
    assert top.day_incident_count == 1
    assert top.reason_distribution == {"STOP_IN_RISK_ZONE": 3, "LONG_STOP": 1}
    assert top.primary_reason == "STOP_IN_RISK_ZONE"
    assert top.version == 4
    assert is_closed_ring(top.boundary)
    assert bottom.risk_score == 20
    assert bottom.primary_reason == "UNKNOWN"


def test_hex_cell_from_row_hydrates_missing_geometry(indexer: HexIndexer) -> None:
    cell_id = indexer.index(-12.9, 28.6)
    cell = hex_cell_from_row(
        {"h3_index": cell_id, "risk_score": 64.5, "incident_count": 3, "night_incident_count": 1},
        indexer,
        version=2,
    )
    assert cell is not None
    assert cell.risk_score == 65
    assert cell.day_incident_count == 2
    assert cell.boundary == indexer.boundary(cell_id)
    assert (cell.center_lat, cell.center_lng) == indexer.center(cell_id)


def test_hex_cell_from_row_closes_open_boundary(indexer: HexIndexer) -> None:
    cell_id = indexer.index(-12.9, 28.6)
    open_ring = indexer.boundary(cell_id)[:-1]
    row = {
        "h3_index": cell_id,
        "risk_score": 10,
        "boundary_geojson": json.dumps({"type": "Polygon", "coordinates": [open_ring]}),
    }
    cell = hex_cell_from_row(row, indexer)
    assert cell is not None
    assert is_closed_ring(cell.boundary)


def test_hex_cell_from_row_rejects_bad_cell(indexer: HexIndexer) -> None:
    assert hex_cell_from_row({"h3_index": "zzz", "risk_score": 10}, indexer) is None


def test_filter_cells_by_reason_prefix(indexer: HexIndexer) -> None:
    cells = aggregate_hex_cells(
        [
            _event("a", -12.9, 28.6, reasons=["STOP_IN_RISK_ZONE_X2"]),
            _event("b", -15.4, 28.3, reasons=["LONG_STOP"]),
            _event("c", -14.0, 27.0),
        ],
        indexer,
    )
    kept = filter_cells_by_reason(cells, ["STOP_IN"])
    assert [c.reason_distribution for c in kept] == [{"STOP_IN_RISK_ZONE": 2}]
    assert len(filter_cells_by_reason(cells, [])) == 3


@pytest.mark.asyncio
async def test_get_hex_grid_reads_latest_snapshot_and_warning_stops(indexer: HexIndexer) -> None:
    cell_a = indexer.index(-12.9, 28.6)
    cell_b = indexer.index(-15.4, 28.3)
    snapshot = FakeSnapshotFeed(
        versions={
            1: [{"h3_index": cell_a, "risk_score": 99, "version": 1}],
            2: [
                {"h3_index": cell_a, "risk_score": 40, "version": 2},
                {"h3_index": cell_b, "risk_score": -1, "version": 2},
            ],
        },
        latest=2,
    )
    stops = FakeStopEventFeed(
        rows=[
            stop_row("s1", -12.9, 28.6, severity="WARNING"),
            stop_row("s2", -12.9, 28.6, severity="MINOR"),
        ],
    )
    service = HexRiskService(stops, snapshot, indexer=indexer)

    result = await service.get_hex_grid()

    assert result.version == 2
    assert [(c.h3_index, c.risk_score) for c in result.cells] == [(cell_a, 40)]
    assert [s.stop_id for s in result.stops] == ["s1"]
    assert stops.queries[0].min_severity == "WARNING"
    assert not result.truncated


@pytest.mark.asyncio
async def test_get_hex_grid_reason_filter_widens_severity(indexer: HexIndexer) -> None:
    cell_a = indexer.index(-12.9, 28.6)
    cell_b = indexer.index(-15.4, 28.3)
    snapshot = FakeSnapshotFeed(
        versions={
            3: [
                {"h3_index": cell_a, "risk_score": 60, "reason_distribution": {"LONG_STOP": 2}},
                {"h3_index": cell_b, "risk_score": 30, "reason_distribution": {"NIGHT_STOP": 1}},
            ],
        },
        latest=3,
    )
    stops = FakeStopEventFeed(
        rows=[
            stop_row("s1", -12.9, 28.6, severity="MINOR", reasons=["LONG_STOP_X2"]),
            stop_row("s2", -12.9, 28.6, severity="CRITICAL", reasons=["NIGHT_STOP"]),
        ],
    )
    service = HexRiskService(stops, snapshot, indexer=indexer)

    result = await service.get_hex_grid(reason_filter=["LONG_STOP"])

    assert stops.queries[0].min_severity == "MINOR"
    assert stops.queries[0].risk_reasons == ("LONG_STOP",)
    assert [c.h3_index for c in result.cells] == [cell_a]
    assert [s.stop_id for s in result.stops] == ["s1"]


@pytest.mark.asyncio
async def test_get_hex_grid_without_published_version_is_empty(indexer: HexIndexer) -> None:
    service = HexRiskService(FakeStopEventFeed(), FakeSnapshotFeed(), indexer=indexer)

    result = await service.get_hex_grid()

    assert result.version is None
    assert result.cells == []


def test_hex_cell_from_row_folds_reason_multiplicities(indexer: HexIndexer) -> None:
    row = {
        "h3_index": indexer.index(-12.9, 28.6),
        "risk_score": 55,
        "reason_distribution": {"STOP_IN_RISK_ZONE_X3": 1, "STOP_IN_RISK_ZONE": 2},
    }
    cell = hex_cell_from_row(row, indexer)

    assert cell is not None
    assert cell.reason_distribution == {"STOP_IN_RISK_ZONE": 5}
    assert cell.primary_reason == "STOP_IN_RISK_ZONE"
