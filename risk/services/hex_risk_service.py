"""Hex-grid risk aggregation and the hex layer read path."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

import config
from core.casting import safe_float, safe_int
from core.exceptions import InvalidCoordinateError, VersionUnavailableError
from core.math_utils import clamp, round_half_up
from core.spatial import GeometryService, is_closed_ring
from feeds.loader import load_latest_snapshot, load_stop_events
from feeds.params import StopEventQuery
from hexgrid.indexer import HexIndexer
from risk.models import HexCell, SeverityLevel, StopEvent
from risk.reasons import (
    aggregate_reasons,
    fold_reason_distribution,
    matches_reason_filter,
    normalize_reason_filter,
    primary_reason,
    resolve_primary_reason,
)

if TYPE_CHECKING:
    from core.cache import SnapshotCache
    from core.generation import GenerationToken
    from feeds.interfaces import SnapshotFeed, StopEventFeed

logger = logging.getLogger(__name__)

HEX_SNAPSHOT_DATASET = "risk_zone_hexes"


def mean_risk_score(events: Sequence[StopEvent]) -> int:
    """Rounded mean member risk score, clamped to [0, 100]."""
    if not events:
        return 0
    mean = sum(e.risk_score for e in events) / len(events)
    return int(clamp(round_half_up(mean), 0, 100))


def group_events_by_cell(
    events: Iterable[StopEvent],
    indexer: HexIndexer,
) -> dict[str, list[StopEvent]]:
    """Bucket events by H3 cell, dropping events with unusable coordinates."""
    grouped: dict[str, list[StopEvent]] = defaultdict(list)
    for event in events:
        try:
            cell = indexer.resolve_cell(event.h3_index, event.lat, event.lng)
        except InvalidCoordinateError as exc:
            logger.debug("Dropping stop %s: %s", event.stop_id, exc.message)
            continue
        grouped[cell].append(event)
    return grouped


def build_hex_cell(
    cell_id: str,
    members: Sequence[StopEvent],
    indexer: HexIndexer,
    *,
    version: int | None = None,
) -> HexCell:
    center_lat, center_lng = indexer.center(cell_id)
    night = sum(1 for e in members if e.is_night_stop)
    reasons = aggregate_reasons(e.risk_reasons for e in members)
    return HexCell(
        h3_index=cell_id,
        h3_resolution=indexer.resolution,
        center_lat=center_lat,
        center_lng=center_lng,
        boundary=indexer.boundary(cell_id),
        risk_score=mean_risk_score(members),
        incident_count=len(members),
        critical_count=sum(1 for e in members if e.is_critical),
        warning_count=sum(1 for e in members if e.is_warning),
        night_incident_count=night,
        day_incident_count=len(members) - night,
        reason_distribution=reasons,
        primary_reason=primary_reason(reasons),
        version=version,
    )


def aggregate_hex_cells(
    events: Iterable[StopEvent],
    indexer: HexIndexer | None = None,
    *,
    version: int | None = None,
) -> list[HexCell]:
    """
    Aggregate stop events into risk-scored hex cells.

    Cells are ordered by descending risk score, then by cell id, so the
    output is reproducible for the same input.
    """
    indexer = indexer or HexIndexer()
    grouped = group_events_by_cell(events, indexer)
    cells = [
        build_hex_cell(cell_id, members, indexer, version=version)
        for cell_id, members in grouped.items()
    ]
    cells.sort(key=lambda c: (-c.risk_score, c.h3_index))
    return cells


def hex_cell_from_row(
    row: dict[str, Any],
    indexer: HexIndexer,
    *,
    version: int | None = None,
) -> HexCell | None:
    """Hydrate a snapshot row, filling center/boundary from the cell id when absent."""
    cell_id = row.get("h3_index")
    if not indexer.is_valid_cell(cell_id):
        logger.debug("Skipping snapshot row with invalid cell id %r", cell_id)
        return None

    boundary: list[list[float]] | None = None
    geojson = GeometryService.parse_geometry(
        row.get("boundary_geojson"),
        allowed_types=("Polygon",),
    )
    if geojson is not None:
        boundary = GeometryService.close_ring(geojson["coordinates"][0])
    if boundary is None or not is_closed_ring(boundary):
        boundary = indexer.boundary(cell_id)

    center_lat = row.get("center_lat")
    center_lng = row.get("center_lng")
    if center_lat is None or center_lng is None:
        center_lat, center_lng = indexer.center(cell_id)

    reasons_raw = row.get("reason_distribution")
    reasons: dict[str, int] = {}
    if isinstance(reasons_raw, dict):
        reasons = fold_reason_distribution(reasons_raw)
    if version is None and row.get("version") is not None:
        version = safe_int(row.get("version"))
    incident_count = safe_int(row.get("incident_count"))
    night = safe_int(row.get("night_incident_count"))
    try:
        return HexCell(
            h3_index=cell_id,
            h3_resolution=safe_int(row.get("h3_resolution"), indexer.resolution),
            center_lat=safe_float(center_lat),
            center_lng=safe_float(center_lng),
            boundary=boundary,
            risk_score=int(clamp(round_half_up(safe_float(row.get("risk_score"))), 0, 100)),
            incident_count=incident_count,
            critical_count=safe_int(row.get("critical_count")),
            warning_count=safe_int(row.get("warning_count")),
            night_incident_count=night,
            day_incident_count=safe_int(
                row.get("day_incident_count"),
                max(0, incident_count - night),
            ),
            reason_distribution=reasons,
            primary_reason=resolve_primary_reason(reasons, row.get("primary_reason")),
            version=version,
        )
    except ValidationError as exc:
        logger.debug("Skipping snapshot row %s: %s", cell_id, exc)
        return None


def filter_cells_by_reason(
    cells: Iterable[HexCell],
    reason_filter: Sequence[str] | None,
) -> list[HexCell]:
    """Keep cells whose reason tally contains any filter code (OR + prefix)."""
    if not reason_filter:
        return list(cells)
    return [
        cell
        for cell in cells
        if cell.reason_distribution
        and matches_reason_filter(cell.reason_distribution.keys(), reason_filter)
    ]


@dataclass
class HexGridResult:
    version: int | None = None
    cells: list[HexCell] = field(default_factory=list)
    stops: list[StopEvent] = field(default_factory=list)
    truncated: bool = False


class HexRiskService:
    """Serves the hex-grid layer from the latest snapshot plus matching stops."""

    def __init__(
        self,
        stop_feed: StopEventFeed,
        snapshot_feed: SnapshotFeed,
        *,
        indexer: HexIndexer | None = None,
        cache: SnapshotCache | None = None,
    ) -> None:
        self._stop_feed = stop_feed
        self._snapshot_feed = snapshot_feed
        self._indexer = indexer or HexIndexer()
        self._cache = cache

    async def load_snapshot_cells(
        self,
        *,
        token: GenerationToken | None = None,
    ) -> tuple[int | None, list[HexCell], bool]:
        """Return (version, cells, truncated) for the newest snapshot."""
        try:
            fetched = await load_latest_snapshot(
                self._snapshot_feed,
                HEX_SNAPSHOT_DATASET,
                cache=self._cache,
                max_pages=config.HEX_SNAPSHOT_MAX_PAGES,
                token=token,
            )
        except VersionUnavailableError as exc:
            logger.info("%s; serving empty hex grid", exc.message)
            return None, [], False

        cells = []
        for row in fetched.rows:
            if safe_float(row.get("risk_score")) < 0:
                continue
            cell = hex_cell_from_row(row, self._indexer, version=fetched.version)
            if cell is not None:
                cells.append(cell)
        return fetched.version, cells, fetched.truncated

    async def get_hex_grid(
        self,
        *,
        reason_filter: Sequence[str] | None = None,
        tracker_id: int | None = None,
        days_back: int = config.STOP_EVENT_DAYS_BACK,
        token: GenerationToken | None = None,
    ) -> HexGridResult:
        """
        Build the hex layer for the active filters.

        With a reason filter, stops are read at MINOR+ so every matching
        incident is included; otherwise only WARNING+ stops are returned.
        """
        reasons = normalize_reason_filter(reason_filter)
        version, cells, cells_truncated = await self.load_snapshot_cells(token=token)

        query = StopEventQuery(
            min_severity=(SeverityLevel.MINOR if reasons else SeverityLevel.WARNING).value,
            days_back=days_back,
            tracker_id=tracker_id,
            risk_reasons=reasons or None,
        )
        batch = await load_stop_events(self._stop_feed, query, token=token)

        if token is not None:
            token.ensure_current()

        return HexGridResult(
            version=version,
            cells=filter_cells_by_reason(cells, reasons),
            stops=batch.events,
            truncated=cells_truncated or batch.truncated,
        )
