"""
Dwell aggregation per H3 cell and bottleneck heat weighting.

A *visit* is a run of stops by one tracker inside one cell whose gaps do not
exceed ``VISIT_MERGE_GAP_MINUTES``. Engine-on time for a stop is its
duration scaled by the share of the stop spent with ignition on.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import config
from bottlenecks.models import BottleneckMode, StopPatternCell
from core.exceptions import InvalidCoordinateError
from core.math_utils import clamp, percentile, safe_divide
from hexgrid.indexer import HexIndexer
from risk.models import StopEvent

logger = logging.getLogger(__name__)


def _sort_time(value: datetime | None) -> datetime:
    if value is None:
        return datetime.min.replace(tzinfo=UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def engine_on_hours(event: StopEvent) -> float:
    share = clamp(event.ignition_on_percent, 0.0, 100.0) / 100.0
    return event.duration_hours * share


def _stop_end(event: StopEvent) -> datetime | None:
    if event.end_time is not None:
        return _sort_time(event.end_time)
    if event.start_time is None:
        return None
    return _sort_time(event.start_time) + timedelta(hours=event.duration_hours)


def count_visits(
    events: Sequence[StopEvent],
    gap_minutes: float = config.VISIT_MERGE_GAP_MINUTES,
) -> int:
    """
    Count visits among stops that share a cell.

    Stops of the same tracker separated by at most ``gap_minutes`` merge into
    one visit. Stops without a start time always count as their own visit.
    """
    max_gap = timedelta(minutes=gap_minutes)
    by_tracker: dict[int, list[StopEvent]] = defaultdict(list)
    visits = 0
    for event in events:
        if event.start_time is None:
            visits += 1
            continue
        by_tracker[event.tracker_id].append(event)

    for tracker_events in by_tracker.values():
        tracker_events.sort(key=lambda e: _sort_time(e.start_time))
        previous_end: datetime | None = None
        for event in tracker_events:
            start = _sort_time(event.start_time)
            if previous_end is None or start - previous_end > max_gap:
                visits += 1
            end = _stop_end(event)
            if end is not None and (previous_end is None or end > previous_end):
                previous_end = end
    return visits


def timeline_trips(
    events: Iterable[StopEvent],
    limit: int = config.TIMELINE_TRIP_LIMIT,
) -> list[dict[str, Any]]:
    """Most recent distinct trips that ended in the cell, newest first."""
    ordered = sorted(events, key=lambda e: _sort_time(e.start_time), reverse=True)
    seen: set[str] = set()
    trips: list[dict[str, Any]] = []
    for event in ordered:
        if not event.trip_id or event.trip_id in seen:
            continue
        seen.add(event.trip_id)
        trips.append(
            {
                "trip_id": event.trip_id,
                "tracker_id": event.tracker_id,
                "tracker_name": event.tracker_name,
                "stop_start": event.start_time.isoformat() if event.start_time else None,
                "duration_hours": event.duration_hours,
            },
        )
        if len(trips) >= limit:
            break
    return trips


def build_stop_pattern_cell(
    h3_index: str,
    *,
    stop_count: int,
    visit_count: int,
    unique_trackers: int,
    avg_duration_hours: float,
    p90_duration_hours: float,
    total_dwell_time_hours: float,
    engine_on_hours: float,
    engine_off_hours: float,
    center_lat: float,
    center_lng: float,
    boundary: list[list[float]],
    avg_risk_score: float = 0.0,
    avg_ignition_on_percent: float = 0.0,
    timeline_trips: list[Any] | None = None,
) -> StopPatternCell:
    """
    Assemble a cell and its derived normalizations.

    Shared by in-process aggregation and feed hydration so both produce the
    same derived values. Every division is zero-guarded.
    """
    return StopPatternCell(
        h3_index=h3_index,
        stop_count=stop_count,
        visit_count=visit_count,
        unique_trackers=unique_trackers,
        avg_duration_hours=avg_duration_hours,
        p90_duration_hours=p90_duration_hours,
        total_dwell_time_hours=total_dwell_time_hours,
        engine_on_hours=engine_on_hours,
        engine_off_hours=engine_off_hours,
        avg_dwell_per_tracker=safe_divide(total_dwell_time_hours, unique_trackers),
        avg_dwell_per_visit=(
            safe_divide(total_dwell_time_hours, visit_count)
            if visit_count > 0
            else avg_duration_hours
        ),
        avg_engine_on_per_tracker=safe_divide(engine_on_hours, unique_trackers),
        avg_engine_off_per_tracker=safe_divide(engine_off_hours, unique_trackers),
        avg_risk_score=avg_risk_score,
        avg_ignition_on_percent=avg_ignition_on_percent,
        timeline_trips=list(timeline_trips or []),
        center_lat=center_lat,
        center_lng=center_lng,
        boundary=boundary,
    )


def aggregate_stop_patterns(
    events: Iterable[StopEvent],
    indexer: HexIndexer | None = None,
    *,
    gap_minutes: float = config.VISIT_MERGE_GAP_MINUTES,
    trip_limit: int = config.TIMELINE_TRIP_LIMIT,
) -> list[StopPatternCell]:
    """Aggregate stops into per-cell dwell statistics, largest total dwell first."""
    indexer = indexer or HexIndexer()
    grouped: dict[str, list[StopEvent]] = defaultdict(list)
    for event in events:
        try:
            cell_id = indexer.resolve_cell(event.h3_index, event.lat, event.lng)
        except InvalidCoordinateError as exc:
            logger.debug("Dropping stop %s: %s", event.stop_id, exc.message)
            continue
        grouped[cell_id].append(event)

    cells: list[StopPatternCell] = []
    for cell_id, members in grouped.items():
        durations = [e.duration_hours for e in members]
        total = sum(durations)
        engine_on = sum(engine_on_hours(e) for e in members)
        center_lat, center_lng = indexer.center(cell_id)
        cells.append(
            build_stop_pattern_cell(
                cell_id,
                stop_count=len(members),
                visit_count=count_visits(members, gap_minutes),
                unique_trackers=len({e.tracker_id for e in members}),
                avg_duration_hours=safe_divide(total, len(members)),
                p90_duration_hours=percentile(durations, 0.9),
                total_dwell_time_hours=total,
                engine_on_hours=engine_on,
                engine_off_hours=max(0.0, total - engine_on),
                center_lat=center_lat,
                center_lng=center_lng,
                boundary=indexer.boundary(cell_id),
                avg_risk_score=safe_divide(sum(e.risk_score for e in members), len(members)),
                avg_ignition_on_percent=safe_divide(
                    sum(e.ignition_on_percent for e in members),
                    len(members),
                ),
                timeline_trips=timeline_trips(members, trip_limit),
            ),
        )

    cells.sort(key=lambda c: (-c.total_dwell_time_hours, c.h3_index))
    return cells


def heat_intensity(cell: StopPatternCell, mode: BottleneckMode | str) -> float:
    """
    Heat weight of a cell for the selected mode.

    ``overall`` uses dwell per visit, ``congestion`` engine-on hours per visit
    and ``efficiency`` engine-off hours per visit. The cell is not modified.
    """
    mode = BottleneckMode(mode)
    if mode is BottleneckMode.CONGESTION:
        return safe_divide(cell.engine_on_hours, cell.visit_count)
    if mode is BottleneckMode.EFFICIENCY:
        return safe_divide(cell.engine_off_hours, cell.visit_count)
    return cell.avg_dwell_per_visit


def rank_bottlenecks(
    cells: Iterable[StopPatternCell],
    mode: BottleneckMode | str = BottleneckMode.OVERALL,
    limit: int | None = None,
) -> list[tuple[StopPatternCell, float]]:
    """Cells paired with their intensity, strongest first."""
    ranked = sorted(
        ((cell, heat_intensity(cell, mode)) for cell in cells),
        key=lambda item: (-item[1], item[0].h3_index),
    )
    return ranked if limit is None else ranked[:limit]
