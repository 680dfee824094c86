"""
Decay-weighted corridor learning.

Each passage contributes ``exp(-lambda * age_days)`` to its cell, with age
measured against an explicit ``as_of`` instant so results are reproducible.
A cell joins the corridor network once its accumulated weight exceeds the
maturity threshold.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from core.exceptions import InvalidCoordinateError
from core.math_utils import bearing_to_octant, calculate_circular_mean_degrees, decay_weight
from core.spatial import geodesic_bearing_degrees
from corridors.models import CorridorCell, CorridorPassage
from feeds.params import CorridorQuery
from hexgrid.indexer import HexIndexer

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def day_of_week(value: datetime) -> int:
    """Day index with 0=Sunday ... 6=Saturday."""
    return (value.weekday() + 1) % 7


def passage_age_days(passage: CorridorPassage, as_of: datetime) -> float:
    return (_as_utc(as_of) - _as_utc(passage.observed_at)).total_seconds() / SECONDS_PER_DAY


def passage_matches(passage: CorridorPassage, query: CorridorQuery) -> bool:
    """Apply the tracker, day-of-week and hour-bucket filters."""
    if query.tracker_id is not None and passage.tracker_id != query.tracker_id:
        return False
    if query.day_of_week is not None and day_of_week(passage.observed_at) != query.day_of_week:
        return False
    return not (
        query.hour_bucket is not None and passage.observed_at.hour != query.hour_bucket
    )


def passages_from_track(
    tracker_id: int,
    fixes: Sequence[tuple[datetime, float, float, bool]],
    indexer: HexIndexer | None = None,
) -> list[CorridorPassage]:
    """
    Turn a time-ordered GPS track into one passage per cell entered.

    ``fixes`` are ``(observed_at, lat, lng, is_night)``. Consecutive fixes in
    the same cell collapse into the passage for that entry. The bearing is
    the geodesic heading from the entry fix to the next fix of the track.
    Fixes with unusable coordinates are skipped.
    """
    indexer = indexer or HexIndexer()
    located: list[tuple[str, datetime, float, float, bool]] = []
    for observed_at, lat, lng, is_night in fixes:
        try:
            cell_id = indexer.index(lat, lng)
        except InvalidCoordinateError as exc:
            logger.debug("Skipping fix for tracker %s: %s", tracker_id, exc.message)
            continue
        located.append((cell_id, observed_at, float(lat), float(lng), bool(is_night)))

    passages: list[CorridorPassage] = []
    for i, (cell_id, observed_at, lat, lng, is_night) in enumerate(located):
        if i > 0 and located[i - 1][0] == cell_id:
            continue
        bearing = None
        if i + 1 < len(located):
            _, _, next_lat, next_lng, _ = located[i + 1]
            bearing = geodesic_bearing_degrees(lng, lat, next_lng, next_lat)
        passages.append(
            CorridorPassage(
                tracker_id=tracker_id,
                h3_index=cell_id,
                lat=lat,
                lng=lng,
                observed_at=observed_at,
                is_night=is_night,
                bearing_degrees=bearing,
            ),
        )
    return passages


@dataclass
class _CellAccumulator:
    weight: float = 0.0
    passages: int = 0
    night: int = 0
    bearings: list[float] = field(default_factory=list)

    def add(self, passage: CorridorPassage, weight: float) -> None:
        self.weight += weight
        self.passages += 1
        if passage.is_night:
            self.night += 1
        if passage.bearing_degrees is not None:
            self.bearings.append(passage.bearing_degrees)


def _bearing_bucket(bearings: list[float]) -> int | None:
    mean = calculate_circular_mean_degrees(bearings)
    if mean is None:
        return None
    return bearing_to_octant(mean)


def learn_corridors(
    passages: Iterable[CorridorPassage],
    *,
    as_of: datetime,
    query: CorridorQuery | None = None,
    indexer: HexIndexer | None = None,
    include_immature: bool = False,
) -> list[CorridorCell]:
    """
    Build the corridor network from raw passages.

    Args:
        passages: Historical cell traversals.
        as_of: Reference instant for decay ages.
        query: Decay, maturity and filter parameters; defaults from config.
        indexer: Grid used for passages that carry only coordinates.
        include_immature: Also return cells at or below the maturity threshold.

    Returns:
        Corridor cells ordered by descending decayed visit count.
    """
    query = query or CorridorQuery()
    indexer = indexer or HexIndexer()

    accumulators: dict[str, _CellAccumulator] = {}
    for passage in passages:
        if not passage_matches(passage, query):
            continue
        try:
            cell_id = indexer.resolve_cell(passage.h3_index, passage.lat, passage.lng)
        except InvalidCoordinateError as exc:
            logger.debug("Dropping passage for tracker %s: %s", passage.tracker_id, exc.message)
            continue
        weight = decay_weight(passage_age_days(passage, as_of), query.decay_lambda)
        accumulators.setdefault(cell_id, _CellAccumulator()).add(passage, weight)

    cells: list[CorridorCell] = []
    for cell_id, acc in accumulators.items():
        if acc.passages < query.min_visits:
            continue
        is_mature = acc.weight > query.maturity_threshold
        if not is_mature and not include_immature:
            continue
        center_lat, center_lng = indexer.center(cell_id)
        cells.append(
            CorridorCell(
                h3_index=cell_id,
                visit_count=acc.weight,
                raw_passage_count=acc.passages,
                is_night_route=acc.night > acc.passages / 2,
                bearing_bucket=_bearing_bucket(acc.bearings),
                is_mature=is_mature,
                center_lat=center_lat,
                center_lng=center_lng,
                boundary=indexer.boundary(cell_id),
            ),
        )

    cells.sort(key=lambda c: (-c.visit_count, c.h3_index))
    logger.debug(
        "Learned %d corridor cell(s) from %d candidate cell(s)",
        len(cells),
        len(accumulators),
    )
    return cells
