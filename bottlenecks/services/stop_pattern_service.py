"""Stop-pattern read path over the pre-aggregated dwell feed."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

import config
from bottlenecks.models import BottleneckMode, StopPatternCell
from bottlenecks.services.analyzer import build_stop_pattern_cell, rank_bottlenecks
from core.casting import safe_float, safe_int
from core.pagination import fetch_all_pages
from feeds.params import StopPatternQuery
from hexgrid.indexer import HexIndexer

if TYPE_CHECKING:
    from core.generation import GenerationToken
    from feeds.interfaces import StopPatternFeed

logger = logging.getLogger(__name__)


@dataclass
class StopPatternResult:
    cells: list[StopPatternCell] = field(default_factory=list)
    truncated: bool = False
    dropped: int = 0

    def ranked(
        self,
        mode: BottleneckMode | str = BottleneckMode.OVERALL,
        limit: int | None = None,
    ) -> list[tuple[StopPatternCell, float]]:
        return rank_bottlenecks(self.cells, mode, limit)


def _first_number(row: dict[str, Any], *keys: str) -> float:
    for key in keys:
        if row.get(key) is not None:
            return safe_float(row.get(key))
    return 0.0


def stop_pattern_cell_from_row(
    row: dict[str, Any],
    indexer: HexIndexer,
) -> StopPatternCell | None:
    """
    Hydrate a feed row; derived ratios are recomputed, not trusted.

    Engine hours are read from ``total_engine_*_hours`` with the short names
    as fallback. A missing or zero visit count falls back to the stop count.
    """
    cell_id = row.get("h3_index")
    if not indexer.is_valid_cell(cell_id):
        logger.debug("Skipping stop pattern row with invalid cell id %r", cell_id)
        return None

    trips = row.get("timeline_trips")
    stop_count = max(0, safe_int(row.get("stop_count")))
    center_lat, center_lng = indexer.center(cell_id)
    try:
        return build_stop_pattern_cell(
            cell_id,
            stop_count=stop_count,
            visit_count=max(0, safe_int(row.get("visit_count"))) or stop_count,
            unique_trackers=max(0, safe_int(row.get("unique_trackers"))),
            avg_duration_hours=safe_float(row.get("avg_duration_hours")),
            p90_duration_hours=safe_float(row.get("p90_duration_hours")),
            total_dwell_time_hours=safe_float(row.get("total_dwell_time_hours")),
            engine_on_hours=_first_number(row, "total_engine_on_hours", "engine_on_hours"),
            engine_off_hours=_first_number(
                row,
                "total_engine_off_hours",
                "engine_off_hours",
            ),
            center_lat=center_lat,
            center_lng=center_lng,
            boundary=indexer.boundary(cell_id),
            avg_risk_score=safe_float(row.get("avg_risk_score")),
            avg_ignition_on_percent=safe_float(row.get("avg_ignition_on_percent")),
            timeline_trips=trips if isinstance(trips, list) else None,
        )
    except ValidationError as exc:
        logger.debug("Skipping stop pattern row %s: %s", cell_id, exc)
        return None


class StopPatternService:
    """Loads per-cell dwell aggregates for the bottleneck layer."""

    def __init__(
        self,
        feed: StopPatternFeed,
        *,
        indexer: HexIndexer | None = None,
    ) -> None:
        self._feed = feed
        self._indexer = indexer or HexIndexer()

    async def get_stop_patterns(
        self,
        query: StopPatternQuery | None = None,
        *,
        page_size: int = config.FEED_PAGE_SIZE,
        max_pages: int = config.STOP_PATTERN_MAX_PAGES,
        token: GenerationToken | None = None,
    ) -> StopPatternResult:
        query = query or StopPatternQuery()

        async def _page(limit: int, offset: int) -> list[dict[str, Any]]:
            return await self._feed.fetch_stop_patterns(query, limit=limit, offset=offset)

        fetched = await fetch_all_pages(
            _page,
            feed_name="stop_patterns",
            page_size=page_size,
            max_pages=max_pages,
            token=token,
        )

        result = StopPatternResult(truncated=fetched.truncated)
        for row in fetched.rows:
            cell = stop_pattern_cell_from_row(row, self._indexer)
            if cell is None:
                result.dropped += 1
                continue
            result.cells.append(cell)
        if result.dropped:
            logger.info("Dropped %d undecodable stop pattern row(s)", result.dropped)
        return result
