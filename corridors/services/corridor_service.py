"""Corridor network read path over the corridor frequency feed."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

import config
from core.casting import safe_bool, safe_float, safe_int
from core.pagination import fetch_all_pages
from corridors.models import CorridorCell
from feeds.params import CorridorQuery
from hexgrid.indexer import HexIndexer

if TYPE_CHECKING:
    from core.generation import GenerationToken
    from feeds.interfaces import CorridorFrequencyFeed

logger = logging.getLogger(__name__)


@dataclass
class CorridorResult:
    cells: list[CorridorCell] = field(default_factory=list)
    truncated: bool = False
    dropped: int = 0


def _bearing_bucket(value: Any) -> int | None:
    if value is None:
        return None
    bucket = safe_int(value, -1)
    return bucket if 0 <= bucket <= 7 else None


def corridor_cell_from_row(
    row: dict[str, Any],
    indexer: HexIndexer,
) -> CorridorCell | None:
    """
    Hydrate a feed row with center and boundary.

    Rows whose cell id cannot be decoded are dropped. A missing or zero visit
    count becomes 1 and a missing night flag False.
    """
    cell_id = row.get("h3_index")
    if not indexer.is_valid_cell(cell_id):
        logger.debug("Skipping corridor row with invalid cell id %r", cell_id)
        return None

    center_lat, center_lng = indexer.center(cell_id)
    try:
        return CorridorCell(
            h3_index=cell_id,
            visit_count=max(0.0, safe_float(row.get("visit_count"))) or 1.0,
            raw_passage_count=safe_int(row.get("raw_passage_count")),
            is_night_route=safe_bool(row.get("is_night_route")),
            bearing_bucket=_bearing_bucket(row.get("bearing_bucket")),
            is_mature=safe_bool(row.get("is_mature"), default=True),
            center_lat=center_lat,
            center_lng=center_lng,
            boundary=indexer.boundary(cell_id),
        )
    except ValidationError as exc:
        logger.debug("Skipping corridor row %s: %s", cell_id, exc)
        return None


class CorridorService:
    """Loads the learned corridor network from its upstream feed."""

    def __init__(
        self,
        feed: CorridorFrequencyFeed,
        *,
        indexer: HexIndexer | None = None,
    ) -> None:
        self._feed = feed
        self._indexer = indexer or HexIndexer()

    async def get_corridors(
        self,
        query: CorridorQuery | None = None,
        *,
        page_size: int = config.FEED_PAGE_SIZE,
        max_pages: int = config.CORRIDOR_MAX_PAGES,
        token: GenerationToken | None = None,
    ) -> CorridorResult:
        query = query or CorridorQuery()

        async def _page(limit: int, offset: int) -> list[dict[str, Any]]:
            return await self._feed.fetch_corridors(query, limit=limit, offset=offset)

        fetched = await fetch_all_pages(
            _page,
            feed_name="corridors",
            page_size=page_size,
            max_pages=max_pages,
            token=token,
        )

        result = CorridorResult(truncated=fetched.truncated)
        for row in fetched.rows:
            cell = corridor_cell_from_row(row, self._indexer)
            if cell is None:
                result.dropped += 1
                continue
            result.cells.append(cell)
        if result.dropped:
            logger.info("Dropped %d undecodable corridor row(s)", result.dropped)
        return result
