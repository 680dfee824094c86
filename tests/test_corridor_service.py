import pytest

from core.exceptions import UpstreamFetchError
from corridors.services.corridor_service import CorridorService, corridor_cell_from_row
from feed_fakes import FakeCorridorFeed
from feeds.params import CorridorQuery
from hexgrid.indexer import HexIndexer


def test_row_hydration_defaults(indexer: HexIndexer) -> None:
    cell_id = indexer.index(-12.9, 28.6)
    cell = corridor_cell_from_row({"h3_index": cell_id}, indexer)

    assert cell is not None
    assert cell.visit_count == 1.0
    assert cell.is_night_route is False
    assert cell.bearing_bucket is None
    assert cell.boundary == indexer.boundary(cell_id)
    assert cell.boundary[0] == cell.boundary[-1]


def test_row_hydration_drops_undecodable_cells(indexer: HexIndexer) -> None:
    assert corridor_cell_from_row({"h3_index": "nope", "visit_count": 5}, indexer) is None
    assert corridor_cell_from_row({"visit_count": 5}, indexer) is None


def test_out_of_range_bearing_bucket_is_ignored(indexer: HexIndexer) -> None:
    cell_id = indexer.index(-12.9, 28.6)
    cell = corridor_cell_from_row({"h3_index": cell_id, "bearing_bucket": 9}, indexer)
    assert cell is not None
    assert cell.bearing_bucket is None


@pytest.mark.asyncio
async def test_get_corridors_paginates_until_short_page(indexer: HexIndexer) -> None:
    cells = [indexer.index(-12.9 - 0.05 * i, 28.6) for i in range(5)]
    rows = [
        {"h3_index": cell, "visit_count": 3.5, "is_night_route": i % 2 == 0}
        for i, cell in enumerate(cells)
    ]
    rows.append({"h3_index": "garbage"})
    feed = FakeCorridorFeed(rows=rows)
    service = CorridorService(feed, indexer=indexer)
    query = CorridorQuery(tracker_id=3, day_of_week=0)

    result = await service.get_corridors(query, page_size=2)

    assert len(feed.queries) == 4
    assert all(q is query for q in feed.queries)
    assert [c.h3_index for c in result.cells] == cells
    assert result.dropped == 1
    assert not result.truncated


@pytest.mark.asyncio
async def test_get_corridors_flags_truncation_at_page_cap(indexer: HexIndexer) -> None:
    cell = indexer.index(-12.9, 28.6)
    feed = FakeCorridorFeed(rows=[{"h3_index": cell}] * 10)
    service = CorridorService(feed, indexer=indexer)

    result = await service.get_corridors(page_size=2, max_pages=3)

    assert result.truncated
    assert len(result.cells) == 6
    assert len(feed.queries) == 3


@pytest.mark.asyncio
async def test_get_corridors_surfaces_feed_failure(indexer: HexIndexer) -> None:
    service = CorridorService(FakeCorridorFeed(error=RuntimeError("rpc down")), indexer=indexer)

    with pytest.raises(UpstreamFetchError):
        await service.get_corridors()


def test_zero_visit_count_row_is_treated_as_one_visit(indexer: HexIndexer) -> None:
    cell_id = indexer.index(-12.9, 28.6)
    cell = corridor_cell_from_row({"h3_index": cell_id, "visit_count": 0}, indexer)
    assert cell is not None
    assert cell.visit_count == 1.0
