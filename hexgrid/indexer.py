"""Deterministic coordinate <-> H3 cell mapping and boundary generation."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

import h3

import config
from core.exceptions import InvalidCoordinateError
from core.spatial import GeometryService

logger = logging.getLogger(__name__)


class HexIndexer:
    """
    Maps WGS84 points onto a fixed-resolution H3 grid.

    The resolution is fixed per deployment; mixing resolutions inside one
    aggregation would compare cells of different sizes.
    """

    def __init__(self, resolution: int = config.H3_RESOLUTION) -> None:
        if not 0 <= resolution <= 15:
            msg = f"H3 resolution must be within 0..15, got {resolution}"
            raise ValueError(msg)
        self.resolution = resolution

    def index(self, lat: Any, lng: Any) -> str:
        """Return the cell id containing (lat, lng); raises InvalidCoordinateError."""
        lat_f, lng_f = GeometryService.validate_lat_lng(lat, lng)
        return str(h3.latlng_to_cell(lat_f, lng_f, self.resolution))

    def index_many(
        self,
        points: Iterable[tuple[Any, Any]],
    ) -> list[str | None]:
        """Index a batch of (lat, lng) pairs; invalid points map to None."""
        cells: list[str | None] = []
        for lat, lng in points:
            try:
                cells.append(self.index(lat, lng))
            except InvalidCoordinateError as exc:
                logger.debug("Dropping point: %s", exc.message)
                cells.append(None)
        return cells

    @staticmethod
    def is_valid_cell(cell_id: Any) -> bool:
        if not isinstance(cell_id, str) or not cell_id:
            return False
        try:
            return bool(h3.is_valid_cell(cell_id))
        except (TypeError, ValueError):
            return False

    def resolve_cell(
        self,
        h3_index: str | None,
        lat: Any,
        lng: Any,
    ) -> str:
        """
        Prefer an upstream cell id at this resolution, else index the point.

        Upstream ids at another resolution are re-derived from the coordinates
        so every member of an aggregation lives on the same grid.
        """
        if self.is_valid_cell(h3_index) and h3.get_resolution(h3_index) == self.resolution:
            return str(h3_index)
        return self.index(lat, lng)

    @staticmethod
    def center(cell_id: str) -> tuple[float, float]:
        """Return the (lat, lng) center of a cell."""
        lat, lng = h3.cell_to_latlng(cell_id)
        return float(lat), float(lng)

    @staticmethod
    def boundary(cell_id: str) -> list[list[float]]:
        """Return the cell outline as a closed ring of [lng, lat] vertices."""
        vertices = h3.cell_to_boundary(cell_id)
        return GeometryService.close_ring([[lng, lat] for lat, lng in vertices])

    @classmethod
    def boundary_geojson(cls, cell_id: str) -> dict[str, Any]:
        return {"type": "Polygon", "coordinates": [cls.boundary(cell_id)]}
