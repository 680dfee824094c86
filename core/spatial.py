"""
Geometry helpers shared by the grid, clustering and corridor layers.

Coordinates are WGS84. Functions taking separate arguments are lat-first;
GeoJSON and shapely coordinates are ``[lng, lat]``.
"""

from __future__ import annotations

import json
import logging
import math
from typing import TYPE_CHECKING, Any

import pyproj
from shapely.geometry import mapping

from core.exceptions import InvalidCoordinateError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from shapely.geometry.base import BaseGeometry

logger = logging.getLogger(__name__)

WGS84 = pyproj.CRS("EPSG:4326")
GEOD = pyproj.Geod(ellps="WGS84")


class GeometryService:
    """Coordinate validation, distances and GeoJSON shaping."""

    EARTH_RADIUS_KM = 6371.0

    @staticmethod
    def validate_lat_lng(lat: Any, lng: Any) -> tuple[float, float]:
        """Return (lat, lng) as floats or raise InvalidCoordinateError."""
        try:
            lat_f = float(lat)
            lng_f = float(lng)
        except (TypeError, ValueError) as exc:
            msg = f"Non-numeric coordinate: lat={lat!r}, lng={lng!r}"
            raise InvalidCoordinateError(msg, {"lat": lat, "lng": lng}) from exc
        if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
            msg = f"Non-finite coordinate: lat={lat_f}, lng={lng_f}"
            raise InvalidCoordinateError(msg, {"lat": lat_f, "lng": lng_f})
        if not (-90 <= lat_f <= 90 and -180 <= lng_f <= 180):
            msg = f"Coordinate out of WGS84 range: lat={lat_f}, lng={lng_f}"
            raise InvalidCoordinateError(msg, {"lat": lat_f, "lng": lng_f})
        return lat_f, lng_f

    @staticmethod
    def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
        """Great-circle distance in kilometers on a spherical earth."""
        d_lat = math.radians(lat2 - lat1)
        d_lng = math.radians(lng2 - lng1)
        h = math.sin(d_lat / 2) ** 2 + (
            math.cos(math.radians(lat1))
            * math.cos(math.radians(lat2))
            * math.sin(d_lng / 2) ** 2
        )
        return 2 * GeometryService.EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))

    @staticmethod
    def parse_geometry(
        value: Any,
        allowed_types: Iterable[str] | None = None,
    ) -> dict[str, Any] | None:
        """
        Read a GeoJSON geometry stored as a dict, a JSON string or a Feature.

        Returns None for anything unparseable, for geometries without
        coordinates, and for types outside ``allowed_types`` when given.
        """
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                logger.debug("Ignoring malformed GeoJSON string")
                return None
        if not isinstance(value, dict):
            return None
        geometry = value.get("geometry") if value.get("type") == "Feature" else value
        if not isinstance(geometry, dict) or not geometry.get("coordinates"):
            return None
        if allowed_types is not None and geometry.get("type") not in set(allowed_types):
            return None
        return geometry

    @staticmethod
    def close_ring(coords: Sequence[Sequence[float]]) -> list[list[float]]:
        """Return a copy of ``coords`` whose last vertex equals the first."""
        ring = [[float(c[0]), float(c[1])] for c in coords]
        if ring and ring[0] != ring[-1]:
            ring.append(list(ring[0]))
        return ring

    @staticmethod
    def geometry_to_geojson(geom: BaseGeometry) -> dict[str, Any]:
        """Shapely geometry as a GeoJSON dict with nested lists, not tuples."""

        def _listify(value: Any) -> Any:
            if isinstance(value, (list, tuple)):
                if value and isinstance(value[0], (int, float)):
                    return [float(v) for v in value]
                return [_listify(v) for v in value]
            return value

        mapped = mapping(geom)
        return {"type": mapped["type"], "coordinates": _listify(mapped["coordinates"])}

    @staticmethod
    def as_feature(
        geometry: dict[str, Any] | None,
        properties: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return {
            "type": "Feature",
            "geometry": geometry,
            "properties": dict(properties or {}),
        }

    @staticmethod
    def feature_collection(features: Iterable[dict[str, Any]]) -> dict[str, Any]:
        return {"type": "FeatureCollection", "features": list(features)}


def is_closed_ring(ring: Sequence[Sequence[float]]) -> bool:
    """True when a ring has at least four vertices and ends where it starts."""
    if len(ring) < 4:
        return False
    return list(ring[0]) == list(ring[-1])


def local_projection(
    lat: float,
    lng: float,
) -> tuple[
    Callable[[float, float], tuple[float, float]],
    Callable[[float, float], tuple[float, float]],
]:
    """
    Azimuthal equidistant projection in meters centered on (lat, lng).

    Returns (to_meters, to_wgs84) callables usable with shapely's transform.
    Distances stay accurate within a few hundred kilometers of the center.
    """
    local_crs = pyproj.CRS.from_dict(
        {"proj": "aeqd", "lat_0": lat, "lon_0": lng, "datum": "WGS84", "units": "m"},
    )
    forward = pyproj.Transformer.from_crs(WGS84, local_crs, always_xy=True)
    inverse = pyproj.Transformer.from_crs(local_crs, WGS84, always_xy=True)
    return forward.transform, inverse.transform


def geodesic_bearing_degrees(
    lon1: float,
    lat1: float,
    lon2: float,
    lat2: float,
) -> float | None:
    """Forward azimuth from point 1 to point 2 in [0, 360), None if coincident."""
    fwd_az, _, dist = GEOD.inv(lon1, lat1, lon2, lat2)
    if abs(dist) <= 0.0:
        return None
    return float(fwd_az) % 360.0
