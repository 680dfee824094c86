"""
Density clustering of risky stops into polygonal risk zones.

This is the single clustering path: the precomputed zone snapshot and the
on-demand re-clustering under a reason filter both call
``cluster_stop_events`` so the two regimes cannot drift apart.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict, deque
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any

from shapely.geometry import MultiPoint
from shapely.ops import transform

import config
from core.exceptions import ClusteringDegenerateError, InvalidCoordinateError
from core.spatial import GeometryService, local_projection
from hexgrid.indexer import HexIndexer
from risk.models import RiskZone, StopEvent
from risk.reasons import aggregate_reasons, matches_reason_filter, primary_reason
from risk.services.hex_risk_service import mean_risk_score

if TYPE_CHECKING:
    from shapely.geometry.base import BaseGeometry

logger = logging.getLogger(__name__)

NOISE = -1
MIN_ZONE_MEMBERS = 2
KM_PER_DEGREE_LAT = 2 * math.pi * GeometryService.EARTH_RADIUS_KM / 360.0


def _grid_key(lat: float, lng: float, lat_cell: float, lng_cell: float) -> tuple[int, int]:
    return (math.floor(lat / lat_cell), math.floor(lng / lng_cell))


def _neighbors_for_point(
    *,
    point_idx: int,
    points: Sequence[tuple[float, float]],
    grid: dict[tuple[int, int], list[int]],
    eps_km: float,
    lat_cell: float,
    lng_cell: float,
) -> list[int]:
    lat, lng = points[point_idx]
    gy, gx = _grid_key(lat, lng, lat_cell, lng_cell)
    result: list[int] = []
    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            for j in grid.get((gy + dy, gx + dx), []):
                other_lat, other_lng = points[j]
                distance_km = GeometryService.distance_km(lat, lng, other_lat, other_lng)
                if distance_km <= eps_km:
                    result.append(j)
    return result


def dbscan(
    points: Sequence[tuple[float, float]],
    eps_km: float,
    min_points: int,
) -> list[int]:
    """
    DBSCAN over (lat, lng) points with great-circle distance in kilometers.

    A point's neighborhood includes the point itself, so ``min_points=2``
    means "at least one other point within eps". Returns one label per
    point; noise is ``NOISE`` and clusters are numbered from 1.
    """
    if eps_km <= 0:
        msg = "eps_km must be positive"
        raise ValueError(msg)
    labels = [NOISE] * len(points)
    if not points:
        return labels

    # Grid cells at least eps wide so neighbors are always in adjacent cells.
    lat_cell = eps_km / KM_PER_DEGREE_LAT
    max_abs_lat = min(89.0, max(abs(lat) for lat, _ in points))
    lng_cell = lat_cell / math.cos(math.radians(max_abs_lat))

    grid: dict[tuple[int, int], list[int]] = defaultdict(list)
    for idx, (lat, lng) in enumerate(points):
        grid[_grid_key(lat, lng, lat_cell, lng_cell)].append(idx)

    visited = [False] * len(points)
    cluster_id = 0
    for i in range(len(points)):
        if visited[i]:
            continue
        visited[i] = True
        neighbor_idxs = _neighbors_for_point(
            point_idx=i,
            points=points,
            grid=grid,
            eps_km=eps_km,
            lat_cell=lat_cell,
            lng_cell=lng_cell,
        )
        if len(neighbor_idxs) < min_points:
            continue
        cluster_id += 1
        labels[i] = cluster_id
        _expand_cluster(
            points=points,
            grid=grid,
            eps_km=eps_km,
            lat_cell=lat_cell,
            lng_cell=lng_cell,
            min_points=min_points,
            visited=visited,
            labels=labels,
            cluster_id=cluster_id,
            seed_neighbors=neighbor_idxs,
        )
    return labels


def _expand_cluster(
    *,
    points: Sequence[tuple[float, float]],
    grid: dict[tuple[int, int], list[int]],
    eps_km: float,
    lat_cell: float,
    lng_cell: float,
    min_points: int,
    visited: list[bool],
    labels: list[int],
    cluster_id: int,
    seed_neighbors: list[int],
) -> None:
    seed_set = set(seed_neighbors)
    seeds = deque(seed_neighbors)
    while seeds:
        j = seeds.popleft()
        if not visited[j]:
            visited[j] = True
            neighbor_j = _neighbors_for_point(
                point_idx=j,
                points=points,
                grid=grid,
                eps_km=eps_km,
                lat_cell=lat_cell,
                lng_cell=lng_cell,
            )
            if len(neighbor_j) >= min_points:
                for k in neighbor_j:
                    if k not in seed_set:
                        seed_set.add(k)
                        seeds.append(k)
        if labels[j] == NOISE:
            labels[j] = cluster_id


def collect_clusters(labels: Sequence[int]) -> dict[int, list[int]]:
    """Group point indices by cluster label, skipping noise."""
    cluster_indices: dict[int, list[int]] = {}
    for idx, label in enumerate(labels):
        if label == NOISE:
            continue
        cluster_indices.setdefault(label, []).append(idx)
    return cluster_indices


def _convex_hull(points_m: MultiPoint) -> BaseGeometry:
    hull = points_m.convex_hull
    if hull.geom_type != "Polygon" or hull.is_empty or hull.area <= 0:
        raise ClusteringDegenerateError(
            f"Convex hull of {len(points_m.geoms)} point(s) is a {hull.geom_type}",
            {"geom_type": hull.geom_type},
        )
    return hull


def cluster_polygon(
    lng_lat_points: Sequence[tuple[float, float]],
    *,
    hull_buffer_km: float = config.CLUSTER_HULL_BUFFER_KM,
    fallback_buffer_km: float = config.CLUSTER_FALLBACK_BUFFER_KM,
) -> tuple[BaseGeometry, bool]:
    """
    Build the zone outline for member points given as (lng, lat).

    The convex hull is buffered outward by ``hull_buffer_km``. Collinear or
    coincident members have no areal hull; those fall back to a circle of
    ``fallback_buffer_km`` around the member centroid. Returns
    (polygon_wgs84, used_fallback).
    """
    cluster_geom = MultiPoint(list(lng_lat_points))
    centroid = cluster_geom.centroid
    to_meters, to_wgs84 = local_projection(centroid.y, centroid.x)
    cluster_geom_m = transform(to_meters, cluster_geom)
    try:
        hull_m = _convex_hull(cluster_geom_m)
    except ClusteringDegenerateError as exc:
        logger.info(
            "%s; using %.1f km buffer around centroid",
            exc.message,
            fallback_buffer_km,
        )
        outline_m = cluster_geom_m.centroid.buffer(fallback_buffer_km * 1000.0)
        return transform(to_wgs84, outline_m), True
    outline_m = hull_m.buffer(hull_buffer_km * 1000.0)
    return transform(to_wgs84, outline_m), False


def _member_cells(members: Iterable[StopEvent], indexer: HexIndexer) -> set[str]:
    cells: set[str] = set()
    for event in members:
        try:
            cells.add(indexer.resolve_cell(event.h3_index, event.lat, event.lng))
        except InvalidCoordinateError:
            continue
    return cells


def build_risk_zone(
    cluster_id: int,
    members: Sequence[StopEvent],
    *,
    indexer: HexIndexer,
    hull_buffer_km: float = config.CLUSTER_HULL_BUFFER_KM,
    fallback_buffer_km: float = config.CLUSTER_FALLBACK_BUFFER_KM,
    version: int | None = None,
) -> RiskZone:
    polygon, used_fallback = cluster_polygon(
        [(e.lng, e.lat) for e in members],
        hull_buffer_km=hull_buffer_km,
        fallback_buffer_km=fallback_buffer_km,
    )
    min_x, min_y, max_x, max_y = polygon.bounds
    night_count = sum(1 for e in members if e.is_night_stop)
    reasons = aggregate_reasons(e.risk_reasons for e in members)
    return RiskZone(
        cluster_id=cluster_id,
        member_ids=tuple(e.stop_id for e in members),
        risk_score=mean_risk_score(members),
        incident_count=len(members),
        hex_count=len(_member_cells(members, indexer)),
        polygon=GeometryService.geometry_to_geojson(polygon),
        center_lat=(min_y + max_y) / 2.0,
        center_lng=(min_x + max_x) / 2.0,
        is_night_dominant=night_count > len(members) / 2,
        primary_reason=primary_reason(reasons),
        reason_distribution=reasons,
        used_fallback_buffer=used_fallback,
        version=version,
    )


def cluster_stop_events(
    events: Iterable[StopEvent],
    *,
    epsilon_km: float = config.CLUSTER_EPSILON_KM,
    min_points: int = config.CLUSTER_MIN_POINTS,
    reason_filter: Sequence[str] | None = None,
    hull_buffer_km: float = config.CLUSTER_HULL_BUFFER_KM,
    fallback_buffer_km: float = config.CLUSTER_FALLBACK_BUFFER_KM,
    indexer: HexIndexer | None = None,
    version: int | None = None,
) -> list[RiskZone]:
    """
    Cluster stop events into risk zones, highest risk first.

    Events are ordered by stop id before clustering so membership does not
    depend on feed order. Noise points and clusters with fewer than two
    members never appear in the output.
    """
    indexer = indexer or HexIndexer()
    candidates = sorted(
        (
            e
            for e in events
            if e.has_valid_location and matches_reason_filter(e.risk_reasons, reason_filter)
        ),
        key=lambda e: e.stop_id,
    )
    if len(candidates) < MIN_ZONE_MEMBERS:
        return []

    labels = dbscan([(e.lat, e.lng) for e in candidates], epsilon_km, min_points)
    zones: list[RiskZone] = []
    for cluster_id, indices in collect_clusters(labels).items():
        if len(indices) < MIN_ZONE_MEMBERS:
            continue
        zones.append(
            build_risk_zone(
                cluster_id,
                [candidates[i] for i in indices],
                indexer=indexer,
                hull_buffer_km=hull_buffer_km,
                fallback_buffer_km=fallback_buffer_km,
                version=version,
            ),
        )

    zones.sort(key=lambda z: -z.risk_score)
    logger.debug(
        "Clustered %d stop(s) into %d zone(s) (eps=%.2f km, min_points=%d)",
        len(candidates),
        len(zones),
        epsilon_km,
        min_points,
    )
    return zones


def zone_summary(zones: Sequence[RiskZone]) -> dict[str, Any]:
    """Headline numbers for a zone list."""
    return {
        "zone_count": len(zones),
        "incident_count": sum(z.incident_count for z in zones),
        "night_dominant_count": sum(1 for z in zones if z.is_night_dominant),
        "max_risk_score": max((z.risk_score for z in zones), default=0),
    }
