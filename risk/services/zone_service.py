"""Risk zone layer: static snapshot reads and on-demand re-clustering."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError
from shapely.geometry import shape

import config
from core.casting import safe_bool, safe_float, safe_int
from core.exceptions import VersionUnavailableError
from core.math_utils import clamp, round_half_up
from core.spatial import GeometryService
from feeds.loader import load_latest_snapshot, load_stop_events
from feeds.params import StopEventQuery
from hexgrid.indexer import HexIndexer
from risk.models import RiskZone, SeverityLevel, StopEvent
from risk.reasons import (
    fold_reason_distribution,
    normalize_reason_filter,
    resolve_primary_reason,
)
from risk.services.clustering import MIN_ZONE_MEMBERS, cluster_stop_events

if TYPE_CHECKING:
    from core.cache import SnapshotCache
    from core.generation import GenerationToken
    from feeds.interfaces import SnapshotFeed, StopEventFeed

logger = logging.getLogger(__name__)

ZONE_SNAPSHOT_DATASET = "risk_zone_clusters"


class ClusteringRegime(str, Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"


@dataclass
class RiskZoneResult:
    regime: ClusteringRegime
    version: int | None = None
    zones: list[RiskZone] = field(default_factory=list)
    stops: list[StopEvent] = field(default_factory=list)
    truncated: bool = False


def _close_polygon_rings(geometry: dict[str, Any]) -> dict[str, Any] | None:
    geom_type = geometry.get("type")
    coords = geometry.get("coordinates") or []
    if geom_type == "Polygon":
        rings = [GeometryService.close_ring(ring) for ring in coords if ring]
        return {"type": "Polygon", "coordinates": rings} if rings else None
    if geom_type == "MultiPolygon":
        polygons = [
            [GeometryService.close_ring(ring) for ring in polygon if ring]
            for polygon in coords
            if polygon
        ]
        return {"type": "MultiPolygon", "coordinates": polygons} if polygons else None
    return None


def risk_zone_from_row(
    row: dict[str, Any],
    *,
    version: int | None = None,
) -> RiskZone | None:
    """Hydrate a precomputed zone row; rows without a usable polygon are skipped."""
    geometry = GeometryService.parse_geometry(
        row.get("polygon_geojson") or row.get("polygon"),
        allowed_types=("Polygon", "MultiPolygon"),
    )
    polygon = _close_polygon_rings(geometry) if geometry else None
    if polygon is None:
        logger.debug("Skipping zone row %s without polygon", row.get("cluster_id"))
        return None

    center_lat = row.get("center_lat")
    center_lng = row.get("center_lng")
    if center_lat is None or center_lng is None:
        min_x, min_y, max_x, max_y = shape(polygon).bounds
        center_lat = (min_y + max_y) / 2.0
        center_lng = (min_x + max_x) / 2.0

    reasons_raw = row.get("reason_distribution")
    reasons: dict[str, int] = {}
    if isinstance(reasons_raw, dict):
        reasons = fold_reason_distribution(reasons_raw)
    members = row.get("member_ids") or ()
    incident_count = safe_int(row.get("incident_count"), len(members))
    if incident_count < MIN_ZONE_MEMBERS:
        logger.debug(
            "Skipping zone row %s with %d member(s)",
            row.get("cluster_id"),
            incident_count,
        )
        return None
    try:
        return RiskZone(
            cluster_id=safe_int(row.get("cluster_id")),
            member_ids=tuple(str(m) for m in members),
            risk_score=int(clamp(round_half_up(safe_float(row.get("risk_score"))), 0, 100)),
            incident_count=incident_count,
            hex_count=safe_int(row.get("hex_count")),
            polygon=polygon,
            center_lat=safe_float(center_lat),
            center_lng=safe_float(center_lng),
            is_night_dominant=safe_bool(row.get("is_night_dominant")),
            primary_reason=resolve_primary_reason(reasons, row.get("primary_reason")),
            reason_distribution=reasons,
            version=version,
        )
    except ValidationError as exc:
        logger.debug("Skipping zone row %s: %s", row.get("cluster_id"), exc)
        return None


def build_zone_snapshot(
    events: Iterable[StopEvent],
    version: int,
    *,
    epsilon_km: float = config.CLUSTER_EPSILON_KM,
    min_points: int = config.CLUSTER_MIN_POINTS,
    indexer: HexIndexer | None = None,
) -> list[RiskZone]:
    """Precompute the zone snapshot for ``version`` with the shared clustering path."""
    return cluster_stop_events(
        events,
        epsilon_km=epsilon_km,
        min_points=min_points,
        indexer=indexer,
        version=version,
    )


class RiskZoneService:
    """
    Serves risk zones in one of two regimes.

    Without a reason filter the latest precomputed snapshot is returned.
    With a filter, the precomputed membership no longer applies, so every
    matching incident is fetched and re-clustered. Dynamic results are never
    written back to the snapshot.
    """

    def __init__(
        self,
        stop_feed: StopEventFeed,
        zone_feed: SnapshotFeed,
        *,
        indexer: HexIndexer | None = None,
        cache: SnapshotCache | None = None,
        epsilon_km: float = config.CLUSTER_EPSILON_KM,
        min_points: int = config.CLUSTER_MIN_POINTS,
    ) -> None:
        self._stop_feed = stop_feed
        self._zone_feed = zone_feed
        self._indexer = indexer or HexIndexer()
        self._cache = cache
        self.epsilon_km = epsilon_km
        self.min_points = min_points

    async def get_static_zones(
        self,
        *,
        token: GenerationToken | None = None,
    ) -> RiskZoneResult:
        try:
            fetched = await load_latest_snapshot(
                self._zone_feed,
                ZONE_SNAPSHOT_DATASET,
                cache=self._cache,
                max_pages=config.ZONE_SNAPSHOT_MAX_PAGES,
                token=token,
            )
        except VersionUnavailableError as exc:
            logger.info("%s; serving no risk zones", exc.message)
            return RiskZoneResult(regime=ClusteringRegime.STATIC)

        zones = [
            zone
            for zone in (risk_zone_from_row(row, version=fetched.version) for row in fetched.rows)
            if zone is not None
        ]
        zones.sort(key=lambda z: -z.risk_score)
        return RiskZoneResult(
            regime=ClusteringRegime.STATIC,
            version=fetched.version,
            zones=zones,
            truncated=fetched.truncated,
        )

    async def get_dynamic_zones(
        self,
        reason_filter: Sequence[str],
        *,
        tracker_id: int | None = None,
        days_back: int = config.STOP_EVENT_DAYS_BACK,
        token: GenerationToken | None = None,
    ) -> RiskZoneResult:
        query = StopEventQuery(
            min_severity=SeverityLevel.MINOR.value,
            days_back=days_back,
            tracker_id=tracker_id,
            risk_reasons=reason_filter,
        )
        batch = await load_stop_events(self._stop_feed, query, token=token)
        zones = cluster_stop_events(
            batch.events,
            epsilon_km=self.epsilon_km,
            min_points=self.min_points,
            reason_filter=query.risk_reasons,
            indexer=self._indexer,
        )
        if token is not None:
            token.ensure_current()
        return RiskZoneResult(
            regime=ClusteringRegime.DYNAMIC,
            zones=zones,
            stops=batch.events,
            truncated=batch.truncated,
        )

    async def get_risk_zones(
        self,
        *,
        reason_filter: Sequence[str] | None = None,
        tracker_id: int | None = None,
        days_back: int = config.STOP_EVENT_DAYS_BACK,
        token: GenerationToken | None = None,
    ) -> RiskZoneResult:
        reasons = normalize_reason_filter(reason_filter)
        if reasons:
            return await self.get_dynamic_zones(
                reasons,
                tracker_id=tracker_id,
                days_back=days_back,
                token=token,
            )
        return await self.get_static_zones(token=token)
