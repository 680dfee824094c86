"""Spatial insights orchestration across the risk, corridor and bottleneck layers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TYPE_CHECKING, Any

from analytics.models import (
    InsightLayer,
    LayerResult,
    LayerStatus,
    SpatialInsightsRequest,
    SpatialInsightsResponse,
)
from bottlenecks.services.stop_pattern_service import StopPatternService
from core.cache import SnapshotCache
from core.exceptions import StaleResultError
from core.generation import GenerationToken, GenerationTracker
from corridors.services.corridor_service import CorridorService
from feeds.loader import load_reference_data
from feeds.params import CorridorQuery, StopPatternQuery
from hexgrid.indexer import HexIndexer
from risk.services.clustering import zone_summary
from risk.services.hex_risk_service import HexRiskService
from risk.services.zone_service import RiskZoneService

if TYPE_CHECKING:
    from feeds.interfaces import (
        CorridorFrequencyFeed,
        ReferenceDataFeed,
        SnapshotFeed,
        StopEventFeed,
        StopPatternFeed,
    )

logger = logging.getLogger(__name__)


class SpatialInsightsService:
    """
    Builds every requested map layer for one filter context.

    Layers are fetched concurrently and fail independently: an upstream error
    marks only its own layer as failed. A request whose filter context was
    replaced while it ran raises StaleResultError instead of returning.
    """

    def __init__(
        self,
        *,
        stop_feed: StopEventFeed,
        hex_snapshot_feed: SnapshotFeed,
        zone_snapshot_feed: SnapshotFeed,
        corridor_feed: CorridorFrequencyFeed,
        stop_pattern_feed: StopPatternFeed,
        reference_feeds: dict[str, ReferenceDataFeed] | None = None,
        indexer: HexIndexer | None = None,
        cache: SnapshotCache | None = None,
        tracker: GenerationTracker | None = None,
    ) -> None:
        indexer = indexer or HexIndexer()
        cache = cache or SnapshotCache()
        self.tracker = tracker or GenerationTracker()
        self.hex_service = HexRiskService(
            stop_feed,
            hex_snapshot_feed,
            indexer=indexer,
            cache=cache,
        )
        self.zone_service = RiskZoneService(
            stop_feed,
            zone_snapshot_feed,
            indexer=indexer,
            cache=cache,
        )
        self.corridor_service = CorridorService(corridor_feed, indexer=indexer)
        self.stop_pattern_service = StopPatternService(stop_pattern_feed, indexer=indexer)
        self._reference_feeds = dict(reference_feeds or {})

    def _layer_calls(
        self,
        request: SpatialInsightsRequest,
        token: GenerationToken,
    ) -> dict[str, Awaitable[Any]]:
        calls: dict[str, Awaitable[Any]] = {}
        layers = set(request.layers)
        if InsightLayer.HEXES in layers:
            calls[InsightLayer.HEXES.value] = self.hex_service.get_hex_grid(
                reason_filter=request.reason_filter,
                tracker_id=request.tracker_id,
                days_back=request.days_back,
                token=token,
            )
        if InsightLayer.ZONES in layers:
            calls[InsightLayer.ZONES.value] = self.zone_service.get_risk_zones(
                reason_filter=request.reason_filter,
                tracker_id=request.tracker_id,
                days_back=request.days_back,
                token=token,
            )
        if InsightLayer.CORRIDORS in layers:
            calls[InsightLayer.CORRIDORS.value] = self.corridor_service.get_corridors(
                CorridorQuery(
                    tracker_id=request.tracker_id,
                    day_of_week=request.day_of_week,
                    hour_bucket=request.hour_bucket,
                ),
                token=token,
            )
        if InsightLayer.BOTTLENECKS in layers:
            calls[InsightLayer.BOTTLENECKS.value] = self.stop_pattern_service.get_stop_patterns(
                StopPatternQuery(
                    tracker_id=request.tracker_id,
                    day_of_week=request.day_of_week,
                    hour_bucket=request.hour_bucket,
                    month=request.month,
                    year=request.year,
                ),
                token=token,
            )
        for name, feed in self._reference_feeds.items():
            calls[name] = load_reference_data(feed, name, token=token)
        return calls

    async def get_insights(self, request: SpatialInsightsRequest) -> SpatialInsightsResponse:
        token = self.tracker.activate(request.filter_context())
        calls = self._layer_calls(request, token)
        outcomes = await asyncio.gather(*calls.values(), return_exceptions=True)

        response = SpatialInsightsResponse(
            generation=token.generation,
            bottleneck_mode=request.bottleneck_mode,
        )
        for name, outcome in zip(calls.keys(), outcomes, strict=True):
            if isinstance(outcome, StaleResultError):
                logger.info(
                    "Discarding %s layer for superseded generation %d",
                    name,
                    token.generation,
                )
                raise outcome
            if isinstance(outcome, Exception):
                logger.error("Layer %s failed: %s", name, outcome, exc_info=outcome)
                response.layers[name] = LayerResult(
                    layer=name,
                    status=LayerStatus.FAILED,
                    error=str(outcome),
                )
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            response.layers[name] = LayerResult(
                layer=name,
                status=LayerStatus.OK,
                data=outcome,
                truncated=bool(getattr(outcome, "truncated", False)),
            )

        token.ensure_current()
        response.summary = self._summarize(response)
        return response

    @staticmethod
    def _summarize(response: SpatialInsightsResponse) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "failed_layers": response.failed_layers,
            "truncated_layers": [
                name for name, result in response.layers.items() if result.truncated
            ],
        }
        zones = response.layers.get(InsightLayer.ZONES.value)
        if zones is not None and zones.ok:
            summary["zones"] = zone_summary(zones.data.zones)
            summary["zone_regime"] = zones.data.regime.value
        hexes = response.layers.get(InsightLayer.HEXES.value)
        if hexes is not None and hexes.ok:
            summary["hex_count"] = len(hexes.data.cells)
            summary["stop_count"] = len(hexes.data.stops)
        corridors = response.layers.get(InsightLayer.CORRIDORS.value)
        if corridors is not None and corridors.ok:
            summary["corridor_cell_count"] = len(corridors.data.cells)
        bottlenecks = response.layers.get(InsightLayer.BOTTLENECKS.value)
        if bottlenecks is not None and bottlenecks.ok:
            summary["bottleneck_cell_count"] = len(bottlenecks.data.cells)
        return summary
