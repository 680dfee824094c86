"""Request and response shapes for the spatial insights orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

import config
from bottlenecks.models import BottleneckMode
from core.spatial import GeometryService
from risk.reasons import normalize_reason_filter


class InsightLayer(str, Enum):
    HEXES = "hexes"
    ZONES = "zones"
    CORRIDORS = "corridors"
    BOTTLENECKS = "bottlenecks"


class LayerStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"


class SpatialInsightsRequest(BaseModel):
    """Filter context shared by every layer of one request."""

    layers: tuple[InsightLayer, ...] = tuple(InsightLayer)
    reason_filter: tuple[str, ...] = ()
    tracker_id: int | None = None
    days_back: int = Field(default=config.STOP_EVENT_DAYS_BACK, ge=1)
    day_of_week: int | None = Field(default=None, ge=0, le=6, description="0=Sunday")
    hour_bucket: int | None = Field(default=None, ge=0, le=23)
    month: int | None = Field(default=None, ge=1, le=12)
    year: int | None = None
    bottleneck_mode: BottleneckMode = BottleneckMode.OVERALL

    model_config = ConfigDict(extra="ignore", frozen=True)

    @field_validator("reason_filter", mode="before")
    @classmethod
    def _normalize_reasons(cls, value: Any) -> tuple[str, ...]:
        if isinstance(value, str):
            value = [value]
        return normalize_reason_filter(value)

    def filter_context(self) -> dict[str, Any]:
        """Filters that identify the request context; layer selection is excluded."""
        return self.model_dump(mode="json", exclude={"layers"})


@dataclass
class LayerResult:
    layer: str
    status: LayerStatus
    data: Any = None
    truncated: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is LayerStatus.OK


@dataclass
class SpatialInsightsResponse:
    generation: int
    layers: dict[str, LayerResult] = field(default_factory=dict)
    summary: dict[str, Any] = field(default_factory=dict)
    bottleneck_mode: BottleneckMode = BottleneckMode.OVERALL

    @property
    def failed_layers(self) -> list[str]:
        return [name for name, result in self.layers.items() if not result.ok]

    def feature_collection(self, layer: str) -> dict[str, Any]:
        """GeoJSON for one layer; failed or missing layers yield an empty collection."""
        result = self.layers.get(layer)
        if result is None or not result.ok or result.data is None:
            return GeometryService.feature_collection([])
        if hasattr(result.data, "ranked"):
            return GeometryService.feature_collection(
                [
                    cell.to_feature(intensity)
                    for cell, intensity in result.data.ranked(self.bottleneck_mode)
                ],
            )
        return GeometryService.feature_collection(
            [item.to_feature() for item in _layer_items(result.data)],
        )


def _layer_items(data: Any) -> list[Any]:
    if hasattr(data, "zones"):
        return list(data.zones)
    if hasattr(data, "cells"):
        return list(data.cells)
    return []
