"""Pydantic models for stop-pattern (dwell) aggregates."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from core.spatial import GeometryService


class BottleneckMode(str, Enum):
    """Heat weighting applied to stop-pattern cells."""

    OVERALL = "overall"
    CONGESTION = "congestion"
    EFFICIENCY = "efficiency"


class StopPatternCell(BaseModel):
    """Per-cell dwell aggregate with its zero-guarded normalizations."""

    h3_index: str
    stop_count: int = Field(default=0, ge=0)
    visit_count: int = Field(default=0, ge=0)
    unique_trackers: int = Field(default=0, ge=0)
    avg_duration_hours: float = 0.0
    p90_duration_hours: float = 0.0
    total_dwell_time_hours: float = 0.0
    engine_on_hours: float = 0.0
    engine_off_hours: float = 0.0
    avg_dwell_per_tracker: float = 0.0
    avg_dwell_per_visit: float = 0.0
    avg_engine_on_per_tracker: float = 0.0
    avg_engine_off_per_tracker: float = 0.0
    avg_risk_score: float = 0.0
    avg_ignition_on_percent: float = 0.0
    timeline_trips: list[Any] = Field(default_factory=list)
    center_lat: float
    center_lng: float
    boundary: list[list[float]]

    model_config = ConfigDict(frozen=True, extra="ignore")

    def boundary_geojson(self) -> dict[str, Any]:
        return {"type": "Polygon", "coordinates": [self.boundary]}

    def to_feature(self, intensity: float | None = None) -> dict[str, Any]:
        properties = self.model_dump(exclude={"boundary"})
        if intensity is not None:
            properties["intensity"] = intensity
        return GeometryService.as_feature(self.boundary_geojson(), properties)
