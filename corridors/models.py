"""Pydantic models for corridor passages and learned corridor cells."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.spatial import GeometryService


class CorridorPassage(BaseModel):
    """One historical traversal of a cell by a tracker."""

    tracker_id: int
    observed_at: datetime
    h3_index: str | None = None
    lat: float | None = None
    lng: float | None = None
    is_night: bool = False
    bearing_degrees: float | None = None

    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("is_night", mode="before")
    @classmethod
    def _none_is_false(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("bearing_degrees", mode="before")
    @classmethod
    def _normalize_bearing(cls, value: Any) -> float | None:
        try:
            bearing = float(value)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(bearing):
            return None
        return bearing % 360.0


class CorridorCell(BaseModel):
    """A cell of the known-route network with its decayed visit weight."""

    h3_index: str
    visit_count: float = Field(ge=0)
    raw_passage_count: int = 0
    is_night_route: bool = False
    bearing_bucket: int | None = Field(default=None, ge=0, le=7)
    is_mature: bool = True
    center_lat: float
    center_lng: float
    boundary: list[list[float]]

    model_config = ConfigDict(frozen=True, extra="ignore")

    def boundary_geojson(self) -> dict[str, Any]:
        return {"type": "Polygon", "coordinates": [self.boundary]}

    def to_feature(self) -> dict[str, Any]:
        return GeometryService.as_feature(
            self.boundary_geojson(),
            self.model_dump(exclude={"boundary"}),
        )
