"""Pydantic models for stop events, hex risk cells and risk zones."""

from __future__ import annotations

import math
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from core.casting import safe_float
from core.spatial import GeometryService


class SeverityLevel(str, Enum):
    CRITICAL = "CRITICAL"
    WARNING = "WARNING"
    MINOR = "MINOR"


SEVERITY_RANK: dict[str, int] = {
    SeverityLevel.MINOR.value: 1,
    SeverityLevel.WARNING.value: 2,
    SeverityLevel.CRITICAL.value: 3,
}


def severity_at_least(severity: str | None, minimum: str | None) -> bool:
    """True when ``severity`` ranks at or above ``minimum`` (unknown ranks lowest)."""
    if minimum is None:
        return True
    return SEVERITY_RANK.get((severity or "").upper(), 0) >= SEVERITY_RANK.get(
        minimum.upper(),
        0,
    )


class StopEvent(BaseModel):
    """
    A scored vehicle stop as produced by the upstream risk scorer.

    Feed rows use either the short names (``lat``) or the stop-prefixed names
    (``stop_lat``); both are accepted.
    """

    stop_id: str
    tracker_id: int
    tracker_name: str | None = None
    lat: float = Field(validation_alias=AliasChoices("lat", "stop_lat"))
    lng: float = Field(validation_alias=AliasChoices("lng", "stop_lng"))
    start_time: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("start_time", "stop_start"),
    )
    end_time: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("end_time", "stop_end"),
    )
    duration_hours: float = Field(
        default=0.0,
        validation_alias=AliasChoices("duration_hours", "stop_duration_hours"),
    )
    risk_score: float = 0.0
    severity_level: str = SeverityLevel.MINOR.value
    risk_reasons: tuple[str, ...] = ()
    is_night_stop: bool = False
    is_in_risk_zone: bool = False
    ignition_on_percent: float = 0.0
    h3_index: str | None = None
    safe_zone_name: str | None = None
    trip_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("trip_id", "prev_trip_id"),
    )
    analyzed_at: datetime | None = None

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    @field_validator("stop_id", "trip_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @field_validator("risk_score", mode="before")
    @classmethod
    def _clamp_risk_score(cls, value: Any) -> float:
        return min(100.0, max(0.0, safe_float(value)))

    @field_validator("duration_hours", "ignition_on_percent", mode="before")
    @classmethod
    def _non_negative(cls, value: Any) -> float:
        return max(0.0, safe_float(value))

    @field_validator("severity_level", mode="before")
    @classmethod
    def _normalize_severity(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            return SeverityLevel.MINOR.value
        return value.strip().upper()

    @field_validator("risk_reasons", mode="before")
    @classmethod
    def _coerce_reasons(cls, value: Any) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            value = [value]
        return tuple(str(r).strip() for r in value if r is not None and str(r).strip())

    @field_validator("is_night_stop", "is_in_risk_zone", mode="before")
    @classmethod
    def _none_is_false(cls, value: Any) -> Any:
        return False if value is None else value

    @property
    def is_critical(self) -> bool:
        return self.severity_level == SeverityLevel.CRITICAL.value

    @property
    def is_warning(self) -> bool:
        return self.severity_level == SeverityLevel.WARNING.value

    @property
    def has_valid_location(self) -> bool:
        return (
            math.isfinite(self.lat)
            and math.isfinite(self.lng)
            and -90 <= self.lat <= 90
            and -180 <= self.lng <= 180
        )


class HexCell(BaseModel):
    """Risk aggregate for one H3 cell."""

    h3_index: str
    h3_resolution: int
    center_lat: float
    center_lng: float
    boundary: list[list[float]]
    risk_score: int = Field(ge=0, le=100)
    incident_count: int = 0
    critical_count: int = 0
    warning_count: int = 0
    night_incident_count: int = 0
    day_incident_count: int = 0
    reason_distribution: dict[str, int] = Field(default_factory=dict)
    primary_reason: str = "UNKNOWN"
    version: int | None = None

    model_config = ConfigDict(frozen=True, extra="ignore")

    def boundary_geojson(self) -> dict[str, Any]:
        return {"type": "Polygon", "coordinates": [self.boundary]}

    def to_feature(self) -> dict[str, Any]:
        return GeometryService.as_feature(
            self.boundary_geojson(),
            self.model_dump(exclude={"boundary"}),
        )


class RiskZone(BaseModel):
    """A density cluster of risky stops with a render-ready polygon."""

    cluster_id: int
    member_ids: tuple[str, ...] = ()
    risk_score: int = Field(ge=0, le=100)
    incident_count: int = Field(ge=2)
    hex_count: int = 0
    polygon: dict[str, Any]
    center_lat: float
    center_lng: float
    is_night_dominant: bool = False
    primary_reason: str = "UNKNOWN"
    reason_distribution: dict[str, int] = Field(default_factory=dict)
    used_fallback_buffer: bool = False
    version: int | None = None

    model_config = ConfigDict(frozen=True, extra="ignore")

    def to_feature(self) -> dict[str, Any]:
        return GeometryService.as_feature(
            self.polygon,
            self.model_dump(exclude={"polygon"}),
        )
