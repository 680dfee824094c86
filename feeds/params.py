"""Pydantic query parameters for upstream feed reads."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

import config
from risk.models import SEVERITY_RANK, SeverityLevel
from risk.reasons import normalize_reason_filter


class StopEventQuery(BaseModel):
    min_severity: str = SeverityLevel.WARNING.value
    days_back: int = Field(default=config.STOP_EVENT_DAYS_BACK, ge=1)
    tracker_id: int | None = None
    risk_reasons: tuple[str, ...] | None = Field(
        default=None,
        description="OR + prefix matched reason codes; None disables the filter",
    )

    model_config = ConfigDict(extra="ignore", frozen=True)

    @field_validator("min_severity", mode="before")
    @classmethod
    def _known_severity(cls, value: Any) -> str:
        cleaned = str(value or "").strip().upper()
        if cleaned not in SEVERITY_RANK:
            msg = f"Unknown severity level: {value!r}"
            raise ValueError(msg)
        return cleaned

    @field_validator("risk_reasons", mode="before")
    @classmethod
    def _normalize_reasons(cls, value: Any) -> tuple[str, ...] | None:
        if value is None:
            return None
        if isinstance(value, str):
            value = [value]
        normalized = normalize_reason_filter(value)
        return normalized or None


class CorridorQuery(BaseModel):
    """Parameters of the corridor frequency read."""

    min_visits: int = Field(default=config.CORRIDOR_MIN_VISITS, ge=0)
    decay_lambda: float = Field(default=config.CORRIDOR_DECAY_LAMBDA, ge=0)
    maturity_threshold: float = Field(default=config.CORRIDOR_MATURITY_THRESHOLD, ge=0)
    tracker_id: int | None = None
    day_of_week: int | None = Field(default=None, ge=0, le=6, description="0=Sunday")
    hour_bucket: int | None = Field(default=None, ge=0, le=23)

    model_config = ConfigDict(extra="ignore", frozen=True)


class StopPatternQuery(BaseModel):
    """Parameters of the stop-pattern (bottleneck) read."""

    min_date: datetime | None = None
    max_date: datetime | None = None
    day_of_week: int | None = Field(default=None, ge=0, le=6, description="0=Sunday")
    hour_bucket: int | None = Field(default=None, ge=0, le=23)
    tracker_id: int | None = None
    month: int | None = Field(default=None, ge=1, le=12)
    year: int | None = None

    model_config = ConfigDict(extra="ignore", frozen=True)
