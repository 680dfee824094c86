"""Centralized configuration for the risk analytics core.

This module is the single source of truth for tunables used across the
library. Import constants from here rather than calling os.getenv directly
in multiple places.

NOTE: Values are read once at import time. Services also accept explicit
overrides so callers can run with per-request parameters.
"""

from __future__ import annotations

import os
from typing import Final

from dotenv import load_dotenv

# Load environment variables from .env if present
load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# --- Hex grid ---
# Resolution 7 cells average ~5.16 km^2.
H3_RESOLUTION: Final[int] = _env_int("H3_RESOLUTION", 7)


# --- Risk zone clustering ---
CLUSTER_EPSILON_KM: Final[float] = _env_float("CLUSTER_EPSILON_KM", 5.0)
CLUSTER_MIN_POINTS: Final[int] = _env_int("CLUSTER_MIN_POINTS", 2)
CLUSTER_HULL_BUFFER_KM: Final[float] = _env_float("CLUSTER_HULL_BUFFER_KM", 1.0)
CLUSTER_FALLBACK_BUFFER_KM: Final[float] = _env_float(
    "CLUSTER_FALLBACK_BUFFER_KM",
    1.5,
)


# --- Corridor learning ---
CORRIDOR_DECAY_LAMBDA: Final[float] = _env_float("CORRIDOR_DECAY_LAMBDA", 0.01)
CORRIDOR_MATURITY_THRESHOLD: Final[float] = _env_float(
    "CORRIDOR_MATURITY_THRESHOLD",
    1.0,
)
CORRIDOR_MIN_VISITS: Final[int] = _env_int("CORRIDOR_MIN_VISITS", 1)


# --- Bottleneck analysis ---
VISIT_MERGE_GAP_MINUTES: Final[float] = _env_float("VISIT_MERGE_GAP_MINUTES", 30.0)
TIMELINE_TRIP_LIMIT: Final[int] = _env_int("TIMELINE_TRIP_LIMIT", 10)


# --- Upstream feeds ---
FEED_PAGE_SIZE: Final[int] = _env_int("FEED_PAGE_SIZE", 1000)
STOP_EVENT_DAYS_BACK: Final[int] = _env_int("STOP_EVENT_DAYS_BACK", 90)

# Hard page caps per feed; reaching one returns a truncated result.
STOP_EVENT_MAX_PAGES: Final[int] = _env_int("STOP_EVENT_MAX_PAGES", 100)
HEX_SNAPSHOT_MAX_PAGES: Final[int] = _env_int("HEX_SNAPSHOT_MAX_PAGES", 500)
ZONE_SNAPSHOT_MAX_PAGES: Final[int] = _env_int("ZONE_SNAPSHOT_MAX_PAGES", 500)
CORRIDOR_MAX_PAGES: Final[int] = _env_int("CORRIDOR_MAX_PAGES", 50)
STOP_PATTERN_MAX_PAGES: Final[int] = _env_int("STOP_PATTERN_MAX_PAGES", 1000)

FETCH_MAX_RETRIES: Final[int] = _env_int("FETCH_MAX_RETRIES", 3)
FETCH_RETRY_DELAY_SECONDS: Final[float] = _env_float("FETCH_RETRY_DELAY_SECONDS", 0.5)


__all__ = [
    "CLUSTER_EPSILON_KM",
    "CLUSTER_FALLBACK_BUFFER_KM",
    "CLUSTER_HULL_BUFFER_KM",
    "CLUSTER_MIN_POINTS",
    "CORRIDOR_DECAY_LAMBDA",
    "CORRIDOR_MATURITY_THRESHOLD",
    "CORRIDOR_MAX_PAGES",
    "CORRIDOR_MIN_VISITS",
    "FEED_PAGE_SIZE",
    "FETCH_MAX_RETRIES",
    "FETCH_RETRY_DELAY_SECONDS",
    "H3_RESOLUTION",
    "HEX_SNAPSHOT_MAX_PAGES",
    "STOP_EVENT_DAYS_BACK",
    "STOP_EVENT_MAX_PAGES",
    "STOP_PATTERN_MAX_PAGES",
    "TIMELINE_TRIP_LIMIT",
    "VISIT_MERGE_GAP_MINUTES",
    "ZONE_SNAPSHOT_MAX_PAGES",
]
