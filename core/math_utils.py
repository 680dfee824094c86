"""
Mathematical utilities for aggregate statistics.

This module provides the small numeric helpers shared by the aggregators:
rounding, zero-guarded division, percentiles, exponential decay and
circular statistics for compass directions.
"""

from __future__ import annotations

import math
import statistics
from collections.abc import Sequence

COMPASS_OCTANTS = 8
OCTANT_WIDTH_DEG = 360.0 / COMPASS_OCTANTS


def round_half_up(value: float) -> int:
    """
    Round to the nearest integer with halves going up.

    Python's built-in round() uses banker's rounding; aggregate scores are
    expected to round 72.5 to 73.
    """
    return int(math.floor(value + 0.5))


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def safe_divide(
    numerator: float,
    denominator: float,
    default: float = 0.0,
) -> float:
    """Divide, returning ``default`` for a zero or non-finite denominator."""
    if not denominator or not math.isfinite(denominator):
        return default
    result = numerator / denominator
    return result if math.isfinite(result) else default


def percentile(values: Sequence[float], fraction: float) -> float:
    """
    Continuous percentile with linear interpolation between ranks.

    Args:
        values: Sample values (any order).
        fraction: Percentile as a fraction in [0, 1], e.g. 0.9 for p90.

    Returns:
        The interpolated percentile, or 0.0 for an empty sample.

    Example:
        >>> percentile([1.0, 2.0, 3.0, 4.0], 0.9)
        3.7
    """
    if not values:
        return 0.0
    ordered = sorted(float(v) for v in values)
    if len(ordered) == 1:
        return ordered[0]
    position = clamp(fraction, 0.0, 1.0) * (len(ordered) - 1)
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return ordered[lower]
    weight = position - lower
    return ordered[lower] + (ordered[upper] - ordered[lower]) * weight


def decay_weight(age_days: float, decay_lambda: float) -> float:
    """
    Exponential time-decay weight ``exp(-lambda * age_days)``.

    Future-dated observations (negative age) are treated as age zero so a
    clock skew never inflates a weight above 1.
    """
    return math.exp(-decay_lambda * max(0.0, age_days))


def calculate_circular_mean_degrees(angles: Sequence[float]) -> float | None:
    """
    Calculate the circular mean of compass angles in degrees.

    Handles wraparound, so 350 and 10 average to 0 instead of 180. Returns
    None for an empty input or when the angles cancel out exactly.
    """
    if not angles:
        return None
    radians = [math.radians(a) for a in angles]
    avg_sin = statistics.mean([math.sin(r) for r in radians])
    avg_cos = statistics.mean([math.cos(r) for r in radians])
    if math.isclose(avg_sin, 0.0, abs_tol=1e-12) and math.isclose(
        avg_cos,
        0.0,
        abs_tol=1e-12,
    ):
        return None
    return (math.degrees(math.atan2(avg_sin, avg_cos)) + 360.0) % 360.0


def bearing_to_octant(bearing_deg: float) -> int:
    """Map a bearing to its compass octant: 0=N, 1=NE, 2=E ... 7=NW."""
    normalized = bearing_deg % 360.0
    return int(((normalized + OCTANT_WIDTH_DEG / 2) // OCTANT_WIDTH_DEG) % COMPASS_OCTANTS)
