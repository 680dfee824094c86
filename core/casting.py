from __future__ import annotations

import math
from typing import Any


def safe_float(value: Any, default: float = 0.0) -> float:
    """Coerce value to a finite float with a default."""
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return result if math.isfinite(result) else default


def safe_int(value: Any, default: int = 0) -> int:
    """Coerce value to int with a default."""
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default


def safe_bool(value: Any, default: bool = False) -> bool:
    """Coerce feed booleans, which may arrive as strings or 0/1."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        cleaned = value.strip().lower()
        if cleaned in {"true", "t", "1", "yes", "y"}:
            return True
        if cleaned in {"false", "f", "0", "no", "n", ""}:
            return False
    return default
