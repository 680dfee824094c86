"""
Risk reason codes: multiplicity parsing, tallies and filter matching.

Upstream scorers encode repeated signals inside one stop by suffixing the
code, e.g. ``STOP_IN_RISK_ZONE_X3``. Tallies count the multiplicity, not the
number of events carrying the code.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from core.casting import safe_int

UNKNOWN_REASON = "UNKNOWN"

_MULTIPLICITY_RE = re.compile(r"^(?P<base>.+?)_X(?P<count>\d+)$")


def split_reason(code: str) -> tuple[str, int]:
    """Return (base_code, multiplicity) for a possibly suffixed reason code."""
    cleaned = code.strip()
    match = _MULTIPLICITY_RE.match(cleaned)
    if not match:
        return cleaned, 1
    count = int(match.group("count"))
    return match.group("base"), max(count, 1)


def aggregate_reasons(reason_lists: Iterable[Sequence[str]]) -> dict[str, int]:
    """
    Tally canonical reason codes across events.

    Key order follows first appearance, which primary_reason() relies on to
    break ties.
    """
    distribution: dict[str, int] = {}
    for reasons in reason_lists:
        for code in reasons:
            if not code or not code.strip():
                continue
            base, count = split_reason(code)
            distribution[base] = distribution.get(base, 0) + count
    return distribution


def fold_reason_distribution(raw: Mapping[Any, Any]) -> dict[str, int]:
    """
    Canonicalize a precomputed tally.

    Suffixed keys fold into their base code with ``count * multiplicity``,
    keeping first-seen order of the base codes.
    """
    distribution: dict[str, int] = {}
    for key, value in raw.items():
        if key is None or not str(key).strip():
            continue
        base, multiplicity = split_reason(str(key))
        distribution[base] = distribution.get(base, 0) + safe_int(value) * multiplicity
    return distribution


def primary_reason(distribution: dict[str, int]) -> str:
    """Most frequent reason; ties go to the code seen first."""
    if not distribution:
        return UNKNOWN_REASON
    best_code = UNKNOWN_REASON
    best_count = -1
    for code, count in distribution.items():
        if count > best_count:
            best_code, best_count = code, count
    return best_code


def resolve_primary_reason(distribution: dict[str, int], declared: Any = None) -> str:
    """Primary reason of a folded tally; a declared code only fills in for an empty tally."""
    if distribution:
        return primary_reason(distribution)
    if declared is not None and str(declared).strip():
        return split_reason(str(declared))[0]
    return UNKNOWN_REASON


def normalize_reason_filter(filters: Iterable[str] | None) -> tuple[str, ...]:
    if not filters:
        return ()
    return tuple(dict.fromkeys(f.strip() for f in filters if f and f.strip()))


def matches_reason_filter(
    reasons: Iterable[str],
    filters: Sequence[str] | None,
) -> bool:
    """
    OR + prefix match of event reasons against a filter list.

    A filter code matches a reason that equals it or starts with it, so
    ``STOP_IN_RISK_ZONE`` also selects ``STOP_IN_RISK_ZONE_X3``. An empty
    filter matches everything.
    """
    if not filters:
        return True
    reason_list = [r for r in reasons if r]
    return any(
        reason == code or reason.startswith(code)
        for code in filters
        for reason in reason_list
    )
