"""
Upstream feed interfaces consumed by the analytics services.

Implementations live outside this library (database RPCs, REST clients,
fixtures). Every read is offset-paginated: a page shorter than ``limit``
means the feed is drained.
"""

from typing import Any, Protocol

from feeds.params import CorridorQuery, StopEventQuery, StopPatternQuery


class StopEventFeed(Protocol):
    """Scored stop events filtered by severity, window, tracker and reasons."""

    async def fetch_stop_events(
        self,
        query: StopEventQuery,
        *,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        """Return one page of stop event rows."""
        ...


class SnapshotFeed(Protocol):
    """Versioned bulk read of precomputed aggregates (hex cells or zones)."""

    async def latest_version(self) -> int | None:
        """Return the newest published version, or None if none exists."""
        ...

    async def fetch_snapshot_page(
        self,
        version: int,
        *,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        """Return one page of rows belonging to ``version``."""
        ...


class CorridorFrequencyFeed(Protocol):
    """Per-cell decayed visit aggregates for the corridor network."""

    async def fetch_corridors(
        self,
        query: CorridorQuery,
        *,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        """Return one page of corridor cell rows."""
        ...


class StopPatternFeed(Protocol):
    """Per-cell dwell aggregates for bottleneck analysis."""

    async def fetch_stop_patterns(
        self,
        query: StopPatternQuery,
        *,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        """Return one page of stop pattern rows."""
        ...


class ReferenceDataFeed(Protocol):
    """Opaque reference rows (deviation events, safe zones) passed through as-is."""

    async def fetch_reference_page(
        self,
        *,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        """Return one page of reference rows."""
        ...
