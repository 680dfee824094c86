"""Paginated loaders that turn raw feed rows into validated inputs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

import config
from core.casting import safe_int
from core.exceptions import VersionUnavailableError
from core.pagination import FetchResult, fetch_all_pages
from risk.models import StopEvent, severity_at_least
from risk.reasons import matches_reason_filter

if TYPE_CHECKING:
    from core.cache import SnapshotCache
    from core.generation import GenerationToken
    from feeds.interfaces import ReferenceDataFeed, SnapshotFeed, StopEventFeed
    from feeds.params import StopEventQuery

logger = logging.getLogger(__name__)


@dataclass
class StopEventBatch:
    events: list[StopEvent] = field(default_factory=list)
    truncated: bool = False
    dropped: int = 0


def parse_stop_events(
    rows: list[dict[str, Any]],
    query: StopEventQuery | None = None,
) -> tuple[list[StopEvent], int]:
    """
    Validate feed rows into StopEvents.

    Rows that fail validation, carry unusable coordinates, or fall outside
    the query's severity/reason filter are dropped. Returns (events, dropped).
    """
    events: list[StopEvent] = []
    dropped = 0
    for row in rows:
        try:
            event = StopEvent.model_validate(row)
        except ValidationError as exc:
            dropped += 1
            logger.debug(
                "Dropping malformed stop row %s: %d error(s)",
                row.get("stop_id"),
                exc.error_count(),
            )
            continue
        if not event.has_valid_location:
            dropped += 1
            logger.debug("Dropping stop %s with invalid location", event.stop_id)
            continue
        if query is not None:
            if not severity_at_least(event.severity_level, query.min_severity):
                continue
            if not matches_reason_filter(event.risk_reasons, query.risk_reasons):
                continue
        events.append(event)
    return events, dropped


async def load_stop_events(
    feed: StopEventFeed,
    query: StopEventQuery,
    *,
    page_size: int = config.FEED_PAGE_SIZE,
    max_pages: int = config.STOP_EVENT_MAX_PAGES,
    token: GenerationToken | None = None,
) -> StopEventBatch:
    """Drain the stop event feed for ``query``."""

    async def _page(limit: int, offset: int) -> list[dict[str, Any]]:
        return await feed.fetch_stop_events(query, limit=limit, offset=offset)

    fetched = await fetch_all_pages(
        _page,
        feed_name="stop_events",
        page_size=page_size,
        max_pages=max_pages,
        token=token,
    )
    events, dropped = parse_stop_events(fetched.rows, query)
    if dropped:
        logger.info("Dropped %d unusable stop event row(s)", dropped)
    return StopEventBatch(events=events, truncated=fetched.truncated, dropped=dropped)


async def load_latest_snapshot(
    feed: SnapshotFeed,
    dataset: str,
    *,
    cache: SnapshotCache | None = None,
    page_size: int = config.FEED_PAGE_SIZE,
    max_pages: int = config.HEX_SNAPSHOT_MAX_PAGES,
    token: GenerationToken | None = None,
) -> FetchResult:
    """
    Read every row of the newest snapshot version.

    Rows tagged with any other version are discarded so one result never
    mixes versions.

    Raises:
        VersionUnavailableError: The feed has not published any version.
    """
    version = await feed.latest_version()
    if version is None:
        raise VersionUnavailableError(
            f"No published version for {dataset}",
            {"dataset": dataset},
        )

    async def _load() -> FetchResult:
        async def _page(limit: int, offset: int) -> list[dict[str, Any]]:
            return await feed.fetch_snapshot_page(version, limit=limit, offset=offset)

        fetched = await fetch_all_pages(
            _page,
            feed_name=f"{dataset}@v{version}",
            page_size=page_size,
            max_pages=max_pages,
            token=token,
        )
        rows = [
            row
            for row in fetched.rows
            if row.get("version") is None or safe_int(row.get("version"), -1) == version
        ]
        if len(rows) != len(fetched.rows):
            logger.warning(
                "%s: discarded %d row(s) not belonging to version %d",
                dataset,
                len(fetched.rows) - len(rows),
                version,
            )
        return FetchResult(
            rows=rows,
            pages_fetched=fetched.pages_fetched,
            truncated=fetched.truncated,
            version=version,
        )

    if cache is None:
        return await _load()
    return await cache.get_or_load(dataset, version, _load)


async def load_reference_data(
    feed: ReferenceDataFeed,
    name: str,
    *,
    page_size: int = config.FEED_PAGE_SIZE,
    max_pages: int = config.STOP_EVENT_MAX_PAGES,
    token: GenerationToken | None = None,
) -> FetchResult:
    """Drain an opaque reference feed; rows are returned untouched."""

    async def _page(limit: int, offset: int) -> list[dict[str, Any]]:
        return await feed.fetch_reference_page(limit=limit, offset=offset)

    return await fetch_all_pages(
        _page,
        feed_name=name,
        page_size=page_size,
        max_pages=max_pages,
        token=token,
    )
