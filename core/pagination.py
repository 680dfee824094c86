"""
Offset pagination over upstream feeds.

Every loop here terminates: it stops at the first short or empty page, or
when the page cap is reached. Hitting the cap returns what was collected with
``truncated=True`` so the caller can flag the result as incomplete.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import config
from core.exceptions import FleetRiskError, PaginationExhaustedError, UpstreamFetchError
from core.retry import retry_page_fetch

if TYPE_CHECKING:
    from core.generation import GenerationToken

logger = logging.getLogger(__name__)

PageFetcher = Callable[[int, int], Awaitable[list[dict[str, Any]] | None]]


@dataclass
class FetchResult:
    """Rows collected from a paginated feed."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    pages_fetched: int = 0
    truncated: bool = False
    version: int | None = None

    def __len__(self) -> int:
        return len(self.rows)


async def fetch_all_pages(
    fetch_page: PageFetcher,
    *,
    feed_name: str,
    page_size: int = config.FEED_PAGE_SIZE,
    max_pages: int = config.STOP_EVENT_MAX_PAGES,
    token: GenerationToken | None = None,
    max_retries: int = config.FETCH_MAX_RETRIES,
    retry_delay: float = config.FETCH_RETRY_DELAY_SECONDS,
) -> FetchResult:
    """
    Drain a feed page by page.

    Args:
        fetch_page: Coroutine taking ``(limit, offset)`` and returning rows.
        feed_name: Name used in logs and error details.
        page_size: Rows requested per page; a shorter page ends the loop.
        max_pages: Hard cap on pages fetched.
        token: Optional generation token checked between pages.
        max_retries: Retries per page for transient errors.
        retry_delay: Initial backoff between retries in seconds.

    Returns:
        FetchResult with the accumulated rows.

    Raises:
        UpstreamFetchError: A page failed after all retries.
        StaleResultError: The token was superseded while fetching.
    """
    if page_size <= 0:
        msg = "page_size must be positive"
        raise ValueError(msg)

    @retry_page_fetch(max_retries=max_retries, initial_delay=retry_delay)
    async def _fetch_with_retry(offset: int) -> list[dict[str, Any]]:
        rows = await fetch_page(page_size, offset)
        return list(rows or [])

    result = FetchResult()
    while True:
        if token is not None:
            token.ensure_current()

        if result.pages_fetched >= max_pages:
            result.truncated = True
            exhausted = PaginationExhaustedError(
                f"{feed_name}: page cap of {max_pages} reached",
                {"feed": feed_name, "rows": len(result.rows)},
            )
            logger.warning("%s; returning partial result", exhausted.message)
            break

        offset = result.pages_fetched * page_size
        try:
            page = await _fetch_with_retry(offset)
        except FleetRiskError:
            raise
        except Exception as exc:
            msg = f"{feed_name}: page {result.pages_fetched} failed: {exc}"
            raise UpstreamFetchError(
                msg,
                {"feed": feed_name, "page": result.pages_fetched, "offset": offset},
            ) from exc

        result.pages_fetched += 1
        result.rows.extend(page)
        if len(page) < page_size:
            break

    if token is not None:
        token.ensure_current()

    logger.info(
        "Fetched %d %s rows in %d page(s)%s",
        len(result.rows),
        feed_name,
        result.pages_fetched,
        " (truncated)" if result.truncated else "",
    )
    return result
