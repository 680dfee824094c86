"""Tenacity retry policy for upstream page fetches."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

import config
from core.exceptions import FleetRiskError

if TYPE_CHECKING:
    from tenacity import RetryCallState

logger = logging.getLogger(__name__)

TRANSIENT_FETCH_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,
)


def is_transient(exc: BaseException) -> bool:
    """Network-level failures are retried; library errors never are."""
    if isinstance(exc, FleetRiskError):
        return False
    return isinstance(exc, TRANSIENT_FETCH_ERRORS)


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    wait = state.next_action.sleep if state.next_action else 0.0
    logger.warning(
        "Page fetch attempt %d failed (%s); retrying in %.2fs",
        state.attempt_number,
        exc,
        wait,
    )


def retry_page_fetch(
    max_retries: int = config.FETCH_MAX_RETRIES,
    initial_delay: float = config.FETCH_RETRY_DELAY_SECONDS,
):
    """
    Decorator for a coroutine fetching one feed page.

    Transient errors are retried ``max_retries`` times with exponential
    backoff starting at ``initial_delay`` seconds. The last error is
    re-raised unchanged; callers wrap it.
    """
    return retry(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=initial_delay, exp_base=2.0),
        retry=retry_if_exception(is_transient),
        before_sleep=_log_retry,
        reraise=True,
    )
