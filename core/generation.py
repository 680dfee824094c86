"""
Request generations tied to the active filter context.

Every analytic request is stamped with a token when it starts. When the
caller changes filters the tracker advances, and any in-flight request whose
token no longer matches must discard its result instead of merging it into
the new context's output.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from core.exceptions import StaleResultError

logger = logging.getLogger(__name__)


def filter_context_key(filters: dict[str, Any]) -> str:
    """Produce a deterministic key for a filter dictionary."""
    raw = json.dumps(filters, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode()).hexdigest()[:16]


@dataclass(frozen=True)
class GenerationToken:
    """Identity of one request within a filter context."""

    generation: int
    context_key: str
    tracker: GenerationTracker | None = field(default=None, compare=False, repr=False)

    def is_current(self) -> bool:
        if self.tracker is None:
            return True
        return self.tracker.is_current(self)

    def ensure_current(self) -> None:
        """Raise StaleResultError if a newer filter context has been activated."""
        if not self.is_current():
            raise StaleResultError(
                "Request superseded by a newer filter context",
                {"generation": self.generation, "context_key": self.context_key},
            )


class GenerationTracker:
    """Monotonic generation counter shared by the requests of one consumer."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._generation = 0
        self._context_key: str | None = None

    @property
    def generation(self) -> int:
        return self._generation

    def activate(self, filters: dict[str, Any]) -> GenerationToken:
        """
        Start a request for ``filters``.

        A different filter context bumps the generation, which makes every
        previously issued token stale. Re-activating the same context reuses
        the current generation so concurrent layer fetches stay valid.
        """
        key = filter_context_key(filters)
        with self._lock:
            if key != self._context_key:
                self._generation += 1
                if self._context_key is not None:
                    logger.debug(
                        "Filter context changed; advancing to generation %d",
                        self._generation,
                    )
                self._context_key = key
            return GenerationToken(self._generation, key, self)

    def is_current(self, token: GenerationToken) -> bool:
        with self._lock:
            return (
                token.generation == self._generation
                and token.context_key == self._context_key
            )
