"""
In-process cache for versioned snapshot datasets.

Snapshot feeds publish immutable versions, so a loaded version never goes
stale on its own. Entries are keyed by ``(dataset, version)`` and are only
dropped when a newer version of the same dataset is observed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class SnapshotCache:
    """Cache keyed by ``(dataset, version)`` with newest-version invalidation."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, int], Any] = {}
        self._latest: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def latest_version(self, dataset: str) -> int | None:
        return self._latest.get(dataset)

    def observe(self, dataset: str, version: int) -> bool:
        """
        Record that ``version`` is the newest published version of ``dataset``.

        Returns True when older cached versions were invalidated.
        """
        current = self._latest.get(dataset)
        if current is not None and version <= current:
            return False
        self._latest[dataset] = version
        stale = [key for key in self._entries if key[0] == dataset and key[1] < version]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.info(
                "Snapshot %s advanced to version %d; dropped %d cached version(s)",
                dataset,
                version,
                len(stale),
            )
        return bool(stale)

    def get(self, dataset: str, version: int) -> Any | None:
        return self._entries.get((dataset, version))

    def put(self, dataset: str, version: int, value: Any) -> None:
        latest = self._latest.get(dataset)
        if latest is not None and version < latest:
            logger.debug(
                "Ignoring cache write for %s v%d; v%d is newer",
                dataset,
                version,
                latest,
            )
            return
        self.observe(dataset, version)
        self._entries[(dataset, version)] = value

    async def get_or_load(
        self,
        dataset: str,
        version: int,
        loader: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Return the cached value or load it once, even under concurrent callers."""
        self.observe(dataset, version)
        hit = self.get(dataset, version)
        if hit is not None:
            return hit

        lock = self._locks.setdefault(dataset, asyncio.Lock())
        async with lock:
            hit = self.get(dataset, version)
            if hit is not None:
                return hit
            value = await loader()
            self.put(dataset, version, value)
            return value

    def clear(self) -> None:
        self._entries.clear()
        self._latest.clear()
