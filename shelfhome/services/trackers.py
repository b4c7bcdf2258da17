"""Binding of newly favorited manga to enhanced trackers."""

from __future__ import annotations

import logging
from typing import Iterable, Protocol

from ..models import Manga

logger = logging.getLogger(__name__)


class EnhancedTracker(Protocol):
    """A tracker that can follow a manga without any user input."""

    name: str

    def accepts_source(self, source_id: int) -> bool: ...

    async def bind(self, manga: Manga) -> None: ...


class TrackerBinder:
    def __init__(self, trackers: Iterable[EnhancedTracker] = ()):
        self._trackers = list(trackers)

    async def bind(self, manga: Manga) -> list[str]:
        """Bind ``manga`` to every accepting tracker.

        Failures are logged and skipped. Returns the names of the trackers
        that were bound.
        """

        bound: list[str] = []
        for tracker in self._trackers:
            if not tracker.accepts_source(manga.source_id):
                continue
            try:
                await tracker.bind(manga)
            except Exception as exc:
                logger.warning(
                    "Could not bind %s to tracker %s: %s",
                    manga.display_title(),
                    tracker.name,
                    exc,
                )
                continue
            bound.append(tracker.name)
        return bound
