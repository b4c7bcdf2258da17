"""In-process download queue for chapters picked from the library workflow."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable

from ..models import Chapter, Manga

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QueuedDownload:
    manga_id: int
    source_id: int
    chapter: Chapter


class DownloadQueue:
    """Ordered queue of chapters waiting to be downloaded.

    A chapter id is queued at most once until it is taken off the queue.
    """

    def __init__(self) -> None:
        self._items: list[QueuedDownload] = []
        self._queued_ids: set[int] = set()
        self._lock = asyncio.Lock()

    async def enqueue(self, manga: Manga, chapters: Iterable[Chapter]) -> int:
        """Queue ``chapters`` of ``manga``; return how many were new."""

        added = 0
        async with self._lock:
            for chapter in chapters:
                if chapter.id in self._queued_ids:
                    continue
                self._queued_ids.add(chapter.id)
                self._items.append(
                    QueuedDownload(
                        manga_id=manga.id, source_id=manga.source_id, chapter=chapter
                    )
                )
                added += 1
        if added:
            logger.info(
                "Queued %s chapters of %s for download", added, manga.display_title()
            )
        return added

    async def take(self) -> QueuedDownload | None:
        async with self._lock:
            if not self._items:
                return None
            item = self._items.pop(0)
            self._queued_ids.discard(item.chapter.id)
            return item

    @property
    def pending(self) -> list[QueuedDownload]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)
