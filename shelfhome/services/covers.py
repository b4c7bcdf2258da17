"""On-disk cache of cover images keyed by cover URL."""

from __future__ import annotations

import logging
from pathlib import Path

from ..models import Manga
from ..utils import cover_cache_key

logger = logging.getLogger(__name__)


class CoverCache:
    def __init__(self, cover_dir: Path):
        self._cover_dir = Path(cover_dir)

    def path_for(self, cover_url: str) -> Path:
        return self._cover_dir / cover_cache_key(cover_url)

    def remove(self, manga: Manga) -> bool:
        """Delete the cached cover of ``manga``; return whether a file was removed."""

        if not manga.cover_url:
            return False
        path = self.path_for(manga.cover_url)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Removed cached cover %s for manga %s", path.name, manga.id)
        return True
