"""Favorite / library membership workflow for browsed catalog entries."""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import Any, ClassVar, Iterable, Union

from ..config import DEFAULT_CATEGORY_NONE, Settings
from ..errors import StorageError
from ..models import SYSTEM_CATEGORY_ID, Category, Chapter, DuplicateManga, Manga
from ..utils import now_millis
from .covers import CoverCache
from .downloads import DownloadQueue
from .provider import SourceRegistry
from .repository import LibraryRepository
from .trackers import TrackerBinder

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CategorySelection:
    category: Category
    checked: bool


@dataclass(frozen=True, slots=True)
class RemoveMangaDialog:
    kind: ClassVar[str] = "remove_manga"

    manga: Manga

    def to_payload(self) -> dict[str, Any]:
        return {"dialog": self.kind, "manga": self.manga.model_dump(mode="json")}


@dataclass(frozen=True, slots=True)
class AddDuplicateDialog:
    kind: ClassVar[str] = "add_duplicate"

    manga: Manga
    duplicates: tuple[DuplicateManga, ...]

    def to_payload(self) -> dict[str, Any]:
        return {
            "dialog": self.kind,
            "manga": self.manga.model_dump(mode="json"),
            "duplicates": [item.model_dump(mode="json") for item in self.duplicates],
        }


@dataclass(frozen=True, slots=True)
class ChangeCategoryDialog:
    kind: ClassVar[str] = "change_category"

    manga: Manga
    initial_selection: tuple[CategorySelection, ...]

    def to_payload(self) -> dict[str, Any]:
        return {
            "dialog": self.kind,
            "manga": self.manga.model_dump(mode="json"),
            "categories": [
                {**item.category.model_dump(), "checked": item.checked}
                for item in self.initial_selection
            ],
        }


@dataclass(frozen=True, slots=True)
class ConfirmAddOrDownloadDialog:
    kind: ClassVar[str] = "confirm_add_or_download"

    manga: Manga

    def to_payload(self) -> dict[str, Any]:
        return {"dialog": self.kind, "manga": self.manga.model_dump(mode="json")}


@dataclass(frozen=True, slots=True)
class MigrateDialog:
    kind: ClassVar[str] = "migrate"

    target: Manga
    current: Manga

    def to_payload(self) -> dict[str, Any]:
        return {
            "dialog": self.kind,
            "target": self.target.model_dump(mode="json"),
            "current": self.current.model_dump(mode="json"),
        }


Dialog = Union[
    RemoveMangaDialog,
    AddDuplicateDialog,
    ChangeCategoryDialog,
    ConfirmAddOrDownloadDialog,
    MigrateDialog,
]


class LibraryWorkflow:
    """Decide what happens when the user adds, removes or downloads a manga.

    Methods either complete the action and return ``None`` or return the
    dialog the user has to answer first. Favorite toggles on the same manga are
    serialized with a per-manga lock.
    """

    def __init__(
        self,
        repository: LibraryRepository,
        providers: SourceRegistry,
        downloads: DownloadQueue,
        covers: CoverCache,
        trackers: TrackerBinder,
        settings: Settings,
    ):
        self._repository = repository
        self._providers = providers
        self._downloads = downloads
        self._covers = covers
        self._trackers = trackers
        self._settings = settings
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, manga_id: int) -> asyncio.Lock:
        # Entries vanish once no toggle holds or awaits the lock.
        lock = self._locks.get(manga_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[manga_id] = lock
        return lock

    async def get_categories(self) -> list[Category]:
        """User categories; the system default category is never offered."""

        categories = await self._repository.get_categories()
        return [category for category in categories if not category.is_system_category]

    async def request_add(self, manga: Manga) -> Dialog | None:
        """Entry point for a long press on a catalog item."""

        manga = await self._repository.get_manga(manga.id)
        if manga.favorite:
            return RemoveMangaDialog(manga)
        duplicates = await self._repository.find_duplicates(manga)
        if duplicates:
            return AddDuplicateDialog(manga, tuple(duplicates))
        if self._settings.confirm_download_on_add:
            return ConfirmAddOrDownloadDialog(manga)
        return await self.add_favorite(manga)

    async def add_favorite(self, manga: Manga) -> Dialog | None:
        categories = await self.get_categories()
        default_id = self._settings.default_category_id
        default_category = next(
            (category for category in categories if category.id == default_id), None
        )

        if default_category is not None:
            await self._repository.set_categories(manga.id, [default_category.id])
            await self._ensure_favorite(manga)
            return None

        if default_id == DEFAULT_CATEGORY_NONE or not categories:
            await self._ensure_favorite(manga)
            return None

        current_ids = set(await self._repository.get_manga_category_ids(manga.id))
        return ChangeCategoryDialog(
            manga,
            tuple(
                CategorySelection(category, category.id in current_ids)
                for category in categories
            ),
        )

    async def confirm_categories(
        self, manga: Manga, category_ids: Iterable[int]
    ) -> Manga:
        """Apply the answer of a :class:`ChangeCategoryDialog`."""

        wanted = [
            category_id for category_id in category_ids if category_id != SYSTEM_CATEGORY_ID
        ]
        await self._repository.set_categories(manga.id, wanted)
        return await self._ensure_favorite(manga)

    async def change_manga_favorite(self, manga: Manga) -> Manga:
        """Toggle the favorite flag of ``manga`` as currently stored."""

        async with self._lock_for(manga.id):
            current = await self._repository.get_manga(manga.id)
            return await self._apply_favorite(current, not current.favorite)

    async def remove_favorite(self, manga: Manga) -> Manga:
        async with self._lock_for(manga.id):
            current = await self._repository.get_manga(manga.id)
            if not current.favorite:
                return current
            return await self._apply_favorite(current, False)

    async def download_and_favorite(self, manga: Manga) -> list[Chapter]:
        """Queue every chapter of ``manga`` for download and favorite it.

        The chapter list comes from the source when possible. Any failure to
        fetch or sync it, other than a storage failure, falls back to the
        chapters already stored, scanlator filter ignored.
        """

        try:
            provider = self._providers.get(manga.source_id)
            remote_chapters = await provider.get_chapter_list(manga)
            chapters = await self._repository.sync_chapters(manga.id, remote_chapters)
        except StorageError:
            raise
        except Exception as exc:
            logger.warning(
                "Failed to fetch chapters of %s, using stored chapters: %s",
                manga.display_title(),
                exc,
            )
            chapters = await self._repository.get_local_chapters(
                manga.id, include_filtered=True
            )

        if chapters:
            await self._downloads.enqueue(manga, chapters)
        await self._ensure_favorite(manga)
        return chapters

    def open_migration(self, target: Manga, current: Manga) -> MigrateDialog:
        return MigrateDialog(target=target, current=current)

    async def migrate(self, current: Manga, target: Manga) -> Manga:
        """Move library membership from ``current`` to ``target``."""

        if current.id == target.id:
            return await self._repository.get_manga(target.id)
        category_ids = await self._repository.get_manga_category_ids(current.id)
        await self._repository.set_categories(target.id, category_ids)
        migrated = await self._ensure_favorite(target)
        await self.remove_favorite(current)
        logger.info(
            "Migrated %s from source %s to source %s",
            migrated.display_title(),
            current.source_id,
            target.source_id,
        )
        return migrated

    async def _ensure_favorite(self, manga: Manga) -> Manga:
        async with self._lock_for(manga.id):
            current = await self._repository.get_manga(manga.id)
            if current.favorite:
                return current
            return await self._apply_favorite(current, True)

    async def _apply_favorite(self, manga: Manga, favorite: bool) -> Manga:
        if not favorite:
            updated = await self._repository.set_favorite(manga.id, False, date_added=0)
            if self._release_cover(updated):
                await self._repository.mark_cover_removed(manga.id)
                return await self._repository.get_manga(manga.id)
            return updated

        updated = await self._repository.set_favorite(
            manga.id, True, date_added=now_millis()
        )
        await self._repository.set_default_flags(
            manga.id,
            chapter_flags=self._settings.default_chapter_flags,
            viewer_flags=self._settings.default_viewer_flags,
        )
        await self._trackers.bind(updated)
        return await self._repository.get_manga(manga.id)

    def _release_cover(self, manga: Manga) -> bool:
        try:
            return self._covers.remove(manga)
        except OSError as exc:
            logger.warning(
                "Could not delete cached cover of %s: %s", manga.display_title(), exc
            )
            return False
