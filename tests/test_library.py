"""Favorite / library workflow tests."""

from __future__ import annotations

import asyncio
from typing import Any, Iterable

from shelfhome.config import Settings
from shelfhome.database import Database
from shelfhome.db_models import CategoryRecord
from shelfhome.errors import ProviderError
from shelfhome.models import Manga, RemoteChapter, RemoteEntry
from shelfhome.services.covers import CoverCache
from shelfhome.services.downloads import DownloadQueue
from shelfhome.services.library import (
    AddDuplicateDialog,
    ChangeCategoryDialog,
    ConfirmAddOrDownloadDialog,
    LibraryWorkflow,
    MigrateDialog,
    RemoveMangaDialog,
)
from shelfhome.services.provider import SourceRegistry
from shelfhome.services.repository import LibraryRepository
from shelfhome.services.trackers import TrackerBinder


class SpyRepository(LibraryRepository):
    """Repository recording category assignments."""

    def __init__(self, session_factory) -> None:
        super().__init__(session_factory)
        self.category_calls: list[tuple[int, list[int]]] = []

    async def set_categories(self, manga_id: int, category_ids: Iterable[int]) -> None:
        ids = list(category_ids)
        self.category_calls.append((manga_id, ids))
        await super().set_categories(manga_id, ids)


class ChapterProvider:
    source_id = 1
    name = "chapters"
    supports_latest = True
    supports_home_page = False

    def __init__(self, chapters: list[RemoteChapter] | Exception) -> None:
        self.chapters = chapters

    async def get_chapter_list(self, manga: Manga) -> list[RemoteChapter]:
        if isinstance(self.chapters, Exception):
            raise self.chapters
        return self.chapters


class FakeTracker:
    def __init__(self, name: str, *, fail: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.bound: list[int] = []

    def accepts_source(self, source_id: int) -> bool:
        return True

    async def bind(self, manga: Manga) -> None:
        if self.fail:
            raise RuntimeError("tracker offline")
        self.bound.append(manga.id)


class Harness:
    def __init__(self, tmp_path, **overrides: Any) -> None:
        self.database = Database(f"sqlite+aiosqlite:///{tmp_path / 'library.db'}")
        self.repository = SpyRepository(self.database.session_factory)
        self.registry = SourceRegistry()
        self.downloads = DownloadQueue()
        self.cover_dir = tmp_path / "covers"
        self.cover_dir.mkdir()
        self.covers = CoverCache(self.cover_dir)
        self.trackers = [FakeTracker("broken", fail=True), FakeTracker("good")]
        self.settings = Settings(_env_file=None, **overrides)
        self.workflow = LibraryWorkflow(
            self.repository,
            self.registry,
            self.downloads,
            self.covers,
            TrackerBinder(self.trackers),
            self.settings,
        )

    async def start(self) -> None:
        await self.database.create_all()

    async def manga(self, url: str = "/m/1", title: str = "Solo Leveling", source_id: int = 1) -> Manga:
        return await self.repository.find_or_create_identity(
            source_id, url, RemoteEntry(url=url, title=title, cover_url=f"https://img{url}")
        )


def test_add_without_categories_skips_category_assignment(tmp_path) -> None:
    async def runner() -> None:
        harness = Harness(tmp_path, DEFAULT_CHAPTER_FLAGS=3, DEFAULT_VIEWER_FLAGS=1)
        await harness.start()
        manga = await harness.manga()

        dialog = await harness.workflow.add_favorite(manga)

        stored = await harness.repository.get_manga(manga.id)
        assert dialog is None
        assert harness.repository.category_calls == []
        assert stored.favorite is True
        assert stored.date_added > 0
        assert stored.chapter_flags == 3
        assert stored.viewer_flags == 1

        await harness.database.dispose()

    asyncio.run(runner())


def test_add_uses_configured_default_category(tmp_path) -> None:
    async def runner() -> None:
        harness = Harness(tmp_path)
        await harness.start()
        await harness.repository.create_category("Reading")
        later = await harness.repository.create_category("Later")
        harness.settings.default_category_id = later.id
        manga = await harness.manga()

        dialog = await harness.workflow.add_favorite(manga)

        assert dialog is None
        assert harness.repository.category_calls == [(manga.id, [later.id])]
        assert await harness.repository.get_manga_category_ids(manga.id) == [later.id]
        assert (await harness.repository.get_manga(manga.id)).favorite is True

        await harness.database.dispose()

    asyncio.run(runner())


def test_add_with_no_category_preference_skips_dialog(tmp_path) -> None:
    async def runner() -> None:
        harness = Harness(tmp_path, DEFAULT_CATEGORY=0)
        await harness.start()
        await harness.repository.create_category("Reading")
        manga = await harness.manga()

        dialog = await harness.workflow.add_favorite(manga)

        assert dialog is None
        assert harness.repository.category_calls == []
        assert (await harness.repository.get_manga(manga.id)).favorite is True

        await harness.database.dispose()

    asyncio.run(runner())


def test_add_asks_for_categories_then_applies_choice(tmp_path) -> None:
    async def runner() -> None:
        harness = Harness(tmp_path)
        await harness.start()
        reading = await harness.repository.create_category("Reading")
        later = await harness.repository.create_category("Later")
        manga = await harness.manga()
        await harness.repository.set_categories(manga.id, [later.id])
        harness.repository.category_calls.clear()

        dialog = await harness.workflow.add_favorite(manga)

        assert isinstance(dialog, ChangeCategoryDialog)
        assert [(item.category.id, item.checked) for item in dialog.initial_selection] == [
            (reading.id, False),
            (later.id, True),
        ]
        assert (await harness.repository.get_manga(manga.id)).favorite is False

        updated = await harness.workflow.confirm_categories(manga, [reading.id, 0])

        assert updated.favorite is True
        assert harness.repository.category_calls == [(manga.id, [reading.id])]
        assert dialog.to_payload()["dialog"] == "change_category"

        await harness.database.dispose()

    asyncio.run(runner())


def test_request_add_branches(tmp_path) -> None:
    async def runner() -> None:
        harness = Harness(tmp_path)
        await harness.start()
        existing = await harness.manga("/a/1", "Solo Leveling", source_id=1)
        await harness.workflow.add_favorite(existing)

        assert isinstance(await harness.workflow.request_add(existing), RemoveMangaDialog)

        candidate = await harness.manga("/b/1", "solo leveling", source_id=2)
        dialog = await harness.workflow.request_add(candidate)
        assert isinstance(dialog, AddDuplicateDialog)
        assert [item.manga.id for item in dialog.duplicates] == [existing.id]

        harness.settings.confirm_download_on_add = True
        fresh = await harness.manga("/c/1", "Something Else")
        assert isinstance(await harness.workflow.request_add(fresh), ConfirmAddOrDownloadDialog)

        await harness.database.dispose()

    asyncio.run(runner())


def test_removing_favorite_releases_cover(tmp_path) -> None:
    async def runner() -> None:
        harness = Harness(tmp_path)
        await harness.start()
        manga = await harness.manga()
        await harness.workflow.change_manga_favorite(manga)
        cover_path = harness.covers.path_for(manga.cover_url or "")
        cover_path.write_bytes(b"jpeg")

        removed = await harness.workflow.change_manga_favorite(manga)

        assert removed.favorite is False
        assert removed.date_added == 0
        assert removed.cover_last_modified > 0
        assert not cover_path.exists()

        await harness.database.dispose()

    asyncio.run(runner())


def test_concurrent_toggles_are_serialized(tmp_path) -> None:
    async def runner() -> None:
        harness = Harness(tmp_path)
        await harness.start()
        manga = await harness.manga()

        await asyncio.gather(
            harness.workflow.change_manga_favorite(manga),
            harness.workflow.change_manga_favorite(manga),
        )

        assert (await harness.repository.get_manga(manga.id)).favorite is False
        assert len(harness.workflow._locks) == 0

        await harness.database.dispose()

    asyncio.run(runner())


def test_tracker_failure_does_not_abort_favorite(tmp_path) -> None:
    async def runner() -> None:
        harness = Harness(tmp_path)
        await harness.start()
        manga = await harness.manga()

        updated = await harness.workflow.change_manga_favorite(manga)

        assert updated.favorite is True
        assert updated.date_added > 0
        assert harness.repository.category_calls == []
        assert harness.trackers[0].bound == []
        assert harness.trackers[1].bound == [manga.id]

        await harness.database.dispose()

    asyncio.run(runner())


def test_download_falls_back_to_stored_chapters(tmp_path) -> None:
    async def runner() -> None:
        harness = Harness(tmp_path)
        await harness.start()
        harness.registry.register(ChapterProvider(ProviderError("offline", source_id=1)))
        manga = await harness.manga()
        await harness.repository.sync_chapters(
            manga.id,
            [
                RemoteChapter(url="/c/1", name="1", scanlator="Group A"),
                RemoteChapter(url="/c/2", name="2", scanlator="Group B"),
            ],
        )
        await harness.repository.set_excluded_scanlators(manga.id, ["Group B"])

        chapters = await harness.workflow.download_and_favorite(manga)

        assert [chapter.url for chapter in chapters] == ["/c/1", "/c/2"]
        assert [item.chapter.url for item in harness.downloads.pending] == ["/c/1", "/c/2"]
        assert (await harness.repository.get_manga(manga.id)).favorite is True

        await harness.database.dispose()

    asyncio.run(runner())


def test_download_uses_fresh_chapter_list(tmp_path) -> None:
    async def runner() -> None:
        harness = Harness(tmp_path)
        await harness.start()
        harness.registry.register(
            ChapterProvider(
                [RemoteChapter(url="/c/9", name="9"), RemoteChapter(url="/c/8", name="8")]
            )
        )
        manga = await harness.manga()

        chapters = await harness.workflow.download_and_favorite(manga)
        again = await harness.workflow.download_and_favorite(manga)

        assert [chapter.url for chapter in chapters] == ["/c/9", "/c/8"]
        assert len(again) == 2
        assert len(harness.downloads) == 2

        await harness.database.dispose()

    asyncio.run(runner())


def test_download_for_unknown_source_uses_stored_chapters(tmp_path) -> None:
    async def runner() -> None:
        harness = Harness(tmp_path)
        await harness.start()
        manga = await harness.manga(source_id=99)

        chapters = await harness.workflow.download_and_favorite(manga)

        assert chapters == []
        assert len(harness.downloads) == 0
        assert (await harness.repository.get_manga(manga.id)).favorite is True

        await harness.database.dispose()

    asyncio.run(runner())


def test_migrate_moves_membership(tmp_path) -> None:
    async def runner() -> None:
        harness = Harness(tmp_path)
        await harness.start()
        reading = await harness.repository.create_category("Reading")
        current = await harness.manga("/a/1", "Solo Leveling", source_id=1)
        target = await harness.manga("/b/1", "Solo Leveling", source_id=2)
        await harness.workflow.confirm_categories(current, [reading.id])

        dialog = harness.workflow.open_migration(target, current)
        assert isinstance(dialog, MigrateDialog)

        migrated = await harness.workflow.migrate(dialog.current, dialog.target)

        assert migrated.id == target.id
        assert migrated.favorite is True
        assert await harness.repository.get_manga_category_ids(target.id) == [reading.id]
        assert (await harness.repository.get_manga(current.id)).favorite is False

        await harness.database.dispose()

    asyncio.run(runner())


def test_migrate_onto_itself_keeps_the_favorite(tmp_path) -> None:
    async def runner() -> None:
        harness = Harness(tmp_path)
        await harness.start()
        reading = await harness.repository.create_category("Reading")
        manga = await harness.manga()
        await harness.workflow.confirm_categories(manga, [reading.id])
        harness.repository.category_calls.clear()

        migrated = await harness.workflow.migrate(manga, manga)

        stored = await harness.repository.get_manga(manga.id)
        assert migrated.favorite is True
        assert stored.favorite is True
        assert stored.date_added == migrated.date_added
        assert harness.repository.category_calls == []
        assert await harness.repository.get_manga_category_ids(manga.id) == [reading.id]

        await harness.database.dispose()

    asyncio.run(runner())


def test_system_category_is_never_offered(tmp_path) -> None:
    async def runner() -> None:
        harness = Harness(tmp_path)
        await harness.start()
        async with harness.database.session_factory() as session:
            session.add(CategoryRecord(id=0, name="Default", order=0))
            await session.commit()
        mine = await harness.repository.create_category("Mine")

        categories = await harness.workflow.get_categories()

        assert [category.id for category in categories] == [mine.id]

        await harness.database.dispose()

    asyncio.run(runner())
