"""Identity reconciliation against a real SQLite library."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from shelfhome.database import Database
from shelfhome.db_models import MangaRecord
from shelfhome.errors import StorageError
from shelfhome.models import RemoteEntry
from shelfhome.services.concurrency import BoundedExecutor
from shelfhome.services.reconciler import IdentityReconciler
from shelfhome.services.repository import LibraryRepository


def _entry(url: str, title: str | None = None) -> RemoteEntry:
    return RemoteEntry(url=url, title=title or url.strip("/").replace("/", " "))


async def _setup(tmp_path) -> tuple[Database, LibraryRepository, IdentityReconciler]:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'library.db'}")
    await database.create_all()
    repository = LibraryRepository(database.session_factory)
    return database, repository, IdentityReconciler(repository, BoundedExecutor(4))


def test_reconcile_creates_identities_in_input_order(tmp_path) -> None:
    async def runner() -> None:
        database, _, reconciler = await _setup(tmp_path)

        entries = [_entry("/m/b"), _entry("/m/a"), _entry("/m/c")]
        identities = await reconciler.reconcile(1, entries)

        assert [manga.url for manga in identities] == ["/m/b", "/m/a", "/m/c"]
        assert len({manga.id for manga in identities}) == 3
        assert all(manga.source_id == 1 for manga in identities)
        assert all(not manga.favorite for manga in identities)

        await database.dispose()

    asyncio.run(runner())


def test_reconcile_never_overwrites_existing_identity(tmp_path) -> None:
    async def runner() -> None:
        database, repository, reconciler = await _setup(tmp_path)

        [first] = await reconciler.reconcile(1, [_entry("/m/1", "Original")])
        await repository.set_favorite(first.id, True)

        [again] = await reconciler.reconcile(1, [_entry("/m/1", "Renamed remotely")])

        assert again.id == first.id
        assert again.title == "Original"
        assert again.favorite is True

        await database.dispose()

    asyncio.run(runner())


def test_duplicate_urls_in_one_batch_share_identity(tmp_path) -> None:
    async def runner() -> None:
        database, _, reconciler = await _setup(tmp_path)

        identities = await reconciler.reconcile(
            1, [_entry("/m/1"), _entry("/m/2"), _entry("/m/1")]
        )

        assert identities[0].id == identities[2].id
        assert identities[0].id != identities[1].id

        await database.dispose()

    asyncio.run(runner())


def test_same_url_on_other_source_is_a_different_identity(tmp_path) -> None:
    async def runner() -> None:
        database, _, reconciler = await _setup(tmp_path)

        [left] = await reconciler.reconcile(1, [_entry("/m/1")])
        [right] = await reconciler.reconcile(2, [_entry("/m/1")])

        assert left.id != right.id

        await database.dispose()

    asyncio.run(runner())


def test_concurrent_reconciles_create_a_single_row(tmp_path) -> None:
    async def runner() -> None:
        database, _, reconciler = await _setup(tmp_path)

        results = await asyncio.gather(
            *(reconciler.reconcile(1, [_entry("/m/shared")]) for _ in range(5))
        )

        assert len({batch[0].id for batch in results}) == 1
        async with database.session_factory() as session:
            count = await session.scalar(
                select(func.count(MangaRecord.id)).where(MangaRecord.url == "/m/shared")
            )
        assert count == 1

        await database.dispose()

    asyncio.run(runner())


def test_reconcile_many_keeps_batches_apart(tmp_path) -> None:
    async def runner() -> None:
        database, _, reconciler = await _setup(tmp_path)

        results = await reconciler.reconcile_many(
            [(1, [_entry("/m/1"), _entry("/m/2")]), (1, []), (1, [_entry("/m/1")])]
        )

        assert [len(batch) for batch in results] == [2, 0, 1]
        assert results[0][0].id == results[2][0].id

        await database.dispose()

    asyncio.run(runner())


def test_storage_failure_surfaces_as_storage_error(tmp_path) -> None:
    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        repository = LibraryRepository(database.session_factory)
        reconciler = IdentityReconciler(repository, BoundedExecutor(1))

        # No create_all: the mangas table does not exist.
        with pytest.raises(StorageError):
            await reconciler.reconcile(1, [_entry("/m/1")])
        with pytest.raises(StorageError):
            await reconciler.reconcile_many([(1, [_entry("/m/1")])])

        await database.dispose()

    asyncio.run(runner())
