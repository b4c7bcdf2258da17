"""Persistent library storage backed by the async SQLAlchemy session factory."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import (
    CategoryRecord,
    ChapterRecord,
    ExcludedScanlatorRecord,
    MangaCategoryRecord,
    MangaRecord,
)
from ..errors import MangaNotFoundError, StorageError
from ..models import (
    SYSTEM_CATEGORY_ID,
    Category,
    Chapter,
    DuplicateManga,
    LibraryMembership,
    Manga,
    RemoteChapter,
    RemoteEntry,
)
from ..utils import normalize_title, now_millis

logger = logging.getLogger(__name__)


class LibraryRepository:
    """Read/write operations the catalog core needs from the local library.

    Every :class:`~sqlalchemy.exc.SQLAlchemyError` surfaces as
    :class:`~shelfhome.errors.StorageError`. Writes are serialized within the
    process; the ``(source_id, url)`` unique constraint keeps identities
    unique across processes.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._write_lock = asyncio.Lock()

    @asynccontextmanager
    async def _session(
        self, operation: str, *, write: bool = False
    ) -> AsyncIterator[AsyncSession]:
        try:
            if write:
                async with self._write_lock:
                    async with self._session_factory() as session:
                        yield session
            else:
                async with self._session_factory() as session:
                    yield session
        except SQLAlchemyError as exc:
            logger.error("Storage failure while trying to %s: %s", operation, exc)
            raise StorageError(f"Failed to {operation}") from exc

    # Identities -----------------------------------------------------------

    async def find_or_create_identity(
        self, source_id: int, url: str, initial: RemoteEntry
    ) -> Manga:
        """Atomic upsert on the natural key ``(source_id, url)``."""

        if initial.url != url:
            initial = initial.model_copy(update={"url": url})
        identities = await self.find_or_create_identities(source_id, [initial])
        return identities[0]

    async def find_or_create_identities(
        self, source_id: int, entries: Sequence[RemoteEntry]
    ) -> list[Manga]:
        """Insert unseen entries and return identities in input order.

        Existing rows are left untouched: the remote snapshot is only written
        when an identity is first created.
        """

        if not entries:
            return []
        first_seen: dict[str, RemoteEntry] = {}
        for entry in entries:
            first_seen.setdefault(entry.url, entry)

        async with self._session("reconcile catalog entries", write=True) as session:
            created_at = datetime.utcnow()
            rows = [
                self._identity_row(source_id, entry, created_at)
                for entry in first_seen.values()
            ]
            await session.execute(self._insert_ignore(session, rows))
            result = await session.execute(
                select(MangaRecord).where(
                    MangaRecord.source_id == source_id,
                    MangaRecord.url.in_(list(first_seen)),
                )
            )
            records = {record.url: record for record in result.scalars()}
            await session.commit()

        missing = [url for url in first_seen if url not in records]
        if missing:
            raise StorageError(
                f"Identities for {len(missing)} entries could not be read back"
            )
        return [self._to_manga(records[entry.url]) for entry in entries]

    @staticmethod
    def _identity_row(
        source_id: int, entry: RemoteEntry, created_at: datetime
    ) -> dict[str, Any]:
        return {
            "source_id": source_id,
            "url": entry.url,
            "title": entry.title,
            "author": entry.author,
            "artist": entry.artist,
            "description": entry.description,
            "genres": list(entry.genres),
            "status": entry.status,
            "cover_url": entry.cover_url,
            "initialized": entry.initialized,
            "favorite": False,
            "date_added": 0,
            "chapter_flags": 0,
            "viewer_flags": 0,
            "cover_last_modified": 0,
            "created_at": created_at,
            "updated_at": created_at,
        }

    @staticmethod
    def _insert_ignore(session: AsyncSession, rows: list[dict[str, Any]]):
        dialect = session.get_bind().dialect.name
        if dialect == "sqlite":
            statement = sqlite_insert(MangaRecord)
        elif dialect == "postgresql":
            statement = pg_insert(MangaRecord)
        else:
            raise StorageError(f"Unsupported database dialect '{dialect}'")
        return statement.values(rows).on_conflict_do_nothing(
            index_elements=["source_id", "url"]
        )

    async def get_manga(self, manga_id: int) -> Manga:
        async with self._session("load manga") as session:
            record = await session.get(MangaRecord, manga_id)
        if record is None:
            raise MangaNotFoundError(manga_id)
        return self._to_manga(record)

    # Library membership ---------------------------------------------------

    async def get_library_membership(self, manga_id: int) -> LibraryMembership | None:
        async with self._session("load library membership") as session:
            record = await session.get(MangaRecord, manga_id)
            if record is None:
                return None
            category_ids = await self._category_ids(session, manga_id)
        return LibraryMembership(
            manga_id=manga_id,
            favorite=record.favorite,
            category_ids=set(category_ids),
            date_added=record.date_added,
        )

    async def set_favorite(
        self, manga_id: int, favorite: bool, *, date_added: int | None = None
    ) -> Manga:
        """Persist the favorite flag; ``date_added`` defaults to now / zero."""

        if date_added is None:
            date_added = now_millis() if favorite else 0
        async with self._session("update favorite", write=True) as session:
            record = await self._require(session, manga_id)
            record.favorite = favorite
            record.date_added = date_added
            await session.commit()
            return self._to_manga(record)

    async def set_default_flags(
        self, manga_id: int, *, chapter_flags: int, viewer_flags: int
    ) -> None:
        async with self._session("apply default flags", write=True) as session:
            record = await self._require(session, manga_id)
            record.chapter_flags = chapter_flags
            record.viewer_flags = viewer_flags
            await session.commit()

    async def mark_cover_removed(self, manga_id: int) -> None:
        async with self._session("mark cover removed", write=True) as session:
            record = await self._require(session, manga_id)
            record.cover_last_modified = now_millis()
            await session.commit()

    # Categories -----------------------------------------------------------

    async def get_categories(self) -> list[Category]:
        async with self._session("load categories") as session:
            result = await session.execute(
                select(CategoryRecord).order_by(
                    CategoryRecord.order, CategoryRecord.name
                )
            )
            records = list(result.scalars())
        return [
            Category(id=record.id, name=record.name, order=record.order)
            for record in records
        ]

    async def create_category(self, name: str, *, order: int | None = None) -> Category:
        cleaned = name.strip()
        if not cleaned:
            raise ValueError("Category name may not be blank")
        async with self._session("create category", write=True) as session:
            if order is None:
                current = await session.scalar(select(func.max(CategoryRecord.order)))
                order = (current or 0) + 1
            record = CategoryRecord(name=cleaned, order=order)
            session.add(record)
            await session.commit()
            return Category(id=record.id, name=record.name, order=record.order)

    async def get_manga_category_ids(self, manga_id: int) -> list[int]:
        async with self._session("load manga categories") as session:
            return await self._category_ids(session, manga_id)

    async def set_categories(self, manga_id: int, category_ids: Iterable[int]) -> None:
        """Replace the categories of ``manga_id``; the system category is implicit."""

        wanted = sorted(
            {int(category_id) for category_id in category_ids}
            - {SYSTEM_CATEGORY_ID}
        )
        async with self._session("assign categories", write=True) as session:
            await self._require(session, manga_id)
            await session.execute(
                delete(MangaCategoryRecord).where(
                    MangaCategoryRecord.manga_id == manga_id
                )
            )
            session.add_all(
                MangaCategoryRecord(manga_id=manga_id, category_id=category_id)
                for category_id in wanted
            )
            await session.commit()

    @staticmethod
    async def _category_ids(session: AsyncSession, manga_id: int) -> list[int]:
        result = await session.execute(
            select(MangaCategoryRecord.category_id)
            .where(MangaCategoryRecord.manga_id == manga_id)
            .order_by(MangaCategoryRecord.category_id)
        )
        return list(result.scalars())

    # Duplicates -----------------------------------------------------------

    async def find_duplicates(self, manga: Manga) -> list[DuplicateManga]:
        """Library entries whose normalized title matches ``manga``."""

        target = normalize_title(manga.title)
        if not target:
            return []
        async with self._session("look up duplicates") as session:
            result = await session.execute(
                select(MangaRecord)
                .where(MangaRecord.favorite.is_(True), MangaRecord.id != manga.id)
                .order_by(MangaRecord.id)
            )
            candidates = [
                record
                for record in result.scalars()
                if normalize_title(record.title) == target
            ]
            if not candidates:
                return []
            counts = await session.execute(
                select(ChapterRecord.manga_id, func.count(ChapterRecord.id))
                .where(
                    ChapterRecord.manga_id.in_([record.id for record in candidates]),
                    ChapterRecord.removed.is_(False),
                )
                .group_by(ChapterRecord.manga_id)
            )
            chapter_counts = dict(counts.tuples().all())
        return [
            DuplicateManga(
                manga=self._to_manga(record),
                chapter_count=chapter_counts.get(record.id, 0),
            )
            for record in candidates
        ]

    # Chapters -------------------------------------------------------------

    async def sync_chapters(
        self, manga_id: int, remote_chapters: Sequence[RemoteChapter]
    ) -> list[Chapter]:
        """Reconcile the remote chapter list into the stored one.

        New chapters are inserted, vanished ones are flagged ``removed`` and
        matching chapters keep their read, bookmark and progress state.
        """

        fetched_at = now_millis()
        async with self._session("sync chapters", write=True) as session:
            await self._require(session, manga_id)
            result = await session.execute(
                select(ChapterRecord).where(ChapterRecord.manga_id == manga_id)
            )
            existing = {record.url: record for record in result.scalars()}
            seen: set[str] = set()
            for source_order, chapter in enumerate(remote_chapters):
                if chapter.url in seen:
                    continue
                seen.add(chapter.url)
                record = existing.get(chapter.url)
                if record is None:
                    session.add(
                        ChapterRecord(
                            manga_id=manga_id,
                            url=chapter.url,
                            name=chapter.name,
                            chapter_number=chapter.chapter_number,
                            date_upload=chapter.date_upload,
                            scanlator=chapter.scanlator,
                            read=False,
                            bookmark=False,
                            last_page_read=0,
                            source_order=source_order,
                            date_fetch=fetched_at,
                            removed=False,
                        )
                    )
                    continue
                record.name = chapter.name
                record.chapter_number = chapter.chapter_number
                record.date_upload = chapter.date_upload
                record.scanlator = chapter.scanlator
                record.source_order = source_order
                record.removed = False
            for url, record in existing.items():
                if url not in seen and not record.removed:
                    record.removed = True
            await session.commit()
            chapters = await self._active_chapters(session, manga_id)
        return chapters

    async def get_local_chapters(
        self, manga_id: int, *, include_filtered: bool = False
    ) -> list[Chapter]:
        """Stored chapters of ``manga_id``, optionally hiding excluded scanlators."""

        async with self._session("load chapters") as session:
            chapters = await self._active_chapters(session, manga_id)
            if include_filtered:
                return chapters
            result = await session.execute(
                select(ExcludedScanlatorRecord.scanlator).where(
                    ExcludedScanlatorRecord.manga_id == manga_id
                )
            )
            excluded = set(result.scalars())
        if not excluded:
            return chapters
        return [chapter for chapter in chapters if chapter.scanlator not in excluded]

    async def set_excluded_scanlators(
        self, manga_id: int, scanlators: Iterable[str]
    ) -> None:
        names = sorted({name.strip() for name in scanlators if name.strip()})
        async with self._session("update scanlator filter", write=True) as session:
            await self._require(session, manga_id)
            await session.execute(
                delete(ExcludedScanlatorRecord).where(
                    ExcludedScanlatorRecord.manga_id == manga_id
                )
            )
            session.add_all(
                ExcludedScanlatorRecord(manga_id=manga_id, scanlator=name)
                for name in names
            )
            await session.commit()

    async def _active_chapters(
        self, session: AsyncSession, manga_id: int
    ) -> list[Chapter]:
        result = await session.execute(
            select(ChapterRecord)
            .where(
                ChapterRecord.manga_id == manga_id,
                ChapterRecord.removed.is_(False),
            )
            .order_by(ChapterRecord.source_order, ChapterRecord.id)
        )
        return [self._to_chapter(record) for record in result.scalars()]

    # Mapping helpers ------------------------------------------------------

    @staticmethod
    async def _require(session: AsyncSession, manga_id: int) -> MangaRecord:
        record = await session.get(MangaRecord, manga_id)
        if record is None:
            raise MangaNotFoundError(manga_id)
        return record

    @staticmethod
    def _to_manga(record: MangaRecord) -> Manga:
        return Manga(
            id=record.id,
            source_id=record.source_id,
            url=record.url,
            title=record.title,
            author=record.author,
            artist=record.artist,
            description=record.description,
            genres=list(record.genres or []),
            status=record.status or 0,
            cover_url=record.cover_url,
            initialized=bool(record.initialized),
            favorite=bool(record.favorite),
            date_added=record.date_added or 0,
            chapter_flags=record.chapter_flags or 0,
            viewer_flags=record.viewer_flags or 0,
            cover_last_modified=record.cover_last_modified or 0,
        )

    @staticmethod
    def _to_chapter(record: ChapterRecord) -> Chapter:
        return Chapter(
            id=record.id,
            manga_id=record.manga_id,
            url=record.url,
            name=record.name,
            chapter_number=record.chapter_number,
            date_upload=record.date_upload,
            scanlator=record.scanlator,
            read=bool(record.read),
            bookmark=bool(record.bookmark),
            last_page_read=record.last_page_read,
            source_order=record.source_order,
            date_fetch=record.date_fetch,
            removed=bool(record.removed),
        )
