"""Pydantic models describing catalog, library and chapter payloads."""

from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

SYSTEM_CATEGORY_ID = 0


def _split_genres(value: object) -> object:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


class RemoteEntry(BaseModel):
    """Descriptor of one catalog item as returned by a remote source."""

    model_config = ConfigDict(populate_by_name=True)

    url: str
    title: str
    author: str | None = None
    artist: str | None = None
    description: str | None = None
    genres: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("genres", "genre")
    )
    status: int = 0
    cover_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "cover_url", "coverUrl", "thumbnail_url", "thumbnailUrl"
        ),
    )
    initialized: bool = False

    @field_validator("genres", mode="before")
    @classmethod
    def _parse_genres(cls, value: object) -> object:
        return _split_genres(value)


class EntriesPage(BaseModel):
    """One page of remote entries."""

    model_config = ConfigDict(populate_by_name=True)

    entries: list[RemoteEntry] = Field(
        default_factory=list,
        validation_alias=AliasChoices("entries", "mangas", "manga"),
    )
    has_next_page: bool = Field(
        default=False, validation_alias=AliasChoices("has_next_page", "hasNextPage")
    )


class HomeTab(BaseModel):
    """Optional grouping above the home page sections."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    label: str = Field(validation_alias=AliasChoices("label", "text"))


class RemoteHomeSection(BaseModel):
    """A home page section as delivered by the source, before reconciliation."""

    model_config = ConfigDict(populate_by_name=True)

    title: str
    entries: list[RemoteEntry] = Field(
        default_factory=list,
        validation_alias=AliasChoices("entries", "manga", "mangas"),
    )
    has_more: bool = Field(
        default=False, validation_alias=AliasChoices("has_more", "hasMore")
    )
    section_id: str | None = Field(
        default=None, validation_alias=AliasChoices("section_id", "sectionId")
    )


class RemoteHomePage(BaseModel):
    """Tabs and sections returned by a source's home page endpoint."""

    tabs: list[HomeTab] = Field(default_factory=list)
    sections: list[RemoteHomeSection] = Field(default_factory=list)


class Manga(BaseModel):
    """Local identity of a remote entry, keyed by ``(source_id, url)``."""

    id: int
    source_id: int
    url: str
    title: str
    author: str | None = None
    artist: str | None = None
    description: str | None = None
    genres: list[str] = Field(default_factory=list)
    status: int = 0
    cover_url: str | None = None
    initialized: bool = False
    favorite: bool = False
    date_added: int = 0
    chapter_flags: int = 0
    viewer_flags: int = 0
    cover_last_modified: int = 0

    def display_title(self) -> str:
        title = (self.title or "").strip()
        return title or self.url


class HomeSection(BaseModel):
    """A titled, independently loadable subset of the home page."""

    section_id: str | None = None
    title: str
    items: list[Manga] = Field(default_factory=list)
    has_more: bool = False

    @property
    def is_lazy(self) -> bool:
        """Sections without an id arrive fully populated and never lazy load."""

        return self.section_id is not None


class Category(BaseModel):
    id: int
    name: str
    order: int = 0

    @property
    def is_system_category(self) -> bool:
        return self.id == SYSTEM_CATEGORY_ID


class LibraryMembership(BaseModel):
    """Favorite flag and category assignments of one manga."""

    manga_id: int
    favorite: bool = False
    category_ids: set[int] = Field(default_factory=set)
    date_added: int = 0


class DuplicateManga(BaseModel):
    """A library manga judged similar to one being added."""

    manga: Manga
    chapter_count: int = 0


class RemoteChapter(BaseModel):
    """Chapter descriptor as returned by a remote source."""

    model_config = ConfigDict(populate_by_name=True)

    url: str
    name: str
    chapter_number: float = Field(
        default=-1.0,
        validation_alias=AliasChoices("chapter_number", "chapterNumber", "number"),
    )
    date_upload: int = Field(
        default=0, validation_alias=AliasChoices("date_upload", "dateUpload")
    )
    scanlator: str | None = None

    @field_validator("scanlator", mode="before")
    @classmethod
    def _blank_scanlator(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip() or None
        return value


class ChaptersPage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chapters: list[RemoteChapter] = Field(default_factory=list)
    has_next_page: bool = Field(
        default=False, validation_alias=AliasChoices("has_next_page", "hasNextPage")
    )


class Chapter(BaseModel):
    """Chapter persisted for a local manga."""

    id: int
    manga_id: int
    url: str
    name: str
    chapter_number: float = -1.0
    date_upload: int = 0
    scanlator: str | None = None
    read: bool = False
    bookmark: bool = False
    last_page_read: int = 0
    source_order: int = 0
    date_fetch: int = 0
    removed: bool = False

    @property
    def is_recognized_number(self) -> bool:
        return self.chapter_number >= 0
