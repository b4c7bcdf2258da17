"""SQLAlchemy ORM models backing the local library."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class MangaRecord(Base):
    """Local identity of a remote catalog entry."""

    __tablename__ = "mangas"
    __table_args__ = (
        UniqueConstraint("source_id", "url", name="uq_manga_source_url"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[int] = mapped_column(BigInteger, index=True)
    url: Mapped[str] = mapped_column(String(2048))
    title: Mapped[str] = mapped_column(String(512))
    author: Mapped[str | None] = mapped_column(String(512), nullable=True)
    artist: Mapped[str | None] = mapped_column(String(512), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    genres: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    status: Mapped[int] = mapped_column(Integer, default=0)
    cover_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    initialized: Mapped[bool] = mapped_column(Boolean, default=False)
    favorite: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    date_added: Mapped[int] = mapped_column(BigInteger, default=0)
    chapter_flags: Mapped[int] = mapped_column(Integer, default=0)
    viewer_flags: Mapped[int] = mapped_column(Integer, default=0)
    cover_last_modified: Mapped[int] = mapped_column(BigInteger, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    chapters: Mapped[list["ChapterRecord"]] = relationship(
        back_populates="manga", cascade="all, delete-orphan"
    )


class CategoryRecord(Base):
    """User-defined library category."""

    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True)
    order: Mapped[int] = mapped_column("sort_order", Integer, default=0)


class MangaCategoryRecord(Base):
    """Association between a manga and the categories it is filed under."""

    __tablename__ = "mangas_categories"
    __table_args__ = (
        UniqueConstraint("manga_id", "category_id", name="uq_manga_category"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    manga_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("mangas.id", ondelete="CASCADE"), index=True
    )
    category_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("categories.id", ondelete="CASCADE")
    )


class ChapterRecord(Base):
    """Chapter persisted for a manga, carrying its local read state."""

    __tablename__ = "chapters"
    __table_args__ = (
        UniqueConstraint("manga_id", "url", name="uq_chapter_manga_url"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    manga_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("mangas.id", ondelete="CASCADE"), index=True
    )
    url: Mapped[str] = mapped_column(String(2048))
    name: Mapped[str] = mapped_column(String(512))
    chapter_number: Mapped[float] = mapped_column(Float, default=-1.0)
    date_upload: Mapped[int] = mapped_column(BigInteger, default=0)
    scanlator: Mapped[str | None] = mapped_column(String(255), nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    bookmark: Mapped[bool] = mapped_column(Boolean, default=False)
    last_page_read: Mapped[int] = mapped_column(Integer, default=0)
    source_order: Mapped[int] = mapped_column(Integer, default=0)
    date_fetch: Mapped[int] = mapped_column(BigInteger, default=0)
    removed: Mapped[bool] = mapped_column(Boolean, default=False)

    manga: Mapped[MangaRecord] = relationship(back_populates="chapters")


class ExcludedScanlatorRecord(Base):
    """Scanlator hidden from a manga's chapter list."""

    __tablename__ = "excluded_scanlators"
    __table_args__ = (
        UniqueConstraint("manga_id", "scanlator", name="uq_excluded_scanlator"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    manga_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("mangas.id", ondelete="CASCADE"), index=True
    )
    scanlator: Mapped[str] = mapped_column(String(255))
