"""Database utilities for the shelfhome service."""

from __future__ import annotations

from sqlalchemy import MetaData, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base with consistent naming conventions."""

    metadata = MetaData()


class Database:
    """Thin wrapper managing the SQLAlchemy async engine and sessions."""

    def __init__(self, database_url: str):
        self._engine: AsyncEngine = create_async_engine(database_url, future=True)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        """Create database tables if they do not yet exist."""

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
            await connection.run_sync(self._apply_schema_migrations)

    @staticmethod
    def _apply_schema_migrations(sync_connection) -> None:
        """Ensure newly introduced columns are available on existing tables."""

        inspector = inspect(sync_connection)
        table_names = set(inspector.get_table_names())

        def _ensure_column(
            table: str, name: str, ddl: str, init_sql: str | None = None
        ) -> None:
            if table not in table_names:
                return
            existing_columns = {
                column["name"] for column in inspector.get_columns(table)
            }
            if name in existing_columns:
                return
            sync_connection.execute(text(ddl))
            if init_sql:
                sync_connection.execute(text(init_sql))

        _ensure_column(
            "mangas",
            "viewer_flags",
            "ALTER TABLE mangas ADD COLUMN viewer_flags INTEGER DEFAULT 0",
            "UPDATE mangas SET viewer_flags = 0 WHERE viewer_flags IS NULL",
        )
        _ensure_column(
            "mangas",
            "cover_last_modified",
            "ALTER TABLE mangas ADD COLUMN cover_last_modified BIGINT DEFAULT 0",
            (
                "UPDATE mangas SET cover_last_modified = 0 "
                "WHERE cover_last_modified IS NULL"
            ),
        )
        _ensure_column(
            "chapters",
            "removed",
            "ALTER TABLE chapters ADD COLUMN removed BOOLEAN DEFAULT 0",
            "UPDATE chapters SET removed = 0 WHERE removed IS NULL",
        )

    async def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        await self._engine.dispose()
