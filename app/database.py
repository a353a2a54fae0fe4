"""Database utilities for the Catalogy service."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import MetaData, event, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

# Execution option asking SQLite to take the write lock when the
# transaction starts instead of on the first write.
WRITE_LOCK_OPTION = "catalogy_write_lock"


class Base(DeclarativeBase):
    """Declarative base with consistent naming conventions."""

    metadata = MetaData()


class Database:
    """Thin wrapper managing the SQLAlchemy async engine and sessions."""

    def __init__(self, database_url: str):
        self._engine: AsyncEngine = create_async_engine(database_url, future=True)
        if self._engine.dialect.name == "sqlite":
            _enable_sqlite_savepoints(self._engine)
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

        def _ensure_columns(
            table: str, columns: list[tuple[str, str, str | None]]
        ) -> None:
            if table not in table_names:
                return
            existing_columns = {
                column["name"] for column in inspector.get_columns(table)
            }
            for name, ddl, init_sql in columns:
                if name in existing_columns:
                    continue
                sync_connection.execute(text(ddl))
                if init_sql:
                    sync_connection.execute(text(init_sql))
                existing_columns.add(name)

        _ensure_columns(
            "items",
            [
                ("year", "ALTER TABLE items ADD COLUMN year INTEGER", None),
                ("genres", "ALTER TABLE items ADD COLUMN genres TEXT", None),
                (
                    "external_rating",
                    "ALTER TABLE items ADD COLUMN external_rating FLOAT",
                    None,
                ),
            ],
        )
        _ensure_columns(
            "user_views",
            [
                (
                    "view_percent",
                    "ALTER TABLE user_views ADD COLUMN view_percent INTEGER",
                    (
                        "UPDATE user_views SET view_percent = "
                        "CASE WHEN is_viewed THEN 100 ELSE 0 END "
                        "WHERE view_percent IS NULL"
                    ),
                ),
                (
                    "recommend_similar",
                    "ALTER TABLE user_views ADD COLUMN recommend_similar BOOLEAN DEFAULT 0",
                    (
                        "UPDATE user_views SET recommend_similar = 0 "
                        "WHERE recommend_similar IS NULL"
                    ),
                ),
                (
                    "availability",
                    "ALTER TABLE user_views ADD COLUMN availability VARCHAR(16)",
                    None,
                ),
                (
                    "platforms",
                    "ALTER TABLE user_views ADD COLUMN platforms JSON",
                    None,
                ),
                (
                    "created_at",
                    "ALTER TABLE user_views ADD COLUMN created_at DATETIME",
                    (
                        "UPDATE user_views SET created_at = COALESCE(viewed_at, updated_at) "
                        "WHERE created_at IS NULL"
                    ),
                ),
            ],
        )
        _ensure_columns(
            "profiles",
            [
                (
                    "views_visible_to_friends",
                    "ALTER TABLE profiles ADD COLUMN views_visible_to_friends BOOLEAN DEFAULT 0",
                    (
                        "UPDATE profiles SET views_visible_to_friends = 0 "
                        "WHERE views_visible_to_friends IS NULL"
                    ),
                ),
                (
                    "show_film_availability",
                    "ALTER TABLE profiles ADD COLUMN show_film_availability BOOLEAN DEFAULT 1",
                    (
                        "UPDATE profiles SET show_film_availability = 1 "
                        "WHERE show_film_availability IS NULL"
                    ),
                ),
                (
                    "show_game_availability",
                    "ALTER TABLE profiles ADD COLUMN show_game_availability BOOLEAN DEFAULT 1",
                    (
                        "UPDATE profiles SET show_game_availability = 1 "
                        "WHERE show_game_availability IS NULL"
                    ),
                ),
                (
                    "visible_game_platforms",
                    "ALTER TABLE profiles ADD COLUMN visible_game_platforms JSON",
                    None,
                ),
            ],
        )

    async def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Provide a transactional scope around a series of operations."""

        async with self.session_factory() as session:
            yield session


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINT works on SQLite."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(connection) -> None:
        if connection.get_execution_options().get(WRITE_LOCK_OPTION):
            connection.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            connection.exec_driver_sql("BEGIN")
