"""Read access to collection entries for browse sessions."""

from __future__ import annotations

from typing import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import CatalogItemRecord, RecommendationRecord
from ..models import CollectionEntry
from .query_compiler import CompiledQuery


class CollectionStore:
    """Execute compiled browse statements against the database."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        batch_size: int = 500,
    ) -> None:
        self._session_factory = session_factory
        self._batch_size = batch_size

    async def fetch_page(self, compiled: CompiledQuery) -> list[CollectionEntry]:
        async with self._session_factory() as session:
            result = await session.execute(compiled.statement)
            records = result.scalars().all()
        return [CollectionEntry.model_validate(record) for record in records]

    async def fetch_all(self, compiled: CompiledQuery) -> list[CollectionEntry]:
        """Read every matching row in bounded batches."""

        entries: list[CollectionEntry] = []
        offset = 0
        async with self._session_factory() as session:
            while True:
                statement = compiled.statement.offset(offset).limit(self._batch_size)
                result = await session.execute(statement)
                records = result.scalars().all()
                entries.extend(
                    CollectionEntry.model_validate(record) for record in records
                )
                if len(records) < self._batch_size:
                    break
                offset += self._batch_size
        return entries

    async def count(self, compiled: CompiledQuery) -> int:
        if compiled.count_statement is None:
            raise ValueError("Count statements are only compiled for the first page")
        async with self._session_factory() as session:
            result = await session.execute(compiled.count_statement)
            return int(result.scalar_one())

    async def year_domain(self, category: str) -> tuple[int, int] | None:
        """Return the lowest and highest known year for ``category``."""

        statement = select(
            func.min(CatalogItemRecord.year), func.max(CatalogItemRecord.year)
        ).where(
            CatalogItemRecord.type == category,
            CatalogItemRecord.year.is_not(None),
        )
        async with self._session_factory() as session:
            result = await session.execute(statement)
            low, high = result.one()
        if low is None or high is None:
            return None
        return (int(low), int(high))

    async def recommended_item_ids(
        self, sender_id: str, item_ids: Iterable[str]
    ) -> set[str]:
        """Return which of ``item_ids`` the sender already recommended."""

        wanted = list(dict.fromkeys(item_ids))
        if not wanted:
            return set()
        statement = select(RecommendationRecord.item_id).where(
            RecommendationRecord.from_user_id == sender_id,
            RecommendationRecord.item_id.in_(wanted),
        )
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return set(result.scalars().all())

    async def backfill_year(self, item_id: str, year: int) -> bool:
        """Store ``year`` on the item unless a year is already recorded."""

        statement = (
            update(CatalogItemRecord)
            .where(CatalogItemRecord.id == item_id, CatalogItemRecord.year.is_(None))
            .values(year=year)
        )
        async with self._session_factory() as session:
            result = await session.execute(statement)
            await session.commit()
        return bool(result.rowcount)
