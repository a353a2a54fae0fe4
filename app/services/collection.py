"""Collection entry mutations and catalog item deduplication."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Mapping

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import joinedload

from ..db_models import CatalogItemRecord, CollectionEntryRecord
from ..errors import (
    AlreadyInCollection,
    AuthenticationRequired,
    MetadataNotFound,
    MetadataProviderError,
    NotFound,
    PermissionDenied,
    SaveConflict,
)
from ..models import (
    CATEGORIES,
    CatalogItem,
    CollectionEntry,
    EntryPayload,
    ItemDraft,
    MetadataCandidate,
    MetadataRefresh,
)
from .metadata import MetadataProvider

logger = logging.getLogger(__name__)


async def find_item(
    session: AsyncSession, category: str, external_id: str
) -> CatalogItemRecord | None:
    return await session.scalar(
        select(CatalogItemRecord).where(
            CatalogItemRecord.type == category,
            CatalogItemRecord.external_id == external_id,
        )
    )


async def _entry_for(
    session: AsyncSession, user_id: str, item_id: str
) -> CollectionEntryRecord | None:
    return await session.scalar(
        select(CollectionEntryRecord)
        .options(joinedload(CollectionEntryRecord.item))
        .where(
            CollectionEntryRecord.user_id == user_id,
            CollectionEntryRecord.item_id == item_id,
        )
    )


async def ensure_planned_entry(
    session: AsyncSession, user_id: str, item: CatalogItemRecord
) -> tuple[CollectionEntryRecord, bool]:
    """Return the user's entry for ``item``, adding a planned one if missing.

    Runs inside the caller's transaction and never commits.
    """

    existing = await _entry_for(session, user_id, item.id)
    if existing is not None:
        return existing, False
    entry = CollectionEntryRecord(
        user_id=user_id,
        item_id=item.id,
        item=item,
        **EntryPayload.planned().to_columns(item.type),
    )
    try:
        async with session.begin_nested():
            session.add(entry)
    except IntegrityError:
        existing = await _entry_for(session, user_id, item.id)
        if existing is None:
            raise
        return existing, False
    return entry, True


def _apply_optional_fields(item: CatalogItemRecord, draft: ItemDraft) -> None:
    for field_name, value in draft.optional_updates().items():
        setattr(item, field_name, value)


def _apply_draft(
    item: CatalogItemRecord, draft: ItemDraft, *, include_external_id: bool
) -> None:
    item.title = draft.title
    item.description = draft.description
    item.poster_url = draft.poster_url
    item.external_rating = draft.external_rating
    item.year = draft.year
    item.genres = draft.genres
    if include_external_id:
        item.external_id = draft.external_id


class CollectionService:
    """Add, edit and remove collection entries for the signed-in user."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        providers: Mapping[str, MetadataProvider] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._providers = dict(providers or {})
        self._backfill_jobs: dict[str, asyncio.Task[None]] = {}

    async def add_to_collection(
        self,
        viewer_id: str | None,
        category: str,
        draft: ItemDraft,
        payload: EntryPayload,
    ) -> CollectionEntry:
        """Add an external title, reusing the shared catalog item if present."""

        viewer_id = _require(viewer_id)
        if category not in CATEGORIES:
            raise NotFound(f"Unknown category: {category}")

        async with self._session_factory() as session:
            item = await self._find_or_create_item(session, category, draft)
            duplicate = await session.scalar(
                select(CollectionEntryRecord.id).where(
                    CollectionEntryRecord.user_id == viewer_id,
                    CollectionEntryRecord.item_id == item.id,
                )
            )
            if duplicate is not None:
                await session.rollback()
                raise AlreadyInCollection()
            entry = CollectionEntryRecord(
                user_id=viewer_id,
                item_id=item.id,
                item=item,
                **payload.to_columns(category),
            )
            session.add(entry)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise AlreadyInCollection() from exc
            view = await self._load_entry(session, entry.id)

        if not view.item.description and view.item.external_id:
            self._schedule_description_backfill(view.item)
        return view

    async def update_entry(
        self,
        viewer_id: str | None,
        entry_id: str,
        payload: EntryPayload,
        item_draft: ItemDraft | None = None,
    ) -> CollectionEntry:
        """Update an entry and optionally its catalog item.

        A draft whose external id collides with another item is saved once
        more without the external id before giving up.
        """

        viewer_id = _require(viewer_id)
        async with self._session_factory() as session:
            entry = await self._owned_entry(session, viewer_id, entry_id)
            for field_name, value in payload.to_columns(entry.item.type).items():
                setattr(entry, field_name, value)
            await session.flush()

            if item_draft is not None:
                item = entry.item
                try:
                    async with session.begin_nested():
                        _apply_draft(item, item_draft, include_external_id=True)
                except IntegrityError:
                    logger.info(
                        "External id %s already used by another %s; retrying without it",
                        item_draft.external_id,
                        item.type,
                    )
                    await session.refresh(item)
                    try:
                        async with session.begin_nested():
                            _apply_draft(item, item_draft, include_external_id=False)
                    except IntegrityError as exc:
                        await session.rollback()
                        raise SaveConflict() from exc

            await session.commit()
            return await self._load_entry(session, entry_id)

    async def delete_entry(self, viewer_id: str | None, entry_id: str) -> str:
        """Remove an owned entry and return its category."""

        viewer_id = _require(viewer_id)
        async with self._session_factory() as session:
            entry = await self._owned_entry(session, viewer_id, entry_id)
            category = entry.item.type
            await session.delete(entry)
            await session.commit()
        return category

    async def add_existing_item(
        self, viewer_id: str | None, item_id: str
    ) -> tuple[CollectionEntry, bool]:
        """Add a known catalog item as planned; existing entries are kept."""

        viewer_id = _require(viewer_id)
        async with self._session_factory() as session:
            item = await session.get(CatalogItemRecord, item_id)
            if item is None:
                raise NotFound("Item not found.")
            entry, created = await ensure_planned_entry(session, viewer_id, item)
            await session.commit()
            return await self._load_entry(session, entry.id), created

    async def refresh_metadata(
        self, viewer_id: str | None, entry_id: str, query: str | None = None
    ) -> MetadataRefresh:
        """Search the provider again for the entry's title.

        One match yields a ready draft; several matches are returned for the
        user to choose from, the currently linked title first.
        """

        viewer_id = _require(viewer_id)
        async with self._session_factory() as session:
            entry = await self._owned_entry(session, viewer_id, entry_id)
            item = entry.item
        provider = self._provider(item.type)
        candidates = await provider.search((query or "").strip() or item.title)
        if not candidates:
            raise MetadataNotFound()
        if len(candidates) == 1:
            draft = await self._draft_from(provider, candidates[0], item)
            return MetadataRefresh(draft=draft, candidates=candidates)
        ordered = sorted(
            candidates, key=lambda candidate: candidate.external_id != item.external_id
        )
        return MetadataRefresh(candidates=ordered)

    async def apply_refreshed_metadata(
        self, viewer_id: str | None, entry_id: str, candidate: MetadataCandidate
    ) -> ItemDraft:
        viewer_id = _require(viewer_id)
        async with self._session_factory() as session:
            entry = await self._owned_entry(session, viewer_id, entry_id)
            item = entry.item
        provider = self._provider(item.type)
        return await self._draft_from(provider, candidate, item)

    async def close(self) -> None:
        jobs = list(self._backfill_jobs.values())
        for job in jobs:
            job.cancel()
        for job in jobs:
            with suppress(asyncio.CancelledError):
                await job
        self._backfill_jobs.clear()

    async def wait_for_backfills(self) -> None:
        while self._backfill_jobs:
            await asyncio.gather(*self._backfill_jobs.values(), return_exceptions=True)

    async def _find_or_create_item(
        self, session: AsyncSession, category: str, draft: ItemDraft
    ) -> CatalogItemRecord:
        if draft.external_id:
            existing = await find_item(session, category, draft.external_id)
            if existing is not None:
                _apply_optional_fields(existing, draft)
                return existing

        item = CatalogItemRecord(
            type=category,
            title=draft.title,
            description=draft.description,
            poster_url=draft.poster_url,
            external_id=draft.external_id,
            external_rating=draft.external_rating,
            year=draft.year,
            genres=draft.genres,
        )
        try:
            async with session.begin_nested():
                session.add(item)
        except IntegrityError:
            existing = (
                await find_item(session, category, draft.external_id)
                if draft.external_id
                else None
            )
            if existing is None:
                raise
            _apply_optional_fields(existing, draft)
            return existing
        return item

    async def _owned_entry(
        self, session: AsyncSession, viewer_id: str, entry_id: str
    ) -> CollectionEntryRecord:
        entry = await session.scalar(
            select(CollectionEntryRecord)
            .options(joinedload(CollectionEntryRecord.item))
            .where(CollectionEntryRecord.id == entry_id)
        )
        if entry is None:
            raise NotFound("Collection entry not found.")
        if entry.user_id != viewer_id:
            raise PermissionDenied()
        return entry

    @staticmethod
    async def _load_entry(session: AsyncSession, entry_id: str) -> CollectionEntry:
        entry = await session.scalar(
            select(CollectionEntryRecord)
            .options(joinedload(CollectionEntryRecord.item))
            .where(CollectionEntryRecord.id == entry_id)
            .execution_options(populate_existing=True)
        )
        if entry is None:
            raise NotFound("Collection entry not found.")
        return CollectionEntry.model_validate(entry)

    def _provider(self, category: str) -> MetadataProvider:
        provider = self._providers.get(category)
        if provider is None:
            raise MetadataProviderError(
                f"No metadata provider is configured for {category}s."
            )
        return provider

    @staticmethod
    async def _draft_from(
        provider: MetadataProvider,
        candidate: MetadataCandidate,
        item: CatalogItemRecord,
    ) -> ItemDraft:
        detail = await provider.detail(candidate.external_id)

        def _pick(field_name: str):
            for source in (detail, candidate, item):
                value = getattr(source, field_name, None)
                if value is not None and value != "":
                    return value
            return None

        return ItemDraft(
            title=_pick("title"),
            description=_pick("description"),
            poster_url=_pick("poster_url"),
            external_id=candidate.external_id,
            external_rating=_pick("external_rating"),
            year=_pick("year"),
            genres=_pick("genres"),
        )

    def _schedule_description_backfill(self, item: CatalogItem) -> None:
        provider = self._providers.get(item.type)
        if provider is None or item.id in self._backfill_jobs:
            return
        session_factory = self._session_factory

        async def _runner() -> None:
            try:
                detail = await provider.detail(item.external_id)
                if detail is None or not detail.description:
                    return
                async with session_factory() as session:
                    await session.execute(
                        update(CatalogItemRecord)
                        .where(
                            CatalogItemRecord.id == item.id,
                            CatalogItemRecord.description.is_(None),
                        )
                        .values(description=detail.description)
                    )
                    await session.commit()
            except Exception as exc:
                logger.exception(
                    "Description backfill for item %s failed: %s", item.id, exc
                )
            finally:
                self._backfill_jobs.pop(item.id, None)

        self._backfill_jobs[item.id] = asyncio.create_task(_runner())


def _require(viewer_id: str | None) -> str:
    if not viewer_id:
        raise AuthenticationRequired()
    return viewer_id
