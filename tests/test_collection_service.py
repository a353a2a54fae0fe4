"""Collection mutation and catalog deduplication tests."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from app.database import Database
from app.db_models import CatalogItemRecord, CollectionEntryRecord
from app.errors import (
    AlreadyInCollection,
    AuthenticationRequired,
    MetadataNotFound,
    MetadataProviderError,
    NotFound,
    PermissionDenied,
)
from app.models import EntryPayload, ItemDraft, MetadataCandidate, MetadataDetail
from app.services.collection import CollectionService


class FakeProvider:
    category = "film"

    def __init__(self) -> None:
        self.results: dict[str, list[MetadataCandidate]] = {}
        self.details: dict[str, MetadataDetail] = {}
        self.searches: list[str] = []

    async def search(self, query: str) -> list[MetadataCandidate]:
        self.searches.append(query)
        return list(self.results.get(query, []))

    async def detail(self, external_id: str) -> MetadataDetail | None:
        return self.details.get(external_id)


def _run(tmp_path, body) -> None:
    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'collection.db'}")
        await database.create_all()
        provider = FakeProvider()
        service = CollectionService(database.session_factory, {"film": provider})
        try:
            await body(database, service, provider)
        finally:
            await service.close()
            await database.dispose()

    asyncio.run(runner())


def test_same_external_title_shares_one_item(tmp_path) -> None:
    async def body(database: Database, service: CollectionService, provider: FakeProvider) -> None:
        draft = ItemDraft(title="Heat", external_id="949", year=1995, description="Crime")
        first = await service.add_to_collection("alice", "film", draft, EntryPayload(rating=5))
        second = await service.add_to_collection(
            "bob", "film", ItemDraft(title="Heat", external_id="949", rating=8.3), EntryPayload()
        )

        assert first.item.id == second.item.id
        assert second.item.external_rating == 8.3
        assert second.item.year == 1995
        assert first.rating == 5.0

        async with database.session_factory() as session:
            items = await session.scalar(select(func.count(CatalogItemRecord.id)))
        assert items == 1

        with pytest.raises(AlreadyInCollection):
            await service.add_to_collection("alice", "film", draft, EntryPayload())

    _run(tmp_path, body)


def test_manual_titles_are_not_merged(tmp_path) -> None:
    async def body(database: Database, service: CollectionService, provider: FakeProvider) -> None:
        first = await service.add_to_collection(
            "alice", "film", ItemDraft(title="Home Movie", description="Ours"), EntryPayload()
        )
        second = await service.add_to_collection(
            "alice", "film", ItemDraft(title="Home Movie", description="Ours"), EntryPayload()
        )

        assert first.item.id != second.item.id

    _run(tmp_path, body)


def test_add_requires_viewer_and_known_category(tmp_path) -> None:
    async def body(database: Database, service: CollectionService, provider: FakeProvider) -> None:
        draft = ItemDraft(title="Heat")
        with pytest.raises(AuthenticationRequired):
            await service.add_to_collection(None, "film", draft, EntryPayload())
        with pytest.raises(NotFound):
            await service.add_to_collection("alice", "book", draft, EntryPayload())

    _run(tmp_path, body)


def test_game_entries_keep_platforms(tmp_path) -> None:
    async def body(database: Database, service: CollectionService, provider: FakeProvider) -> None:
        entry = await service.add_to_collection(
            "alice",
            "game",
            ItemDraft(title="Hades", external_id="hades", description="Roguelike"),
            EntryPayload(platforms=["Steam", "PS"], availability="owned"),
        )

        assert entry.platforms == ["PS", "Steam"]
        assert entry.availability == "owned"
        assert entry.item.type == "game"

    _run(tmp_path, body)


def test_update_entry_retries_without_conflicting_external_id(tmp_path) -> None:
    async def body(database: Database, service: CollectionService, provider: FakeProvider) -> None:
        await service.add_to_collection(
            "alice", "film", ItemDraft(title="Taken", external_id="100", description="x"), EntryPayload()
        )
        entry = await service.add_to_collection(
            "alice", "film", ItemDraft(title="Takn", external_id="200", description="x"), EntryPayload()
        )

        updated = await service.update_entry(
            "alice",
            entry.id,
            EntryPayload(rating=3.5, comment="Fine"),
            ItemDraft(title="Taken 2", external_id="100", year=2012),
        )

        assert updated.rating == 3.5
        assert updated.comment == "Fine"
        assert updated.item.title == "Taken 2"
        assert updated.item.year == 2012
        assert updated.item.external_id == "200"

    _run(tmp_path, body)


def test_update_and_delete_require_ownership(tmp_path) -> None:
    async def body(database: Database, service: CollectionService, provider: FakeProvider) -> None:
        entry = await service.add_to_collection(
            "alice", "film", ItemDraft(title="Heat", description="Crime"), EntryPayload()
        )

        with pytest.raises(PermissionDenied):
            await service.update_entry("bob", entry.id, EntryPayload())
        with pytest.raises(PermissionDenied):
            await service.delete_entry("bob", entry.id)
        with pytest.raises(NotFound):
            await service.delete_entry("alice", "missing")

        assert await service.delete_entry("alice", entry.id) == "film"
        async with database.session_factory() as session:
            remaining = await session.scalar(select(func.count(CollectionEntryRecord.id)))
        assert remaining == 0

    _run(tmp_path, body)


def test_add_existing_item_is_idempotent(tmp_path) -> None:
    async def body(database: Database, service: CollectionService, provider: FakeProvider) -> None:
        source = await service.add_to_collection(
            "alice", "film", ItemDraft(title="Heat", description="Crime"), EntryPayload()
        )

        entry, created = await service.add_existing_item("bob", source.item.id)
        again, created_again = await service.add_existing_item("bob", source.item.id)

        assert created is True
        assert created_again is False
        assert entry.id == again.id
        assert entry.is_viewed is False
        assert entry.view_percent == 0
        with pytest.raises(NotFound):
            await service.add_existing_item("bob", "missing")

    _run(tmp_path, body)


def test_missing_description_is_backfilled(tmp_path) -> None:
    async def body(database: Database, service: CollectionService, provider: FakeProvider) -> None:
        provider.details["603"] = MetadataDetail(external_id="603", description="Red pill")

        entry = await service.add_to_collection(
            "alice", "film", ItemDraft(title="The Matrix", external_id="603"), EntryPayload()
        )
        await service.wait_for_backfills()

        async with database.session_factory() as session:
            item = await session.get(CatalogItemRecord, entry.item.id)
        assert item is not None
        assert item.description == "Red pill"

    _run(tmp_path, body)


def test_refresh_with_single_match_returns_draft(tmp_path) -> None:
    async def body(database: Database, service: CollectionService, provider: FakeProvider) -> None:
        entry = await service.add_to_collection(
            "alice", "film", ItemDraft(title="Arrival", description="Aliens"), EntryPayload()
        )
        provider.results["Arrival"] = [
            MetadataCandidate(external_id="329865", title="Arrival", year=2016)
        ]
        provider.details["329865"] = MetadataDetail(
            external_id="329865", description="Linguist", external_rating=7.6
        )

        refresh = await service.refresh_metadata("alice", entry.id)

        assert refresh.needs_choice is False
        assert refresh.draft is not None
        assert refresh.draft.external_id == "329865"
        assert refresh.draft.description == "Linguist"
        assert refresh.draft.year == 2016
        assert refresh.draft.title == "Arrival"

    _run(tmp_path, body)


def test_refresh_with_several_matches_needs_choice(tmp_path) -> None:
    async def body(database: Database, service: CollectionService, provider: FakeProvider) -> None:
        entry = await service.add_to_collection(
            "alice", "film", ItemDraft(title="Solaris", external_id="593", description="x"), EntryPayload()
        )
        provider.results["Solaris"] = [
            MetadataCandidate(external_id="2103", title="Solaris", year=2002),
            MetadataCandidate(external_id="593", title="Solaris", year=1972),
        ]

        refresh = await service.refresh_metadata("alice", entry.id)
        assert refresh.needs_choice is True
        assert [candidate.external_id for candidate in refresh.candidates] == ["593", "2103"]

        draft = await service.apply_refreshed_metadata(
            "alice", entry.id, refresh.candidates[1]
        )
        assert draft.external_id == "2103"
        assert draft.year == 2002
        assert draft.description == "x"

        with pytest.raises(MetadataNotFound):
            await service.refresh_metadata("alice", entry.id, query="No such film")

    _run(tmp_path, body)


def test_refresh_without_provider_fails(tmp_path) -> None:
    async def body(database: Database, service: CollectionService, provider: FakeProvider) -> None:
        entry = await service.add_to_collection(
            "alice", "game", ItemDraft(title="Hades", description="x"), EntryPayload()
        )

        with pytest.raises(MetadataProviderError):
            await service.refresh_metadata("alice", entry.id)

    _run(tmp_path, body)
