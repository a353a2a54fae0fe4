"""Recommendation sending rules and status lifecycle tests."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.database import Database
from app.db_models import (
    CatalogItemRecord,
    CollectionEntryRecord,
    ContactRecord,
    Profile,
    RecommendationRecord,
)
from app.errors import (
    AuthenticationRequired,
    InvalidTransition,
    NicknameRequired,
    NotFound,
    PermissionDenied,
    RateLimitExceeded,
    ValidationFailed,
)
from app.services.recommendations import (
    RecommendationService,
    RecommendationStatus,
    transition,
)
from app.utils import utcnow

ITEM_ID = "item-heat"


async def _seed(database: Database) -> None:
    async with database.session_factory() as session:
        session.add_all(
            [
                Profile(id="alice", username="alice", username_key="alice"),
                Profile(id="bob", username="bob", username_key="bob"),
                Profile(id="carol-0000-abc123"),
                CatalogItemRecord(id=ITEM_ID, type="film", title="Heat", external_id="949"),
                CatalogItemRecord(id="item-other", type="film", title="Ronin"),
            ]
        )
        for left, right in (("alice", "bob"), ("alice", "carol-0000-abc123")):
            session.add(ContactRecord(user_id=left, other_user_id=right, status="accepted"))
            session.add(ContactRecord(user_id=right, other_user_id=left, status="accepted"))
        session.add(ContactRecord(user_id="alice", other_user_id="dave", status="pending"))
        await session.commit()


def _run(tmp_path, body, **service_kwargs) -> None:
    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'recommendations.db'}")
        await database.create_all()
        await _seed(database)
        service = RecommendationService(database.session_factory, **service_kwargs)
        try:
            await body(database, service)
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_transition_table() -> None:
    assert transition(RecommendationStatus.PENDING, RecommendationStatus.SAVED) is (
        RecommendationStatus.SAVED
    )
    assert transition(RecommendationStatus.SAVED, RecommendationStatus.DISMISSED) is (
        RecommendationStatus.DISMISSED
    )
    with pytest.raises(InvalidTransition):
        transition(RecommendationStatus.SAVED, RecommendationStatus.PENDING)
    with pytest.raises(InvalidTransition):
        transition(RecommendationStatus.ACCEPTED, RecommendationStatus.DISMISSED)
    assert RecommendationStatus.ACCEPTED.is_terminal
    assert not RecommendationStatus.SAVED.is_terminal


def test_send_only_reaches_eligible_contacts(tmp_path) -> None:
    async def body(database: Database, service: RecommendationService) -> None:
        async with database.session_factory() as session:
            session.add(CollectionEntryRecord(user_id="bob", item_id="item-other"))
            await session.commit()

        sent = await service.send_recommendation(
            "alice",
            ["bob", "carol-0000-abc123", "dave", "alice", "stranger", "bob"],
            ITEM_ID,
            comment="  Watch it  ",
        )
        assert sent == 2

        again = await service.send_recommendation("alice", ["bob"], ITEM_ID)
        assert again == 0

        owned = await service.send_recommendation("alice", ["bob"], "item-other")
        assert owned == 0

        received = await service.inbox("bob")
        assert [view.from_name for view in received] == ["alice"]
        assert received[0].comment == "Watch it"
        assert received[0].item.title == "Heat"

        outgoing = await service.sent("alice")
        assert sorted(view.to_name for view in outgoing) == ["User #ABC123", "bob"]

    _run(tmp_path, body)


def test_send_requires_sender_nickname_and_item(tmp_path) -> None:
    async def body(database: Database, service: RecommendationService) -> None:
        with pytest.raises(AuthenticationRequired):
            await service.send_recommendation(None, ["bob"], ITEM_ID)
        with pytest.raises(NicknameRequired):
            await service.send_recommendation("carol-0000-abc123", ["alice"], ITEM_ID)
        with pytest.raises(NotFound):
            await service.send_recommendation("alice", ["bob"], "missing")
        assert await service.send_recommendation("alice", [], ITEM_ID) == 0

    _run(tmp_path, body)


def test_daily_limit_and_comment_length(tmp_path) -> None:
    async def body(database: Database, service: RecommendationService) -> None:
        assert await service.send_recommendation("alice", ["bob"], ITEM_ID, "Brilliant") == 1
        assert (
            await service.send_recommendation(
                "alice", ["carol-0000-abc123"], ITEM_ID, "Brilliant"
            )
            == 1
        )

        async with database.session_factory() as session:
            comments = (await session.scalars(select(RecommendationRecord.comment))).all()
        assert set(comments) == {"Brill"}

        with pytest.raises(RateLimitExceeded):
            await service.send_recommendation("alice", ["bob"], "item-other")

        async with database.session_factory() as session:
            for record in (await session.scalars(select(RecommendationRecord))).all():
                record.created_at = utcnow() - timedelta(days=2)
            await session.commit()
        assert await service.send_recommendation("alice", ["bob"], "item-other") == 1

    _run(tmp_path, body, daily_limit=2, comment_limit=5)


def test_recipient_moves_recommendation_through_states(tmp_path) -> None:
    async def body(database: Database, service: RecommendationService) -> None:
        await service.send_recommendation("alice", ["bob"], ITEM_ID)
        (pending,) = await service.inbox("bob")
        assert await service.pending_count("bob") == 1

        with pytest.raises(PermissionDenied):
            await service.resolve_recommendation("alice", pending.id, "saved")
        with pytest.raises(ValidationFailed):
            await service.resolve_recommendation("bob", pending.id, "archived")

        saved = await service.resolve_recommendation("bob", pending.id, "saved")
        assert saved.status == "saved"
        assert await service.pending_count("bob") == 0
        assert [view.id for view in await service.inbox("bob")] == [pending.id]

        dismissed = await service.resolve_recommendation("bob", pending.id, "dismissed")
        assert dismissed.status == "dismissed"
        assert await service.inbox("bob") == []
        assert [view.id for view in await service.archive("bob")] == [pending.id]

        with pytest.raises(InvalidTransition):
            await service.resolve_recommendation("bob", pending.id, "saved")
        with pytest.raises(NotFound):
            await service.resolve_recommendation("bob", "missing", "saved")

    _run(tmp_path, body)


def test_accept_adds_planned_entry_once(tmp_path) -> None:
    async def body(database: Database, service: RecommendationService) -> None:
        await service.send_recommendation("alice", ["bob"], ITEM_ID)
        (pending,) = await service.inbox("bob")

        view, entry = await service.accept("bob", pending.id)

        assert view.status == "accepted"
        assert entry.user_id == "bob"
        assert entry.item_id == ITEM_ID
        assert entry.is_viewed is False
        with pytest.raises(InvalidTransition):
            await service.accept("bob", pending.id)

        async with database.session_factory() as session:
            entries = (
                await session.scalars(
                    select(CollectionEntryRecord).where(CollectionEntryRecord.user_id == "bob")
                )
            ).all()
        assert len(entries) == 1

    _run(tmp_path, body)


def test_accept_keeps_existing_entry(tmp_path) -> None:
    async def body(database: Database, service: RecommendationService) -> None:
        await service.send_recommendation("alice", ["bob"], ITEM_ID)
        (pending,) = await service.inbox("bob")
        async with database.session_factory() as session:
            session.add(
                CollectionEntryRecord(
                    id="bob-heat", user_id="bob", item_id=ITEM_ID, is_viewed=True, rating=4.0
                )
            )
            await session.commit()

        view = await service.resolve_recommendation("bob", pending.id, "accepted")

        assert view.status == "accepted"
        async with database.session_factory() as session:
            entry = await session.get(CollectionEntryRecord, "bob-heat")
        assert entry is not None
        assert entry.is_viewed is True
        assert entry.rating == 4.0

    _run(tmp_path, body)
