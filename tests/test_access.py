"""Friend access gate tests."""

from __future__ import annotations

import asyncio

import pytest

from app.database import Database
from app.db_models import ContactRecord, Profile
from app.services.access import ACCESS_MESSAGES, AccessState, FriendAccessGate, resolve_access


@pytest.mark.parametrize(
    ("viewer", "owner", "contact", "visible", "expected"),
    [
        (None, "owner", "accepted", True, AccessState.UNAUTHENTICATED),
        ("me", None, None, False, AccessState.ALLOWED),
        ("me", "me", None, False, AccessState.ALLOWED),
        ("me", "owner", None, True, AccessState.NOT_FRIENDS),
        ("me", "owner", "pending", True, AccessState.NOT_FRIENDS),
        ("me", "owner", "accepted", False, AccessState.CLOSED),
        ("me", "owner", "accepted", True, AccessState.ALLOWED),
    ],
)
def test_resolve_access(viewer, owner, contact, visible, expected) -> None:
    state = resolve_access(viewer, owner, contact_status=contact, library_visible=visible)

    assert state is expected


def test_gate_reads_contacts_and_visibility(tmp_path) -> None:
    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'access.db'}")
        await database.create_all()
        async with database.session_factory() as session:
            session.add_all(
                [
                    Profile(id="open", username="Opal", views_visible_to_friends=True),
                    Profile(id="hidden-user-a1b2c3", views_visible_to_friends=False),
                    ContactRecord(user_id="me", other_user_id="open", status="accepted"),
                    ContactRecord(
                        user_id="me", other_user_id="hidden-user-a1b2c3", status="accepted"
                    ),
                ]
            )
            await session.commit()
        gate = FriendAccessGate(database.session_factory)
        try:
            allowed = await gate.check("me", "open")
            assert allowed.allowed
            assert allowed.owner_name == "Opal"

            closed = await gate.check("me", "hidden-user-a1b2c3")
            assert closed.state is AccessState.CLOSED
            assert closed.owner_name == "User #A1B2C3"
            assert closed.message == ACCESS_MESSAGES[AccessState.CLOSED]

            stranger = await gate.check("open", "me")
            assert stranger.state is AccessState.NOT_FRIENDS

            own = await gate.check("me", "me")
            assert own.allowed

            anonymous = await gate.check(None, "open")
            assert anonymous.state is AccessState.UNAUTHENTICATED
        finally:
            await database.dispose()

    asyncio.run(runner())
