"""Authorization gate for browsing another user's collection."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import ContactRecord, Profile
from ..utils import display_name


class AccessState(str, Enum):
    CHECKING = "checking"
    ALLOWED = "allowed"
    UNAUTHENTICATED = "unauthenticated"
    NOT_FRIENDS = "not_friends"
    CLOSED = "closed"


ACCESS_MESSAGES: dict[AccessState, str] = {
    AccessState.CHECKING: "Checking access to this collection.",
    AccessState.ALLOWED: "",
    AccessState.UNAUTHENTICATED: "Sign in to view this collection.",
    AccessState.NOT_FRIENDS: "Only friends can view this collection.",
    AccessState.CLOSED: "This user has hidden their collection from friends.",
}


def resolve_access(
    viewer_id: str | None,
    owner_id: str | None,
    *,
    contact_status: str | None = None,
    library_visible: bool = False,
) -> AccessState:
    """Leave the ``checking`` state for exactly one terminal state."""

    if not viewer_id:
        return AccessState.UNAUTHENTICATED
    if owner_id is None or owner_id == viewer_id:
        return AccessState.ALLOWED
    if contact_status != "accepted":
        return AccessState.NOT_FRIENDS
    if not library_visible:
        return AccessState.CLOSED
    return AccessState.ALLOWED


@dataclass(slots=True, frozen=True)
class AccessDecision:
    state: AccessState
    owner_id: str | None = None
    owner_name: str | None = None

    @property
    def allowed(self) -> bool:
        return self.state is AccessState.ALLOWED

    @property
    def message(self) -> str:
        return ACCESS_MESSAGES[self.state]


class FriendAccessGate:
    """Decide whether a viewer may query a collection."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def check(self, viewer_id: str | None, owner_id: str | None) -> AccessDecision:
        if not viewer_id or owner_id is None or owner_id == viewer_id:
            state = resolve_access(viewer_id, owner_id)
            return AccessDecision(state=state, owner_id=owner_id or viewer_id)

        async with self._session_factory() as session:
            contact = await session.get(ContactRecord, (viewer_id, owner_id))
            profile = await session.get(Profile, owner_id)

        state = resolve_access(
            viewer_id,
            owner_id,
            contact_status=contact.status if contact else None,
            library_visible=bool(profile and profile.views_visible_to_friends),
        )
        return AccessDecision(
            state=state,
            owner_id=owner_id,
            owner_name=display_name(profile.username if profile else None, owner_id),
        )
