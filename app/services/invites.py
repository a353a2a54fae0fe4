"""Invite tokens that grant mutual contact status."""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..database import WRITE_LOCK_OPTION
from ..db_models import ContactRecord, InviteRecord, Profile
from ..errors import AuthenticationRequired, NicknameRequired, NotFound, PermissionDenied
from ..models import InviteView
from ..utils import utcnow

logger = logging.getLogger(__name__)


class InviteState(str, Enum):
    ACTIVE = "active"
    CONSUMED = "consumed"
    REVOKED = "revoked"
    EXPIRED = "expired"


class InviteOutcome(str, Enum):
    ACCEPTED = "accepted"
    INVALID = "invalid"
    EXPIRED = "expired"
    REVOKED = "revoked"
    MAX_USES = "max_uses"
    SELF = "self"
    UNAUTHORIZED = "unauthorized"

    @property
    def message(self) -> str:
        return INVITE_OUTCOME_MESSAGES[self]


INVITE_OUTCOME_MESSAGES: dict[InviteOutcome, str] = {
    InviteOutcome.ACCEPTED: "You are now friends.",
    InviteOutcome.INVALID: "This invite link is not valid.",
    InviteOutcome.EXPIRED: "This invite has expired.",
    InviteOutcome.REVOKED: "This invite was revoked.",
    InviteOutcome.MAX_USES: "This invite has already been used.",
    InviteOutcome.SELF: "You cannot accept your own invite.",
    InviteOutcome.UNAUTHORIZED: "Sign in to accept the invite.",
}

_STATE_OUTCOMES: dict[InviteState, InviteOutcome] = {
    InviteState.REVOKED: InviteOutcome.REVOKED,
    InviteState.EXPIRED: InviteOutcome.EXPIRED,
    InviteState.CONSUMED: InviteOutcome.MAX_USES,
}


def invite_state(invite: InviteRecord, now: datetime | None = None) -> InviteState:
    """Classify an invite; anything but ``ACTIVE`` is inert for good."""

    now = now or utcnow()
    if invite.revoked_at is not None:
        return InviteState.REVOKED
    if invite.expires_at is not None and invite.expires_at <= now:
        return InviteState.EXPIRED
    if invite.used_count >= invite.max_uses:
        return InviteState.CONSUMED
    return InviteState.ACTIVE


def to_invite_view(invite: InviteRecord, now: datetime | None = None) -> InviteView:
    return InviteView(
        id=invite.id,
        token=invite.token,
        max_uses=invite.max_uses,
        used_count=invite.used_count,
        expires_at=invite.expires_at,
        revoked_at=invite.revoked_at,
        created_at=invite.created_at,
        state=invite_state(invite, now).value,
    )


async def upsert_contact(
    session: AsyncSession, user_id: str, other_user_id: str, status: str
) -> None:
    contact = await session.get(ContactRecord, (user_id, other_user_id))
    if contact is None:
        session.add(
            ContactRecord(user_id=user_id, other_user_id=other_user_id, status=status)
        )
    else:
        contact.status = status


class InviteService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl_days: int = 7,
        max_uses: int = 1,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = timedelta(days=ttl_days)
        self._max_uses = max_uses

    @classmethod
    def from_settings(
        cls, settings: Settings, session_factory: async_sessionmaker[AsyncSession]
    ) -> "InviteService":
        return cls(
            session_factory,
            ttl_days=settings.invite_ttl_days,
            max_uses=settings.invite_max_uses,
        )

    async def create_invite(self, viewer_id: str | None) -> InviteView:
        if not viewer_id:
            raise AuthenticationRequired()
        async with self._session_factory() as session:
            profile = await session.get(Profile, viewer_id)
            if profile is None or not profile.username:
                raise NicknameRequired()
            now = utcnow()
            invite = InviteRecord(
                creator_user_id=viewer_id,
                token=secrets.token_urlsafe(24),
                max_uses=self._max_uses,
                used_count=0,
                expires_at=now + self._ttl,
                created_at=now,
            )
            session.add(invite)
            await session.commit()
        return to_invite_view(invite, now)

    async def list_invites(self, viewer_id: str | None) -> list[InviteView]:
        """Return the viewer's active invites, deleting inert ones on the way."""

        if not viewer_id:
            raise AuthenticationRequired()
        now = utcnow()
        async with self._session_factory() as session:
            invites = (
                await session.scalars(
                    select(InviteRecord)
                    .where(InviteRecord.creator_user_id == viewer_id)
                    .order_by(InviteRecord.created_at.desc(), InviteRecord.id.desc())
                )
            ).all()
            active: list[InviteRecord] = []
            removed = 0
            for invite in invites:
                if invite_state(invite, now) is InviteState.ACTIVE:
                    active.append(invite)
                else:
                    await session.delete(invite)
                    removed += 1
            if removed:
                await session.commit()
                logger.info("Removed %s inert invite(s) for %s", removed, viewer_id)
        return [to_invite_view(invite, now) for invite in active]

    async def revoke_invite(self, viewer_id: str | None, invite_id: str) -> InviteView:
        if not viewer_id:
            raise AuthenticationRequired()
        async with self._session_factory() as session:
            invite = await session.get(InviteRecord, invite_id)
            if invite is None:
                raise NotFound("Invite not found.")
            if invite.creator_user_id != viewer_id:
                raise PermissionDenied("Only the creator can revoke this invite.")
            if invite.revoked_at is None:
                invite.revoked_at = utcnow()
                await session.commit()
        return to_invite_view(invite)

    async def accept_invite(self, viewer_id: str | None, token: str | None) -> InviteOutcome:
        """Consume ``token`` and make the viewer and the creator contacts."""

        if not viewer_id:
            return InviteOutcome.UNAUTHORIZED
        token = (token or "").strip()
        if not token:
            return InviteOutcome.INVALID

        async with self._session_factory() as session:
            async with session.begin():
                await session.connection(execution_options={WRITE_LOCK_OPTION: True})
                now = utcnow()
                claimed = await session.execute(
                    update(InviteRecord)
                    .where(
                        InviteRecord.token == token,
                        InviteRecord.creator_user_id != viewer_id,
                        InviteRecord.revoked_at.is_(None),
                        or_(
                            InviteRecord.expires_at.is_(None),
                            InviteRecord.expires_at > now,
                        ),
                        InviteRecord.used_count < InviteRecord.max_uses,
                    )
                    .values(used_count=InviteRecord.used_count + 1)
                    .execution_options(synchronize_session=False)
                )
                invite = await session.scalar(
                    select(InviteRecord).where(InviteRecord.token == token)
                )
                if invite is None:
                    return InviteOutcome.INVALID
                if not claimed.rowcount:
                    if invite.creator_user_id == viewer_id:
                        return InviteOutcome.SELF
                    return _STATE_OUTCOMES.get(
                        invite_state(invite, now), InviteOutcome.INVALID
                    )

                await upsert_contact(session, viewer_id, invite.creator_user_id, "accepted")
                await upsert_contact(session, invite.creator_user_id, viewer_id, "accepted")
        logger.info("User %s accepted invite %s", viewer_id, invite.id)
        return InviteOutcome.ACCEPTED
