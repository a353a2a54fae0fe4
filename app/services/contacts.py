"""Contact listing, removal and recommendation targets."""

from __future__ import annotations

import logging

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import CollectionEntryRecord, ContactRecord, Profile, RecommendationRecord
from ..errors import AuthenticationRequired
from ..models import ContactOption, ContactView
from ..utils import display_name

logger = logging.getLogger(__name__)

OWNS_ITEM_REASON = "Already in their collection"
ALREADY_RECOMMENDED_REASON = "Already recommended"


class ContactService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def list_contacts(self, viewer_id: str | None) -> list[ContactView]:
        if not viewer_id:
            raise AuthenticationRequired()
        async with self._session_factory() as session:
            contacts = (
                await session.scalars(
                    select(ContactRecord)
                    .where(
                        ContactRecord.user_id == viewer_id,
                        ContactRecord.status == "accepted",
                    )
                    .order_by(ContactRecord.created_at.desc())
                )
            ).all()
            other_ids = [contact.other_user_id for contact in contacts]
            profiles = {
                profile.id: profile
                for profile in (
                    await session.scalars(select(Profile).where(Profile.id.in_(other_ids)))
                ).all()
            }
        views = []
        for contact in contacts:
            profile = profiles.get(contact.other_user_id)
            views.append(
                ContactView(
                    user_id=contact.other_user_id,
                    display_name=display_name(
                        profile.username if profile else None, contact.other_user_id
                    ),
                    avatar_url=profile.avatar_url if profile else None,
                    status=contact.status,
                )
            )
        views.sort(key=lambda view: view.display_name.casefold())
        return views

    async def remove_contact(self, viewer_id: str | None, other_user_id: str) -> bool:
        """Drop the contact pair and every recommendation exchanged by it."""

        if not viewer_id:
            raise AuthenticationRequired()
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(ContactRecord).where(
                        or_(
                            and_(
                                ContactRecord.user_id == viewer_id,
                                ContactRecord.other_user_id == other_user_id,
                            ),
                            and_(
                                ContactRecord.user_id == other_user_id,
                                ContactRecord.other_user_id == viewer_id,
                            ),
                        )
                    )
                )
                await session.execute(
                    delete(RecommendationRecord).where(
                        or_(
                            and_(
                                RecommendationRecord.from_user_id == viewer_id,
                                RecommendationRecord.to_user_id == other_user_id,
                            ),
                            and_(
                                RecommendationRecord.from_user_id == other_user_id,
                                RecommendationRecord.to_user_id == viewer_id,
                            ),
                        )
                    )
                )
        removed = bool(result.rowcount)
        if removed:
            logger.info("User %s removed contact %s", viewer_id, other_user_id)
        return removed

    async def recommendation_options(
        self, viewer_id: str | None, item_id: str
    ) -> list[ContactOption]:
        """List accepted contacts, disabling those who should not get ``item_id``."""

        contacts = await self.list_contacts(viewer_id)
        if not contacts:
            return []
        contact_ids = [contact.user_id for contact in contacts]
        async with self._session_factory() as session:
            owners = set(
                (
                    await session.scalars(
                        select(CollectionEntryRecord.user_id).where(
                            CollectionEntryRecord.item_id == item_id,
                            CollectionEntryRecord.user_id.in_(contact_ids),
                        )
                    )
                ).all()
            )
            recommended = set(
                (
                    await session.scalars(
                        select(RecommendationRecord.to_user_id).where(
                            RecommendationRecord.from_user_id == viewer_id,
                            RecommendationRecord.item_id == item_id,
                            RecommendationRecord.to_user_id.in_(contact_ids),
                        )
                    )
                ).all()
            )

        options: list[ContactOption] = []
        for contact in contacts:
            reason = None
            if contact.user_id in owners:
                reason = OWNS_ITEM_REASON
            elif contact.user_id in recommended:
                reason = ALREADY_RECOMMENDED_REASON
            options.append(
                ContactOption(
                    user_id=contact.user_id,
                    display_name=contact.display_name,
                    disabled=reason is not None,
                    reason=reason,
                )
            )
        return options
