"""Recommendation sending and the recipient-driven status lifecycle."""

from __future__ import annotations

import logging
from datetime import timedelta
from enum import Enum
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import joinedload

from ..config import Settings
from ..db_models import (
    CatalogItemRecord,
    CollectionEntryRecord,
    ContactRecord,
    Profile,
    RecommendationRecord,
)
from ..errors import (
    AuthenticationRequired,
    InvalidTransition,
    NicknameRequired,
    NotFound,
    PermissionDenied,
    RateLimitExceeded,
    ValidationFailed,
)
from ..models import CatalogItem, CollectionEntry, RecommendationView
from ..utils import utcnow
from .collection import ensure_planned_entry
from .profiles import load_display_names

logger = logging.getLogger(__name__)


class RecommendationStatus(str, Enum):
    PENDING = "pending"
    SAVED = "saved"
    ACCEPTED = "accepted"
    DISMISSED = "dismissed"

    @property
    def is_terminal(self) -> bool:
        return not TRANSITIONS[self]


TRANSITIONS: dict[RecommendationStatus, frozenset[RecommendationStatus]] = {
    RecommendationStatus.PENDING: frozenset(
        {
            RecommendationStatus.SAVED,
            RecommendationStatus.ACCEPTED,
            RecommendationStatus.DISMISSED,
        }
    ),
    RecommendationStatus.SAVED: frozenset(
        {RecommendationStatus.ACCEPTED, RecommendationStatus.DISMISSED}
    ),
    RecommendationStatus.ACCEPTED: frozenset(),
    RecommendationStatus.DISMISSED: frozenset(),
}

INBOX_STATUSES = (RecommendationStatus.PENDING, RecommendationStatus.SAVED)
ARCHIVE_STATUSES = (RecommendationStatus.ACCEPTED, RecommendationStatus.DISMISSED)


def transition(
    current: RecommendationStatus, target: RecommendationStatus
) -> RecommendationStatus:
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(
            f"A {current.value} recommendation cannot become {target.value}."
        )
    return target


class RecommendationService:
    """Send recommendations to contacts and resolve received ones."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        daily_limit: int = 30,
        comment_limit: int = 280,
    ) -> None:
        self._session_factory = session_factory
        self._daily_limit = daily_limit
        self._comment_limit = comment_limit

    @classmethod
    def from_settings(
        cls, settings: Settings, session_factory: async_sessionmaker[AsyncSession]
    ) -> "RecommendationService":
        return cls(
            session_factory,
            daily_limit=settings.recommendation_daily_limit,
            comment_limit=settings.recommendation_comment_limit,
        )

    async def send_recommendation(
        self,
        sender_id: str | None,
        to_user_ids: Iterable[str],
        item_id: str,
        comment: str | None = None,
    ) -> int:
        """Recommend ``item_id`` to accepted contacts; return how many were sent.

        Recipients that are not accepted contacts, already own the item or
        already received it from this sender are skipped.
        """

        if not sender_id:
            raise AuthenticationRequired()
        recipients = list(dict.fromkeys(user_id for user_id in to_user_ids if user_id))
        note = (comment or "").strip()[: self._comment_limit] or None

        async with self._session_factory() as session:
            async with session.begin():
                if await session.get(CatalogItemRecord, item_id) is None:
                    raise NotFound("Item not found.")
                sender = await session.get(Profile, sender_id)
                if sender is None or not sender.username:
                    raise NicknameRequired()

                since = utcnow() - timedelta(days=1)
                sent_today = await session.scalar(
                    select(func.count(RecommendationRecord.id)).where(
                        RecommendationRecord.from_user_id == sender_id,
                        RecommendationRecord.created_at >= since,
                    )
                )
                if (sent_today or 0) >= self._daily_limit:
                    raise RateLimitExceeded()

                candidates = [user_id for user_id in recipients if user_id != sender_id]
                if not candidates:
                    return 0

                friends = set(
                    (
                        await session.scalars(
                            select(ContactRecord.other_user_id).where(
                                ContactRecord.user_id == sender_id,
                                ContactRecord.other_user_id.in_(candidates),
                                ContactRecord.status == "accepted",
                            )
                        )
                    ).all()
                )
                owners = set(
                    (
                        await session.scalars(
                            select(CollectionEntryRecord.user_id).where(
                                CollectionEntryRecord.item_id == item_id,
                                CollectionEntryRecord.user_id.in_(candidates),
                            )
                        )
                    ).all()
                )
                already_sent = set(
                    (
                        await session.scalars(
                            select(RecommendationRecord.to_user_id).where(
                                RecommendationRecord.from_user_id == sender_id,
                                RecommendationRecord.item_id == item_id,
                                RecommendationRecord.to_user_id.in_(candidates),
                            )
                        )
                    ).all()
                )

                sent = 0
                for user_id in candidates:
                    if user_id not in friends or user_id in owners or user_id in already_sent:
                        continue
                    session.add(
                        RecommendationRecord(
                            from_user_id=sender_id,
                            to_user_id=user_id,
                            item_id=item_id,
                            comment=note,
                            status=RecommendationStatus.PENDING.value,
                        )
                    )
                    sent += 1
        logger.info("User %s sent %s recommendation(s) for item %s", sender_id, sent, item_id)
        return sent

    async def resolve_recommendation(
        self,
        viewer_id: str | None,
        recommendation_id: str,
        status: RecommendationStatus | str,
    ) -> RecommendationView:
        """Move a received recommendation to ``status``."""

        try:
            target = RecommendationStatus(status)
        except ValueError as exc:
            raise ValidationFailed(f"Unknown recommendation status: {status}") from exc
        if target is RecommendationStatus.ACCEPTED:
            view, _ = await self.accept(viewer_id, recommendation_id)
            return view

        async with self._session_factory() as session:
            async with session.begin():
                record = await self._received(session, viewer_id, recommendation_id)
                record.status = transition(
                    RecommendationStatus(record.status), target
                ).value
            return await self._to_view(session, record)

    async def accept(
        self, viewer_id: str | None, recommendation_id: str
    ) -> tuple[RecommendationView, CollectionEntry]:
        """Add the item to the recipient's collection and mark it accepted.

        Both writes share one transaction; an existing entry is left as is.
        """

        async with self._session_factory() as session:
            async with session.begin():
                record = await self._received(session, viewer_id, recommendation_id)
                status = transition(
                    RecommendationStatus(record.status), RecommendationStatus.ACCEPTED
                )
                entry, _created = await ensure_planned_entry(
                    session, record.to_user_id, record.item
                )
                record.status = status.value
            entry_view = CollectionEntry.model_validate(entry)
            return await self._to_view(session, record), entry_view

    async def inbox(self, viewer_id: str | None) -> list[RecommendationView]:
        return await self._list_received(viewer_id, INBOX_STATUSES)

    async def archive(self, viewer_id: str | None) -> list[RecommendationView]:
        return await self._list_received(viewer_id, ARCHIVE_STATUSES)

    async def sent(self, viewer_id: str | None) -> list[RecommendationView]:
        if not viewer_id:
            raise AuthenticationRequired()
        async with self._session_factory() as session:
            records = (
                await session.scalars(
                    select(RecommendationRecord)
                    .options(joinedload(RecommendationRecord.item))
                    .where(RecommendationRecord.from_user_id == viewer_id)
                    .order_by(
                        RecommendationRecord.created_at.desc(),
                        RecommendationRecord.id.desc(),
                    )
                )
            ).all()
            return await self._to_views(session, records)

    async def pending_count(self, viewer_id: str | None) -> int:
        if not viewer_id:
            raise AuthenticationRequired()
        async with self._session_factory() as session:
            count = await session.scalar(
                select(func.count(RecommendationRecord.id)).where(
                    RecommendationRecord.to_user_id == viewer_id,
                    RecommendationRecord.status == RecommendationStatus.PENDING.value,
                )
            )
        return int(count or 0)

    async def _list_received(
        self,
        viewer_id: str | None,
        statuses: tuple[RecommendationStatus, ...],
    ) -> list[RecommendationView]:
        if not viewer_id:
            raise AuthenticationRequired()
        async with self._session_factory() as session:
            records = (
                await session.scalars(
                    select(RecommendationRecord)
                    .options(joinedload(RecommendationRecord.item))
                    .where(
                        RecommendationRecord.to_user_id == viewer_id,
                        RecommendationRecord.status.in_(
                            [status.value for status in statuses]
                        ),
                    )
                    .order_by(
                        RecommendationRecord.created_at.desc(),
                        RecommendationRecord.id.desc(),
                    )
                )
            ).all()
            return await self._to_views(session, records)

    @staticmethod
    async def _received(
        session: AsyncSession, viewer_id: str | None, recommendation_id: str
    ) -> RecommendationRecord:
        if not viewer_id:
            raise AuthenticationRequired()
        record = await session.scalar(
            select(RecommendationRecord)
            .options(joinedload(RecommendationRecord.item))
            .where(RecommendationRecord.id == recommendation_id)
        )
        if record is None:
            raise NotFound("Recommendation not found.")
        if record.to_user_id != viewer_id:
            raise PermissionDenied("Only the recipient can update this recommendation.")
        return record

    async def _to_view(
        self, session: AsyncSession, record: RecommendationRecord
    ) -> RecommendationView:
        views = await self._to_views(session, [record])
        return views[0]

    @staticmethod
    async def _to_views(
        session: AsyncSession, records: Iterable[RecommendationRecord]
    ) -> list[RecommendationView]:
        records = list(records)
        names = await load_display_names(
            session,
            [user_id for record in records for user_id in (record.from_user_id, record.to_user_id)],
        )
        return [
            RecommendationView(
                id=record.id,
                from_user_id=record.from_user_id,
                from_name=names[record.from_user_id],
                to_user_id=record.to_user_id,
                to_name=names[record.to_user_id],
                item=CatalogItem.model_validate(record.item),
                comment=record.comment,
                status=record.status,
                created_at=record.created_at,
            )
            for record in records
        ]
