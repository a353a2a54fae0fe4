"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .utils import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class Profile(Base):
    """Public profile and sharing preferences of a user."""

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    username: Mapped[str | None] = mapped_column(String(24), nullable=True)
    username_key: Mapped[str | None] = mapped_column(
        String(24), nullable=True, unique=True
    )
    avatar_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    views_visible_to_friends: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    show_film_availability: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    show_game_availability: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    visible_game_platforms: Mapped[list[str] | None] = mapped_column(
        JSON, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


class CatalogItemRecord(Base):
    """Deduplicated film or game shared by every collection entry."""

    __tablename__ = "items"
    __table_args__ = (
        UniqueConstraint("type", "external_id", name="uq_items_type_external_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    type: Mapped[str] = mapped_column(String(8))
    title: Mapped[str] = mapped_column(String(512))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    poster_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    external_rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    genres: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


class CollectionEntryRecord(Base):
    """One user's record of a watched, played or planned catalog item."""

    __tablename__ = "user_views"
    __table_args__ = (
        UniqueConstraint("user_id", "item_id", name="uq_user_views_user_item"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    item_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("items.id", ondelete="CASCADE")
    )
    rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    viewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_viewed: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    view_percent: Mapped[int] = mapped_column(Integer, default=100)
    recommend_similar: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    availability: Mapped[str | None] = mapped_column(String(16), nullable=True)
    platforms: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    item: Mapped[CatalogItemRecord] = relationship()


class RecommendationRecord(Base):
    """An item shared by one user with an accepted contact."""

    __tablename__ = "recommendations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    from_user_id: Mapped[str] = mapped_column(String(64), index=True)
    to_user_id: Mapped[str] = mapped_column(String(64), index=True)
    item_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("items.id", ondelete="CASCADE")
    )
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    item: Mapped[CatalogItemRecord] = relationship()


class InviteRecord(Base):
    """Token that grants mutual contact status when accepted."""

    __tablename__ = "invites"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    creator_user_id: Mapped[str] = mapped_column(String(64), index=True)
    token: Mapped[str] = mapped_column(String(64), unique=True)
    max_uses: Mapped[int] = mapped_column(Integer, default=1)
    used_count: Mapped[int] = mapped_column(Integer, default=0)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ContactRecord(Base):
    """One direction of the symmetric contact relation."""

    __tablename__ = "contacts"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    other_user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
