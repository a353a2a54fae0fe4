"""Nicknames, library visibility and display preferences."""

from __future__ import annotations

import re
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import Profile
from ..errors import AuthenticationRequired, InvalidNickname, NicknameTaken
from ..models import GAME_PLATFORMS, DisplayPreferences, ProfileView
from ..utils import display_name

NICKNAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{3,24}$")


def validate_nickname(value: str | None) -> str:
    """Return the trimmed nickname or raise before any write happens."""

    nickname = (value or "").strip()
    if not NICKNAME_PATTERN.fullmatch(nickname):
        raise InvalidNickname()
    return nickname


async def load_display_names(
    session: AsyncSession, user_ids: Iterable[str]
) -> dict[str, str]:
    """Resolve display names for ``user_ids`` with the anonymous fallback."""

    wanted = list(dict.fromkeys(user_ids))
    if not wanted:
        return {}
    result = await session.execute(
        select(Profile.id, Profile.username).where(Profile.id.in_(wanted))
    )
    usernames = {row.id: row.username for row in result}
    return {user_id: display_name(usernames.get(user_id), user_id) for user_id in wanted}


def to_profile_view(profile: Profile) -> ProfileView:
    return ProfileView(
        id=profile.id,
        username=profile.username,
        display_name=display_name(profile.username, profile.id),
        avatar_url=profile.avatar_url,
        views_visible_to_friends=profile.views_visible_to_friends,
        show_film_availability=profile.show_film_availability,
        show_game_availability=profile.show_game_availability,
        visible_game_platforms=list(profile.visible_game_platforms or GAME_PLATFORMS),
    )


class ProfileService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_profile(self, user_id: str | None) -> ProfileView:
        user_id = _require(user_id)
        async with self._session_factory() as session:
            profile = await self._ensure(session, user_id)
            await session.commit()
        return to_profile_view(profile)

    async def set_username(self, user_id: str | None, username: str | None) -> ProfileView:
        user_id = _require(user_id)
        nickname = validate_nickname(username)
        key = nickname.lower()
        async with self._session_factory() as session:
            taken = await session.scalar(
                select(Profile.id).where(Profile.username_key == key, Profile.id != user_id)
            )
            if taken is not None:
                raise NicknameTaken()
            profile = await self._ensure(session, user_id)
            profile.username = nickname
            profile.username_key = key
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise NicknameTaken() from exc
        return to_profile_view(profile)

    async def set_library_visibility(self, user_id: str | None, visible: bool) -> ProfileView:
        user_id = _require(user_id)
        async with self._session_factory() as session:
            profile = await self._ensure(session, user_id)
            profile.views_visible_to_friends = visible
            await session.commit()
        return to_profile_view(profile)

    async def update_display_preferences(
        self, user_id: str | None, preferences: DisplayPreferences
    ) -> ProfileView:
        user_id = _require(user_id)
        async with self._session_factory() as session:
            profile = await self._ensure(session, user_id)
            profile.show_film_availability = preferences.show_film_availability
            profile.show_game_availability = preferences.show_game_availability
            profile.visible_game_platforms = list(preferences.visible_game_platforms)
            await session.commit()
        return to_profile_view(profile)

    @staticmethod
    async def _ensure(session: AsyncSession, user_id: str) -> Profile:
        profile = await session.get(Profile, user_id)
        if profile is None:
            profile = Profile(id=user_id)
            session.add(profile)
            await session.flush()
        return profile


def _require(user_id: str | None) -> str:
    if not user_id:
        raise AuthenticationRequired()
    return user_id
