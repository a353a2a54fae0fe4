"""Clients for the external film and game metadata providers."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from ..config import Settings
from ..errors import MetadataProviderError
from ..models import MetadataCandidate, MetadataDetail
from ..utils import parse_year

logger = logging.getLogger(__name__)

POSTER_BASE_URL = "https://image.tmdb.org/t/p/w500"


class MetadataProvider(Protocol):
    """Narrow contract consumed by enrichment and metadata refresh."""

    category: str

    async def search(self, query: str) -> list[MetadataCandidate]:
        ...

    async def detail(self, external_id: str) -> MetadataDetail | None:
        ...


def _join_genres(raw: Any) -> str | None:
    if not isinstance(raw, list):
        return None
    names = [
        str(genre.get("name")).strip()
        for genre in raw
        if isinstance(genre, dict) and genre.get("name")
    ]
    return ", ".join(names) or None


def _json_object(response: httpx.Response) -> dict[str, Any] | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def _as_rating(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


class TMDBClient:
    """Film search and detail lookups against The Movie Database."""

    category = "film"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        if not settings.tmdb_enabled:
            raise ValueError("TMDB credentials are required when initialising TMDBClient")
        self._settings = settings
        self._client = http_client

    async def search(self, query: str) -> list[MetadataCandidate]:
        """Return films matching ``query``; raises when TMDB cannot answer."""

        title = (query or "").strip()
        if not title:
            return []
        params = self._params(query=title, include_adult="false", page=1)
        payload = await self._get_or_raise("/search/movie", params, title)
        results = payload.get("results") or []
        candidates: list[MetadataCandidate] = []
        for result in results:
            if not isinstance(result, dict) or result.get("id") is None:
                continue
            candidates.append(
                MetadataCandidate(
                    external_id=str(result["id"]),
                    title=str(result.get("title") or result.get("name") or title),
                    year=self._extract_year(result),
                    poster_url=self._build_image_url(result.get("poster_path")),
                    external_rating=_as_rating(result.get("vote_average")),
                    description=result.get("overview") or None,
                )
            )
        return candidates

    async def detail(self, external_id: str) -> MetadataDetail | None:
        """Return film details or ``None`` when the lookup fails."""

        try:
            response = await self._client.get(
                f"/movie/{external_id}",
                params=self._params(),
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            logger.warning("TMDB detail lookup failed for %s: %s", external_id, exc)
            return None
        if response.status_code >= 400:
            logger.warning(
                "TMDB detail lookup for %s failed: %s", external_id, response.text
            )
            return None
        payload = _json_object(response)
        if payload is None:
            logger.warning("TMDB detail for %s was not a JSON object", external_id)
            return None
        return MetadataDetail(
            external_id=str(payload.get("id") or external_id),
            title=payload.get("title") or None,
            description=payload.get("overview") or None,
            external_rating=_as_rating(payload.get("vote_average")),
            year=self._extract_year(payload),
            poster_url=self._build_image_url(payload.get("poster_path")),
            genres=_join_genres(payload.get("genres")),
        )

    async def _get_or_raise(
        self, endpoint: str, params: dict[str, Any], title: str
    ) -> dict[str, Any]:
        try:
            response = await self._client.get(
                endpoint, params=params, headers=self._headers()
            )
        except httpx.HTTPError as exc:
            logger.warning("TMDB search for %s failed: %s", title, exc)
            raise MetadataProviderError() from exc
        if response.status_code >= 400:
            logger.warning("TMDB search for %s failed: %s", title, response.text)
            raise MetadataProviderError(
                f"TMDB search failed with status {response.status_code}."
            )
        payload = _json_object(response)
        if payload is None:
            raise MetadataProviderError("TMDB returned an unreadable response.")
        return payload

    def _params(self, **extra: Any) -> dict[str, Any]:
        params: dict[str, Any] = {"language": self._settings.tmdb_language}
        if self._settings.tmdb_api_key:
            params["api_key"] = self._settings.tmdb_api_key
        params.update(extra)
        return params

    def _headers(self) -> dict[str, str]:
        if self._settings.tmdb_read_access_token:
            return {"Authorization": f"Bearer {self._settings.tmdb_read_access_token}"}
        return {}

    @staticmethod
    def _extract_year(result: dict[str, Any]) -> int | None:
        return parse_year(result.get("release_date"))

    @staticmethod
    def _build_image_url(path: Any) -> str | None:
        if not path or not isinstance(path, str):
            return None
        if path.startswith("http"):
            return path
        return f"{POSTER_BASE_URL}{path}"


class RAWGClient:
    """Game search and detail lookups against the RAWG video game database."""

    category = "game"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        if not settings.rawg_enabled:
            raise ValueError("RAWG API key is required when initialising RAWGClient")
        self._settings = settings
        self._client = http_client

    async def search(self, query: str) -> list[MetadataCandidate]:
        title = (query or "").strip()
        if not title:
            return []
        params = {"key": self._settings.rawg_api_key, "search": title, "page_size": 10}
        try:
            response = await self._client.get("/games", params=params)
        except httpx.HTTPError as exc:
            logger.warning("RAWG search for %s failed: %s", title, exc)
            raise MetadataProviderError() from exc
        if response.status_code >= 400:
            logger.warning("RAWG search for %s failed: %s", title, response.text)
            raise MetadataProviderError(
                f"RAWG search failed with status {response.status_code}."
            )
        payload = _json_object(response)
        if payload is None:
            raise MetadataProviderError("RAWG returned an unreadable response.")

        candidates: list[MetadataCandidate] = []
        for game in payload.get("results") or []:
            if not isinstance(game, dict) or game.get("id") is None:
                continue
            candidates.append(
                MetadataCandidate(
                    external_id=str(game["id"]),
                    title=str(game.get("name") or title),
                    year=parse_year(game.get("released")),
                    poster_url=game.get("background_image") or None,
                    external_rating=_as_rating(game.get("rating")),
                    genres=_join_genres(game.get("genres")),
                )
            )
        return candidates

    async def detail(self, external_id: str) -> MetadataDetail | None:
        try:
            response = await self._client.get(
                f"/games/{external_id}", params={"key": self._settings.rawg_api_key}
            )
        except httpx.HTTPError as exc:
            logger.warning("RAWG detail lookup failed for %s: %s", external_id, exc)
            return None
        if response.status_code >= 400:
            logger.warning(
                "RAWG detail lookup for %s failed: %s", external_id, response.text
            )
            return None
        payload = _json_object(response)
        if payload is None:
            logger.warning("RAWG detail for %s was not a JSON object", external_id)
            return None
        return MetadataDetail(
            external_id=str(payload.get("id") or external_id),
            title=payload.get("name") or None,
            description=payload.get("description_raw") or payload.get("description") or None,
            external_rating=_as_rating(payload.get("rating")),
            year=parse_year(payload.get("released")),
            poster_url=payload.get("background_image") or None,
            genres=_join_genres(payload.get("genres")),
        )
