"""Entry point for the FastAPI-powered collection tracker."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from .config import settings
from .database import Database
from .errors import CatalogyError
from .models import (
    AcceptInviteRequest,
    AddEntryRequest,
    DisplayPreferences,
    FilterForm,
    MetadataCandidate,
    OpenBrowseRequest,
    RecommendationStatusRequest,
    RefreshRequest,
    SendRecommendationRequest,
    UpdateEntryRequest,
    UsernameRequest,
    VisibilityRequest,
)
from .services.access import FriendAccessGate
from .services.browse import BrowseService
from .services.collection import CollectionService
from .services.contacts import ContactService
from .services.invites import InviteService
from .services.metadata import MetadataProvider, RAWGClient, TMDBClient
from .services.profiles import ProfileService
from .services.query_compiler import QueryCompiler
from .services.recommendations import RecommendationService
from .services.store import CollectionStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"

app: FastAPI


@dataclass(slots=True)
class ServiceContainer:
    browse: BrowseService
    collection: CollectionService
    recommendations: RecommendationService
    invites: InviteService
    contacts: ContactService
    profiles: ProfileService


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    providers: dict[str, MetadataProvider] = {}
    if settings.tmdb_enabled:
        tmdb_client = await exit_stack.enter_async_context(
            httpx.AsyncClient(
                base_url=str(settings.tmdb_api_url),
                timeout=httpx.Timeout(15.0, connect=5.0),
            )
        )
        providers["film"] = TMDBClient(settings, tmdb_client)
    else:
        logger.info("TMDB credentials missing; film metadata lookups are disabled")
    if settings.rawg_enabled:
        rawg_client = await exit_stack.enter_async_context(
            httpx.AsyncClient(
                base_url=str(settings.rawg_api_url),
                timeout=httpx.Timeout(15.0, connect=5.0),
            )
        )
        providers["game"] = RAWGClient(settings, rawg_client)
    else:
        logger.info("RAWG key missing; game metadata lookups are disabled")

    database = Database(settings.database_url)
    await database.create_all()
    session_factory = database.session_factory

    store = CollectionStore(session_factory, batch_size=settings.client_sort_batch_size)
    services = ServiceContainer(
        browse=BrowseService(
            settings,
            store,
            QueryCompiler.from_settings(settings),
            FriendAccessGate(session_factory),
            providers,
        ),
        collection=CollectionService(session_factory, providers),
        recommendations=RecommendationService.from_settings(settings, session_factory),
        invites=InviteService.from_settings(settings, session_factory),
        contacts=ContactService(session_factory),
        profiles=ProfileService(session_factory),
    )

    fastapi_app.state.services = services
    fastapi_app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await services.browse.close()
        await services.collection.close()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Personal film and game collections shared between friends",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_services(app: FastAPI) -> ServiceContainer:
    services = getattr(app.state, "services", None)
    if services is None:
        raise RuntimeError("Services not initialised")
    return services


def _viewer(request: Request) -> str | None:
    value = (request.headers.get(USER_HEADER) or "").strip()
    return value or None


def _http_error(exc: CatalogyError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    # Profile

    @fastapi_app.get("/api/profile")
    async def get_profile_endpoint(request: Request) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            profile = await services.profiles.get_profile(_viewer(request))
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        return profile.model_dump(mode="json")

    @fastapi_app.put("/api/profile/username")
    async def set_username_endpoint(
        request: Request, payload: UsernameRequest
    ) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            profile = await services.profiles.set_username(
                _viewer(request), payload.username
            )
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        return profile.model_dump(mode="json")

    @fastapi_app.put("/api/profile/visibility")
    async def set_visibility_endpoint(
        request: Request, payload: VisibilityRequest
    ) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            profile = await services.profiles.set_library_visibility(
                _viewer(request), payload.views_visible_to_friends
            )
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        return profile.model_dump(mode="json")

    @fastapi_app.put("/api/profile/preferences")
    async def set_preferences_endpoint(
        request: Request, payload: DisplayPreferences
    ) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            profile = await services.profiles.update_display_preferences(
                _viewer(request), payload
            )
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        return profile.model_dump(mode="json")

    # Browse sessions

    @fastapi_app.post("/api/browse")
    async def open_browse_endpoint(
        request: Request, payload: OpenBrowseRequest
    ) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            session = await services.browse.open_session(
                _viewer(request), payload.category, owner_id=payload.owner_id
            )
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        if session.access is not None and session.access.allowed:
            await session.apply_filters()
        return session.to_payload()

    @fastapi_app.get("/api/browse/{session_id}")
    async def browse_state_endpoint(request: Request, session_id: str) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            session = services.browse.get_session(session_id, _viewer(request))
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        return session.to_payload()

    @fastapi_app.post("/api/browse/{session_id}/filters")
    async def browse_filters_endpoint(
        request: Request,
        session_id: str,
        payload: FilterForm,
        apply: bool = True,
    ) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            session = services.browse.get_session(session_id, _viewer(request))
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        try:
            spec = payload.to_specification()
        except ValidationError as exc:
            raise HTTPException(
                status_code=400,
                detail=exc.errors(
                    include_url=False, include_context=False, include_input=False
                ),
            ) from exc
        if apply:
            await session.apply_filters(spec)
        else:
            session.set_pending_filters(spec)
        return session.to_payload()

    @fastapi_app.post("/api/browse/{session_id}/next")
    async def browse_next_endpoint(request: Request, session_id: str) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            session = services.browse.get_session(session_id, _viewer(request))
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        await session.load_next_page()
        return session.to_payload()

    @fastapi_app.post("/api/browse/{session_id}/bounds")
    async def browse_bounds_endpoint(request: Request, session_id: str) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            session = services.browse.get_session(session_id, _viewer(request))
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        await session.refresh_bounds()
        return session.to_payload()

    @fastapi_app.delete("/api/browse/{session_id}")
    async def browse_close_endpoint(request: Request, session_id: str) -> dict[str, str]:
        services = get_services(fastapi_app)
        try:
            await services.browse.close_session(session_id, _viewer(request))
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        return {"status": "closed"}

    # Collection

    @fastapi_app.post("/api/collection/{category}")
    async def add_entry_endpoint(
        request: Request, category: str, payload: AddEntryRequest
    ) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            entry = await services.collection.add_to_collection(
                _viewer(request), category, payload.item, payload.entry
            )
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        await services.browse.notify_mutation(entry.item.type)
        return entry.model_dump(mode="json")

    @fastapi_app.post("/api/collection/items/{item_id}")
    async def add_existing_item_endpoint(
        request: Request, item_id: str
    ) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            entry, created = await services.collection.add_existing_item(
                _viewer(request), item_id
            )
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        if created:
            await services.browse.notify_mutation(entry.item.type)
        return {"created": created, "entry": entry.model_dump(mode="json")}

    @fastapi_app.patch("/api/collection/entries/{entry_id}")
    async def update_entry_endpoint(
        request: Request, entry_id: str, payload: UpdateEntryRequest
    ) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            entry = await services.collection.update_entry(
                _viewer(request), entry_id, payload.entry, payload.item
            )
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        await services.browse.notify_mutation(entry.item.type)
        return entry.model_dump(mode="json")

    @fastapi_app.delete("/api/collection/entries/{entry_id}")
    async def delete_entry_endpoint(request: Request, entry_id: str) -> dict[str, str]:
        services = get_services(fastapi_app)
        try:
            category = await services.collection.delete_entry(_viewer(request), entry_id)
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        await services.browse.notify_mutation(category)
        return {"status": "deleted"}

    @fastapi_app.post("/api/collection/entries/{entry_id}/refresh")
    async def refresh_metadata_endpoint(
        request: Request, entry_id: str, payload: RefreshRequest | None = None
    ) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            refresh = await services.collection.refresh_metadata(
                _viewer(request), entry_id, payload.query if payload else None
            )
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        return {
            "needs_choice": refresh.needs_choice,
            "draft": refresh.draft.model_dump(mode="json") if refresh.draft else None,
            "candidates": [
                candidate.model_dump(mode="json") for candidate in refresh.candidates
            ],
        }

    @fastapi_app.post("/api/collection/entries/{entry_id}/refresh/apply")
    async def apply_refresh_endpoint(
        request: Request, entry_id: str, payload: MetadataCandidate
    ) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            draft = await services.collection.apply_refreshed_metadata(
                _viewer(request), entry_id, payload
            )
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        return draft.model_dump(mode="json")

    # Recommendations

    @fastapi_app.post("/api/recommendations")
    async def send_recommendation_endpoint(
        request: Request, payload: SendRecommendationRequest
    ) -> dict[str, int]:
        services = get_services(fastapi_app)
        try:
            sent = await services.recommendations.send_recommendation(
                _viewer(request), payload.to_user_ids, payload.item_id, payload.comment
            )
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        return {"sent": sent}

    @fastapi_app.get("/api/recommendations/inbox")
    async def inbox_endpoint(request: Request) -> list[dict[str, Any]]:
        services = get_services(fastapi_app)
        try:
            views = await services.recommendations.inbox(_viewer(request))
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        return [view.model_dump(mode="json") for view in views]

    @fastapi_app.get("/api/recommendations/archive")
    async def archive_endpoint(request: Request) -> list[dict[str, Any]]:
        services = get_services(fastapi_app)
        try:
            views = await services.recommendations.archive(_viewer(request))
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        return [view.model_dump(mode="json") for view in views]

    @fastapi_app.get("/api/recommendations/sent")
    async def sent_endpoint(request: Request) -> list[dict[str, Any]]:
        services = get_services(fastapi_app)
        try:
            views = await services.recommendations.sent(_viewer(request))
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        return [view.model_dump(mode="json") for view in views]

    @fastapi_app.get("/api/recommendations/pending-count")
    async def pending_count_endpoint(request: Request) -> dict[str, int]:
        services = get_services(fastapi_app)
        try:
            count = await services.recommendations.pending_count(_viewer(request))
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        return {"pending": count}

    @fastapi_app.post("/api/recommendations/{recommendation_id}/status")
    async def recommendation_status_endpoint(
        request: Request,
        recommendation_id: str,
        payload: RecommendationStatusRequest,
    ) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            view = await services.recommendations.resolve_recommendation(
                _viewer(request), recommendation_id, payload.status
            )
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        if view.status == "accepted":
            await services.browse.notify_mutation(view.item.type)
        return view.model_dump(mode="json")

    # Contacts

    @fastapi_app.get("/api/contacts")
    async def contacts_endpoint(request: Request) -> list[dict[str, Any]]:
        services = get_services(fastapi_app)
        try:
            contacts = await services.contacts.list_contacts(_viewer(request))
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        return [contact.model_dump(mode="json") for contact in contacts]

    @fastapi_app.delete("/api/contacts/{user_id}")
    async def remove_contact_endpoint(request: Request, user_id: str) -> dict[str, bool]:
        services = get_services(fastapi_app)
        try:
            removed = await services.contacts.remove_contact(_viewer(request), user_id)
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        return {"removed": removed}

    @fastapi_app.get("/api/contacts/options/{item_id}")
    async def contact_options_endpoint(
        request: Request, item_id: str
    ) -> list[dict[str, Any]]:
        services = get_services(fastapi_app)
        try:
            options = await services.contacts.recommendation_options(
                _viewer(request), item_id
            )
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        return [option.model_dump(mode="json") for option in options]

    # Invites

    @fastapi_app.get("/api/invites")
    async def list_invites_endpoint(request: Request) -> list[dict[str, Any]]:
        services = get_services(fastapi_app)
        try:
            invites = await services.invites.list_invites(_viewer(request))
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        return [invite.model_dump(mode="json") for invite in invites]

    @fastapi_app.post("/api/invites")
    async def create_invite_endpoint(request: Request) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            invite = await services.invites.create_invite(_viewer(request))
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        return invite.model_dump(mode="json")

    @fastapi_app.post("/api/invites/accept")
    async def accept_invite_endpoint(
        request: Request, payload: AcceptInviteRequest
    ) -> dict[str, str]:
        services = get_services(fastapi_app)
        outcome = await services.invites.accept_invite(_viewer(request), payload.token)
        return {"outcome": outcome.value, "message": outcome.message}

    @fastapi_app.delete("/api/invites/{invite_id}")
    async def revoke_invite_endpoint(request: Request, invite_id: str) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            invite = await services.invites.revoke_invite(_viewer(request), invite_id)
        except CatalogyError as exc:
            raise _http_error(exc) from exc
        return invite.model_dump(mode="json")


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
