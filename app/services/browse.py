"""Incremental, race-free loading of a filtered collection."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Mapping, Protocol

from sqlalchemy.exc import SQLAlchemyError

from ..bounds import YearBounds, default_year_domain
from ..config import Settings
from ..errors import AuthenticationRequired, EmptySelection, NotFound
from ..models import CATEGORIES, CollectionEntry, FilterSpecification
from ..utils import utcnow
from .access import AccessDecision, AccessState, FriendAccessGate
from .enrichment import MetadataEnrichmentCache
from .metadata import MetadataProvider
from .query_compiler import CompiledQuery, QueryCompiler, sort_entries

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (SQLAlchemyError, OSError)

NOTHING_MATCHES_MESSAGE = "Nothing matches your filters."
EMPTY_COLLECTION_MESSAGE = "Your collection is empty."
FIRST_PAGE_ERROR = "Could not load the collection. Try again."
NEXT_PAGE_ERROR = "Could not load more entries. Try again."


class EntrySource(Protocol):
    async def fetch_page(self, compiled: CompiledQuery) -> list[CollectionEntry]:
        ...

    async def fetch_all(self, compiled: CompiledQuery) -> list[CollectionEntry]:
        ...

    async def count(self, compiled: CompiledQuery) -> int:
        ...

    async def year_domain(self, category: str) -> tuple[int, int] | None:
        ...

    async def recommended_item_ids(self, sender_id: str, item_ids: Any) -> set[str]:
        ...

    async def backfill_year(self, item_id: str, year: int) -> bool:
        ...


class BrowsePhase(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    LOADING_MORE = "loading_more"


@dataclass(slots=True)
class PageState:
    phase: BrowsePhase = BrowsePhase.IDLE
    page: int = 0
    entries: list[CollectionEntry] = field(default_factory=list)
    has_more: bool = False
    total_count: int | None = None
    fingerprint: str | None = None
    message: str | None = None
    error: str | None = None
    recommended_item_ids: set[str] = field(default_factory=set)


class BrowseSession:
    """Pagination driver for one open collection view.

    Results are merged only while the fingerprint and generation they were
    requested under are still current, so superseded requests finish
    harmlessly. Re-applying identical filters starts a new generation.
    """

    def __init__(
        self,
        *,
        viewer_id: str | None,
        category: str,
        store: EntrySource,
        compiler: QueryCompiler,
        owner_id: str | None = None,
        gate: FriendAccessGate | None = None,
        enrichment: MetadataEnrichmentCache | None = None,
        year_domain: tuple[int, int] | None = None,
        session_id: str | None = None,
    ) -> None:
        if category not in CATEGORIES:
            raise ValueError(f"Unsupported category: {category}")
        self.id = session_id or uuid.uuid4().hex
        self.viewer_id = viewer_id
        self.owner_id = owner_id or viewer_id
        self.category = category
        self._store = store
        self._compiler = compiler
        self._gate = gate
        self._enrichment = enrichment
        initial = FilterSpecification()
        self._bounds = YearBounds(
            domain=year_domain or default_year_domain(),
            pending=initial,
            applied=initial,
        )
        self.state = PageState()
        self.access: AccessDecision | None = None
        self._active_fingerprint: str | None = None
        self._generation = 0
        self._in_flight: set[tuple[str, int, int]] = set()
        self.last_used = utcnow()
        self._entry_ids: set[str] = set()

    @property
    def pending_filters(self) -> FilterSpecification:
        return self._bounds.pending

    @property
    def applied_filters(self) -> FilterSpecification:
        return self._bounds.applied

    @property
    def year_domain(self) -> tuple[int, int]:
        return self._bounds.domain

    @property
    def is_own_collection(self) -> bool:
        return self.owner_id == self.viewer_id

    @property
    def enrichment(self) -> MetadataEnrichmentCache | None:
        return self._enrichment

    def set_pending_filters(self, spec: FilterSpecification) -> None:
        self._bounds.pending = spec

    def touch(self) -> None:
        self.last_used = utcnow()

    async def open(self) -> AccessDecision:
        """Evaluate the access gate and load the current year domain."""

        self.access = await self._check_access()
        if self.access.allowed:
            await self.refresh_bounds()
        return self.access

    async def apply_filters(
        self, spec: FilterSpecification | None = None
    ) -> PageState:
        """Make ``spec`` (or the pending filters) active and load page 0."""

        if spec is not None:
            self._bounds.pending = spec
        self._bounds.applied = self._bounds.pending
        await self._restart()
        return self.state

    async def load_next_page(self) -> PageState:
        if self.state.phase is not BrowsePhase.READY or not self.state.has_more:
            return self.state
        await self.fetch_page(self.state.page + 1)
        return self.state

    async def refresh_bounds(self) -> bool:
        """Recompute the year domain and reload when it moved."""

        try:
            domain = await self._store.year_domain(self.category)
        except TRANSIENT_ERRORS as exc:
            logger.warning("Loading year bounds for %s failed: %s", self.category, exc)
            return False
        return await self.reconcile_domain(domain)

    async def reconcile_domain(self, domain: tuple[int, int] | None) -> bool:
        """Move the filters onto ``domain`` and restart page 0 when it moved."""

        changed = self._bounds.reconcile(domain)
        if changed and self._active_fingerprint is not None:
            await self._restart()
        return changed

    async def fetch_page(self, page: int) -> bool:
        """Fetch ``page`` under the active fingerprint; return whether it merged."""

        fingerprint = self._active_fingerprint
        if fingerprint is None:
            return False
        generation = self._generation

        if not self.viewer_id:
            self._clear(
                BrowsePhase.IDLE, message=AuthenticationRequired.default_message
            )
            return False

        access = self.access or await self._check_access()
        if not self._is_current(fingerprint, generation):
            return False
        self.access = access
        if not access.allowed:
            self._clear(BrowsePhase.IDLE, message=access.message)
            return False

        spec = self.applied_filters
        if spec.is_empty_selection:
            self._clear(BrowsePhase.READY, message=EmptySelection.default_message)
            return False

        key = (fingerprint, generation, page)
        if key in self._in_flight:
            return False
        if page > 0 and self._compiler.uses_client_sort(spec):
            return False

        self._in_flight.add(key)
        self.state.phase = BrowsePhase.LOADING if page == 0 else BrowsePhase.LOADING_MORE
        self.state.error = None
        if page == 0:
            self.state.message = None

        try:
            compiled = self._compiler.compile(
                spec,
                owner_id=self.owner_id or "",
                category=self.category,
                year_domain=self.year_domain,
                page=page,
            )
            entries, total = await self._load(compiled)
        except TRANSIENT_ERRORS as exc:
            if not self._is_current(fingerprint, generation):
                return False
            logger.warning(
                "Loading page %s of %s collection %s failed: %s",
                page,
                self.category,
                self.owner_id,
                exc,
            )
            if page == 0:
                self._clear(BrowsePhase.READY, error=FIRST_PAGE_ERROR)
            else:
                self.state.phase = BrowsePhase.READY
                self.state.error = NEXT_PAGE_ERROR
            return False
        finally:
            self._in_flight.discard(key)

        if not self._is_current(fingerprint, generation):
            return False

        self._merge(page, entries, compiled, total)
        if page == 0 and not entries:
            narrowed = spec.has_narrowing_filters(self.category, self.year_domain)
            self.state.message = (
                NOTHING_MATCHES_MESSAGE if narrowed else EMPTY_COLLECTION_MESSAGE
            )

        merged_ids = [entry.item_id for entry in entries]
        await self._mark_recommended(fingerprint, generation, merged_ids)
        if self._enrichment is not None and self._is_current(fingerprint, generation):
            self._enrichment.schedule(entries)
        return True

    async def close(self) -> None:
        self._active_fingerprint = None
        self._in_flight.clear()
        self._entry_ids.clear()
        self.state = PageState()
        if self._enrichment is not None:
            await self._enrichment.close()

    def to_payload(self) -> dict[str, Any]:
        state = self.state
        enrichment: dict[str, Any] = {}
        if self._enrichment is not None:
            enrichment = {
                item_id: detail.model_dump(mode="json")
                for item_id, detail in self._enrichment.snapshot(
                    entry.item_id for entry in state.entries
                ).items()
            }
        return {
            "id": self.id,
            "category": self.category,
            "owner_id": self.owner_id,
            "read_only": not self.is_own_collection,
            "access": {
                "state": (self.access.state if self.access else AccessState.CHECKING).value,
                "message": self.access.message if self.access else None,
                "owner_name": self.access.owner_name if self.access else None,
            },
            "year_domain": list(self.year_domain),
            "pending_filters": self.pending_filters.model_dump(mode="json"),
            "applied_filters": self.applied_filters.model_dump(mode="json"),
            "phase": state.phase.value,
            "page": state.page,
            "has_more": state.has_more,
            "total_count": state.total_count,
            "message": state.message,
            "error": state.error,
            "entries": [entry.model_dump(mode="json") for entry in state.entries],
            "recommended_item_ids": sorted(state.recommended_item_ids),
            "enrichment": enrichment,
        }

    async def _restart(self) -> None:
        fingerprint = self.applied_filters.fingerprint(
            self.owner_id, self.category, self.year_domain
        )
        self._active_fingerprint = fingerprint
        self._generation += 1
        if not self.is_own_collection:
            self.access = None
        self._entry_ids = set()
        self.state = PageState(fingerprint=fingerprint)
        await self.fetch_page(0)

    async def _check_access(self) -> AccessDecision:
        if self._gate is None:
            if not self.viewer_id:
                return AccessDecision(state=AccessState.UNAUTHENTICATED)
            if not self.is_own_collection:
                return AccessDecision(
                    state=AccessState.NOT_FRIENDS, owner_id=self.owner_id
                )
            return AccessDecision(state=AccessState.ALLOWED, owner_id=self.owner_id)
        return await self._gate.check(self.viewer_id, self.owner_id)

    async def _load(
        self, compiled: CompiledQuery
    ) -> tuple[list[CollectionEntry], int | None]:
        if compiled.client_sort:
            rows = await self._store.fetch_all(compiled)
            entries = sort_entries(rows, compiled.sort_key, compiled.sort_direction)
        else:
            entries = await self._store.fetch_page(compiled)

        total: int | None = None
        if compiled.count_statement is not None:
            try:
                total = await self._store.count(compiled)
            except TRANSIENT_ERRORS as exc:
                logger.warning("Counting %s collection entries failed: %s", self.category, exc)
                total = 0
        return entries, total

    def _merge(
        self,
        page: int,
        entries: list[CollectionEntry],
        compiled: CompiledQuery,
        total: int | None,
    ) -> None:
        state = self.state
        if page == 0:
            state.entries = []
            state.recommended_item_ids = set()
            self._entry_ids = set()
        for entry in entries:
            if entry.id in self._entry_ids:
                continue
            self._entry_ids.add(entry.id)
            state.entries.append(entry)
        state.page = page if page == 0 else max(state.page, page)
        state.has_more = not compiled.client_sort and len(entries) == compiled.window.limit
        if total is not None:
            state.total_count = total
        elif compiled.client_sort:
            state.total_count = len(state.entries)
        state.phase = BrowsePhase.READY

    async def _mark_recommended(
        self, fingerprint: str, generation: int, item_ids: list[str]
    ) -> None:
        if not self.viewer_id or not item_ids:
            return
        try:
            recommended = await self._store.recommended_item_ids(self.viewer_id, item_ids)
        except TRANSIENT_ERRORS as exc:
            logger.warning("Loading sent recommendations failed: %s", exc)
            return
        if self._is_current(fingerprint, generation):
            self.state.recommended_item_ids.update(recommended)

    def _is_current(self, fingerprint: str, generation: int) -> bool:
        return fingerprint == self._active_fingerprint and generation == self._generation

    def _clear(
        self,
        phase: BrowsePhase,
        *,
        message: str | None = None,
        error: str | None = None,
    ) -> None:
        self._entry_ids = set()
        self.state.entries = []
        self.state.recommended_item_ids = set()
        self.state.page = 0
        self.state.has_more = False
        self.state.total_count = 0
        self.state.phase = phase
        self.state.message = message
        self.state.error = error


class BrowseService:
    """Create and track browse sessions for the running application.

    Sessions idle for longer than ``BROWSE_SESSION_IDLE_MINUTES`` and the
    oldest sessions beyond ``BROWSE_SESSIONS_PER_VIEWER`` are closed whenever
    a new session is opened.
    """

    def __init__(
        self,
        settings: Settings,
        store: EntrySource,
        compiler: QueryCompiler,
        gate: FriendAccessGate | None,
        providers: Mapping[str, MetadataProvider] | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._compiler = compiler
        self._gate = gate
        self._providers = dict(providers or {})
        self._sessions: dict[str, BrowseSession] = {}
        self._idle_timeout = timedelta(minutes=settings.browse_session_idle_minutes)
        self._max_per_viewer = settings.browse_sessions_per_viewer

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    async def open_session(
        self,
        viewer_id: str | None,
        category: str,
        *,
        owner_id: str | None = None,
    ) -> BrowseSession:
        if not viewer_id:
            raise AuthenticationRequired()
        await self._evict(viewer_id)
        session = BrowseSession(
            viewer_id=viewer_id,
            owner_id=owner_id,
            category=category,
            store=self._store,
            compiler=self._compiler,
            gate=self._gate,
            enrichment=MetadataEnrichmentCache(
                self._providers, self._store, on_year_written=self.notify_mutation
            ),
            year_domain=default_year_domain(self._settings.min_year),
        )
        self._sessions[session.id] = session
        await session.open()
        return session

    def get_session(self, session_id: str, viewer_id: str | None) -> BrowseSession:
        session = self._sessions.get(session_id)
        if session is None or session.viewer_id != viewer_id:
            raise NotFound("Browse session not found.")
        session.touch()
        return session

    async def close_session(self, session_id: str, viewer_id: str | None) -> None:
        session = self.get_session(session_id, viewer_id)
        self._sessions.pop(session_id, None)
        await session.close()

    async def notify_mutation(self, category: str | None = None) -> int:
        """Reconcile open sessions with the year domain after catalog changes.

        ``None`` refreshes every category that has an open session. Returns
        how many sessions reloaded page 0.
        """

        if category is None:
            categories = sorted({session.category for session in self._sessions.values()})
        else:
            categories = [category]

        reloaded = 0
        for name in categories:
            sessions = [
                session for session in self._sessions.values() if session.category == name
            ]
            if not sessions:
                continue
            try:
                domain = await self._store.year_domain(name)
            except TRANSIENT_ERRORS as exc:
                logger.warning("Loading year bounds for %s failed: %s", name, exc)
                continue
            for session in sessions:
                if await session.reconcile_domain(domain):
                    reloaded += 1
        return reloaded

    async def close(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.close()

    async def _evict(self, viewer_id: str) -> None:
        now = utcnow()
        expired = [
            session
            for session in self._sessions.values()
            if now - session.last_used > self._idle_timeout
        ]
        remaining = sorted(
            (
                session
                for session in self._sessions.values()
                if session.viewer_id == viewer_id and session not in expired
            ),
            key=lambda session: session.last_used,
        )
        overflow = len(remaining) - self._max_per_viewer + 1
        if overflow > 0:
            expired.extend(remaining[:overflow])

        for session in expired:
            self._sessions.pop(session.id, None)
            await session.close()
        if expired:
            logger.info("Closed %s idle browse session(s)", len(expired))
