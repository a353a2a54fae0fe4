"""Lazy, memoized metadata enrichment for visible collection entries."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Awaitable, Callable, Iterable, Mapping, Protocol

from ..models import CollectionEntry, MetadataDetail
from .metadata import MetadataProvider

logger = logging.getLogger(__name__)


class YearWriter(Protocol):
    async def backfill_year(self, item_id: str, year: int) -> bool:
        ...


class MetadataEnrichmentCache:
    """Per browse session cache of provider details keyed by item id.

    Each entry gets at most one outstanding lookup. Failed lookups are
    remembered and never retried automatically.
    """

    def __init__(
        self,
        providers: Mapping[str, MetadataProvider],
        year_writer: YearWriter | None = None,
        *,
        on_year_written: Callable[[str], Awaitable[object]] | None = None,
    ) -> None:
        self._providers = dict(providers)
        self._year_writer = year_writer
        self._on_year_written = on_year_written
        self._memo: dict[str, MetadataDetail] = {}
        self._failed: set[str] = set()
        self._in_flight: dict[str, asyncio.Task[MetadataDetail | None]] = {}
        self._write_backs: dict[str, asyncio.Task[None]] = {}

    def get(self, item_id: str) -> MetadataDetail | None:
        return self._memo.get(item_id)

    def snapshot(self, item_ids: Iterable[str]) -> dict[str, MetadataDetail]:
        return {
            item_id: self._memo[item_id] for item_id in item_ids if item_id in self._memo
        }

    def is_pending(self, entry_id: str) -> bool:
        task = self._in_flight.get(entry_id)
        return bool(task and not task.done())

    def schedule(self, entries: Iterable[CollectionEntry]) -> int:
        """Start background lookups for entries that still lack details."""

        started = 0
        for entry in entries:
            if not self._needs_lookup(entry) or self.is_pending(entry.id):
                continue
            task = asyncio.create_task(self.enrich(entry))
            self._in_flight[entry.id] = task
            task.add_done_callback(
                lambda _task, entry_id=entry.id: self._in_flight.pop(entry_id, None)
            )
            started += 1
        return started

    async def enrich(self, entry: CollectionEntry) -> MetadataDetail | None:
        item = entry.item
        cached = self._memo.get(item.id)
        if cached is not None:
            return cached
        if not self._needs_lookup(entry):
            return None

        provider = self._providers[item.type]
        try:
            detail = await provider.detail(item.external_id or "")
        except Exception as exc:  # pragma: no cover - provider safety net
            logger.exception("Metadata lookup for item %s failed: %s", item.id, exc)
            detail = None

        if detail is None:
            self._failed.add(item.id)
            return None

        self._memo[item.id] = detail
        if item.year is None and detail.year is not None:
            self._schedule_year_write_back(item.id, item.type, detail.year)
        return detail

    async def drain(self) -> None:
        """Wait for every outstanding lookup and write-back."""

        while self._in_flight or self._write_backs:
            pending = [*self._in_flight.values(), *self._write_backs.values()]
            await asyncio.gather(*pending, return_exceptions=True)
            self._in_flight = {
                key: task for key, task in self._in_flight.items() if not task.done()
            }
            self._write_backs = {
                key: task for key, task in self._write_backs.items() if not task.done()
            }

    async def close(self) -> None:
        tasks = [*self._in_flight.values(), *self._write_backs.values()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._in_flight.clear()
        self._write_backs.clear()
        self._memo.clear()
        self._failed.clear()

    def _needs_lookup(self, entry: CollectionEntry) -> bool:
        item = entry.item
        return (
            bool(item.external_id)
            and item.type in self._providers
            and item.id not in self._memo
            and item.id not in self._failed
        )

    def _schedule_year_write_back(self, item_id: str, category: str, year: int) -> None:
        if self._year_writer is None or item_id in self._write_backs:
            return
        writer = self._year_writer
        on_written = self._on_year_written

        async def _runner() -> None:
            try:
                written = await writer.backfill_year(item_id, year)
                if written and on_written is not None:
                    await on_written(category)
            except Exception as exc:
                logger.exception(
                    "Year write-back for item %s failed: %s", item_id, exc
                )

        task = asyncio.create_task(_runner())
        self._write_backs[item_id] = task
        task.add_done_callback(lambda _task: self._write_backs.pop(item_id, None))
