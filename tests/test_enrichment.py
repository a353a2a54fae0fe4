"""Metadata enrichment cache tests."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from app.models import CatalogItem, CollectionEntry, MetadataCandidate, MetadataDetail
from app.services.enrichment import MetadataEnrichmentCache


def make_entry(
    index: int, *, external_id: str | None = "ext", year: int | None = None, category: str = "film"
) -> CollectionEntry:
    return CollectionEntry(
        id=f"entry-{index}",
        user_id="viewer",
        item_id=f"item-{index}",
        created_at=datetime(2024, 1, 1),
        item=CatalogItem(
            id=f"item-{index}",
            type=category,
            title=f"Title {index}",
            external_id=f"{external_id}-{index}" if external_id else None,
            year=year,
        ),
    )


class ScriptedProvider:
    category = "film"

    def __init__(self, details: dict[str, MetadataDetail | None]) -> None:
        self.details = details
        self.calls: list[str] = []
        self.release = asyncio.Event()
        self.release.set()

    async def search(self, query: str) -> list[MetadataCandidate]:
        return []

    async def detail(self, external_id: str) -> MetadataDetail | None:
        self.calls.append(external_id)
        await self.release.wait()
        return self.details.get(external_id)


class RecordingWriter:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.writes: list[tuple[str, int]] = []

    async def backfill_year(self, item_id: str, year: int) -> bool:
        self.writes.append((item_id, year))
        if self.fail:
            raise RuntimeError("database is locked")
        return True


def test_details_are_memoized_per_item() -> None:
    async def runner() -> None:
        provider = ScriptedProvider(
            {"ext-1": MetadataDetail(external_id="ext-1", description="Plot", year=1999)}
        )
        cache = MetadataEnrichmentCache({"film": provider})
        entry = make_entry(1, year=1999)

        first = await cache.enrich(entry)
        second = await cache.enrich(entry)

        assert first is second
        assert cache.get("item-1") is first
        assert provider.calls == ["ext-1"]
        assert cache.schedule([entry]) == 0

    asyncio.run(runner())


def test_failed_lookups_are_not_retried() -> None:
    async def runner() -> None:
        provider = ScriptedProvider({})
        cache = MetadataEnrichmentCache({"film": provider})
        entry = make_entry(2)

        assert await cache.enrich(entry) is None
        assert cache.schedule([entry]) == 0
        assert await cache.enrich(entry) is None
        assert provider.calls == ["ext-2"]

    asyncio.run(runner())


def test_only_one_lookup_in_flight_per_entry() -> None:
    async def runner() -> None:
        provider = ScriptedProvider(
            {"ext-3": MetadataDetail(external_id="ext-3", description="Plot")}
        )
        provider.release.clear()
        cache = MetadataEnrichmentCache({"film": provider})
        entry = make_entry(3)

        assert cache.schedule([entry]) == 1
        assert cache.schedule([entry]) == 0
        assert cache.is_pending(entry.id)

        provider.release.set()
        await cache.drain()

        assert not cache.is_pending(entry.id)
        assert provider.calls == ["ext-3"]
        assert cache.snapshot(["item-3", "item-9"]) == {"item-3": cache.get("item-3")}

    asyncio.run(runner())


def test_entries_without_provider_or_identifier_are_skipped() -> None:
    async def runner() -> None:
        provider = ScriptedProvider({})
        cache = MetadataEnrichmentCache({"film": provider})

        started = cache.schedule(
            [make_entry(4, external_id=None), make_entry(5, category="game")]
        )

        assert started == 0
        assert provider.calls == []

    asyncio.run(runner())


def test_missing_year_is_written_back() -> None:
    async def runner() -> None:
        provider = ScriptedProvider(
            {"ext-6": MetadataDetail(external_id="ext-6", year=1984)}
        )
        writer = RecordingWriter()
        cache = MetadataEnrichmentCache({"film": provider}, writer)

        cache.schedule([make_entry(6), make_entry(7, year=2001)])
        await cache.drain()

        assert writer.writes == [("item-6", 1984)]

    asyncio.run(runner())


def test_failed_write_back_is_logged(caplog) -> None:
    async def runner() -> None:
        provider = ScriptedProvider(
            {"ext-8": MetadataDetail(external_id="ext-8", year=1990)}
        )
        writer = RecordingWriter(fail=True)
        cache = MetadataEnrichmentCache({"film": provider}, writer)

        detail = await cache.enrich(make_entry(8))
        await cache.drain()

        assert detail is not None
        assert cache.get("item-8") is detail
        assert writer.writes == [("item-8", 1990)]

    with caplog.at_level(logging.ERROR, logger="app.services.enrichment"):
        asyncio.run(runner())

    assert "Year write-back for item item-8 failed" in caplog.text


def test_close_cancels_outstanding_lookups() -> None:
    async def runner() -> None:
        provider = ScriptedProvider({})
        provider.release.clear()
        cache = MetadataEnrichmentCache({"film": provider})
        entry = make_entry(9)

        cache.schedule([entry])
        await asyncio.sleep(0)
        await cache.close()

        assert not cache.is_pending(entry.id)
        assert cache.get("item-9") is None

    asyncio.run(runner())


def test_year_write_back_notifies_and_forgets_finished_tasks() -> None:
    async def runner() -> None:
        provider = ScriptedProvider(
            {"ext-10": MetadataDetail(external_id="ext-10", year=2024)}
        )
        writer = RecordingWriter()
        notified: list[str] = []

        async def on_year_written(category: str) -> None:
            notified.append(category)

        cache = MetadataEnrichmentCache(
            {"film": provider}, writer, on_year_written=on_year_written
        )

        await cache.enrich(make_entry(10))
        (write_back,) = cache._write_backs.values()
        await write_back
        await asyncio.sleep(0)

        assert writer.writes == [("item-10", 2024)]
        assert notified == ["film"]
        assert cache._write_backs == {}

    asyncio.run(runner())
