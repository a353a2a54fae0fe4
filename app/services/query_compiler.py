"""Translate filter specifications into paginated SQLAlchemy statements."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Sequence, TypeVar

from sqlalchemy import ColumnElement, Select, func, or_, select
from sqlalchemy.orm import contains_eager

from ..bounds import clamp_range
from ..config import Settings
from ..db_models import CatalogItemRecord, CollectionEntryRecord
from ..errors import EmptySelection
from ..models import (
    EXTERNAL_RATING_DOMAINS,
    PERSONAL_RATING_DOMAIN,
    FilterSpecification,
    Selection,
    SortDirection,
    SortKey,
    range_is_active,
)
from ..utils import LIKE_ESCAPE_CHAR, end_of_day, escape_like, start_of_day

EntryT = TypeVar("EntryT")


@dataclass(slots=True, frozen=True)
class PageWindow:
    page: int
    offset: int
    limit: int


@dataclass(slots=True)
class CompiledQuery:
    """Statements and paging metadata for one page of a browse session."""

    statement: Select[Any]
    count_statement: Select[Any] | None
    window: PageWindow
    client_sort: bool
    sort_key: SortKey
    sort_direction: SortDirection


class QueryCompiler:
    """Build entry and count statements that share identical predicates."""

    def __init__(
        self,
        *,
        page_size: int = 20,
        client_sort_keys: Iterable[str] = ("title", "year"),
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self.page_size = page_size
        self._client_sort_keys = frozenset(client_sort_keys)

    @classmethod
    def from_settings(cls, settings: Settings) -> "QueryCompiler":
        return cls(
            page_size=settings.page_size,
            client_sort_keys=settings.client_sort_keys,
        )

    def uses_client_sort(self, spec: FilterSpecification) -> bool:
        return spec.sort_key.value in self._client_sort_keys

    def compile(
        self,
        spec: FilterSpecification,
        *,
        owner_id: str,
        category: str,
        year_domain: tuple[int, int],
        page: int = 0,
    ) -> CompiledQuery:
        """Return the statements for ``page`` of ``spec``.

        The count statement is only built for the first page.
        """

        if page < 0:
            raise ValueError("page must not be negative")
        clauses = self.predicates(
            spec, owner_id=owner_id, category=category, year_domain=year_domain
        )
        client_sort = self.uses_client_sort(spec)
        window = PageWindow(
            page=page, offset=page * self.page_size, limit=self.page_size
        )

        statement = (
            select(CollectionEntryRecord)
            .join(CollectionEntryRecord.item)
            .options(contains_eager(CollectionEntryRecord.item))
            .where(*clauses)
            .order_by(*self.order_by(spec))
        )
        if not client_sort:
            statement = statement.offset(window.offset).limit(window.limit)

        count_statement = None
        if page == 0:
            count_statement = (
                select(func.count(CollectionEntryRecord.id))
                .select_from(CollectionEntryRecord)
                .join(CollectionEntryRecord.item)
                .where(*clauses)
            )

        return CompiledQuery(
            statement=statement,
            count_statement=count_statement,
            window=window,
            client_sort=client_sort,
            sort_key=spec.sort_key,
            sort_direction=spec.sort_direction,
        )

    def predicates(
        self,
        spec: FilterSpecification,
        *,
        owner_id: str,
        category: str,
        year_domain: tuple[int, int],
    ) -> list[ColumnElement[bool]]:
        if spec.is_empty_selection:
            raise EmptySelection()

        entry = CollectionEntryRecord
        item = CatalogItemRecord
        clauses: list[ColumnElement[bool]] = [
            entry.user_id == owner_id,
            item.type == category,
        ]

        if spec.query:
            pattern = f"%{escape_like(spec.query)}%"
            clauses.append(
                or_(
                    item.title.ilike(pattern, escape=LIKE_ESCAPE_CHAR),
                    item.description.ilike(pattern, escape=LIKE_ESCAPE_CHAR),
                )
            )

        viewed = spec.view_status.value_filter
        if viewed is not None:
            clauses.append(entry.is_viewed == viewed)

        if spec.availability:
            clauses.append(
                entry.availability.in_([option.value for option in spec.availability])
            )

        if spec.favorite is Selection.ONLY_TRUE:
            clauses.append(entry.recommend_similar.is_(True))

        if range_is_active(spec.year_range, year_domain):
            start, end = clamp_range(spec.year_range, year_domain)
            clauses.append(item.year.between(start, end))

        external_domain = EXTERNAL_RATING_DOMAINS[category]
        if range_is_active(spec.external_rating_range, external_domain):
            start, end = clamp_range(spec.external_rating_range, external_domain)
            clauses.append(item.external_rating.between(start, end))

        if range_is_active(spec.personal_rating_range, PERSONAL_RATING_DOMAIN):
            start, end = clamp_range(spec.personal_rating_range, PERSONAL_RATING_DOMAIN)
            clauses.append(entry.rating.between(start, end))

        if spec.viewed_from:
            clauses.append(entry.viewed_at >= start_of_day(spec.viewed_from))
        if spec.viewed_to:
            clauses.append(entry.viewed_at <= end_of_day(spec.viewed_to))

        if spec.genres:
            clauses.append(
                item.genres.ilike(
                    f"%{escape_like(spec.genres)}%", escape=LIKE_ESCAPE_CHAR
                )
            )

        return clauses

    @staticmethod
    def order_by(spec: FilterSpecification) -> list[ColumnElement[Any]]:
        ascending = spec.sort_direction is SortDirection.ASC
        entry = CollectionEntryRecord

        def _direction(column: Any) -> Any:
            return column.asc() if ascending else column.desc()

        if spec.sort_key is SortKey.TITLE:
            ordering = [_direction(CatalogItemRecord.title)]
        elif spec.sort_key is SortKey.RATING:
            ordering = [_direction(entry.rating).nulls_last()]
        elif spec.sort_key is SortKey.YEAR:
            ordering = [_direction(CatalogItemRecord.year).nulls_last()]
        else:
            ordering = [_direction(entry.created_at)]

        if spec.sort_key is not SortKey.CREATED:
            ordering.append(entry.created_at.desc())
        ordering.append(entry.id.desc())
        return ordering


def sort_entries(
    entries: Sequence[EntryT], sort_key: SortKey, direction: SortDirection
) -> list[EntryT]:
    """Order entries in memory with the same tie-breaks as ``order_by``."""

    ordered = sorted(entries, key=lambda entry: entry.id, reverse=True)
    ordered.sort(key=lambda entry: entry.created_at, reverse=True)
    descending = direction is SortDirection.DESC
    if sort_key is SortKey.CREATED:
        ordered.sort(key=lambda entry: entry.created_at, reverse=descending)
        return ordered

    value_of: Callable[[Any], Any]
    if sort_key is SortKey.TITLE:
        value_of = lambda entry: (entry.item.title or "").casefold()  # noqa: E731
    elif sort_key is SortKey.RATING:
        value_of = lambda entry: entry.rating  # noqa: E731
    else:
        value_of = lambda entry: entry.item.year  # noqa: E731

    present = [entry for entry in ordered if value_of(entry) is not None]
    missing = [entry for entry in ordered if value_of(entry) is None]
    present.sort(key=value_of, reverse=descending)
    return present + missing
