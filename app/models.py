"""Pydantic models describing collection filters and payloads."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from .utils import stable_digest

Category = Literal["film", "game"]
CATEGORIES: tuple[str, ...] = ("film", "game")

GAME_PLATFORMS: tuple[str, ...] = ("PS", "Steam", "PC", "Android", "iOS", "Xbox")

EXTERNAL_RATING_DOMAINS: dict[str, tuple[float, float]] = {
    "film": (0.0, 10.0),
    "game": (0.0, 5.0),
}
PERSONAL_RATING_DOMAIN: tuple[float, float] = (1.0, 5.0)


class Availability(str, Enum):
    """Where the owner can access an item."""

    OWNED = "owned"
    TEMPORARY = "temporary"
    FRIENDS = "friends"
    MISSING = "missing"


class Selection(str, Enum):
    """Tri-state selection for a boolean filter axis, plus the empty selection."""

    ALL = "all"
    ONLY_TRUE = "only_true"
    ONLY_FALSE = "only_false"
    NOTHING = "nothing"

    @classmethod
    def from_flags(
        cls, all_selected: bool, true_selected: bool, false_selected: bool
    ) -> "Selection":
        """Collapse an "all" override plus two component toggles."""

        if all_selected or (true_selected and false_selected):
            return cls.ALL
        if true_selected:
            return cls.ONLY_TRUE
        if false_selected:
            return cls.ONLY_FALSE
        return cls.NOTHING

    @property
    def value_filter(self) -> bool | None:
        if self is Selection.ONLY_TRUE:
            return True
        if self is Selection.ONLY_FALSE:
            return False
        return None


class SortKey(str, Enum):
    CREATED = "created"
    TITLE = "title"
    RATING = "rating"
    YEAR = "year"

    @property
    def default_direction(self) -> "SortDirection":
        return SortDirection.ASC if self is SortKey.TITLE else SortDirection.DESC


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


def _ordered_range(value: Any) -> Any:
    if value is None:
        return None
    low, high = value
    if low > high:
        low, high = high, low
    return (low, high)


class FilterSpecification(BaseModel):
    """Immutable description of every active browse constraint.

    Ranges set to ``None`` track the full domain; a concrete range only
    narrows results when it differs from the domain it is compared with.
    """

    model_config = ConfigDict(frozen=True)

    query: str = ""
    view_status: Selection = Selection.ALL
    favorite: Selection = Selection.ALL
    availability: tuple[Availability, ...] | None = None
    year_range: tuple[int, int] | None = None
    external_rating_range: tuple[float, float] | None = None
    personal_rating_range: tuple[float, float] | None = None
    viewed_from: date | None = None
    viewed_to: date | None = None
    genres: str = ""
    sort_key: SortKey = SortKey.CREATED
    sort_direction: SortDirection = SortDirection.DESC

    @model_validator(mode="before")
    @classmethod
    def _default_direction(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("sort_direction") is None:
            data = dict(data)
            data["sort_direction"] = SortKey(
                data.get("sort_key") or SortKey.CREATED
            ).default_direction
        return data

    @field_validator("query", "genres", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()

    @field_validator("availability", mode="before")
    @classmethod
    def _normalise_availability(cls, value: Any) -> Any:
        if value is None:
            return None
        selected = {Availability(item) for item in value}
        if not selected:
            return None
        return tuple(sorted(selected, key=lambda item: item.value))

    @field_validator(
        "year_range", "external_rating_range", "personal_rating_range", mode="before"
    )
    @classmethod
    def _normalise_range(cls, value: Any) -> Any:
        return _ordered_range(value)

    @field_validator("favorite")
    @classmethod
    def _favorite_is_narrowing_only(cls, value: Selection) -> Selection:
        if value not in (Selection.ALL, Selection.ONLY_TRUE):
            raise ValueError("favorite filter can only select all or favorites")
        return value

    @model_validator(mode="after")
    def _check_viewed_dates(self) -> "FilterSpecification":
        if self.viewed_from and self.viewed_to and self.viewed_from > self.viewed_to:
            raise ValueError("viewed_from must not be later than viewed_to")
        return self

    @classmethod
    def from_toggles(
        cls,
        *,
        view_all: bool = True,
        viewed: bool = True,
        planned: bool = True,
        availability_all: bool = True,
        availability: tuple[str, ...] | list[str] = (),
        favorite_all: bool = True,
        recommend_similar_only: bool = False,
        **fields: Any,
    ) -> "FilterSpecification":
        """Build a specification from the raw toggles of a filter form.

        Every "all" override dominates its component toggles.
        """

        view_status = Selection.from_flags(view_all, viewed, planned)
        selected_availability = None if availability_all else tuple(availability)
        favorite = (
            Selection.ONLY_TRUE
            if not favorite_all and recommend_similar_only
            else Selection.ALL
        )
        return cls(
            view_status=view_status,
            availability=selected_availability,
            favorite=favorite,
            **fields,
        )

    @property
    def is_empty_selection(self) -> bool:
        return self.view_status is Selection.NOTHING

    def has_narrowing_filters(
        self, category: str, year_domain: tuple[int, int]
    ) -> bool:
        """Return whether any predicate beyond owner and category applies."""

        return bool(
            self.query
            or self.genres
            or self.view_status is not Selection.ALL
            or self.favorite is not Selection.ALL
            or self.availability
            or self.viewed_from
            or self.viewed_to
            or range_is_active(self.year_range, year_domain)
            or range_is_active(
                self.external_rating_range, EXTERNAL_RATING_DOMAINS[category]
            )
            or range_is_active(self.personal_rating_range, PERSONAL_RATING_DOMAIN)
        )

    def with_year_range(self, year_range: tuple[int, int] | None) -> "FilterSpecification":
        return self.model_copy(update={"year_range": _ordered_range(year_range)})

    def fingerprint(self, *context: Any) -> str:
        """Return a stable digest of the specification and its query context."""

        return stable_digest([self.model_dump(mode="json"), list(context)])


def range_is_active(
    value: tuple[float, float] | None, domain: tuple[float, float]
) -> bool:
    """A range only filters when it differs from the full domain."""

    if value is None:
        return False
    low, high = domain
    start = min(max(value[0], low), high)
    end = max(min(value[1], high), low)
    if start > end:
        return False
    return (start, end) != (low, high)


class CatalogItem(BaseModel):
    """Read model of a deduplicated film or game."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    type: Category
    title: str
    description: str | None = None
    poster_url: str | None = None
    external_id: str | None = None
    external_rating: float | None = None
    year: int | None = None
    genres: str | None = None


class CollectionEntry(BaseModel):
    """Read model of one owner's collection entry joined with its item."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    item_id: str
    rating: float | None = None
    comment: str | None = None
    viewed_at: datetime | None = None
    is_viewed: bool = True
    view_percent: int = 100
    recommend_similar: bool = False
    availability: str | None = None
    platforms: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime | None = None
    item: CatalogItem

    @field_validator("platforms", mode="before")
    @classmethod
    def _platforms_default(cls, value: Any) -> Any:
        return value or []


class EntryPayload(BaseModel):
    """User supplied fields of a collection entry."""

    rating: float | None = None
    comment: str | None = None
    viewed_at: datetime | None = None
    is_viewed: bool = True
    view_percent: int = Field(default=100, ge=0, le=100)
    recommend_similar: bool = False
    availability: Availability | None = None
    platforms: list[str] = Field(default_factory=list)

    @field_validator("rating")
    @classmethod
    def _validate_rating(cls, value: float | None) -> float | None:
        if value is None:
            return None
        low, high = PERSONAL_RATING_DOMAIN
        if not low <= value <= high or (value * 2) % 1:
            raise ValueError("rating must be between 1 and 5 in half steps")
        return float(value)

    @field_validator("comment", mode="before")
    @classmethod
    def _blank_comment(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("platforms")
    @classmethod
    def _validate_platforms(cls, value: list[str]) -> list[str]:
        unknown = [platform for platform in value if platform not in GAME_PLATFORMS]
        if unknown:
            raise ValueError(f"Unknown platforms: {', '.join(unknown)}")
        return [platform for platform in GAME_PLATFORMS if platform in value]

    @classmethod
    def planned(cls) -> "EntryPayload":
        """Fields used when an item is added without being watched or played."""

        return cls(is_viewed=False, view_percent=0)

    def to_columns(self, category: str) -> dict[str, Any]:
        columns = self.model_dump()
        if columns["availability"] is not None:
            columns["availability"] = Availability(columns["availability"]).value
        if category != "game":
            columns["platforms"] = None
        else:
            columns["platforms"] = columns["platforms"] or None
        return columns


class ItemDraft(BaseModel):
    """Catalog item fields supplied on add or metadata refresh."""

    title: str = Field(min_length=1)
    description: str | None = None
    poster_url: str | None = None
    external_id: str | None = None
    external_rating: float | None = Field(
        default=None, validation_alias=AliasChoices("external_rating", "rating")
    )
    year: int | None = None
    genres: str | None = None

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("external_id", mode="before")
    @classmethod
    def _coerce_external_id(cls, value: Any) -> Any:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def optional_updates(self) -> dict[str, Any]:
        """Fields that refine an existing item without replacing it."""

        updates: dict[str, Any] = {}
        if self.external_rating is not None:
            updates["external_rating"] = self.external_rating
        if self.year is not None:
            updates["year"] = self.year
        if self.genres:
            updates["genres"] = self.genres
        return updates


class MetadataCandidate(BaseModel):
    """One search hit returned by a metadata provider."""

    external_id: str
    title: str
    year: int | None = None
    poster_url: str | None = None
    external_rating: float | None = None
    genres: str | None = None
    description: str | None = None

    def to_draft(self) -> ItemDraft:
        return ItemDraft(**self.model_dump())


class MetadataDetail(BaseModel):
    """Descriptive fields for a single external title."""

    external_id: str
    title: str | None = None
    description: str | None = None
    external_rating: float | None = None
    year: int | None = None
    poster_url: str | None = None
    genres: str | None = None


class MetadataRefresh(BaseModel):
    """Outcome of a manual metadata refresh."""

    draft: ItemDraft | None = None
    candidates: list[MetadataCandidate] = Field(default_factory=list)

    @property
    def needs_choice(self) -> bool:
        return self.draft is None and len(self.candidates) > 1


class ProfileView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str | None = None
    display_name: str
    avatar_url: str | None = None
    views_visible_to_friends: bool = False
    show_film_availability: bool = True
    show_game_availability: bool = True
    visible_game_platforms: list[str] = Field(
        default_factory=lambda: list(GAME_PLATFORMS)
    )


class DisplayPreferences(BaseModel):
    show_film_availability: bool = True
    show_game_availability: bool = True
    visible_game_platforms: list[str] = Field(
        default_factory=lambda: list(GAME_PLATFORMS)
    )

    @field_validator("visible_game_platforms")
    @classmethod
    def _known_platforms(cls, value: list[str]) -> list[str]:
        visible = [platform for platform in GAME_PLATFORMS if platform in value]
        return visible or list(GAME_PLATFORMS)


class RecommendationView(BaseModel):
    id: str
    from_user_id: str
    from_name: str
    to_user_id: str
    to_name: str
    item: CatalogItem
    comment: str | None = None
    status: str
    created_at: datetime


class InviteView(BaseModel):
    id: str
    token: str
    max_uses: int
    used_count: int
    expires_at: datetime | None = None
    revoked_at: datetime | None = None
    created_at: datetime
    state: str


class ContactView(BaseModel):
    user_id: str
    display_name: str
    avatar_url: str | None = None
    status: str


class ContactOption(BaseModel):
    """A contact that may or may not receive a recommendation for an item."""

    user_id: str
    display_name: str
    disabled: bool = False
    reason: str | None = None


class FilterForm(BaseModel):
    """Raw filter toggles as submitted by the browse form."""

    view_all: bool = True
    viewed: bool = True
    planned: bool = True
    availability_all: bool = True
    availability: list[Availability] = Field(default_factory=list)
    favorite_all: bool = True
    recommend_similar_only: bool = False
    query: str | None = None
    genres: str | None = None
    year_range: tuple[int, int] | None = None
    external_rating_range: tuple[float, float] | None = None
    personal_rating_range: tuple[float, float] | None = None
    viewed_from: date | None = None
    viewed_to: date | None = None
    sort_key: SortKey = SortKey.CREATED
    sort_direction: SortDirection | None = None

    def to_specification(self) -> FilterSpecification:
        return FilterSpecification.from_toggles(
            view_all=self.view_all,
            viewed=self.viewed,
            planned=self.planned,
            availability_all=self.availability_all,
            availability=tuple(item.value for item in self.availability),
            favorite_all=self.favorite_all,
            recommend_similar_only=self.recommend_similar_only,
            query=self.query,
            genres=self.genres,
            year_range=self.year_range,
            external_rating_range=self.external_rating_range,
            personal_rating_range=self.personal_rating_range,
            viewed_from=self.viewed_from,
            viewed_to=self.viewed_to,
            sort_key=self.sort_key,
            sort_direction=self.sort_direction,
        )


class OpenBrowseRequest(BaseModel):
    category: Category
    owner_id: str | None = Field(
        default=None, validation_alias=AliasChoices("owner_id", "ownerId")
    )


class AddEntryRequest(BaseModel):
    item: ItemDraft
    entry: EntryPayload = Field(default_factory=EntryPayload)


class UpdateEntryRequest(BaseModel):
    entry: EntryPayload
    item: ItemDraft | None = None


class RefreshRequest(BaseModel):
    query: str | None = None


class UsernameRequest(BaseModel):
    username: str


class VisibilityRequest(BaseModel):
    views_visible_to_friends: bool


class SendRecommendationRequest(BaseModel):
    item_id: str
    to_user_ids: list[str] = Field(min_length=1)
    comment: str | None = None


class RecommendationStatusRequest(BaseModel):
    status: str


class AcceptInviteRequest(BaseModel):
    token: str | None = None
