"""Numeric range helpers that follow a changing data domain."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar

from .models import FilterSpecification

Number = TypeVar("Number", int, float)


def default_year_domain(min_year: int = 1950) -> tuple[int, int]:
    """Domain used before any item year is known."""

    return (min_year, datetime.now().year)


def clamp_range(
    value: tuple[Number, Number], domain: tuple[Number, Number]
) -> tuple[Number, Number]:
    """Clamp ``value`` into ``domain``, collapsing to the domain when inverted."""

    low, high = domain
    start = min(max(value[0], low), high)
    end = max(min(value[1], high), low)
    if start <= end:
        return (start, end)
    return (low, high)


def reconcile_range(
    value: tuple[Number, Number],
    previous: tuple[Number, Number],
    current: tuple[Number, Number],
) -> tuple[Number, Number]:
    """Remap ``value`` from the ``previous`` domain onto the ``current`` one.

    Edges pinned to the previous extremes follow the new extremes; interior
    selections are kept and then clamped.
    """

    start, end = value
    if start <= previous[0]:
        start = current[0]
    if end >= previous[1]:
        end = current[1]
    return clamp_range((start, end), current)


@dataclass(slots=True)
class YearBounds:
    """Year domain of one collection plus the pending and applied filters."""

    domain: tuple[int, int]
    pending: FilterSpecification
    applied: FilterSpecification

    def reconcile(self, next_domain: tuple[int, int] | None) -> bool:
        """Move both filter copies onto ``next_domain``.

        ``None`` means no item carries a year and the domain stays as is.
        Returns whether the applied filter or the domain changed.
        """

        if next_domain is None or next_domain == self.domain:
            return False
        previous = self.domain
        self.pending = _reconcile_spec(self.pending, previous, next_domain)
        applied = _reconcile_spec(self.applied, previous, next_domain)
        self.applied = applied
        self.domain = next_domain
        return True


def _reconcile_spec(
    spec: FilterSpecification,
    previous: tuple[int, int],
    current: tuple[int, int],
) -> FilterSpecification:
    if spec.year_range is None:
        return spec
    return spec.with_year_range(reconcile_range(spec.year_range, previous, current))
