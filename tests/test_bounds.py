"""Year domain reconciliation tests."""

from __future__ import annotations

from app.bounds import YearBounds, clamp_range, reconcile_range
from app.models import FilterSpecification


def _bounds(year_range, domain=(2000, 2020)) -> YearBounds:
    spec = FilterSpecification(year_range=year_range)
    return YearBounds(domain=domain, pending=spec, applied=spec)


def test_clamp_range_collapses_inverted_result() -> None:
    assert clamp_range((1990, 2030), (2000, 2020)) == (2000, 2020)
    assert clamp_range((2005, 2010), (2000, 2020)) == (2005, 2010)
    assert clamp_range((2030, 2040), (2000, 2020)) == (2000, 2020)


def test_full_selection_follows_growing_domain() -> None:
    bounds = _bounds((2000, 2020))

    assert bounds.reconcile((2000, 2024)) is True
    assert bounds.domain == (2000, 2024)
    assert bounds.applied.year_range == (2000, 2024)
    assert bounds.pending.year_range == (2000, 2024)


def test_interior_selection_is_preserved() -> None:
    bounds = _bounds((2005, 2010))

    assert bounds.reconcile((2000, 2024)) is True
    assert bounds.applied.year_range == (2005, 2010)


def test_pinned_upper_edge_moves_with_domain() -> None:
    bounds = _bounds((2010, 2020))

    bounds.reconcile((2000, 2024))

    assert bounds.applied.year_range == (2010, 2024)


def test_shrinking_domain_clamps_selection() -> None:
    bounds = _bounds((2005, 2018))

    bounds.reconcile((2008, 2015))

    assert bounds.applied.year_range == (2008, 2015)


def test_unchanged_or_missing_domain_is_a_no_op() -> None:
    bounds = _bounds((2005, 2010))

    assert bounds.reconcile((2000, 2020)) is False
    assert bounds.reconcile(None) is False
    assert bounds.domain == (2000, 2020)
    assert bounds.applied.year_range == (2005, 2010)


def test_untouched_year_filter_stays_unbounded() -> None:
    bounds = _bounds(None)

    assert bounds.reconcile((1980, 2024)) is True
    assert bounds.applied.year_range is None


def test_pending_and_applied_reconcile_independently() -> None:
    bounds = _bounds((2000, 2020))
    bounds.pending = FilterSpecification(year_range=(2003, 2004))

    bounds.reconcile((1995, 2022))

    assert bounds.pending.year_range == (2003, 2004)
    assert bounds.applied.year_range == (1995, 2022)


def test_reconcile_range_keeps_interior_edges() -> None:
    assert reconcile_range((2004, 2012), (2000, 2020), (2001, 2030)) == (2004, 2012)
    assert reconcile_range((2000, 2012), (2000, 2020), (2001, 2030)) == (2001, 2012)
