from __future__ import annotations

from datetime import date, datetime

from app.utils import (
    display_name,
    end_of_day,
    escape_like,
    parse_year,
    readable_fallback_name,
    stable_digest,
    start_of_day,
)


def test_escape_like_escapes_wildcards() -> None:
    assert escape_like("100%_done\\") == "100\\%\\_done\\\\"
    assert escape_like("plain") == "plain"


def test_parse_year_handles_provider_values() -> None:
    assert parse_year("1999-03-31") == 1999
    assert parse_year(2012) == 2012
    assert parse_year(12) is None
    assert parse_year("") is None
    assert parse_year(None) is None
    assert parse_year("unknown") is None


def test_day_bounds_cover_whole_day() -> None:
    day = date(2024, 5, 17)

    assert start_of_day(day) == datetime(2024, 5, 17, 0, 0, 0)
    assert end_of_day(day).date() == day
    assert end_of_day(day) > datetime(2024, 5, 17, 23, 59, 59)


def test_stable_digest_ignores_key_order() -> None:
    assert stable_digest({"a": 1, "b": [1, 2]}) == stable_digest({"b": [1, 2], "a": 1})
    assert stable_digest({"a": 1}) != stable_digest({"a": 2})


def test_fallback_name_uses_identifier_suffix() -> None:
    user_id = "3f2b8c1e-0d4a-4a51-9b1c-77aa12bc9e0f"

    assert readable_fallback_name(user_id) == "User #BC9E0F"
    assert display_name(None, user_id) == "User #BC9E0F"
    assert display_name("   ", user_id) == "User #BC9E0F"
    assert display_name(" mira ", user_id) == "mira"
