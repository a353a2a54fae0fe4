"""Utility helpers for the Catalogy service."""

from __future__ import annotations

import hashlib
import json
import re
from datetime import date, datetime, time, timezone
from typing import Any


LIKE_ESCAPE_CHAR = "\\"
YEAR_RE = re.compile(r"(19|20|21)\d{2}")


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, matching stored values."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def escape_like(value: str) -> str:
    """Escape LIKE metacharacters so user input matches literally."""

    return (
        value.replace(LIKE_ESCAPE_CHAR, LIKE_ESCAPE_CHAR * 2)
        .replace("%", f"{LIKE_ESCAPE_CHAR}%")
        .replace("_", f"{LIKE_ESCAPE_CHAR}_")
    )


def start_of_day(value: date) -> datetime:
    return datetime.combine(value, time.min)


def end_of_day(value: date) -> datetime:
    return datetime.combine(value, time.max)


def parse_year(value: Any) -> int | None:
    """Extract a plausible four digit year from provider values."""

    if isinstance(value, int):
        return value if 1800 <= value <= 2100 else None
    if not value:
        return None
    match = YEAR_RE.search(str(value))
    if not match:
        return None
    return int(match.group(0))


def stable_digest(payload: Any) -> str:
    """Return a SHA-256 digest of the canonical JSON form of ``payload``."""

    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def readable_fallback_name(user_id: str) -> str:
    """Return a stable placeholder name derived from the user identifier."""

    compact = user_id.replace("-", "")
    suffix = compact[-6:].upper()
    return f"User #{suffix or 'USER'}"


def display_name(username: str | None, user_id: str) -> str:
    normalized = (username or "").strip()
    if normalized:
        return normalized
    return readable_fallback_name(user_id)
