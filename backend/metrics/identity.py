"""
Identity Resolution
===================
Single place where raw setter names coming from CRMs, UTM links and booking
forms are turned into canonical names.

The alias map is always passed in by the caller (built per organization from
the setter_aliases table); nothing here caches organization data.

    alias_map = build_alias_map(rows)            # {"jack": "Jack Hanson"}
    resolve_name("  Jack ", alias_map)           # "Jack Hanson"
    resolve_name("user_3TFV70v3", alias_map)     # None (junk)
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Optional

# Placeholder values CRMs and booking tools write when no real person is set.
JUNK_VALUES = frozenset({
    "n/a",
    "none",
    "null",
    "undefined",
    "unknown",
    "unassigned",
    "-",
    "deleted user",
    "[deleted]",
    "(deleted)",
})

JUNK_PATTERNS = [
    re.compile(r"^user_[a-zA-Z0-9]+$", re.IGNORECASE),   # auth-provider user tokens
    re.compile(r"^[a-z]{1,2}$", re.IGNORECASE),          # "x", "ig"
    re.compile(r"^[0-9]+$"),                             # raw numeric IDs
    re.compile(r"^utm_", re.IGNORECASE),                 # UTM keys stored as values
    re.compile(r"^https?://", re.IGNORECASE),            # URLs
]

IG_HANDLE_KEYS = ("IGHANDLE", "ighandle", "IG Handle", "ig_handle", "instagram_handle")


def is_junk_name(name: Optional[str]) -> bool:
    if not name or not name.strip():
        return True
    trimmed = name.strip()
    if trimmed.lower() in JUNK_VALUES:
        return True
    return any(p.search(trimmed) for p in JUNK_PATTERNS)


def resolve_name(raw: Optional[str], alias_map: dict[str, str]) -> Optional[str]:
    """
    Resolve a raw setter value to its canonical name.

    Returns None for empty or junk values. A value that already matches a
    canonical name is returned as that canonical name even when it looks like
    junk ("Al", "TJ"), so resolving twice gives the same answer. Unmapped
    names come back trimmed with their original casing.
    """
    if not raw or not isinstance(raw, str):
        return None
    trimmed = raw.strip()
    if not trimmed:
        return None
    key = trimmed.lower()
    for canonical in alias_map.values():
        if canonical.lower() == key:
            return canonical
    if key in alias_map:
        return alias_map[key]
    if is_junk_name(trimmed):
        return None
    return trimmed


def build_alias_map(rows: Iterable[dict]) -> dict[str, str]:
    """Build {lowercase alias: canonical name} from setter_aliases rows."""
    alias_map: dict[str, str] = {}
    for row in rows:
        alias = (row.get("alias_name") or "").strip()
        canonical = (row.get("canonical_name") or "").strip()
        if alias and canonical:
            alias_map[alias.lower()] = canonical
    return alias_map


def _normalize_handle(handle: str) -> str:
    return re.sub(r"^@", "", handle.strip()).lower().strip()


def resolve_ig_handle(handle: Optional[str], alias_map: dict[str, str]) -> Optional[str]:
    """
    Match an Instagram handle from a booking form against setter aliases.
    Exact alias first, then the first alias that contains the handle (or is
    contained by it).
    """
    if not handle:
        return None
    normalized = _normalize_handle(handle)
    if not normalized:
        return None

    if normalized in alias_map:
        return alias_map[normalized]

    for alias, canonical in alias_map.items():
        if normalized in alias or alias in normalized:
            return canonical
    return None


def extract_ig_handle(booking_responses: Optional[dict[str, Any]]) -> Optional[str]:
    if not booking_responses:
        return None
    for key in IG_HANDLE_KEYS:
        value = booking_responses.get(key)
        if value:
            return value if isinstance(value, str) else None
    return None
