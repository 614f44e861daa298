"""
Traffic source normalization.

The same platform reaches us from UTM links, CRM custom fields and the
sources table under inconsistent spellings ("IG", "ig", "Instagram").
Everything funnels through get_canonical_source() so metrics group them
under one name.
"""

from __future__ import annotations

from typing import Any, Optional

# Canonical name -> lowercase aliases
TRAFFIC_SOURCE_ALIASES: dict[str, list[str]] = {
    "Instagram": ["instagram", "ig"],
    "X": ["x", "twitter"],
    "Facebook": ["facebook", "fb"],
    "LinkedIn": ["linkedin"],
    "YouTube": ["youtube", "yt"],
    "TikTok": ["tiktok"],
    "Newsletter": ["newsletter", "email"],
    "Organic": ["organic"],
    "Referral": ["referral"],
    "Podcast": ["podcast"],
}

KNOWN_PLATFORMS = frozenset(TRAFFIC_SOURCE_ALIASES)

_ALIAS_TO_CANONICAL: dict[str, str] = {
    alias: canonical
    for canonical, aliases in TRAFFIC_SOURCE_ALIASES.items()
    for alias in aliases
}

ORIGIN_LABELS = {
    "utm": "UTM Link",
    "crm_field": "CRM Field",
    "crm_source": "Lead Source",
}


def get_canonical_source(raw: str) -> str:
    """Canonical platform name for a raw value; unknown values come back trimmed."""
    normalized = raw.strip().lower()
    return _ALIAS_TO_CANONICAL.get(normalized, raw.strip())


def get_source_aliases(canonical: str) -> list[str]:
    return TRAFFIC_SOURCE_ALIASES.get(canonical, [canonical.lower()])


def matches_canonical_source(raw: Optional[str], canonical: str) -> bool:
    """True when raw is any spelling of canonical. Used by filters."""
    if not raw:
        return False
    return raw.strip().lower() in get_source_aliases(canonical)


def _non_blank(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def get_unified_source(event: dict) -> tuple[Optional[str], Optional[str]]:
    """
    Best available platform for an event as (value, origin).

    Priority: UTM platform > CRM platform field > source table name (only
    when it is a known platform).
    """
    metadata = event.get("booking_metadata") or {}
    utm_platform = _non_blank(metadata.get("utm_platform"))
    if utm_platform:
        return get_canonical_source(utm_platform), "utm"

    custom_fields = event.get("close_custom_fields") or {}
    crm_platform = _non_blank(custom_fields.get("platform"))
    if crm_platform:
        return get_canonical_source(crm_platform), "crm_field"

    source = event.get("source") or {}
    source_name = _non_blank(source.get("name"))
    if source_name:
        canonical = get_canonical_source(source_name)
        if canonical in KNOWN_PLATFORMS:
            return canonical, "crm_source"

    return None, None


def get_origin_label(origin: Optional[str]) -> str:
    return ORIGIN_LABELS.get(origin or "", "Unknown")
