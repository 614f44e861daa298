"""
Setter leaderboard: calls set, show rate and close rate per canonical setter.

Only setters on the organization's active roster appear. Raw names from the
CRM (setter_name) and UTM links (utm_setter) are resolved through the alias
map first, so "jack" and "Jack Hanson" land on one row.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from .helpers import parse_iso, rate_pct
from .identity import resolve_name
from .outcomes import CLOSED, NO_SHOW

SORT_CALLS_SET = "calls_set"
SORT_SHOW_RATE = "show_rate"
SORT_CLOSE_RATE = "close_rate"
SORT_KEYS = (SORT_CALLS_SET, SORT_SHOW_RATE, SORT_CLOSE_RATE)


@dataclass
class SetterStats:
    setter_name: str
    attribution_source: str      # 'crm' | 'utm' | 'mixed'
    calls_set: int
    showed: int
    no_shows: int
    show_rate: int
    closed: int
    close_rate: int

    def to_dict(self) -> dict:
        return {
            "setter_name": self.setter_name,
            "attribution_source": self.attribution_source,
            "calls_set": self.calls_set,
            "showed": self.showed,
            "no_shows": self.no_shows,
            "show_rate": self.show_rate,
            "closed": self.closed,
            "close_rate": self.close_rate,
        }


@dataclass
class _Tally:
    calls_set: int = 0
    showed: int = 0
    no_shows: int = 0
    closed: int = 0
    has_crm: bool = False
    has_utm: bool = False

    @property
    def attribution_source(self) -> str:
        if self.has_crm and self.has_utm:
            return "mixed"
        if self.has_utm:
            return "utm"
        return "crm"


def _trimmed(value) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def build_setter_leaderboard(
    events: Iterable[dict],
    alias_map: dict[str, str],
    valid_setters: Iterable[str],
    sort_by: str = SORT_CALLS_SET,
    now: Optional[datetime] = None,
) -> list[SetterStats]:
    """
    calls_set counts every event; showed / no_shows / closed only count calls
    whose scheduled time has passed. show_rate = showed / (showed + no_shows),
    close_rate = closed / showed.
    """
    roster = {name.strip().lower() for name in valid_setters if name and name.strip()}
    if not roster:
        return []
    now = now or datetime.now(timezone.utc)

    tallies: dict[str, _Tally] = {}
    for event in events:
        crm_setter = _trimmed(event.get("setter_name"))
        utm_setter = _trimmed((event.get("booking_metadata") or {}).get("utm_setter"))
        setter = resolve_name(crm_setter or utm_setter, alias_map)
        if not setter or setter.lower() not in roster:
            continue

        tally = tallies.setdefault(setter, _Tally())
        tally.has_crm = tally.has_crm or bool(crm_setter)
        tally.has_utm = tally.has_utm or bool(utm_setter)
        tally.calls_set += 1

        scheduled = parse_iso(event.get("scheduled_at"))
        if scheduled is None or scheduled >= now:
            continue

        outcome = event.get("event_outcome")
        if outcome == NO_SHOW:
            tally.no_shows += 1
        elif outcome:
            tally.showed += 1
        if outcome == CLOSED:
            tally.closed += 1

    stats = [
        SetterStats(
            setter_name=name,
            attribution_source=t.attribution_source,
            calls_set=t.calls_set,
            showed=t.showed,
            no_shows=t.no_shows,
            show_rate=rate_pct(t.showed, t.showed + t.no_shows),
            closed=t.closed,
            close_rate=rate_pct(t.closed, t.showed),
        )
        for name, t in tallies.items()
    ]

    sort_attr = sort_by if sort_by in SORT_KEYS else SORT_CALLS_SET
    stats.sort(key=lambda s: getattr(s, sort_attr), reverse=True)
    return stats
