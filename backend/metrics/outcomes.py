"""
Call outcome derivation.

Precedence (highest first):

  1. Post-call form     not lead_showed -> no_show, deal_closed -> closed,
                        offer_made -> showed_offer_no_close, else showed_no_offer
  2. Stored outcome     events.event_outcome, used unchanged
  3. Platform no-show   no_show_guest is True -> no_show
  4. Platform start     meeting_started_at set -> showed_no_offer
  5. Nothing            None

Rule 5 matters: an event with no data is never counted as a no-show, which
would inflate no-show rates for calls whose reps simply have not filed a
form yet.
"""

from __future__ import annotations

from typing import Any, Optional

NO_SHOW = "no_show"
SHOWED_NO_OFFER = "showed_no_offer"
SHOWED_OFFER_NO_CLOSE = "showed_offer_no_close"
CLOSED = "closed"

EVENT_OUTCOMES = (NO_SHOW, SHOWED_NO_OFFER, SHOWED_OFFER_NO_CLOSE, CLOSED)
SHOWED_OUTCOMES = frozenset({SHOWED_NO_OFFER, SHOWED_OFFER_NO_CLOSE, CLOSED})


def outcome_from_pcf(pcf: Optional[dict]) -> Optional[str]:
    if not pcf:
        return None
    if not pcf.get("lead_showed"):
        return NO_SHOW
    if pcf.get("deal_closed"):
        return CLOSED
    if pcf.get("offer_made"):
        return SHOWED_OFFER_NO_CLOSE
    return SHOWED_NO_OFFER


def derive_outcome(
    pcf: Optional[dict],
    explicit_outcome: Optional[str],
    no_show_guest: Optional[bool],
    meeting_started_at: Optional[str],
) -> Optional[str]:
    """Apply the precedence table above. Pure; unit-tested branch by branch."""
    from_pcf = outcome_from_pcf(pcf)
    if from_pcf:
        return from_pcf
    if explicit_outcome:
        return explicit_outcome
    if no_show_guest is True:
        return NO_SHOW
    if meeting_started_at:
        return SHOWED_NO_OFFER
    return None


def derive_pcf_flags(pcf: Optional[dict], meeting_started_at: Optional[str]) -> dict[str, bool]:
    """
    Flattened PCF booleans used by condition filters. Without a form,
    lead_showed falls back to whether the booking platform saw the meeting start.
    """
    if pcf:
        return {
            "lead_showed": bool(pcf.get("lead_showed")),
            "offer_made": bool(pcf.get("offer_made")),
            "deal_closed": bool(pcf.get("deal_closed")),
        }
    return {
        "lead_showed": bool(meeting_started_at),
        "offer_made": False,
        "deal_closed": False,
    }


def _first_pcf(raw: Any) -> Optional[dict]:
    # PostgREST returns the joined relation as a list (one-to-many) or a dict.
    if isinstance(raw, list):
        return raw[0] if raw else None
    if isinstance(raw, dict):
        return raw
    return None


def enrich_event(event: dict) -> dict:
    """Return a copy of an events row with derived outcome and PCF flags."""
    pcf = _first_pcf(event.get("post_call_forms"))
    meeting_started_at = event.get("meeting_started_at")
    enriched = dict(event)
    enriched["event_outcome"] = derive_outcome(
        pcf,
        event.get("event_outcome"),
        event.get("no_show_guest"),
        meeting_started_at,
    )
    enriched["has_pcf"] = pcf is not None
    enriched.update(derive_pcf_flags(pcf, meeting_started_at))
    return enriched


def is_showed(outcome: Optional[str]) -> bool:
    return outcome in SHOWED_OUTCOMES
