"""
Tests for backend/metrics/outcomes.py
=====================================
Each precedence branch of derive_outcome, plus event enrichment.
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from metrics.outcomes import (
    CLOSED,
    NO_SHOW,
    SHOWED_NO_OFFER,
    SHOWED_OFFER_NO_CLOSE,
    derive_outcome,
    derive_pcf_flags,
    enrich_event,
    is_showed,
)

STARTED = "2025-03-01T15:00:00Z"


def _pcf(showed=True, offer=False, closed=False):
    return {"lead_showed": showed, "offer_made": offer, "deal_closed": closed}


class TestDeriveOutcome:
    def test_pcf_not_showed_is_no_show(self):
        assert derive_outcome(_pcf(showed=False), None, None, None) == NO_SHOW

    def test_pcf_closed(self):
        assert derive_outcome(_pcf(offer=True, closed=True), None, None, None) == CLOSED

    def test_pcf_offer_no_close(self):
        assert derive_outcome(_pcf(offer=True), None, None, None) == SHOWED_OFFER_NO_CLOSE

    def test_pcf_showed_no_offer(self):
        assert derive_outcome(_pcf(), None, None, None) == SHOWED_NO_OFFER

    def test_pcf_beats_meeting_started(self):
        assert derive_outcome(_pcf(showed=False), None, None, STARTED) == NO_SHOW

    def test_pcf_beats_stored_outcome(self):
        assert derive_outcome(_pcf(closed=True), "no_show", None, None) == CLOSED

    def test_stored_outcome_without_pcf(self):
        assert derive_outcome(None, SHOWED_OFFER_NO_CLOSE, True, STARTED) == SHOWED_OFFER_NO_CLOSE

    def test_platform_no_show(self):
        assert derive_outcome(None, None, True, STARTED) == NO_SHOW

    def test_no_show_guest_false_is_not_no_show(self):
        assert derive_outcome(None, None, False, None) is None

    def test_meeting_started(self):
        assert derive_outcome(None, None, None, STARTED) == SHOWED_NO_OFFER

    def test_no_data_is_none(self):
        assert derive_outcome(None, None, None, None) is None


class TestPcfFlags:
    def test_from_pcf(self):
        assert derive_pcf_flags(_pcf(offer=True), None) == {
            "lead_showed": True, "offer_made": True, "deal_closed": False,
        }

    def test_fallback_to_meeting_start(self):
        assert derive_pcf_flags(None, STARTED)["lead_showed"] is True
        assert derive_pcf_flags(None, None) == {
            "lead_showed": False, "offer_made": False, "deal_closed": False,
        }


class TestEnrichEvent:
    def test_uses_first_joined_pcf(self):
        event = {
            "id": "e1",
            "event_outcome": None,
            "post_call_forms": [_pcf(offer=True, closed=True), _pcf(showed=False)],
        }
        enriched = enrich_event(event)
        assert enriched["event_outcome"] == CLOSED
        assert enriched["has_pcf"] is True
        assert enriched["deal_closed"] is True

    def test_does_not_mutate_input(self):
        event = {"id": "e1", "event_outcome": None, "post_call_forms": []}
        enrich_event(event)
        assert "has_pcf" not in event

    def test_empty_join_keeps_stored_outcome(self):
        event = {"id": "e1", "event_outcome": "no_show", "post_call_forms": []}
        enriched = enrich_event(event)
        assert enriched["event_outcome"] == NO_SHOW
        assert enriched["has_pcf"] is False

    def test_dict_join(self):
        enriched = enrich_event({"id": "e1", "post_call_forms": _pcf()})
        assert enriched["event_outcome"] == SHOWED_NO_OFFER


@pytest.mark.parametrize("outcome,expected", [
    (SHOWED_NO_OFFER, True), (SHOWED_OFFER_NO_CLOSE, True), (CLOSED, True),
    (NO_SHOW, False), (None, False),
])
def test_is_showed(outcome, expected):
    assert is_showed(outcome) is expected
