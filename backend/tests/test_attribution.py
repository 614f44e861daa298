"""
Tests for backend/metrics/attribution.py
========================================
Covers:
  - platform fallback chain (utm > quiz > crm > none) and attribution_source
  - channel / setter / capital tier extraction with alias + IG-handle resolution
  - rollups, rates, filters with pruning, sibling ordering
  - summary and distinct filter values
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from metrics.attribution import (
    NO_ATTRIBUTION,
    NO_CHANNEL,
    QUIZ_FUNNEL,
    UNATTRIBUTED,
    UNKNOWN_TIER,
    AttributionFilters,
    attribute_platform,
    attribute_setter,
    build_attribution_tree,
    extract_capital_tier,
)
from metrics.identity import build_alias_map

ALIASES = build_alias_map([
    {"alias_name": "jack", "canonical_name": "Jack Hanson"},
    {"alias_name": "sarah_ig", "canonical_name": "Sarah Lee"},
])


def _event(platform=None, channel=None, setter=None, outcome=None, **extra) -> dict:
    metadata = {}
    if platform:
        metadata["utm_platform"] = platform
    if channel:
        metadata["utm_channel"] = channel
    if setter:
        metadata["utm_setter"] = setter
    row = {"booking_metadata": metadata, "event_outcome": outcome}
    row.update(extra)
    return row


def _labels(nodes):
    return [n.label for n in nodes]


class TestPlatformAttribution:
    def test_utm_canonicalized(self):
        assert attribute_platform(_event(platform="ig")) == ("Instagram", "utm")

    def test_quiz_funnel_before_crm(self):
        event = _event(booking_responses={"quiz_email": "a@b.com"}, close_custom_fields={"platform": "YouTube"})
        assert attribute_platform(event) == (QUIZ_FUNNEL, "quiz")

    def test_quiz_key_variants(self):
        assert attribute_platform(_event(booking_responses={"quiz email": "x@y.z"}))[0] == QUIZ_FUNNEL
        assert attribute_platform(_event(booking_responses={"quizEmail": "x@y.z"}))[0] == QUIZ_FUNNEL

    def test_utm_beats_quiz(self):
        event = _event(platform="fb", booking_responses={"quiz_email": "a@b.com"})
        assert attribute_platform(event) == ("Facebook", "utm")

    def test_crm_platform(self):
        assert attribute_platform(_event(close_custom_fields={"platform": "yt"})) == ("YouTube", "crm")

    def test_no_attribution(self):
        assert attribute_platform({}) == (NO_ATTRIBUTION, "none")

    def test_blank_platform_values_fall_through(self):
        assert attribute_platform(_event(platform="  ")) == (NO_ATTRIBUTION, "none")
        event = _event(platform="  ", close_custom_fields={"platform": " "})
        assert attribute_platform(event) == (NO_ATTRIBUTION, "none")
        assert attribute_platform(_event(platform=" ", close_custom_fields={"platform": "yt"})) == ("YouTube", "crm")


class TestSetterAndTier:
    def test_utm_setter_resolved(self):
        assert attribute_setter(_event(setter="JACK"), ALIASES) == ("Jack Hanson", False)

    def test_setter_name_fallback(self):
        assert attribute_setter(_event(setter_name="Maria"), ALIASES) == ("Maria", False)

    def test_ig_handle_fallback(self):
        event = _event(booking_responses={"IGHANDLE": "@sarah_ig"})
        assert attribute_setter(event, ALIASES) == ("Sarah Lee", True)

    def test_junk_setter_unattributed(self):
        assert attribute_setter(_event(setter_name="user_3TFV70v3"), ALIASES) == (UNATTRIBUTED, False)

    def test_capital_tier(self):
        assert extract_capital_tier({"Long capital question": " $10k-$25k "}) == "$10k-$25k"
        assert extract_capital_tier({"capital_question": "  "}) == UNKNOWN_TIER
        assert extract_capital_tier(None) == UNKNOWN_TIER


class TestBuildTree:
    def _events(self):
        return [
            _event("ig", "reels", "jack", "closed"),
            _event("Instagram", "reels", "Jack Hanson", "showed_no_offer"),
            _event("ig", "reels", "Maria", "no_show"),
            _event("ig", None, "Maria", None),
            _event("youtube", "shorts", "Maria", "closed"),
            _event(booking_responses={"quiz_email": "q@x.com"}, outcome="showed_offer_no_close"),
            {"event_outcome": "closed"},
            {"event_outcome": None},
            {"event_outcome": None},
            {"event_outcome": None},
        ]

    def test_rollups_and_rates(self):
        result = build_attribution_tree(self._events(), ALIASES)
        instagram = next(n for n in result.tree if n.label == "Instagram")
        assert (instagram.total, instagram.showed, instagram.closed) == (4, 2, 1)
        assert instagram.show_rate == 50
        assert instagram.close_rate == 50
        reels = next(c for c in instagram.children if c.label == "reels")
        jack = next(s for s in reels.children if s.label == "Jack Hanson")
        assert (jack.total, jack.showed, jack.closed) == (2, 2, 1)
        assert jack.id == "setter-Instagram-reels-Jack Hanson"

    def test_sentinels_last_and_quiz_pinned(self):
        result = build_attribution_tree(self._events(), ALIASES)
        labels = _labels(result.tree)
        assert labels[0] == QUIZ_FUNNEL
        assert labels[-1] == NO_ATTRIBUTION
        assert labels.index("Instagram") < labels.index("YouTube")

    def test_no_attribution_last_even_when_largest(self):
        result = build_attribution_tree(self._events(), ALIASES)
        no_attr = next(n for n in result.tree if n.label == NO_ATTRIBUTION)
        assert no_attr.total == 4
        assert no_attr.attribution_source == "none"

    def test_none_channel_sorted_last(self):
        result = build_attribution_tree(self._events(), ALIASES)
        instagram = next(n for n in result.tree if n.label == "Instagram")
        assert _labels(instagram.children) == ["reels", NO_CHANNEL]

    def test_summary(self):
        result = build_attribution_tree(self._events(), ALIASES)
        assert result.summary.total == 10
        assert result.summary.with_attribution == 6
        assert result.summary.without_attribution == 4
        assert result.summary.coverage_percent == 60

    def test_distinct_values_exclude_sentinels(self):
        result = build_attribution_tree(self._events(), ALIASES)
        assert result.platforms == ["Instagram", QUIZ_FUNNEL, "YouTube"]
        assert result.channels == ["reels", "shorts"]
        assert result.setters == ["Jack Hanson", "Maria"]
        assert result.capital_tiers == []

    def test_platform_filter_prunes(self):
        result = build_attribution_tree(self._events(), ALIASES, AttributionFilters(platform="YouTube"))
        assert _labels(result.tree) == ["YouTube"]
        assert result.summary.total == 10

    def test_all_means_no_filter(self):
        result = build_attribution_tree(self._events(), ALIASES, AttributionFilters(platform="all"))
        assert len(result.tree) == 4

    def test_setter_filter_prunes_empty_parents(self):
        result = build_attribution_tree(self._events(), ALIASES, AttributionFilters(setter="Jack Hanson"))
        assert _labels(result.tree) == ["Instagram"]
        assert _labels(result.tree[0].children) == ["reels"]
        assert result.tree[0].total == 2

    def test_capital_tier_level(self):
        events = [
            _event("ig", "reels", "Maria", "closed", booking_responses={"capital_question": "$25k+"}),
            _event("ig", "reels", "Maria", "no_show", booking_responses={"capital_question": "<$5k"}),
            _event("ig", "reels", "Maria", "closed", booking_responses={"capital_question": "$25k+"}),
        ]
        result = build_attribution_tree(events, ALIASES, AttributionFilters(show_capital_tiers=True))
        maria = result.tree[0].children[0].children[0]
        assert _labels(maria.children) == ["$25k+", "<$5k"]
        assert maria.children[0].close_rate == 100
        assert maria.children[0].id == "tier-Instagram-reels-Maria-$25k+"
        assert result.capital_tiers == ["$25k+", "<$5k"]

    def test_capital_tier_filter(self):
        events = [
            _event("ig", "reels", "Maria", "closed", booking_responses={"capital_question": "$25k+"}),
            _event("fb", "feed", "Maria", "closed", booking_responses={"capital_question": "<$5k"}),
        ]
        result = build_attribution_tree(
            events, ALIASES, AttributionFilters(show_capital_tiers=True, capital_tier="<$5k")
        )
        assert _labels(result.tree) == ["Facebook"]

    def test_capital_tier_filter_with_tiers_hidden(self):
        events = [
            _event("ig", "reels", "Maria", "closed", booking_responses={"capital_question": "<10k"}),
            _event("ig", "reels", "Maria", "closed", booking_responses={"capital_question": "50k+"}),
            _event("ig", "reels", "Maria", "no_show", booking_responses={"capital_question": "50k+"}),
        ]
        result = build_attribution_tree(events, ALIASES, AttributionFilters(capital_tier="50k+"))
        assert [n.total for n in result.tree] == [2]
        setter = result.tree[0].children[0].children[0]
        assert (setter.total, setter.showed, setter.closed) == (2, 1, 1)
        assert setter.children == []
        assert result.summary.total == 3

    def test_capital_tier_filter_excludes_first_seen_tier(self):
        events = [
            _event("ig", "reels", "Maria", "closed", booking_responses={"capital_question": "50k+"}),
            _event("ig", "reels", "Maria", "closed", booking_responses={"capital_question": "<10k"}),
        ]
        result = build_attribution_tree(events, ALIASES, AttributionFilters(capital_tier="<10k"))
        assert [n.total for n in result.tree] == [1]

    def test_ighandle_attribution_source(self):
        events = [{"booking_responses": {"ighandle": "sarah_ig"}, "event_outcome": None}]
        result = build_attribution_tree(events, ALIASES)
        node = result.tree[0]
        assert node.label == NO_ATTRIBUTION
        assert node.attribution_source == "ighandle"
        assert node.children[0].children[0].label == "Sarah Lee"

    def test_empty(self):
        result = build_attribution_tree([], ALIASES)
        assert result.tree == []
        assert result.summary.coverage_percent == 0

    def test_to_dict(self):
        out = build_attribution_tree(self._events(), ALIASES).to_dict()
        assert out["summary"]["total"] == 10
        assert out["tree"][0]["label"] == QUIZ_FUNNEL
        assert "children" in out["tree"][0]
