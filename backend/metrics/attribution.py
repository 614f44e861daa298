"""
Source Attribution Tree
=======================
Groups booked calls into platform → channel → setter (→ capital tier) and
rolls show/close counts up each level.

Platform fallback chain (first hit wins; attribution_source in brackets):
  booking_metadata.utm_platform   [utm]   canonicalized
  quiz email in booking responses [quiz]  "Quiz Funnel"
  close_custom_fields.platform    [crm]   canonicalized
  nothing                         [none]  "(No Attribution)"

Setter: utm_setter > setter_name > setter matched from the IG handle on the
booking form, all resolved through the org's alias map. A setter found only
through the IG handle on an otherwise unattributed event marks it [ighandle].
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from .helpers import rate_pct
from .identity import extract_ig_handle, resolve_ig_handle, resolve_name
from .outcomes import CLOSED, is_showed
from .sources import get_canonical_source

NO_ATTRIBUTION = "(No Attribution)"
NO_CHANNEL = "(none)"
UNATTRIBUTED = "(unattributed)"
UNKNOWN_TIER = "(unknown)"
QUIZ_FUNNEL = "Quiz Funnel"

# Sorted to the bottom of their level
TRAILING_LABELS = frozenset({NO_ATTRIBUTION, NO_CHANNEL})

QUIZ_EMAIL_KEYS = ("quiz_email", "quiz email", "quizEmail")
CAPITAL_TIER_KEYS = ("capital_question", "Long capital question", "capitalQuestion", "Capital Question")

LEVEL_PLATFORM = "platform"
LEVEL_CHANNEL = "channel"
LEVEL_SETTER = "setter"
LEVEL_CAPITAL_TIER = "capital_tier"

ALL = "all"


@dataclass
class AttributionFilters:
    platform: Optional[str] = None
    channel: Optional[str] = None
    setter: Optional[str] = None
    capital_tier: Optional[str] = None
    show_capital_tiers: bool = False


@dataclass
class TreeNode:
    id: str
    label: str
    level: str
    total: int = 0
    showed: int = 0
    closed: int = 0
    show_rate: int = 0
    close_rate: int = 0
    attribution_source: Optional[str] = None
    platform: Optional[str] = None
    channel: Optional[str] = None
    setter: Optional[str] = None
    capital_tier: Optional[str] = None
    children: list["TreeNode"] = field(default_factory=list)

    def add_counts(self, total: int, showed: int, closed: int) -> None:
        self.total += total
        self.showed += showed
        self.closed += closed

    def finalize_rates(self) -> None:
        self.show_rate = rate_pct(self.showed, self.total)
        self.close_rate = rate_pct(self.closed, self.showed)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "level": self.level,
            "total": self.total,
            "showed": self.showed,
            "closed": self.closed,
            "show_rate": self.show_rate,
            "close_rate": self.close_rate,
            "attribution_source": self.attribution_source,
            "platform": self.platform,
            "channel": self.channel,
            "setter": self.setter,
            "capital_tier": self.capital_tier,
            "children": [c.to_dict() for c in self.children],
        }


@dataclass
class AttributionSummary:
    with_attribution: int = 0
    without_attribution: int = 0
    coverage_percent: int = 0
    total: int = 0


@dataclass
class AttributionResult:
    tree: list[TreeNode] = field(default_factory=list)
    summary: AttributionSummary = field(default_factory=AttributionSummary)
    platforms: list[str] = field(default_factory=list)
    channels: list[str] = field(default_factory=list)
    setters: list[str] = field(default_factory=list)
    capital_tiers: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "tree": [n.to_dict() for n in self.tree],
            "summary": {
                "with_attribution": self.summary.with_attribution,
                "without_attribution": self.summary.without_attribution,
                "coverage_percent": self.summary.coverage_percent,
                "total": self.summary.total,
            },
            "platforms": self.platforms,
            "channels": self.channels,
            "setters": self.setters,
            "capital_tiers": self.capital_tiers,
        }


@dataclass
class _Leaf:
    platform: str
    channel: str
    setter: str
    capital_tier: str
    attribution_source: str
    total: int = 0
    showed: int = 0
    closed: int = 0


# ---------------------------------------------------------------------------
# Per-event extraction
# ---------------------------------------------------------------------------

def is_quiz_funnel(booking_responses: Optional[dict[str, Any]]) -> bool:
    if not booking_responses:
        return False
    return any(booking_responses.get(k) for k in QUIZ_EMAIL_KEYS)


def extract_capital_tier(booking_responses: Optional[dict[str, Any]]) -> str:
    if not booking_responses:
        return UNKNOWN_TIER
    for key in CAPITAL_TIER_KEYS:
        value = booking_responses.get(key)
        if value:
            tier = value.strip() if isinstance(value, str) else ""
            return tier or UNKNOWN_TIER
    return UNKNOWN_TIER


def attribute_platform(event: dict) -> tuple[str, str]:
    """(platform label, attribution_source) for one event."""
    metadata = event.get("booking_metadata") or {}
    custom_fields = event.get("close_custom_fields") or {}

    utm_platform = metadata.get("utm_platform")
    if isinstance(utm_platform, str) and utm_platform.strip():
        return get_canonical_source(utm_platform), "utm"
    if is_quiz_funnel(event.get("booking_responses")):
        return QUIZ_FUNNEL, "quiz"
    crm_platform = custom_fields.get("platform")
    if isinstance(crm_platform, str) and crm_platform.strip():
        return get_canonical_source(crm_platform), "crm"
    return NO_ATTRIBUTION, "none"


def attribute_channel(event: dict) -> str:
    metadata = event.get("booking_metadata") or {}
    raw = metadata.get("utm_channel")
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    return NO_CHANNEL


def attribute_setter(event: dict, alias_map: dict[str, str]) -> tuple[str, bool]:
    """(setter label, whether it came from the IG handle alone)."""
    metadata = event.get("booking_metadata") or {}
    utm_setter = metadata.get("utm_setter") or None
    setter_name = event.get("setter_name") or None
    ig_setter = resolve_ig_handle(extract_ig_handle(event.get("booking_responses")), alias_map)

    raw = utm_setter or setter_name or ig_setter
    setter = resolve_name(raw, alias_map) or UNATTRIBUTED
    from_ig_only = not utm_setter and not setter_name and bool(ig_setter)
    return setter, from_ig_only


# ---------------------------------------------------------------------------
# Tree assembly
# ---------------------------------------------------------------------------

def _active(wanted: Optional[str]) -> bool:
    return bool(wanted) and wanted != ALL


def _excluded(value: str, wanted: Optional[str]) -> bool:
    return _active(wanted) and value != wanted


def _sort_nodes(nodes: list[TreeNode], pin_quiz: bool = False) -> None:
    def key(node: TreeNode) -> tuple[int, int]:
        if node.label in TRAILING_LABELS:
            rank = 2
        elif pin_quiz and node.label == QUIZ_FUNNEL:
            rank = 0
        else:
            rank = 1
        return rank, -node.total

    nodes.sort(key=key)


def _build_tree(leaves: Iterable[_Leaf], filters: AttributionFilters) -> list[TreeNode]:
    # platform -> channel -> setter -> [leaves], insertion ordered
    hierarchy: dict[str, dict[str, dict[str, list[_Leaf]]]] = {}
    platform_sources: dict[str, str] = {}
    for leaf in leaves:
        platform_sources.setdefault(leaf.platform, leaf.attribution_source)
        (hierarchy.setdefault(leaf.platform, {})
                  .setdefault(leaf.channel, {})
                  .setdefault(leaf.setter, [])
                  .append(leaf))

    tree: list[TreeNode] = []
    for platform, channels in hierarchy.items():
        if _excluded(platform, filters.platform):
            continue
        platform_node = TreeNode(
            id=f"platform-{platform}",
            label=platform,
            level=LEVEL_PLATFORM,
            platform=platform,
            attribution_source=platform_sources[platform],
        )

        for channel, setters in channels.items():
            if _excluded(channel, filters.channel):
                continue
            channel_node = TreeNode(
                id=f"channel-{platform}-{channel}",
                label=channel,
                level=LEVEL_CHANNEL,
                platform=platform,
                channel=channel,
            )

            for setter, tier_leaves in setters.items():
                if _excluded(setter, filters.setter):
                    continue
                setter_node = TreeNode(
                    id=f"setter-{platform}-{channel}-{setter}",
                    label=setter,
                    level=LEVEL_SETTER,
                    platform=platform,
                    channel=channel,
                    setter=setter,
                )

                for leaf in tier_leaves:
                    if _excluded(leaf.capital_tier, filters.capital_tier):
                        continue
                    if filters.show_capital_tiers:
                        tier_node = TreeNode(
                            id=f"tier-{platform}-{channel}-{setter}-{leaf.capital_tier}",
                            label=leaf.capital_tier,
                            level=LEVEL_CAPITAL_TIER,
                            total=leaf.total,
                            showed=leaf.showed,
                            closed=leaf.closed,
                            platform=platform,
                            channel=channel,
                            setter=setter,
                            capital_tier=leaf.capital_tier,
                        )
                        tier_node.finalize_rates()
                        setter_node.children.append(tier_node)
                    setter_node.add_counts(leaf.total, leaf.showed, leaf.closed)

                if setter_node.total == 0:
                    continue
                _sort_nodes(setter_node.children)
                setter_node.finalize_rates()
                channel_node.children.append(setter_node)
                channel_node.add_counts(setter_node.total, setter_node.showed, setter_node.closed)

            if not channel_node.children:
                continue
            _sort_nodes(channel_node.children)
            channel_node.finalize_rates()
            platform_node.children.append(channel_node)
            platform_node.add_counts(channel_node.total, channel_node.showed, channel_node.closed)

        if not platform_node.children:
            continue
        _sort_nodes(platform_node.children)
        platform_node.finalize_rates()
        tree.append(platform_node)

    _sort_nodes(tree, pin_quiz=True)
    return tree


def build_attribution_tree(
    events: Iterable[dict],
    alias_map: dict[str, str],
    filters: Optional[AttributionFilters] = None,
) -> AttributionResult:
    """
    Build the attribution tree for already-fetched events (canceled and
    rescheduled calls are expected to be excluded by the loader).

    Summary counts and the distinct filter values always cover every event;
    only the tree itself honours the filters.
    """
    filters = filters or AttributionFilters()
    leaves: dict[tuple[str, ...], _Leaf] = {}
    platforms: set[str] = set()
    channels: set[str] = set()
    setters: set[str] = set()
    tiers: set[str] = set()
    with_attribution = 0
    total = 0

    for event in events:
        total += 1
        platform, source = attribute_platform(event)
        channel = attribute_channel(event)
        setter, from_ig_only = attribute_setter(event, alias_map)
        if from_ig_only and source == "none":
            source = "ighandle"
        capital_tier = extract_capital_tier(event.get("booking_responses"))

        if platform != NO_ATTRIBUTION:
            with_attribution += 1
            platforms.add(platform)
        if channel != NO_CHANNEL:
            channels.add(channel)
        if setter != UNATTRIBUTED:
            setters.add(setter)
        if capital_tier != UNKNOWN_TIER:
            tiers.add(capital_tier)

        # tier filter applies per event; leaves are only tier-keyed when tiers are shown
        if _excluded(capital_tier, filters.capital_tier):
            continue

        key = (platform, channel, setter, capital_tier) if filters.show_capital_tiers \
            else (platform, channel, setter)
        leaf = leaves.get(key)
        if leaf is None:
            leaf = _Leaf(platform, channel, setter, capital_tier, source)
            leaves[key] = leaf

        outcome = event.get("event_outcome")
        leaf.total += 1
        if is_showed(outcome):
            leaf.showed += 1
        if outcome == CLOSED:
            leaf.closed += 1

    summary = AttributionSummary(
        with_attribution=with_attribution,
        without_attribution=total - with_attribution,
        coverage_percent=rate_pct(with_attribution, total),
        total=total,
    )
    return AttributionResult(
        tree=_build_tree(leaves.values(), filters),
        summary=summary,
        platforms=sorted(platforms),
        channels=sorted(channels),
        setters=sorted(setters),
        capital_tiers=sorted(tiers),
    )
