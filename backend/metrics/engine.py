"""
Metric Formula Engine
=====================
compute_metric():    evaluates one MetricDefinition over enriched events or
                     payments that are already in memory.
calculate_metrics(): evaluates every definition with its own date field and
                     returns {metric_id: MetricValue}.

Formulas
--------
  count       records passing numerator_conditions
  sum         Σ numerator_field over records passing numerator_conditions
  percentage  |numerator pool ∩ numerator_conditions| /
              |denominator pool ∩ denominator_conditions| × 100

Percentage pools
----------------
  status   numerator conditions reference call_status (cancel/reschedule
           rates): both pools are the raw source rows, status toggles ignored.
  outcome  only events with a recorded event_outcome count. The numerator
           drops no_shows unless include_no_shows; the denominator drops them
           only when include_no_shows is off AND it has its own conditions.
  all      the status-filtered rows, no outcome restriction.

Without an explicit pool_basis the pool is inferred from the condition
fields, which is how every historical definition was computed.

Pure: no I/O, no organization scoping. Malformed numbers count as 0 and
every ratio is 0 when its denominator is empty.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from .conditions import apply_conditions, references_field
from .definitions import (
    FORMULA_COUNT,
    FORMULA_PERCENTAGE,
    FORMULA_SUM,
    POOL_ALL,
    POOL_OUTCOME,
    POOL_STATUS,
    SOURCE_PCF_FIELDS,
    MetricDefinition,
    default_date_field,
)
from .helpers import parse_iso, round2, round_half_up, to_number
from .outcomes import NO_SHOW

logger = logging.getLogger(__name__)


@dataclass
class MetricValue:
    """Computed value of one metric for one request."""
    metric_id: str
    value: float
    formatted_value: str
    numerator: int | float = 0
    denominator: Optional[int] = None   # percentage formulas only

    def to_dict(self) -> dict:
        return {
            "metric_id": self.metric_id,
            "value": self.value,
            "formatted_value": self.formatted_value,
            "numerator": self.numerator,
            "denominator": self.denominator,
        }


@dataclass
class _Pools:
    numerator: list[dict] = field(default_factory=list)
    denominator: list[dict] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Record preparation
# ---------------------------------------------------------------------------

def with_net_revenue(payment: dict) -> dict:
    """Payments rows carry net_revenue when the sync job computed it; derive it otherwise."""
    if payment.get("net_revenue") is not None:
        return payment
    enriched = dict(payment)
    enriched["net_revenue"] = to_number(payment.get("amount")) - to_number(payment.get("refund_amount"))
    return enriched


def filter_by_date_field(
    rows: list[dict],
    date_field: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> list[dict]:
    """
    Keep rows whose date_field falls inside [start, end]. With no window every
    row passes; with a window, rows missing the date are dropped.
    """
    if not start and not end:
        return rows
    start_dt = parse_iso(start) if start else None
    end_dt = parse_iso(end) if end else None

    kept = []
    for row in rows:
        when = parse_iso(row.get(date_field))
        if when is None:
            continue
        if start_dt and when < start_dt:
            continue
        if end_dt and when > end_dt:
            continue
        kept.append(row)
    return kept


def _apply_status_filters(definition: MetricDefinition, rows: list[dict], now: datetime) -> list[dict]:
    filtered = rows
    if not definition.include_cancels:
        filtered = [r for r in filtered if r.get("call_status") != "canceled"]
    if not definition.include_reschedules:
        filtered = [r for r in filtered if r.get("call_status") != "rescheduled"]
    if definition.exclude_overdue_pcf:
        kept = []
        for r in filtered:
            scheduled = parse_iso(r.get("scheduled_at"))
            if scheduled and scheduled < now and not r.get("pcf_submitted"):
                continue
            kept.append(r)
        filtered = kept
    return filtered


def _source_rows(definition: MetricDefinition, events: list[dict], payments: list[dict]) -> list[dict]:
    if definition.is_payment_metric:
        return [with_net_revenue(p) for p in payments]
    return events


def _filtered_rows(
    definition: MetricDefinition,
    events: list[dict],
    payments: list[dict],
    now: datetime,
) -> tuple[list[dict], list[dict]]:
    """(raw source rows, rows after the definition's status toggles)."""
    source = _source_rows(definition, events, payments)
    if definition.is_payment_metric:
        return source, list(source)
    return source, _apply_status_filters(definition, source, now)


# ---------------------------------------------------------------------------
# Percentage pools
# ---------------------------------------------------------------------------

def _pool_basis(definition: MetricDefinition) -> Optional[str]:
    if definition.pool_basis:
        return definition.pool_basis
    if references_field(definition.numerator_conditions, "call_status"):
        return POOL_STATUS
    return None


def _percentage_pools(definition: MetricDefinition, source: list[dict], filtered: list[dict]) -> _Pools:
    basis = _pool_basis(definition)

    if basis == POOL_STATUS:
        return _Pools(numerator=list(source), denominator=list(source))
    if basis == POOL_ALL:
        return _Pools(numerator=list(filtered), denominator=list(filtered))

    numerator_empty = not definition.numerator_conditions
    denominator_empty = not definition.denominator_conditions
    explicit_outcome = basis == POOL_OUTCOME

    with_outcome = [r for r in filtered if r.get("event_outcome") is not None]
    pools = _Pools(numerator=filtered, denominator=filtered)

    if explicit_outcome or numerator_empty or references_field(definition.numerator_conditions, "event_outcome"):
        pools.numerator = with_outcome
        if not definition.include_no_shows:
            pools.numerator = [r for r in with_outcome if r.get("event_outcome") != NO_SHOW]

    if explicit_outcome or denominator_empty or references_field(definition.denominator_conditions, "event_outcome"):
        pools.denominator = with_outcome
        if not definition.include_no_shows and not denominator_empty:
            pools.denominator = [r for r in with_outcome if r.get("event_outcome") != NO_SHOW]

    return pools


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def _format_grouped(value: float, max_decimals: int) -> str:
    text = f"{round_half_up(value, max_decimals):,.{max_decimals}f}"
    if max_decimals and "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def format_value(definition: MetricDefinition, value: float) -> str:
    """Display string: "63%", "$1,235", "1,234.5" or "1,234"."""
    if definition.formula_type == FORMULA_PERCENTAGE:
        return f"{int(round_half_up(value))}%"

    if definition.formula_type == FORMULA_SUM:
        if definition.is_currency:
            whole = round_half_up(abs(value))
            sign = "-" if value < 0 and whole else ""
            return f"{sign}${whole:,.0f}"
        return _format_grouped(value, 2)

    return _format_grouped(round_half_up(value), 0)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_metric(
    definition: MetricDefinition,
    events: list[dict],
    payments: list[dict],
    now: Optional[datetime] = None,
) -> MetricValue:
    """Evaluate one definition. Never raises on a user-authored definition."""
    now = now or _utcnow()
    source, filtered = _filtered_rows(definition, events, payments, now)

    value = 0.0
    numerator: int | float = 0
    denominator: Optional[int] = None

    if definition.formula_type == FORMULA_COUNT:
        value = float(len(apply_conditions(filtered, definition.numerator_conditions)))
        numerator = int(value)

    elif definition.formula_type == FORMULA_SUM:
        rows = apply_conditions(filtered, definition.numerator_conditions)
        if definition.numerator_field:
            value = round2(sum(to_number(r.get(definition.numerator_field)) for r in rows))
        numerator = round2(value)

    elif definition.formula_type == FORMULA_PERCENTAGE:
        pools = _percentage_pools(definition, source, filtered)
        numerator = len(apply_conditions(pools.numerator, definition.numerator_conditions))
        if definition.denominator_conditions:
            denominator = len(apply_conditions(pools.denominator, definition.denominator_conditions))
        else:
            denominator = len(pools.denominator)
        value = numerator / denominator * 100 if denominator > 0 else 0.0
        # pools can differ; keep the ratio within 0..100
        value = min(max(value, 0.0), 100.0)

    else:
        logger.warning("Metric %s has unknown formula_type '%s'; reporting 0",
                       definition.id, definition.formula_type)

    rounded = round2(value)
    return MetricValue(
        metric_id=definition.id,
        value=rounded,
        formatted_value=format_value(definition, rounded),
        numerator=numerator,
        denominator=denominator,
    )


def compute_pcf_field_metric(definition: MetricDefinition, responses: Iterable[Any]) -> MetricValue:
    """Yes-rate of a boolean post-call-form custom field."""
    responses = list(responses)
    total = len(responses)
    yes = sum(1 for r in responses if isinstance(r, dict) and r.get("response") is True)
    rate = round2(yes / total * 100) if total else 0.0
    return MetricValue(
        metric_id=definition.id,
        value=rate,
        formatted_value=f"{int(round_half_up(rate))}%",
        numerator=yes,
        denominator=total,
    )


def metric_records(
    definition: MetricDefinition,
    events: list[dict],
    payments: list[dict],
    now: Optional[datetime] = None,
) -> list[dict]:
    """
    The rows behind a metric's numerator, for drill-down lists. Percentage
    metrics return the numerator pool after its conditions, so the list length
    always equals MetricValue.numerator.
    """
    now = now or _utcnow()
    source, filtered = _filtered_rows(definition, events, payments, now)
    if definition.formula_type == FORMULA_PERCENTAGE:
        pools = _percentage_pools(definition, source, filtered)
        return apply_conditions(pools.numerator, definition.numerator_conditions)
    return apply_conditions(filtered, definition.numerator_conditions)


def calculate_metrics(
    definitions: Iterable[MetricDefinition],
    events: list[dict],
    payments: list[dict],
    pcf_responses: Optional[dict[str, list]] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> dict[str, MetricValue]:
    """
    Evaluate every definition against one fetched snapshot. Each metric is
    windowed on its own date_field so "booked" and "scheduled" metrics can
    share a dashboard.
    """
    now = now or _utcnow()
    pcf_responses = pcf_responses or {}
    results: dict[str, MetricValue] = {}

    for definition in definitions:
        if definition.data_source == SOURCE_PCF_FIELDS:
            if definition.pcf_field_id:
                results[definition.id] = compute_pcf_field_metric(
                    definition, pcf_responses.get(definition.pcf_field_id, [])
                )
            continue

        date_field = definition.date_field or default_date_field(definition.data_source)
        results[definition.id] = compute_metric(
            definition,
            filter_by_date_field(events, date_field, start, end),
            filter_by_date_field(payments, date_field, start, end),
            now=now,
        )

    logger.info("Computed %d metrics over %d events / %d payments",
                len(results), len(events), len(payments))
    return results
