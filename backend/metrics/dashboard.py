"""
Dashboard orchestration
=======================
Glue between the loaders and the pure builders. Each function fetches a
fresh snapshot for one organization, derives outcomes, and hands plain rows
to the engine / attribution / leaderboard modules. Nothing is cached between
calls.

Also hosts the admin operations on metric_definitions and setter_aliases.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

from .attribution import AttributionFilters, AttributionResult, build_attribution_tree
from .conditions import matches_close_field_filters
from .definitions import (
    SOURCE_PCF_FIELDS,
    MetricDefinition,
    build_insert_row,
    build_update_row,
)
from .engine import MetricValue, calculate_metrics, filter_by_date_field, metric_records
from .identity import build_alias_map
from .leaderboard import SORT_CALLS_SET, SetterStats, build_setter_leaderboard
from .loaders import (
    MetricsFilters,
    fetch_active_setters,
    fetch_attribution_events,
    fetch_events,
    fetch_leaderboard_events,
    fetch_metric_definition,
    fetch_metric_definitions,
    fetch_payments,
    fetch_pcf_field_responses,
    fetch_setter_aliases,
    run_query,
)
from .outcomes import enrich_event

logger = logging.getLogger(__name__)


class DuplicateAliasError(Exception):
    """An alias with the same name (case-insensitive) already exists for the org."""
    pass


# ---------------------------------------------------------------------------
# Snapshot preparation
# ---------------------------------------------------------------------------

def enrich_events(rows: list[dict]) -> list[dict]:
    return [enrich_event(r) for r in rows]


def apply_close_field_filters(
    events: list[dict],
    payments: list[dict],
    close_field_filters: Optional[dict[str, Optional[str]]],
) -> tuple[list[dict], list[dict]]:
    """
    Drop events whose CRM custom fields fail the filters. While any filter is
    active, payments linked to a dropped event go too; unlinked payments stay.
    """
    events = [e for e in events if matches_close_field_filters(e.get("close_custom_fields"), close_field_filters)]
    active = any(v is not None for v in (close_field_filters or {}).values())
    if not active:
        return events, payments

    kept_ids = {e.get("id") for e in events}
    payments = [p for p in payments if not p.get("event_id") or p.get("event_id") in kept_ids]
    return events, payments


async def _load_snapshot(
    supabase,
    org_id: str,
    definitions: list[MetricDefinition],
    filters: MetricsFilters,
) -> tuple[list[dict], list[dict], dict[str, list]]:
    pcf_field_ids = [d.pcf_field_id for d in definitions if d.data_source == SOURCE_PCF_FIELDS and d.pcf_field_id]
    events, payments, pcf_responses = await asyncio.gather(
        fetch_events(supabase, org_id, filters),
        fetch_payments(supabase, org_id, filters),
        fetch_pcf_field_responses(supabase, org_id, pcf_field_ids),
    )
    events, payments = apply_close_field_filters(
        enrich_events(events), payments, filters.close_field_filters
    )
    return events, payments, pcf_responses


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------

async def calculate_custom_metrics(
    supabase,
    org_id: str,
    definitions: Optional[list[MetricDefinition]] = None,
    filters: Optional[MetricsFilters] = None,
    now: Optional[datetime] = None,
) -> dict[str, MetricValue]:
    """Values for the given definitions, or every active one when None."""
    filters = filters or MetricsFilters()
    if definitions is None:
        definitions = await fetch_metric_definitions(supabase, org_id, active_only=True)
    if not definitions:
        return {}

    events, payments, pcf_responses = await _load_snapshot(supabase, org_id, definitions, filters)
    return calculate_metrics(
        definitions,
        events,
        payments,
        pcf_responses=pcf_responses,
        start=filters.start,
        end=filters.end,
        now=now,
    )


async def get_metric_records(
    supabase,
    org_id: str,
    metric_id: str,
    filters: Optional[MetricsFilters] = None,
    now: Optional[datetime] = None,
) -> Optional[tuple[MetricDefinition, list[dict]]]:
    """The rows behind one metric's numerator, or None if the metric does not exist."""
    filters = filters or MetricsFilters()
    definition = await fetch_metric_definition(supabase, org_id, metric_id)
    if definition is None:
        return None
    if definition.data_source == SOURCE_PCF_FIELDS:
        return definition, []

    events, payments, _ = await _load_snapshot(supabase, org_id, [], filters)
    records = metric_records(
        definition,
        filter_by_date_field(events, definition.date_field, filters.start, filters.end),
        filter_by_date_field(payments, definition.date_field, filters.start, filters.end),
        now=now,
    )
    return definition, records


async def get_attribution_tree(
    supabase,
    org_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    booking_platform: Optional[str] = None,
    tree_filters: Optional[AttributionFilters] = None,
) -> AttributionResult:
    events, alias_rows = await asyncio.gather(
        fetch_attribution_events(supabase, org_id, start, end, booking_platform),
        fetch_setter_aliases(supabase, org_id),
    )
    return build_attribution_tree(enrich_events(events), build_alias_map(alias_rows), tree_filters)


async def get_setter_leaderboard(
    supabase,
    org_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    sort_by: str = SORT_CALLS_SET,
    now: Optional[datetime] = None,
) -> list[SetterStats]:
    setters = await fetch_active_setters(supabase, org_id)
    if not setters:
        return []

    events, alias_rows = await asyncio.gather(
        fetch_leaderboard_events(supabase, org_id, start, end, now=now),
        fetch_setter_aliases(supabase, org_id),
    )
    return build_setter_leaderboard(
        enrich_events(events),
        build_alias_map(alias_rows),
        [s.get("name") or "" for s in setters],
        sort_by=sort_by,
        now=now,
    )


# ---------------------------------------------------------------------------
# Metric definition admin
# ---------------------------------------------------------------------------

async def create_metric_definition(supabase, org_id: str, payload: dict) -> MetricDefinition:
    row = build_insert_row(org_id, payload)
    rows = await run_query(
        lambda: supabase.table("metric_definitions").insert(row).execute(),
        "create metric definition",
    )
    logger.info("Created metric definition '%s' for org %s", row["name"], org_id)
    return MetricDefinition.from_row(rows[0] if rows else row)


async def update_metric_definition(
    supabase,
    org_id: str,
    metric_id: str,
    payload: dict,
) -> Optional[MetricDefinition]:
    """Apply only the provided fields. None when the definition does not exist."""
    changes = build_update_row(payload)
    if not changes:
        return await fetch_metric_definition(supabase, org_id, metric_id)

    rows = await run_query(
        lambda: (
            supabase.table("metric_definitions")
            .update(changes)
            .eq("organization_id", org_id)
            .eq("id", metric_id)
            .execute()
        ),
        "update metric definition",
    )
    return MetricDefinition.from_row(rows[0]) if rows else None


async def deactivate_metric_definition(supabase, org_id: str, metric_id: str) -> bool:
    rows = await run_query(
        lambda: (
            supabase.table("metric_definitions")
            .update({"is_active": False})
            .eq("organization_id", org_id)
            .eq("id", metric_id)
            .execute()
        ),
        "deactivate metric definition",
    )
    if rows:
        logger.info("Deactivated metric definition %s for org %s", metric_id, org_id)
    return bool(rows)


async def reorder_metric_definitions(supabase, org_id: str, ordered_ids: list[str]) -> None:
    """sort_order becomes each definition's position in ordered_ids."""
    await asyncio.gather(*[
        run_query(
            lambda mid=metric_id, pos=position: (
                supabase.table("metric_definitions")
                .update({"sort_order": pos})
                .eq("organization_id", org_id)
                .eq("id", mid)
                .execute()
            ),
            "reorder metric definitions",
        )
        for position, metric_id in enumerate(ordered_ids)
    ])


# ---------------------------------------------------------------------------
# Setter aliases
# ---------------------------------------------------------------------------

async def create_setter_alias(supabase, org_id: str, alias_name: str, canonical_name: str) -> dict:
    alias_name = alias_name.strip()
    canonical_name = canonical_name.strip()

    existing = await fetch_setter_aliases(supabase, org_id)
    if any((r.get("alias_name") or "").strip().lower() == alias_name.lower() for r in existing):
        raise DuplicateAliasError(f"Alias '{alias_name}' already exists")

    row = {"organization_id": org_id, "alias_name": alias_name, "canonical_name": canonical_name}
    rows = await run_query(
        lambda: supabase.table("setter_aliases").insert(row).execute(),
        "create setter alias",
    )
    logger.info("Mapped alias '%s' -> '%s' for org %s", alias_name, canonical_name, org_id)
    return rows[0] if rows else row


async def delete_setter_alias(supabase, org_id: str, alias_id: str) -> bool:
    rows = await run_query(
        lambda: (
            supabase.table("setter_aliases")
            .delete()
            .eq("organization_id", org_id)
            .eq("id", alias_id)
            .execute()
        ),
        "delete setter alias",
    )
    return bool(rows)
