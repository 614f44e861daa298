"""
Metrics data loaders.

Every read the metrics package makes goes through here, always scoped by
organization_id. The supabase-py client is synchronous, so each query runs in
a worker thread via _db(); independent queries are gathered concurrently.

Failures are raised as MetricsQueryError and never retried.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .definitions import MetricDefinition

logger = logging.getLogger(__name__)

# Max IDs per .in_() filter
ID_BATCH_SIZE = 100

DEFAULT_FETCH_LIMIT = 10000
ATTRIBUTION_FETCH_LIMIT = 5000

EVENTS_SELECT = "*, post_call_forms(id, lead_showed, offer_made, deal_closed, call_occurred)"
ATTRIBUTION_SELECT = (
    "id, event_outcome, call_status, booking_metadata, booking_responses, "
    "close_custom_fields, setter_name, booking_platform, scheduled_at, "
    "no_show_guest, meeting_started_at, "
    "post_call_forms(id, lead_showed, offer_made, deal_closed)"
)
LEADERBOARD_SELECT = (
    "id, setter_name, event_outcome, call_status, scheduled_at, booking_metadata, "
    "no_show_guest, meeting_started_at, "
    "post_call_forms(id, lead_showed, offer_made, deal_closed)"
)


class MetricsQueryError(Exception):
    """A Supabase read or write needed for metrics failed."""
    pass


@dataclass
class MetricsFilters:
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    source_ids: list[str] = field(default_factory=list)
    traffic_type_id: Optional[str] = None
    call_type_id: Optional[str] = None
    closer_id: Optional[str] = None
    booking_platform: Optional[str] = None
    close_field_filters: dict[str, Optional[str]] = field(default_factory=dict)


async def _db(fn):
    """Run a synchronous Supabase call in a thread pool to avoid blocking the event loop."""
    return await asyncio.to_thread(fn)


async def run_query(fn: Callable[[], Any], what: str) -> list[dict]:
    """Execute a query builder thunk and return its rows."""
    try:
        result = await _db(fn)
    except Exception as e:
        logger.error("Metrics query failed (%s): %s", what, e)
        raise MetricsQueryError(f"Supabase query failed ({what}): {e}") from e
    return result.data or []


def fetch_limit() -> int:
    raw = os.environ.get("METRICS_FETCH_LIMIT")
    try:
        return int(raw) if raw else DEFAULT_FETCH_LIMIT
    except ValueError:
        logger.warning("Ignoring non-numeric METRICS_FETCH_LIMIT=%r", raw)
        return DEFAULT_FETCH_LIMIT


def _batches(ids: list[str], size: int = ID_BATCH_SIZE) -> list[list[str]]:
    return [ids[i:i + size] for i in range(0, len(ids), size)]


def _iso(dt: datetime) -> str:
    if not dt.tzinfo:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


async def _fetch_by_source_batches(build, source_ids: list[str], what: str) -> list[dict]:
    """
    Run build(source_batch) once per batch of source IDs (or once with None
    when there is no source filter) and concatenate the rows.
    """
    if not source_ids:
        return await run_query(lambda: build(None).execute(), what)

    chunks = await asyncio.gather(*[
        run_query(lambda b=batch: build(b).execute(), what)
        for batch in _batches(source_ids)
    ])
    rows: list[dict] = []
    for chunk in chunks:
        rows.extend(chunk)
    return rows


# ---------------------------------------------------------------------------
# Events and payments
# ---------------------------------------------------------------------------

async def fetch_events(supabase, org_id: str, filters: Optional[MetricsFilters] = None) -> list[dict]:
    """
    Events joined with their post-call form. Not date-windowed: each metric
    applies its own date field afterwards.
    """
    filters = filters or MetricsFilters()
    limit = fetch_limit()

    def build(source_batch: Optional[list[str]]):
        q = supabase.table("events").select(EVENTS_SELECT).eq("organization_id", org_id)
        if source_batch:
            q = q.in_("source_id", source_batch)
        if filters.traffic_type_id:
            q = q.eq("traffic_type_id", filters.traffic_type_id)
        if filters.call_type_id:
            q = q.eq("call_type_id", filters.call_type_id)
        if filters.closer_id:
            q = q.eq("closer_id", filters.closer_id)
        if filters.booking_platform:
            q = q.eq("booking_platform", filters.booking_platform)
        return q.limit(limit)

    rows = await _fetch_by_source_batches(build, filters.source_ids, "events")
    logger.info("Loaded %d events for org %s", len(rows), org_id)
    return rows


async def fetch_payments(supabase, org_id: str, filters: Optional[MetricsFilters] = None) -> list[dict]:
    filters = filters or MetricsFilters()
    limit = fetch_limit()

    def build(source_batch: Optional[list[str]]):
        q = supabase.table("payments").select("*").eq("organization_id", org_id)
        if source_batch:
            q = q.in_("source_id", source_batch)
        if filters.traffic_type_id:
            q = q.eq("traffic_type_id", filters.traffic_type_id)
        if filters.start:
            q = q.gte("payment_date", _iso(filters.start))
        if filters.end:
            q = q.lte("payment_date", _iso(filters.end))
        return q.limit(limit)

    rows = await _fetch_by_source_batches(build, filters.source_ids, "payments")
    logger.info("Loaded %d payments for org %s", len(rows), org_id)
    return rows


async def fetch_pcf_field_responses(supabase, org_id: str, field_ids: list[str]) -> dict[str, list]:
    """Boolean post-call-form custom field answers, grouped by field definition id."""
    field_ids = list(dict.fromkeys(f for f in field_ids if f))
    if not field_ids:
        return {}

    chunks = await asyncio.gather(*[
        run_query(
            lambda b=batch: (
                supabase.table("custom_field_values")
                .select("field_definition_id, value, record_id")
                .eq("organization_id", org_id)
                .eq("record_type", "post_call_forms")
                .in_("field_definition_id", b)
                .execute()
            ),
            "post-call form field values",
        )
        for batch in _batches(field_ids)
    ])

    grouped: dict[str, list] = {}
    for chunk in chunks:
        for row in chunk:
            grouped.setdefault(row.get("field_definition_id"), []).append(row.get("value"))
    return grouped


async def fetch_attribution_events(
    supabase,
    org_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    booking_platform: Optional[str] = None,
) -> list[dict]:
    """Booked calls for the attribution tree; canceled and rescheduled calls excluded."""
    def build():
        q = (
            supabase.table("events")
            .select(ATTRIBUTION_SELECT)
            .eq("organization_id", org_id)
            .not_.in_("call_status", ["canceled", "rescheduled"])
        )
        if start:
            q = q.gte("scheduled_at", _iso(start))
        if end:
            q = q.lte("scheduled_at", _iso(end))
        if booking_platform:
            q = q.eq("booking_platform", booking_platform)
        return q.limit(ATTRIBUTION_FETCH_LIMIT).execute()

    return await run_query(build, "attribution events")


async def fetch_leaderboard_events(
    supabase,
    org_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> list[dict]:
    """
    Events carrying a setter name. Without any date range only past calls
    are loaded.
    """
    def build():
        q = (
            supabase.table("events")
            .select(LEADERBOARD_SELECT)
            .eq("organization_id", org_id)
            .not_.is_("setter_name", "null")
            .neq("setter_name", "")
        )
        if start:
            q = q.gte("scheduled_at", _iso(start))
        if end:
            q = q.lte("scheduled_at", _iso(end))
        elif not start:
            q = q.lt("scheduled_at", _iso(now or datetime.now(timezone.utc)))
        return q.limit(fetch_limit()).execute()

    return await run_query(build, "leaderboard events")


# ---------------------------------------------------------------------------
# Lookup tables
# ---------------------------------------------------------------------------

async def fetch_setter_aliases(supabase, org_id: str) -> list[dict]:
    return await run_query(
        lambda: (
            supabase.table("setter_aliases")
            .select("id, alias_name, canonical_name, created_at")
            .eq("organization_id", org_id)
            .order("alias_name")
            .execute()
        ),
        "setter aliases",
    )


async def fetch_active_setters(supabase, org_id: str) -> list[dict]:
    return await run_query(
        lambda: (
            supabase.table("setters")
            .select("id, name")
            .eq("organization_id", org_id)
            .eq("is_active", True)
            .execute()
        ),
        "setters",
    )


async def fetch_metric_definitions(supabase, org_id: str, active_only: bool = True) -> list[MetricDefinition]:
    def build():
        q = supabase.table("metric_definitions").select("*").eq("organization_id", org_id)
        if active_only:
            q = q.eq("is_active", True)
        return q.order("sort_order").execute()

    rows = await run_query(build, "metric definitions")
    return [MetricDefinition.from_row(r) for r in rows]


async def fetch_metric_definition(supabase, org_id: str, metric_id: str) -> Optional[MetricDefinition]:
    rows = await run_query(
        lambda: (
            supabase.table("metric_definitions")
            .select("*")
            .eq("organization_id", org_id)
            .eq("id", metric_id)
            .limit(1)
            .execute()
        ),
        "metric definition",
    )
    return MetricDefinition.from_row(rows[0]) if rows else None
