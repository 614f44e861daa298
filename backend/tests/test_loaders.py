"""
Tests for backend/metrics/loaders.py
====================================
Covers:
  - organization scoping on every query
  - optional filters and the PCF join
  - source-ID batching (100 per .in_())
  - MetricsQueryError on failures
  - METRICS_FETCH_LIMIT override

Uses a recording mock-Supabase builder; no real DB required.
"""

from __future__ import annotations

import pytest
import sys
import os
from datetime import datetime, timezone
from unittest.mock import MagicMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from metrics.loaders import (
    DEFAULT_FETCH_LIMIT,
    MetricsFilters,
    MetricsQueryError,
    fetch_active_setters,
    fetch_attribution_events,
    fetch_events,
    fetch_leaderboard_events,
    fetch_metric_definition,
    fetch_metric_definitions,
    fetch_payments,
    fetch_pcf_field_responses,
    fetch_setter_aliases,
    fetch_limit,
)

ORG_ID = "org-aaa"


# ---------------------------------------------------------------------------
# Supabase mock builder
# ---------------------------------------------------------------------------

class _QueryMock:
    """Fluent mock that records every builder call as (method, args)."""

    def __init__(self, table: str, data: list[dict], error: Exception | None = None):
        self.table = table
        self.calls: list[tuple] = []
        self._data = data
        self._error = error

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        return self

    def select(self, *a, **kw): return self._record("select", *a)
    def eq(self, *a, **kw):     return self._record("eq", *a)
    def neq(self, *a, **kw):    return self._record("neq", *a)
    def gte(self, *a, **kw):    return self._record("gte", *a)
    def lte(self, *a, **kw):    return self._record("lte", *a)
    def lt(self, *a, **kw):     return self._record("lt", *a)
    def in_(self, *a, **kw):    return self._record("in_", *a)
    def is_(self, *a, **kw):    return self._record("is_", *a)
    def order(self, *a, **kw):  return self._record("order", *a)
    def limit(self, *a, **kw):  return self._record("limit", *a)
    def insert(self, *a, **kw): return self._record("insert", *a)
    def update(self, *a, **kw): return self._record("update", *a)
    def delete(self, *a, **kw): return self._record("delete", *a)

    @property
    def not_(self):
        return self._record("not_")

    def execute(self):
        if self._error:
            raise self._error
        r = MagicMock()
        r.data = self._data
        return r

    def called(self, name) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]


def _mk_supabase(tables: dict[str, list[dict]], errors: dict[str, Exception] | None = None) -> MagicMock:
    """Mock client backed by {table_name: rows}; sb.queries collects every query built."""
    sb = MagicMock()
    sb.queries = []
    errors = errors or {}

    def _table(name: str):
        q = _QueryMock(name, tables.get(name, []), errors.get(name))
        sb.queries.append(q)
        return q

    sb.table = _table
    return sb


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestFetchEvents:
    @pytest.mark.asyncio
    async def test_scoped_with_pcf_join(self):
        sb = _mk_supabase({"events": [{"id": "e1"}]})
        rows = await fetch_events(sb, ORG_ID)
        assert rows == [{"id": "e1"}]
        q = sb.queries[0]
        assert ("eq", "organization_id", ORG_ID) in q.calls
        assert "post_call_forms" in q.called("select")[0][1]
        assert q.called("limit") == [("limit", DEFAULT_FETCH_LIMIT)]

    @pytest.mark.asyncio
    async def test_optional_filters(self):
        sb = _mk_supabase({"events": []})
        filters = MetricsFilters(
            traffic_type_id="tt", call_type_id="ct", closer_id="cl", booking_platform="calendly",
        )
        await fetch_events(sb, ORG_ID, filters)
        calls = sb.queries[0].calls
        assert ("eq", "traffic_type_id", "tt") in calls
        assert ("eq", "call_type_id", "ct") in calls
        assert ("eq", "closer_id", "cl") in calls
        assert ("eq", "booking_platform", "calendly") in calls
        assert sb.queries[0].called("in_") == []

    @pytest.mark.asyncio
    async def test_source_ids_batched_by_100(self):
        sb = _mk_supabase({"events": [{"id": "e"}]})
        ids = [f"s{i}" for i in range(250)]
        rows = await fetch_events(sb, ORG_ID, MetricsFilters(source_ids=ids))
        assert len(sb.queries) == 3
        sizes = sorted((len(q.called("in_")[0][2]) for q in sb.queries), reverse=True)
        assert sizes == [100, 100, 50]
        assert all(("eq", "organization_id", ORG_ID) in q.calls for q in sb.queries)
        assert len(rows) == 3

    @pytest.mark.asyncio
    async def test_failure_raises(self):
        sb = _mk_supabase({}, errors={"events": RuntimeError("boom")})
        with pytest.raises(MetricsQueryError, match="events"):
            await fetch_events(sb, ORG_ID)

    @pytest.mark.asyncio
    async def test_fetch_limit_env(self, monkeypatch):
        monkeypatch.setenv("METRICS_FETCH_LIMIT", "500")
        sb = _mk_supabase({"events": []})
        await fetch_events(sb, ORG_ID)
        assert sb.queries[0].called("limit") == [("limit", 500)]


class TestFetchPayments:
    @pytest.mark.asyncio
    async def test_payment_date_window(self):
        sb = _mk_supabase({"payments": [{"id": "p1"}]})
        filters = MetricsFilters(
            start=datetime(2025, 6, 1, tzinfo=timezone.utc),
            end=datetime(2025, 6, 30),
            traffic_type_id="tt",
        )
        rows = await fetch_payments(sb, ORG_ID, filters)
        assert rows == [{"id": "p1"}]
        calls = sb.queries[0].calls
        assert ("gte", "payment_date", "2025-06-01T00:00:00+00:00") in calls
        assert ("lte", "payment_date", "2025-06-30T00:00:00+00:00") in calls
        assert ("eq", "traffic_type_id", "tt") in calls
        assert ("eq", "organization_id", ORG_ID) in calls


class TestFetchPcfFieldResponses:
    @pytest.mark.asyncio
    async def test_grouped_by_field(self):
        sb = _mk_supabase({"custom_field_values": [
            {"field_definition_id": "f1", "value": {"response": True}},
            {"field_definition_id": "f1", "value": {"response": False}},
            {"field_definition_id": "f2", "value": {"response": True}},
        ]})
        grouped = await fetch_pcf_field_responses(sb, ORG_ID, ["f1", "f2", "f1", None])
        assert len(grouped["f1"]) == 2
        assert grouped["f2"] == [{"response": True}]
        q = sb.queries[0]
        assert ("eq", "record_type", "post_call_forms") in q.calls
        assert q.called("in_")[0][2] == ["f1", "f2"]

    @pytest.mark.asyncio
    async def test_no_fields_no_query(self):
        sb = _mk_supabase({})
        assert await fetch_pcf_field_responses(sb, ORG_ID, []) == {}
        assert sb.queries == []


class TestFetchAttributionEvents:
    @pytest.mark.asyncio
    async def test_excludes_canceled_and_rescheduled(self):
        sb = _mk_supabase({"events": []})
        await fetch_attribution_events(sb, ORG_ID, booking_platform="calcom")
        q = sb.queries[0]
        assert ("in_", "call_status", ["canceled", "rescheduled"]) in q.calls
        assert q.called("not_")
        assert ("eq", "booking_platform", "calcom") in q.calls
        assert q.called("limit") == [("limit", 5000)]


class TestFetchLeaderboardEvents:
    @pytest.mark.asyncio
    async def test_defaults_to_past_calls(self):
        sb = _mk_supabase({"events": []})
        now = datetime(2025, 6, 15, tzinfo=timezone.utc)
        await fetch_leaderboard_events(sb, ORG_ID, now=now)
        q = sb.queries[0]
        assert ("lt", "scheduled_at", now.isoformat()) in q.calls
        assert ("neq", "setter_name", "") in q.calls
        assert ("is_", "setter_name", "null") in q.calls

    @pytest.mark.asyncio
    async def test_explicit_range(self):
        sb = _mk_supabase({"events": []})
        start = datetime(2025, 6, 1, tzinfo=timezone.utc)
        await fetch_leaderboard_events(sb, ORG_ID, start=start)
        q = sb.queries[0]
        assert q.called("lt") == []
        assert ("gte", "scheduled_at", start.isoformat()) in q.calls


class TestLookupTables:
    @pytest.mark.asyncio
    async def test_setter_aliases(self):
        sb = _mk_supabase({"setter_aliases": [{"alias_name": "jack", "canonical_name": "Jack Hanson"}]})
        rows = await fetch_setter_aliases(sb, ORG_ID)
        assert rows[0]["canonical_name"] == "Jack Hanson"
        assert ("eq", "organization_id", ORG_ID) in sb.queries[0].calls

    @pytest.mark.asyncio
    async def test_active_setters(self):
        sb = _mk_supabase({"setters": [{"id": "s1", "name": "Jack Hanson"}]})
        await fetch_active_setters(sb, ORG_ID)
        assert ("eq", "is_active", True) in sb.queries[0].calls

    @pytest.mark.asyncio
    async def test_metric_definitions_parsed_and_ordered(self):
        sb = _mk_supabase({"metric_definitions": [
            {"id": "m1", "name": "a", "formula_type": "count", "numerator_conditions": {"call_status": "completed"}},
        ]})
        defs = await fetch_metric_definitions(sb, ORG_ID)
        assert defs[0].id == "m1"
        assert defs[0].numerator_conditions[0].field == "call_status"
        q = sb.queries[0]
        assert ("order", "sort_order") in q.calls
        assert ("eq", "is_active", True) in q.calls

    @pytest.mark.asyncio
    async def test_inactive_included_on_request(self):
        sb = _mk_supabase({"metric_definitions": []})
        await fetch_metric_definitions(sb, ORG_ID, active_only=False)
        assert ("eq", "is_active", True) not in sb.queries[0].calls

    @pytest.mark.asyncio
    async def test_single_definition_missing(self):
        sb = _mk_supabase({"metric_definitions": []})
        assert await fetch_metric_definition(sb, ORG_ID, "nope") is None


class TestFetchLimit:
    def test_default(self, monkeypatch):
        monkeypatch.delenv("METRICS_FETCH_LIMIT", raising=False)
        assert fetch_limit() == DEFAULT_FETCH_LIMIT

    def test_non_numeric_falls_back(self, monkeypatch):
        monkeypatch.setenv("METRICS_FETCH_LIMIT", "lots")
        assert fetch_limit() == DEFAULT_FETCH_LIMIT
