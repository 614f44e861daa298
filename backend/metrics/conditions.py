"""
Condition Evaluator
===================
Filter conditions are authored by org admins in the metric builder and stored
as JSON on metric_definitions. They are parsed once into FilterCondition
objects whose value kind (text / list / boolean) is fixed at load time, then
evaluated against plain dict records.

Rules
-----
  - An empty condition list passes every record through.
  - A record passes only if every condition passes (AND).
  - A NULL field never matches: not for equals, not for not_equals, not for in.
  - Unknown operators pass (no-op) so a bad definition degrades instead of
    breaking the dashboard.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union

logger = logging.getLogger(__name__)

EQUALS = "equals"
NOT_EQUALS = "not_equals"
IN = "in"
OPERATORS = frozenset({EQUALS, NOT_EQUALS, IN})

# Fields stored as booleans on enriched events; "true"/"false" in a condition
# is compared as a bool.
BOOLEAN_FIELDS = frozenset({"pcf_submitted", "lead_showed", "offer_made", "deal_closed"})

KIND_TEXT = "text"
KIND_LIST = "list"
KIND_BOOLEAN = "boolean"

ConditionValue = Union[str, list, bool, None]


@dataclass(frozen=True)
class FilterCondition:
    field: str
    operator: str
    value: ConditionValue
    kind: str = KIND_TEXT

    def matches(self, record: dict) -> bool:
        field_value = record.get(self.field)

        if self.operator == EQUALS:
            if field_value is None:
                return False
            return field_value == self.value

        if self.operator == NOT_EQUALS:
            if field_value is None:
                return False
            return field_value != self.value

        if self.operator == IN:
            if field_value is None:
                return False
            return self.kind == KIND_LIST and field_value in self.value

        return True

    def to_dict(self) -> dict:
        return {"field": self.field, "operator": self.operator, "value": self.value}


def _resolve_value(field: str, value: Any) -> tuple[ConditionValue, str]:
    if isinstance(value, (list, tuple)):
        return list(value), KIND_LIST
    if field in BOOLEAN_FIELDS:
        if isinstance(value, bool):
            return value, KIND_BOOLEAN
        if isinstance(value, str):
            return value.strip().lower() == "true", KIND_BOOLEAN
    return value, KIND_TEXT


def parse_condition(raw: dict) -> Optional[FilterCondition]:
    field = raw.get("field")
    if not field:
        return None
    operator = raw.get("operator") or EQUALS
    if operator not in OPERATORS:
        logger.warning("Unknown condition operator '%s' on field '%s'; treated as pass-through",
                       operator, field)
    value, kind = _resolve_value(field, raw.get("value"))
    return FilterCondition(field=field, operator=operator, value=value, kind=kind)


def parse_conditions(raw: Any) -> list[FilterCondition]:
    """
    Parse stored conditions. Accepts the current list format and the legacy
    flat-object format ({field: value} -> equals, stringified, nulls skipped).
    """
    if not raw:
        return []

    if isinstance(raw, list):
        parsed = []
        for item in raw:
            if isinstance(item, FilterCondition):
                parsed.append(item)
            elif isinstance(item, dict):
                cond = parse_condition(item)
                if cond:
                    parsed.append(cond)
        return parsed

    if isinstance(raw, dict):
        parsed = []
        for field, value in raw.items():
            if value is None:
                continue
            if isinstance(value, bool):
                value = "true" if value else "false"
            cond = parse_condition({"field": field, "operator": EQUALS, "value": str(value)})
            if cond:
                parsed.append(cond)
        return parsed

    return []


def apply_conditions(records: list[dict], conditions: Optional[Iterable[FilterCondition]]) -> list[dict]:
    if not conditions:
        return records
    conditions = list(conditions)
    if not conditions:
        return records
    return [r for r in records if all(c.matches(r) for c in conditions)]


def references_field(conditions: Optional[Iterable[FilterCondition]], field: str) -> bool:
    return any(c.field == field for c in (conditions or []))


def _normalize_string(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    v = value.strip()
    return v or None


def matches_close_field_filters(
    close_fields: Optional[dict],
    filters: Optional[dict[str, Optional[str]]],
) -> bool:
    """
    CRM custom-field filters from the dashboard. Each active filter (non-None)
    must equal the record's trimmed value; missing or blank values never match.
    """
    if not filters:
        return True
    active = [(slug, wanted) for slug, wanted in filters.items() if wanted is not None]
    if not active:
        return True
    fields = close_fields or {}
    return all(_normalize_string(fields.get(slug)) == wanted for slug, wanted in active)
