"""
Metric Definitions
==================
Org-authored metric recipes stored in metric_definitions. A row is parsed
once into a MetricDefinition (conditions resolved to FilterCondition objects)
and is then immutable for the duration of a computation.

Public surface
--------------
    MetricDefinition.from_row(row)     # DB row -> definition, defaults applied
    build_insert_row(org_id, payload)  # admin create payload -> DB row
    build_update_row(payload)          # admin edit payload -> partial DB row
    METRIC_TEMPLATES                   # preset definitions offered in the builder
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from .conditions import FilterCondition, parse_conditions

FORMULA_COUNT = "count"
FORMULA_SUM = "sum"
FORMULA_PERCENTAGE = "percentage"
FORMULA_TYPES = (FORMULA_COUNT, FORMULA_SUM, FORMULA_PERCENTAGE)

SOURCE_EVENTS = "events"
SOURCE_PAYMENTS = "payments"
SOURCE_PCF_FIELDS = "pcf_fields"
DATA_SOURCES = (SOURCE_EVENTS, SOURCE_PAYMENTS, SOURCE_PCF_FIELDS)

DATE_FIELDS = ("scheduled_at", "booked_at", "payment_date", "created_at")

# Sum fields rendered as whole dollars
CURRENCY_FIELDS = frozenset({"amount", "net_revenue"})

# Explicit percentage pool selection; None means infer from the conditions.
POOL_OUTCOME = "outcome"
POOL_STATUS = "status"
POOL_ALL = "all"
POOL_BASES = (POOL_OUTCOME, POOL_STATUS, POOL_ALL)

# Columns an admin may set through create/update.
EDITABLE_FIELDS = (
    "name",
    "display_name",
    "description",
    "formula_type",
    "data_source",
    "date_field",
    "numerator_field",
    "denominator_field",
    "numerator_conditions",
    "denominator_conditions",
    "include_no_shows",
    "include_cancels",
    "include_reschedules",
    "exclude_overdue_pcf",
    "pcf_field_id",
    "pool_basis",
    "icon",
    "sort_order",
    "is_active",
)


def default_date_field(data_source: Optional[str]) -> str:
    return "payment_date" if data_source == SOURCE_PAYMENTS else "scheduled_at"


def _flag(value: Any, default: bool) -> bool:
    return default if value is None else bool(value)


@dataclass
class MetricDefinition:
    id: str
    organization_id: str
    name: str
    display_name: str
    formula_type: str
    description: Optional[str] = None
    data_source: str = SOURCE_EVENTS
    date_field: str = "scheduled_at"
    numerator_field: Optional[str] = None
    denominator_field: Optional[str] = None
    numerator_conditions: list[FilterCondition] = field(default_factory=list)
    denominator_conditions: list[FilterCondition] = field(default_factory=list)
    include_no_shows: bool = True
    include_cancels: bool = False
    include_reschedules: bool = False
    exclude_overdue_pcf: bool = False
    pcf_field_id: Optional[str] = None
    pool_basis: Optional[str] = None
    icon: Optional[str] = None
    sort_order: int = 0
    is_active: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_payment_metric(self) -> bool:
        return self.data_source == SOURCE_PAYMENTS

    @property
    def is_currency(self) -> bool:
        return self.formula_type == FORMULA_SUM and self.numerator_field in CURRENCY_FIELDS

    @classmethod
    def from_row(cls, row: dict) -> "MetricDefinition":
        data_source = row.get("data_source") or SOURCE_EVENTS
        pool_basis = row.get("pool_basis")
        return cls(
            id=str(row.get("id") or ""),
            organization_id=str(row.get("organization_id") or ""),
            name=row.get("name") or "",
            display_name=row.get("display_name") or row.get("name") or "",
            description=row.get("description"),
            formula_type=row.get("formula_type") or FORMULA_COUNT,
            data_source=data_source,
            date_field=row.get("date_field") or default_date_field(data_source),
            numerator_field=row.get("numerator_field"),
            denominator_field=row.get("denominator_field"),
            numerator_conditions=parse_conditions(row.get("numerator_conditions")),
            denominator_conditions=parse_conditions(row.get("denominator_conditions")),
            include_no_shows=_flag(row.get("include_no_shows"), True),
            include_cancels=_flag(row.get("include_cancels"), False),
            include_reschedules=_flag(row.get("include_reschedules"), False),
            exclude_overdue_pcf=_flag(row.get("exclude_overdue_pcf"), False),
            pcf_field_id=row.get("pcf_field_id") or None,
            pool_basis=pool_basis if pool_basis in POOL_BASES else None,
            icon=row.get("icon"),
            sort_order=row.get("sort_order") or 0,
            is_active=_flag(row.get("is_active"), True),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "formula_type": self.formula_type,
            "data_source": self.data_source,
            "date_field": self.date_field,
            "numerator_field": self.numerator_field,
            "denominator_field": self.denominator_field,
            "numerator_conditions": [c.to_dict() for c in self.numerator_conditions],
            "denominator_conditions": [c.to_dict() for c in self.denominator_conditions],
            "include_no_shows": self.include_no_shows,
            "include_cancels": self.include_cancels,
            "include_reschedules": self.include_reschedules,
            "exclude_overdue_pcf": self.exclude_overdue_pcf,
            "pcf_field_id": self.pcf_field_id,
            "pool_basis": self.pool_basis,
            "icon": self.icon,
            "sort_order": self.sort_order,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def build_insert_row(organization_id: str, payload: dict) -> dict:
    """Row for a new metric_definitions insert, with builder defaults applied."""
    data_source = payload.get("data_source") or SOURCE_EVENTS
    return {
        "organization_id": organization_id,
        "name": payload.get("name") or "",
        "display_name": payload.get("display_name") or "",
        "description": payload.get("description") or None,
        "formula_type": payload.get("formula_type") or FORMULA_COUNT,
        "data_source": data_source,
        "date_field": payload.get("date_field") or default_date_field(data_source),
        "numerator_field": payload.get("numerator_field") or None,
        "denominator_field": payload.get("denominator_field") or None,
        "numerator_conditions": payload.get("numerator_conditions") or [],
        "denominator_conditions": payload.get("denominator_conditions") or [],
        "include_no_shows": _flag(payload.get("include_no_shows"), True),
        "include_cancels": _flag(payload.get("include_cancels"), False),
        "include_reschedules": _flag(payload.get("include_reschedules"), False),
        "exclude_overdue_pcf": _flag(payload.get("exclude_overdue_pcf"), False),
        "pcf_field_id": payload.get("pcf_field_id") or None,
        "pool_basis": payload.get("pool_basis") or None,
        "icon": payload.get("icon") or None,
        "sort_order": payload.get("sort_order") or 0,
        "is_active": _flag(payload.get("is_active"), True),
    }


def build_update_row(payload: dict) -> dict:
    """Only the editable keys the caller actually provided."""
    return {k: payload[k] for k in EDITABLE_FIELDS if k in payload}


# ---------------------------------------------------------------------------
# Preset templates
# ---------------------------------------------------------------------------

_SHOWED = {"field": "event_outcome", "operator": "not_equals", "value": "no_show"}
_OFFERED = {"field": "event_outcome", "operator": "in", "value": ["showed_offer_no_close", "closed"]}
_CLOSED = {"field": "event_outcome", "operator": "equals", "value": "closed"}

METRIC_TEMPLATES: list[dict] = [
    {
        "name": "show_rate",
        "display_name": "Show Rate",
        "description": "Leads who showed ÷ Total scheduled calls",
        "formula_type": FORMULA_PERCENTAGE,
        "data_source": SOURCE_EVENTS,
        "numerator_conditions": [_SHOWED],
        "denominator_conditions": [],
        "include_no_shows": True,
        "include_cancels": False,
        "include_reschedules": False,
        "icon": "users",
    },
    {
        "name": "offer_rate",
        "display_name": "Offer Rate",
        "description": "Offers made ÷ Leads who showed",
        "formula_type": FORMULA_PERCENTAGE,
        "data_source": SOURCE_EVENTS,
        "numerator_conditions": [_OFFERED],
        "denominator_conditions": [_SHOWED],
        "include_no_shows": False,
        "include_cancels": False,
        "include_reschedules": False,
        "icon": "percent",
    },
    {
        "name": "close_rate_showed",
        "display_name": "Close Rate (Showed → Closed)",
        "description": "Deals closed ÷ Leads who showed",
        "formula_type": FORMULA_PERCENTAGE,
        "data_source": SOURCE_EVENTS,
        "numerator_conditions": [_CLOSED],
        "denominator_conditions": [_SHOWED],
        "include_no_shows": False,
        "include_cancels": False,
        "include_reschedules": False,
        "icon": "target",
    },
    {
        "name": "close_rate_offered",
        "display_name": "Close Rate (Offered → Closed)",
        "description": "Deals closed ÷ Offers made",
        "formula_type": FORMULA_PERCENTAGE,
        "data_source": SOURCE_EVENTS,
        "numerator_conditions": [_CLOSED],
        "denominator_conditions": [_OFFERED],
        "include_no_shows": False,
        "include_cancels": False,
        "include_reschedules": False,
        "icon": "target",
    },
    {
        "name": "cash_collected",
        "display_name": "Cash Collected",
        "description": "Total net revenue collected (amount minus refunds)",
        "formula_type": FORMULA_SUM,
        "data_source": SOURCE_PAYMENTS,
        "numerator_field": "net_revenue",
        "numerator_conditions": [],
        "denominator_conditions": [],
        "include_no_shows": True,
        "include_cancels": True,
        "include_reschedules": True,
        "icon": "dollar-sign",
    },
    {
        "name": "calls_scheduled",
        "display_name": "Scheduled Calls",
        "description": "Calls happening in the selected date range (by scheduled date)",
        "formula_type": FORMULA_COUNT,
        "data_source": SOURCE_EVENTS,
        "date_field": "scheduled_at",
        "numerator_conditions": [],
        "denominator_conditions": [],
        "include_no_shows": True,
        "include_cancels": False,
        "include_reschedules": False,
        "icon": "phone",
    },
    {
        "name": "calls_booked",
        "display_name": "Calls Booked",
        "description": "Calls booked in the selected date range (by booked date)",
        "formula_type": FORMULA_COUNT,
        "data_source": SOURCE_EVENTS,
        "date_field": "booked_at",
        "numerator_conditions": [],
        "denominator_conditions": [],
        "include_no_shows": True,
        "include_cancels": True,
        "include_reschedules": True,
        "icon": "phone",
    },
    {
        "name": "calls_showed",
        "display_name": "Calls Showed",
        "description": "Number of calls where lead showed up",
        "formula_type": FORMULA_COUNT,
        "data_source": SOURCE_EVENTS,
        "numerator_conditions": [_SHOWED],
        "denominator_conditions": [],
        "include_no_shows": False,
        "include_cancels": False,
        "include_reschedules": False,
        "icon": "phone",
    },
    {
        "name": "offers_made",
        "display_name": "Offers Made",
        "description": "Number of offers presented",
        "formula_type": FORMULA_COUNT,
        "data_source": SOURCE_EVENTS,
        "numerator_conditions": [_OFFERED],
        "denominator_conditions": [],
        "include_no_shows": False,
        "include_cancels": False,
        "include_reschedules": False,
        "icon": "percent",
    },
    {
        "name": "deals_closed",
        "display_name": "Deals Closed",
        "description": "Number of closed deals",
        "formula_type": FORMULA_COUNT,
        "data_source": SOURCE_EVENTS,
        "numerator_conditions": [_CLOSED],
        "denominator_conditions": [],
        "include_no_shows": False,
        "include_cancels": False,
        "include_reschedules": False,
        "icon": "check-circle",
    },
    {
        "name": "reschedule_rate",
        "display_name": "Reschedule Rate",
        "description": "Rescheduled calls ÷ Total scheduled calls",
        "formula_type": FORMULA_PERCENTAGE,
        "data_source": SOURCE_EVENTS,
        "numerator_conditions": [{"field": "call_status", "operator": "equals", "value": "rescheduled"}],
        "denominator_conditions": [],
        "include_no_shows": True,
        "include_cancels": True,
        "include_reschedules": True,
        "icon": "trending-up",
    },
    {
        "name": "cancel_rate",
        "display_name": "Cancel Rate",
        "description": "Canceled calls ÷ Total scheduled calls",
        "formula_type": FORMULA_PERCENTAGE,
        "data_source": SOURCE_EVENTS,
        "numerator_conditions": [{"field": "call_status", "operator": "equals", "value": "canceled"}],
        "denominator_conditions": [],
        "include_no_shows": True,
        "include_cancels": True,
        "include_reschedules": True,
        "icon": "trending-up",
    },
]

TEMPLATES_BY_NAME: dict[str, dict] = {t["name"]: t for t in METRIC_TEMPLATES}
