"""Sales-ops Metrics API - Main Server"""
from fastapi import FastAPI, APIRouter, HTTPException, Depends, Query, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import os
import json
import logging
from pathlib import Path
from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any, Union, Literal
from datetime import datetime, timezone

from supabase_client import get_supabase
from metrics import dashboard
from metrics.attribution import AttributionFilters
from metrics.definitions import METRIC_TEMPLATES
from metrics.leaderboard import SORT_CALLS_SET
from metrics.loaders import MetricsFilters, MetricsQueryError, fetch_metric_definitions, fetch_setter_aliases

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Sales-ops Metrics API")
api_router = APIRouter(prefix="/api")


# ============ Pydantic Models ============

FormulaType = Literal["count", "sum", "percentage"]
DataSource = Literal["events", "payments", "pcf_fields"]
DateField = Literal["scheduled_at", "booked_at", "payment_date", "created_at"]
PoolBasis = Literal["outcome", "status", "all"]

class FilterConditionModel(BaseModel):
    field: str
    operator: Literal["equals", "not_equals", "in"] = "equals"
    value: Union[bool, str, List[str], None] = None

class MetricDefinitionCreate(BaseModel):
    name: str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1)
    description: Optional[str] = None
    formula_type: FormulaType
    data_source: DataSource = "events"
    date_field: Optional[DateField] = None
    numerator_field: Optional[str] = None
    denominator_field: Optional[str] = None
    numerator_conditions: List[FilterConditionModel] = []
    denominator_conditions: List[FilterConditionModel] = []
    include_no_shows: bool = True
    include_cancels: bool = False
    include_reschedules: bool = False
    exclude_overdue_pcf: bool = False
    pcf_field_id: Optional[str] = None
    pool_basis: Optional[PoolBasis] = None
    icon: Optional[str] = None
    sort_order: int = 0

class MetricDefinitionUpdate(BaseModel):
    name: Optional[str] = None
    display_name: Optional[str] = None
    description: Optional[str] = None
    formula_type: Optional[FormulaType] = None
    data_source: Optional[DataSource] = None
    date_field: Optional[DateField] = None
    numerator_field: Optional[str] = None
    denominator_field: Optional[str] = None
    numerator_conditions: Optional[List[FilterConditionModel]] = None
    denominator_conditions: Optional[List[FilterConditionModel]] = None
    include_no_shows: Optional[bool] = None
    include_cancels: Optional[bool] = None
    include_reschedules: Optional[bool] = None
    exclude_overdue_pcf: Optional[bool] = None
    pcf_field_id: Optional[str] = None
    pool_basis: Optional[PoolBasis] = None
    icon: Optional[str] = None
    sort_order: Optional[int] = None
    is_active: Optional[bool] = None

class ReorderRequest(BaseModel):
    ordered_ids: List[str]

class SetterAliasCreate(BaseModel):
    alias_name: str = Field(..., min_length=1)
    canonical_name: str = Field(..., min_length=1)


# ============ Request helpers ============

def _parse_close_field(raw: Optional[str]) -> Dict[str, Optional[str]]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=422, detail="close_field must be a JSON object")
    if not isinstance(parsed, dict):
        raise HTTPException(status_code=422, detail="close_field must be a JSON object")
    return {str(k): (None if v is None else str(v)) for k, v in parsed.items()}


def metrics_filters(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    source_ids: Optional[str] = Query(None, description="Comma-separated source IDs"),
    traffic_type_id: Optional[str] = None,
    call_type_id: Optional[str] = None,
    closer_id: Optional[str] = None,
    booking_platform: Optional[str] = None,
    close_field: Optional[str] = Query(None, description="JSON object of CRM custom-field filters"),
) -> MetricsFilters:
    return MetricsFilters(
        start=start,
        end=end,
        source_ids=[s.strip() for s in (source_ids or "").split(",") if s.strip()],
        traffic_type_id=traffic_type_id,
        call_type_id=call_type_id,
        closer_id=closer_id,
        booking_platform=booking_platform,
        close_field_filters=_parse_close_field(close_field),
    )


# ============ Metrics Endpoints ============

@api_router.get("/orgs/{org_id}/metrics")
async def get_metrics(
    org_id: str,
    filters: MetricsFilters = Depends(metrics_filters),
    supabase=Depends(get_supabase),
):
    """Computed values for every active metric definition"""
    definitions = await fetch_metric_definitions(supabase, org_id, active_only=True)
    values = await dashboard.calculate_custom_metrics(supabase, org_id, definitions, filters)
    return {
        "metrics": [
            {"definition": d.to_dict(), "result": values[d.id].to_dict() if d.id in values else None}
            for d in definitions
        ]
    }


@api_router.get("/orgs/{org_id}/metrics/{metric_id}/records")
async def get_metric_records(
    org_id: str,
    metric_id: str,
    filters: MetricsFilters = Depends(metrics_filters),
    supabase=Depends(get_supabase),
):
    """Rows behind a metric's numerator"""
    found = await dashboard.get_metric_records(supabase, org_id, metric_id, filters)
    if found is None:
        raise HTTPException(status_code=404, detail="Metric definition not found")
    definition, records = found
    return {"metric_id": definition.id, "count": len(records), "records": records}


# ============ Metric Definition Endpoints ============

@api_router.get("/orgs/{org_id}/metric-definitions")
async def list_metric_definitions(
    org_id: str,
    include_inactive: bool = False,
    supabase=Depends(get_supabase),
):
    definitions = await fetch_metric_definitions(supabase, org_id, active_only=not include_inactive)
    return {"definitions": [d.to_dict() for d in definitions]}


@api_router.post("/orgs/{org_id}/metric-definitions", status_code=201)
async def create_metric_definition(
    org_id: str,
    request: MetricDefinitionCreate,
    supabase=Depends(get_supabase),
):
    definition = await dashboard.create_metric_definition(supabase, org_id, request.model_dump())
    return definition.to_dict()


@api_router.post("/orgs/{org_id}/metric-definitions/reorder")
async def reorder_metric_definitions(
    org_id: str,
    request: ReorderRequest,
    supabase=Depends(get_supabase),
):
    await dashboard.reorder_metric_definitions(supabase, org_id, request.ordered_ids)
    return {"success": True}


@api_router.patch("/orgs/{org_id}/metric-definitions/{metric_id}")
async def update_metric_definition(
    org_id: str,
    metric_id: str,
    request: MetricDefinitionUpdate,
    supabase=Depends(get_supabase),
):
    definition = await dashboard.update_metric_definition(
        supabase, org_id, metric_id, request.model_dump(exclude_unset=True)
    )
    if definition is None:
        raise HTTPException(status_code=404, detail="Metric definition not found")
    return definition.to_dict()


@api_router.delete("/orgs/{org_id}/metric-definitions/{metric_id}")
async def delete_metric_definition(
    org_id: str,
    metric_id: str,
    supabase=Depends(get_supabase),
):
    """Soft delete: the definition is deactivated, not removed"""
    if not await dashboard.deactivate_metric_definition(supabase, org_id, metric_id):
        raise HTTPException(status_code=404, detail="Metric definition not found")
    return {"success": True}


@api_router.get("/metric-templates")
async def list_metric_templates():
    return {"templates": METRIC_TEMPLATES}


# ============ Attribution Endpoints ============

@api_router.get("/orgs/{org_id}/attribution-tree")
async def get_attribution_tree(
    org_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    booking_platform: Optional[str] = None,
    platform: Optional[str] = None,
    channel: Optional[str] = None,
    setter: Optional[str] = None,
    capital_tier: Optional[str] = None,
    show_capital_tiers: bool = False,
    supabase=Depends(get_supabase),
):
    tree_filters = AttributionFilters(
        platform=platform,
        channel=channel,
        setter=setter,
        capital_tier=capital_tier,
        show_capital_tiers=show_capital_tiers,
    )
    result = await dashboard.get_attribution_tree(
        supabase, org_id, start=start, end=end,
        booking_platform=booking_platform, tree_filters=tree_filters,
    )
    return result.to_dict()


@api_router.get("/orgs/{org_id}/setter-leaderboard")
async def get_setter_leaderboard(
    org_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    sort_by: Literal["calls_set", "show_rate", "close_rate"] = SORT_CALLS_SET,
    supabase=Depends(get_supabase),
):
    stats = await dashboard.get_setter_leaderboard(supabase, org_id, start=start, end=end, sort_by=sort_by)
    return {"setters": [s.to_dict() for s in stats]}


# ============ Setter Alias Endpoints ============

@api_router.get("/orgs/{org_id}/setter-aliases")
async def list_setter_aliases(org_id: str, supabase=Depends(get_supabase)):
    return {"aliases": await fetch_setter_aliases(supabase, org_id)}


@api_router.post("/orgs/{org_id}/setter-aliases", status_code=201)
async def create_setter_alias(
    org_id: str,
    request: SetterAliasCreate,
    supabase=Depends(get_supabase),
):
    try:
        return await dashboard.create_setter_alias(supabase, org_id, request.alias_name, request.canonical_name)
    except dashboard.DuplicateAliasError as e:
        raise HTTPException(status_code=409, detail=str(e))


@api_router.delete("/orgs/{org_id}/setter-aliases/{alias_id}")
async def delete_setter_alias(org_id: str, alias_id: str, supabase=Depends(get_supabase)):
    if not await dashboard.delete_setter_alias(supabase, org_id, alias_id):
        raise HTTPException(status_code=404, detail="Setter alias not found")
    return {"success": True}


# ============ Health Check ============

@api_router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# Include router and add middleware
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MetricsQueryError)
async def metrics_query_error_handler(_request: Request, exc: MetricsQueryError) -> JSONResponse:
    return JSONResponse(status_code=502, content={"detail": str(exc)})
