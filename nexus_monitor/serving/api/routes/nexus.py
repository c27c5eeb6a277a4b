"""
Nexus API Endpoints

Exposure report, alert listing and acknowledgement, and the
import-completed hook that runs the pipeline for a user.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from nexus_monitor.config import get_settings
from nexus_monitor.core.exposure import build_exposure_report
from nexus_monitor.database.models import AlertLevel, utcnow
from nexus_monitor.ingestion.transactions import TransactionLoader
from nexus_monitor.pipeline.orchestrator import NexusPipeline, PipelineResult

router = APIRouter()


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class ExposureSummary(BaseModel):
    total_states_with_sales: int
    exceeded_count: int
    warning_count: int
    approaching_count: int
    safe_count: int
    no_sales_tax_count: int


class ExposureResponse(BaseModel):
    user_id: str
    as_of: datetime
    exposures: List[Dict[str, Any]]
    summary: ExposureSummary


class AlertOut(BaseModel):
    id: UUID = Field(validation_alias="alert_id")
    state_code: str
    state_name: str
    alert_level: AlertLevel
    sales_amount: float
    threshold: Optional[float]
    percentage: float
    message: str
    read: bool
    email_sent: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class AlertListResponse(BaseModel):
    alerts: List[AlertOut]
    unread_count: int


class MarkReadRequest(BaseModel):
    """Omit ``alert_ids`` to mark every alert read."""
    alert_ids: Optional[List[UUID]] = None


class MarkReadResponse(BaseModel):
    success: bool = True
    marked: int


class SyncRequest(BaseModel):
    """Import-completed notification, optionally carrying the imported orders."""
    states: List[str] = Field(default_factory=list)
    transactions: List[Dict[str, Any]] = Field(default_factory=list)
    as_of: Optional[datetime] = None


class SyncResponse(BaseModel):
    loaded: int = 0
    skipped: int = 0
    pipeline: PipelineResult


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_pipeline(request: Request) -> NexusPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return pipeline


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/users/{user_id}/exposure", response_model=ExposureResponse)
async def get_exposure(
    user_id: str,
    as_of: Optional[datetime] = Query(None, description="Evaluation date, defaults to now"),
    pipeline: NexusPipeline = Depends(get_pipeline),
) -> ExposureResponse:
    """Exposure for every state, exceeded first; states without sales tax last."""
    as_of = as_of or utcnow()
    snapshots = await pipeline.calculator.compute_exposure(user_id, as_of=as_of)
    report = build_exposure_report(snapshots, pipeline.registry)

    return ExposureResponse(
        user_id=user_id,
        as_of=as_of,
        exposures=[snapshot.to_dict() for snapshot in report["exposures"]],
        summary=ExposureSummary(**report["summary"]),
    )


@router.get("/users/{user_id}/alerts", response_model=AlertListResponse)
async def list_alerts(
    user_id: str,
    unread_only: bool = Query(False),
    limit: Optional[int] = Query(None, ge=1, le=500),
    pipeline: NexusPipeline = Depends(get_pipeline),
) -> AlertListResponse:
    alerts, unread_count = await pipeline.alert_engine.list_alerts(
        user_id,
        unread_only=unread_only,
        limit=limit or get_settings().pipeline.alert_list_limit,
    )
    return AlertListResponse(
        alerts=[AlertOut.model_validate(alert) for alert in alerts],
        unread_count=unread_count,
    )


@router.put("/users/{user_id}/alerts/read", response_model=MarkReadResponse)
async def mark_alerts_read(
    user_id: str,
    body: MarkReadRequest,
    pipeline: NexusPipeline = Depends(get_pipeline),
) -> MarkReadResponse:
    marked = await pipeline.alert_engine.mark_read(user_id, body.alert_ids)
    return MarkReadResponse(marked=marked)


@router.post("/users/{user_id}/sync", response_model=SyncResponse)
async def import_completed(
    user_id: str,
    body: SyncRequest,
    pipeline: NexusPipeline = Depends(get_pipeline),
) -> SyncResponse:
    """
    Store the imported orders (if any) and bring the user's exposure and
    alerts up to date. Unknown state codes are rejected with 422.
    """
    unknown = [code for code in body.states if code not in pipeline.registry]
    if unknown:
        raise HTTPException(status_code=422, detail=f"Unknown state codes: {', '.join(unknown)}")

    states = list(body.states)
    loaded = skipped = 0
    if body.transactions:
        loader = TransactionLoader(pipeline.session_factory)
        load_result = await loader.load(user_id, body.transactions)
        loaded, skipped = load_result.loaded, load_result.skipped
        states.extend(load_result.affected_states)

    result = await pipeline.on_import_completed(user_id, states, as_of=body.as_of)
    return SyncResponse(loaded=loaded, skipped=skipped, pipeline=result)
