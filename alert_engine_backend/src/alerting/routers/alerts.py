from __future__ import annotations

from datetime import date, datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, HTTPException, Path, Query, Request

from src.alerting.schemas.alerts import (
    AcknowledgeRequest,
    AcknowledgeResponse,
    AlertListResponse,
    AlertOut,
    AlertQuery,
    AlertSortField,
    AlertStats,
    AlertStatus,
    AlertSummaryListResponse,
    AlertType,
    ResolveRequest,
    ResolveResponse,
    SummaryGenerateRequest,
    SummaryGenerateResponse,
    TestAlertRequest,
)
from src.alerting.schemas.common import ErrorResponse, Severity, utc_now
from src.alerting.state import get_state

router = APIRouter(prefix="/api/alerts", tags=["Alerts"])

_STORE_ERRORS = {400: {"model": ErrorResponse}}


@router.get(
    "",
    response_model=AlertListResponse,
    responses=_STORE_ERRORS,
    summary="Query alert history",
    description="Filter alerts by service, type, severity, status, environment, tags, acknowledgment and time range.",
    operation_id="query_alerts",
)
async def query_alerts(
    request: Request,
    service: Optional[str] = Query(default=None),
    alert_type: Optional[AlertType] = Query(default=None, alias="alertType"),
    severity: Optional[Severity] = Query(default=None),
    status_filter: Optional[AlertStatus] = Query(default=None, alias="status"),
    environment: Optional[str] = Query(default=None),
    tags: Optional[List[str]] = Query(default=None),
    acknowledged: Optional[bool] = Query(default=None),
    start: Optional[datetime] = Query(default=None, description="ISO datetime start (inclusive)"),
    end: Optional[datetime] = Query(default=None, description="ISO datetime end (inclusive)"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0, le=100000),
    sort_by: AlertSortField = Query("timestamp", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
) -> AlertListResponse:
    """Query alert history with pagination; total ignores limit/offset."""
    filters = AlertQuery(
        service=service,
        alertType=alert_type,
        severity=severity,
        status=status_filter,
        environment=environment,
        tags=tags,
        acknowledged=acknowledged,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
        sortBy=sort_by,
        sortOrder=sort_order,
    )
    items, total = await get_state(request.app).engine.query(filters)
    return AlertListResponse(items=items, total=total)


@router.get(
    "/stats",
    response_model=AlertStats,
    responses=_STORE_ERRORS,
    summary="Alert statistics",
    description="Counts by severity, status, service and type, mean resolution time and daily trends.",
    operation_id="alert_stats",
)
async def alert_stats(
    request: Request,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
) -> AlertStats:
    return await get_state(request.app).engine.stats(start, end)


@router.get(
    "/active",
    response_model=AlertListResponse,
    responses=_STORE_ERRORS,
    summary="Active alerts",
    description="All alerts currently firing, newest first.",
    operation_id="active_alerts",
)
async def active_alerts(request: Request) -> AlertListResponse:
    items = await get_state(request.app).engine.active_alerts()
    return AlertListResponse(items=items, total=len(items))


@router.get(
    "/service/{service}",
    response_model=AlertListResponse,
    responses=_STORE_ERRORS,
    summary="Recent alerts for a service",
    operation_id="service_alerts",
)
async def service_alerts(
    request: Request,
    service: str = Path(..., description="Service name."),
    limit: int = Query(10, ge=1, le=500),
) -> AlertListResponse:
    items = await get_state(request.app).engine.recent_alerts_for_service(service, limit)
    return AlertListResponse(items=items, total=len(items))


@router.get(
    "/summaries",
    response_model=AlertSummaryListResponse,
    responses=_STORE_ERRORS,
    summary="Daily alert summaries",
    description="Per-day rollups by service, alert type and severity. Date bounds are inclusive UTC days.",
    operation_id="list_alert_summaries",
)
async def list_summaries(
    request: Request,
    start_day: Optional[date] = Query(default=None, alias="start"),
    end_day: Optional[date] = Query(default=None, alias="end"),
    service: Optional[str] = Query(default=None),
    limit: int = Query(200, ge=1, le=1000),
) -> AlertSummaryListResponse:
    items = await get_state(request.app).engine.list_summaries(start_day, end_day, service, limit)
    return AlertSummaryListResponse(items=items, total=len(items))


@router.post(
    "/summaries/generate",
    response_model=SummaryGenerateResponse,
    responses=_STORE_ERRORS,
    summary="Generate daily summaries",
    description="Regenerate summaries for one UTC day (default today). Safe to repeat.",
    operation_id="generate_alert_summaries",
)
async def generate_summaries(request: Request, payload: Optional[SummaryGenerateRequest] = None) -> SummaryGenerateResponse:
    day = (payload.day if payload else None) or utc_now().date()
    written = await get_state(request.app).engine.generate_summaries(day)
    return SummaryGenerateResponse(day=day, written=written)


@router.post(
    "/resolve",
    response_model=ResolveResponse,
    responses=_STORE_ERRORS,
    summary="Resolve alerts by fingerprint",
    description="Resolve every firing alert with the given fingerprint. Repeating the call resolves nothing new.",
    operation_id="resolve_alerts",
)
async def resolve_alerts(request: Request, payload: ResolveRequest) -> ResolveResponse:
    resolved = await get_state(request.app).engine.resolve(payload.fingerprint, payload.resolved_at)
    return ResolveResponse(fingerprint=payload.fingerprint, resolved=resolved)


@router.post(
    "/test",
    summary="Send a test alert",
    description="Push a synthetic service or error-rate alert through storage and notification.",
    operation_id="send_test_alert",
)
async def send_test_alert(request: Request, payload: Optional[TestAlertRequest] = None) -> dict:
    kind = payload.kind if payload else "service"
    result = await get_state(request.app).engine.send_test_alert(kind)
    return {
        "kind": kind,
        "persisted": result.persisted,
        "alertId": result.alert.alert_id if result.alert else None,
        "deliveries": [{"channel": d.channel, "ok": d.ok} for d in result.deliveries],
        "error": result.error,
    }


@router.post(
    "/{alert_id}/acknowledge",
    response_model=AcknowledgeResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Acknowledge alert",
    operation_id="acknowledge_alert",
)
async def acknowledge_alert(
    request: Request,
    payload: AcknowledgeRequest,
    alert_id: str = Path(..., description="Alert id."),
) -> AcknowledgeResponse:
    """Acknowledge an alert; repeated calls overwrite the previous acknowledgment."""
    if not payload.acknowledged_by.strip():
        raise HTTPException(status_code=400, detail="acknowledgedBy must not be empty")
    ok = await get_state(request.app).engine.acknowledge(alert_id, payload.acknowledged_by, payload.reason)
    if not ok:
        raise HTTPException(status_code=404, detail="alert not found")
    return AcknowledgeResponse(alertId=alert_id, acknowledged=True)


@router.get(
    "/{alert_id}",
    response_model=AlertOut,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Get alert",
    operation_id="get_alert",
)
async def get_alert(
    request: Request,
    alert_id: str = Path(..., description="Alert id."),
) -> AlertOut:
    alert = await get_state(request.app).engine.get_alert(alert_id)
    if not alert:
        raise HTTPException(status_code=404, detail="alert not found")
    return alert
