from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from src.alerting.config import _sanitize_mongo_uri_for_logs
from src.alerting.schemas.alerts import ErrorSummary, RouteRequestStats, ServiceStatus
from src.alerting.schemas.common import HealthResponse, utc_now
from src.alerting.state import get_state

router = APIRouter(tags=["Health"])


class StoreHealthResponse(BaseModel):
    """Response model for alert store connectivity diagnostics."""

    enabled: bool = Field(..., description="Whether the alert store is configured.")
    ok: bool = Field(..., description="Whether the store answered a ping; false when disabled.")
    database: Optional[str] = Field(default=None, description="Alert database name.")
    store_uri_sanitized: Optional[str] = Field(default=None, description="Store URI with credentials masked.")
    timestamp: str = Field(..., description="UTC timestamp when the check was performed (ISO string).")


class SystemStatusResponse(BaseModel):
    """Latest probe results per service combined with store health."""

    status: str = Field(..., description="'ok' when every known service is up and the store (if enabled) answers.")
    services: List[ServiceStatus] = Field(default_factory=list)
    service_states: Dict[str, str] = Field(default_factory=dict, description="Tracker view of each service.")
    store: StoreHealthResponse
    timestamp: str


def _store_health(request: Request) -> StoreHealthResponse:
    state = get_state(request.app)
    cfg = state.config
    store = state.engine.store
    if store is None:
        return StoreHealthResponse(enabled=False, ok=False, timestamp=utc_now().isoformat())
    return StoreHealthResponse(
        enabled=True,
        ok=store.health_check(),
        database=cfg.store_database,
        store_uri_sanitized=_sanitize_mongo_uri_for_logs(cfg.store_uri),
        timestamp=utc_now().isoformat(),
    )


@router.get(
    "/",
    response_model=HealthResponse,
    summary="Health check",
    description="Basic service liveness check used by deployment tooling.",
    operation_id="health_check",
)
def health_check() -> HealthResponse:
    """Return service liveness status."""
    return HealthResponse(status="ok", message="Healthy", timestamp=utc_now())


@router.get(
    "/api/health/store",
    response_model=StoreHealthResponse,
    summary="Alert store connectivity check",
    description="Pings the configured alert store. Credentials are masked.",
    operation_id="store_connectivity_check",
)
def store_connectivity_check(request: Request) -> StoreHealthResponse:
    return _store_health(request)


@router.get(
    "/api/status",
    response_model=SystemStatusResponse,
    summary="System status",
    description="Most recent probe result per monitored service and alert store health.",
    operation_id="system_status",
)
def system_status(request: Request) -> SystemStatusResponse:
    """Combine cached probe results with a live store ping."""
    state = get_state(request.app)
    services = sorted(state.last_statuses.values(), key=lambda s: s.name)
    store = _store_health(request)

    healthy = all(s.status == "up" for s in services) and (store.ok or not store.enabled)
    return SystemStatusResponse(
        status="ok" if healthy else "degraded",
        services=services,
        service_states=dict(state.engine.tracker.snapshot()),
        store=store,
        timestamp=utc_now().isoformat(),
    )


@router.get(
    "/api/error-summary",
    response_model=ErrorSummary,
    summary="Request error summary",
    description="Request and error counts over the sliding error window, overall and per service.",
    operation_id="error_summary",
)
def error_summary(request: Request) -> ErrorSummary:
    return get_state(request.app).collector.error_summary()


@router.get(
    "/api/error-summary/routes",
    response_model=List[RouteRequestStats],
    summary="Per-route request statistics",
    description="Request, error and mean latency figures per method and route over the error window.",
    operation_id="error_summary_routes",
)
def error_summary_routes(request: Request) -> List[RouteRequestStats]:
    return get_state(request.app).collector.route_stats()
