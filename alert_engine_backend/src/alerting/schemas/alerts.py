from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.alerting.schemas.common import Severity, utc_now


AlertType = Literal["service_down", "service_recovery", "high_error_rate", "response_time", "custom"]
AlertStatus = Literal["firing", "resolved"]
ServiceState = Literal["up", "down"]
AlertSortField = Literal["timestamp", "severity", "service", "alertType", "status", "resolvedAt", "durationSeconds"]


class _AliasedModel(BaseModel):
    """Models that serialize with camelCase aliases but accept field names too."""

    model_config = ConfigDict(populate_by_name=True)


class ServiceStatus(_AliasedModel):
    """A single probe reading for a named service (ephemeral, never persisted directly)."""

    name: str = Field(..., description="Service name, e.g. 'redis'.")
    status: ServiceState = Field(..., description="Observed state.")
    response_time_ms: float = Field(0.0, ge=0, description="Probe round-trip in milliseconds.", alias="responseTimeMs")
    observed_at: datetime = Field(default_factory=utc_now, description="UTC time of the probe.", alias="observedAt")
    error: Optional[str] = Field(default=None, description="Probe error message when down.")


class ServiceErrorStats(_AliasedModel):
    """Per-service request/error counts inside an ErrorSummary."""

    requests: int = Field(0, ge=0)
    errors: int = Field(0, ge=0)
    error_rate_percent: float = Field(0.0, ge=0, alias="errorRatePercent")


class RouteRequestStats(_AliasedModel):
    """Request counts and latency for one method and route inside the error window."""

    service: str
    method: str
    route: str
    requests: int = Field(0, ge=0)
    errors: int = Field(0, ge=0)
    error_rate_percent: float = Field(0.0, ge=0, alias="errorRatePercent")
    avg_duration_ms: Optional[float] = Field(default=None, ge=0, alias="avgDurationMs")


class ErrorSummary(_AliasedModel):
    """Aggregate request/error counts over the detection window."""

    total_requests: int = Field(0, ge=0, alias="totalRequests")
    total_errors: int = Field(0, ge=0, alias="totalErrors")
    error_rate_percent: float = Field(0.0, ge=0, alias="errorRatePercent")
    window_seconds: int = Field(0, ge=0, alias="windowSeconds")
    per_service: Dict[str, ServiceErrorStats] = Field(default_factory=dict, alias="perService")


class AlertMetadata(_AliasedModel):
    """Known numeric/string observations plus one open extension map."""

    error_rate: Optional[float] = Field(default=None, alias="errorRate")
    request_count: Optional[int] = Field(default=None, alias="requestCount")
    response_time_ms: Optional[float] = Field(default=None, alias="responseTimeMs")
    threshold: Optional[float] = Field(default=None)
    actual_value: Optional[float] = Field(default=None, alias="actualValue")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    time_window_seconds: Optional[int] = Field(default=None, alias="timeWindowSeconds")
    extra: Dict[str, Any] = Field(default_factory=dict, description="Free-form additional observations.")


class NotificationRecord(_AliasedModel):
    """Delivery bookkeeping for one notification channel."""

    sent: bool = Field(False)
    sent_at: Optional[datetime] = Field(default=None, alias="sentAt")
    channel_target: Optional[str] = Field(default=None, alias="channelTarget")
    delivery_status: Optional[str] = Field(default=None, alias="deliveryStatus")


class Acknowledgment(_AliasedModel):
    """Operator acknowledgment state (last write wins)."""

    is_acknowledged: bool = Field(False, alias="isAcknowledged")
    acknowledged_by: Optional[str] = Field(default=None, alias="acknowledgedBy")
    acknowledged_at: Optional[datetime] = Field(default=None, alias="acknowledgedAt")
    reason: Optional[str] = Field(default=None)


class AlertOut(_AliasedModel):
    """Response model for a persisted alert."""

    alert_id: str = Field(..., description="Globally unique alert id.", alias="alertId")
    alert_name: str = Field(..., description="Human-friendly alert title.", alias="alertName")
    alert_type: AlertType = Field(..., alias="alertType")
    severity: Severity = Field(...)
    status: AlertStatus = Field(...)
    service: str = Field(...)
    timestamp: datetime = Field(..., description="UTC creation time of the alert.")
    resolved_at: Optional[datetime] = Field(default=None, alias="resolvedAt")
    duration_seconds: Optional[float] = Field(default=None, alias="durationSeconds")
    fingerprint: str = Field(..., description="Correlation key shared by a firing alert and its resolution.")
    metadata: AlertMetadata = Field(default_factory=AlertMetadata)
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    environment: str = Field("production")
    notifications: Dict[str, NotificationRecord] = Field(default_factory=dict)
    acknowledged: Acknowledgment = Field(default_factory=Acknowledgment)


class AlertListResponse(BaseModel):
    """Envelope for alert queries."""

    items: List[AlertOut] = Field(..., description="Page of alerts.")
    total: int = Field(..., ge=0, description="Total matching alerts, independent of pagination.")


class AlertQuery(_AliasedModel):
    """Filter/sort/pagination model for alert history queries."""

    service: Optional[str] = Field(default=None)
    alert_type: Optional[AlertType] = Field(default=None, alias="alertType")
    severity: Optional[Severity] = Field(default=None)
    status: Optional[AlertStatus] = Field(default=None)
    environment: Optional[str] = Field(default=None)
    tags: Optional[List[str]] = Field(default=None, description="Match alerts carrying any of these tags.")
    acknowledged: Optional[bool] = Field(default=None)
    start: Optional[datetime] = Field(default=None, description="Start time (inclusive) on alert timestamp.")
    end: Optional[datetime] = Field(default=None, description="End time (inclusive) on alert timestamp.")
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0, le=100000)
    sort_by: AlertSortField = Field("timestamp", alias="sortBy")
    sort_order: Literal["asc", "desc"] = Field("desc", alias="sortOrder")


class AlertTrendPoint(BaseModel):
    """Alert count for one (day, severity) bucket."""

    date: str = Field(..., description="UTC day as YYYY-MM-DD.")
    severity: Severity
    count: int = Field(..., ge=0)


class AlertStats(_AliasedModel):
    """Aggregate alert statistics over an optional time range."""

    total_alerts: int = Field(0, alias="totalAlerts")
    critical_alerts: int = Field(0, alias="criticalAlerts")
    warning_alerts: int = Field(0, alias="warningAlerts")
    info_alerts: int = Field(0, alias="infoAlerts")
    resolved_alerts: int = Field(0, alias="resolvedAlerts")
    unresolved_alerts: int = Field(0, alias="unresolvedAlerts")
    avg_resolution_time: Optional[float] = Field(
        default=None,
        description="Mean durationSeconds over resolved alerts; null when none are resolved.",
        alias="avgResolutionTime",
    )
    alerts_by_service: Dict[str, int] = Field(default_factory=dict, alias="alertsByService")
    alerts_by_type: Dict[str, int] = Field(default_factory=dict, alias="alertsByType")
    alert_trends: List[AlertTrendPoint] = Field(default_factory=list, alias="alertTrends")


class AlertSummaryOut(_AliasedModel):
    """Per-day rollup for one (service, alertType, severity) combination."""

    date: datetime = Field(..., description="UTC midnight of the summarized day.")
    service: str
    alert_type: str = Field(..., alias="alertType")
    severity: str
    total_alerts: int = Field(0, alias="totalAlerts")
    resolved_alerts: int = Field(0, alias="resolvedAlerts")
    unresolved_alerts: int = Field(0, alias="unresolvedAlerts")
    total_duration: float = Field(0.0, alias="totalDuration")
    min_duration: Optional[float] = Field(default=None, alias="minDuration")
    max_duration: Optional[float] = Field(default=None, alias="maxDuration")
    avg_duration: Optional[float] = Field(default=None, alias="avgDuration")


class AlertSummaryListResponse(BaseModel):
    """Envelope for listing daily summaries."""

    items: List[AlertSummaryOut]
    total: int = Field(..., ge=0)


class AcknowledgeRequest(_AliasedModel):
    """Request body for acknowledging an alert."""

    acknowledged_by: str = Field(..., min_length=1, alias="acknowledgedBy")
    reason: Optional[str] = Field(default=None)


class AcknowledgeResponse(_AliasedModel):
    alert_id: str = Field(..., alias="alertId")
    acknowledged: bool


class ResolveRequest(_AliasedModel):
    """Request body for manual resolution by fingerprint."""

    fingerprint: str = Field(..., min_length=1)
    resolved_at: Optional[datetime] = Field(default=None, alias="resolvedAt")


class ResolveResponse(BaseModel):
    fingerprint: str
    resolved: int = Field(..., ge=0)


class TestAlertRequest(BaseModel):
    kind: Literal["service", "error"] = Field("service", description="Which synthetic alert to send.")


class SummaryGenerateRequest(_AliasedModel):
    day: Optional[date] = Field(default=None, description="UTC day to summarize; defaults to today.", alias="date")


class SummaryGenerateResponse(_AliasedModel):
    day: date = Field(..., alias="date")
    written: int = Field(..., ge=0, description="Number of summary rows upserted.")
