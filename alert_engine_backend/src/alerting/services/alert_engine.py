from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from pymongo.errors import PyMongoError

from src.alerting.config import EngineConfig
from src.alerting.exceptions import FeatureNotEnabledError
from src.alerting.schemas.alerts import (
    AlertOut,
    AlertQuery,
    AlertStats,
    AlertSummaryOut,
    ErrorSummary,
    ServiceErrorStats,
    ServiceStatus,
)
from src.alerting.schemas.common import Severity, as_utc, utc_now
from src.alerting.services import summary_aggregator
from src.alerting.services.alert_store import HIGH_ERROR_RATE, SERVICE_DOWN, SERVICE_RECOVERY, AlertStore
from src.alerting.services.fingerprint import fingerprint
from src.alerting.services.notifications import (
    DeliveryResult,
    NotificationDispatcher,
    format_acknowledgment,
    format_daily_summary,
    format_error_rate,
    format_service_down,
    format_service_recovery,
    format_test_message,
)
from src.alerting.services.state_tracker import ServiceStateTracker
from src.alerting.services.threshold_detector import ThresholdDetector

logger = logging.getLogger(__name__)

_STORE_FEATURE = "Alert storage"


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking pymongo calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


@dataclass
class ProcessResult:
    """
    Outcome of handling one observation.

    Persistence (persisted, alert, error) and notification (deliveries) are reported
    separately; one failing never hides the other.
    """

    alert_type: str
    service: str
    persisted: bool = False
    alert: Optional[AlertOut] = None
    deliveries: List[DeliveryResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def notified(self) -> bool:
        return any(d.ok for d in self.deliveries)


class AlertLifecycleEngine:
    """
    Turns service observations and error summaries into stored alerts and notifications.

    Works without a store: transitions are still detected and notified, while
    store-dependent operations raise FeatureNotEnabledError.
    """

    def __init__(
        self,
        config: EngineConfig,
        store: Optional[AlertStore],
        dispatcher: NotificationDispatcher,
        tracker: Optional[ServiceStateTracker] = None,
        detector: Optional[ThresholdDetector] = None,
    ) -> None:
        self._config = config
        self._store = store
        self._dispatcher = dispatcher
        self._tracker = tracker or ServiceStateTracker()
        self._detector = detector or ThresholdDetector(
            error_rate_threshold=config.error_rate_threshold,
            volume_threshold=config.volume_threshold,
            cooldown_seconds=config.error_alert_cooldown_sec,
            critical_error_rate_percent=config.critical_error_rate_percent,
        )
        # When each service was last seen going down, for recovery downtime.
        self._down_since: Dict[str, datetime] = {}

    @property
    def store(self) -> Optional[AlertStore]:
        return self._store

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    @property
    def tracker(self) -> ServiceStateTracker:
        return self._tracker

    @property
    def detector(self) -> ThresholdDetector:
        return self._detector

    @property
    def store_enabled(self) -> bool:
        return self._store is not None

    def _require_store(self) -> AlertStore:
        if self._store is None:
            raise FeatureNotEnabledError(_STORE_FEATURE)
        return self._store

    async def _persist_service_alert(self, result: ProcessResult, status: ServiceStatus) -> None:
        if self._store is None:
            return
        try:
            result.alert = await _run_in_thread(self._store.create_service_alert, status, result.alert_type)
            result.persisted = True
        except PyMongoError as exc:
            logger.exception("Failed to persist %s alert for %s", result.alert_type, status.name)
            result.error = str(exc)

    async def _handle_service_alert(self, status: ServiceStatus, alert_type: str) -> ProcessResult:
        result = ProcessResult(alert_type=alert_type, service=status.name)
        await self._persist_service_alert(result, status)

        observed_at = as_utc(status.observed_at) or utc_now()
        if alert_type == SERVICE_DOWN:
            self._down_since.setdefault(status.name, observed_at)
            msg = format_service_down(status)
        else:
            since = self._down_since.pop(status.name, None)
            downtime = max(0.0, (observed_at - since).total_seconds()) if since else None
            msg = format_service_recovery(status, downtime)

        alert_id = result.alert.alert_id if result.alert else None
        result.deliveries = await self._dispatcher.dispatch(alert_id, msg)
        return result

    async def _close_stale_outage(self, status: ServiceStatus) -> None:
        # A down alert left firing by a previous process would otherwise absorb the next outage.
        if self._store is None:
            return
        observed_at = as_utc(status.observed_at) or utc_now()
        try:
            closed = await _run_in_thread(
                self._store.resolve_by_fingerprint, fingerprint(status.name, SERVICE_DOWN), observed_at
            )
        except PyMongoError:
            logger.exception("Failed to close stale down alerts for %s", status.name)
            return
        if closed:
            logger.info("Closed %s stale down alert(s) for %s seen up on first check", closed, status.name)

    async def _handle_threshold_alert(
        self,
        summary: ErrorSummary,
        severity: Severity,
        threshold_percent: float,
    ) -> ProcessResult:
        result = ProcessResult(alert_type=HIGH_ERROR_RATE, service="system")
        if self._store is not None:
            try:
                result.alert = await _run_in_thread(
                    self._store.create_threshold_alert, summary, severity, threshold_percent
                )
                result.persisted = True
            except PyMongoError as exc:
                logger.exception("Failed to persist error rate alert")
                result.error = str(exc)

        alert_id = result.alert.alert_id if result.alert else None
        result.deliveries = await self._dispatcher.dispatch(alert_id, format_error_rate(summary, severity))
        return result

    # PUBLIC_INTERFACE
    async def process_service_status(self, status: ServiceStatus) -> Optional[ProcessResult]:
        """
        Feed one probe observation through the state tracker.

        Returns None when nothing changed; otherwise the result of persisting and notifying
        a service_down or service_recovery alert. A first observation of 'up' raises nothing
        but closes any down alert an earlier process left firing for the service.
        """
        previous = self._tracker.state_of(status.name)
        event = self._tracker.observe(status)
        if event is None:
            if previous is None and status.status == "up":
                await self._close_stale_outage(status)
            return None
        alert_type = SERVICE_DOWN if event.is_down else SERVICE_RECOVERY
        return await self._handle_service_alert(status, alert_type)

    # PUBLIC_INTERFACE
    async def process_error_summary(self, summary: ErrorSummary) -> Optional[ProcessResult]:
        """Evaluate an error summary; fires at most once per cooldown window."""
        decision = self._detector.evaluate(summary)
        if decision is None:
            return None
        return await self._handle_threshold_alert(decision.summary, decision.severity, decision.threshold_percent)

    # PUBLIC_INTERFACE
    async def acknowledge(self, alert_id: str, acknowledged_by: str, reason: Optional[str] = None) -> bool:
        """Acknowledge an alert and announce it. Returns False when the alert does not exist."""
        store = self._require_store()
        ok = await _run_in_thread(store.acknowledge, alert_id, acknowledged_by, reason)
        if not ok:
            return False
        logger.info("Alert %s acknowledged by %s", alert_id, acknowledged_by)
        await self._dispatcher.send(format_acknowledgment(alert_id, acknowledged_by, reason))
        return True

    # PUBLIC_INTERFACE
    async def resolve(self, fingerprint: str, resolved_at: Optional[datetime] = None) -> int:
        store = self._require_store()
        return await _run_in_thread(store.resolve_by_fingerprint, fingerprint, resolved_at)

    # PUBLIC_INTERFACE
    async def query(self, filters: AlertQuery) -> Tuple[List[AlertOut], int]:
        store = self._require_store()
        return await _run_in_thread(store.query, filters)

    # PUBLIC_INTERFACE
    async def stats(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> AlertStats:
        store = self._require_store()
        return await _run_in_thread(store.stats, start, end)

    # PUBLIC_INTERFACE
    async def active_alerts(self) -> List[AlertOut]:
        store = self._require_store()
        return await _run_in_thread(store.active_alerts)

    # PUBLIC_INTERFACE
    async def get_alert(self, alert_id: str) -> Optional[AlertOut]:
        store = self._require_store()
        return await _run_in_thread(store.get_alert, alert_id)

    # PUBLIC_INTERFACE
    async def recent_alerts_for_service(self, service: str, limit: int = 10) -> List[AlertOut]:
        store = self._require_store()
        return await _run_in_thread(store.recent_alerts_for_service, service, limit)

    # PUBLIC_INTERFACE
    async def generate_summaries(self, day: Optional[date] = None) -> int:
        """Regenerate daily summaries for a UTC day (default today)."""
        store = self._require_store()
        return await _run_in_thread(summary_aggregator.generate_daily_summaries, store.mongo, day)

    # PUBLIC_INTERFACE
    async def list_summaries(
        self,
        start_day: Optional[date] = None,
        end_day: Optional[date] = None,
        service: Optional[str] = None,
        limit: int = 200,
    ) -> List[AlertSummaryOut]:
        store = self._require_store()
        return await _run_in_thread(summary_aggregator.list_summaries, store.mongo, start_day, end_day, service, limit)

    # PUBLIC_INTERFACE
    async def send_daily_summary(self, day: Optional[date] = None) -> AlertStats:
        """Send statistics for a UTC day (default yesterday) to every channel."""
        store = self._require_store()
        day = day or (utc_now().date() - timedelta(days=1))
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1) - timedelta(microseconds=1)
        stats = await _run_in_thread(store.stats, start, end)
        await self._dispatcher.send(format_daily_summary(day, stats))
        return stats

    # PUBLIC_INTERFACE
    async def send_test_alert(self, kind: str = "service") -> ProcessResult:
        """
        Push a synthetic alert through persistence and notification.

        Bypasses the state tracker and the detector cooldown so live state is untouched.
        """
        if kind == "service":
            status = ServiceStatus(
                name="test-service",
                status="down",
                responseTimeMs=5000,
                error="Test simulation - service down",
            )
            result = await self._handle_service_alert(status, SERVICE_DOWN)
            # The synthetic outage never recovers; keep it out of downtime bookkeeping.
            self._down_since.pop(status.name, None)
        elif kind == "error":
            summary = ErrorSummary(
                totalRequests=150000,
                totalErrors=9000,
                errorRatePercent=6.0,
                windowSeconds=300,
                perService={
                    "test-api": ServiceErrorStats(requests=100000, errors=5000, errorRatePercent=5.0),
                    "test-auth": ServiceErrorStats(requests=30000, errors=2000, errorRatePercent=6.67),
                    "test-payment": ServiceErrorStats(requests=20000, errors=2000, errorRatePercent=10.0),
                },
            )
            result = await self._handle_threshold_alert(
                summary,
                self._detector.severity_for(summary.error_rate_percent),
                self._detector.threshold_percent,
            )
        else:
            raise ValueError(f"unknown test alert kind: {kind}")

        logger.info("Sent test %s alert", kind)
        return result

    async def send_startup_message(self) -> List[DeliveryResult]:
        return await self._dispatcher.send(format_test_message(self._config.environment))

    async def close(self) -> None:
        await self._dispatcher.close()
