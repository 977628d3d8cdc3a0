from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union
from uuid import uuid4

from pymongo import ASCENDING, DESCENDING

from src.alerting.db.mongo import MongoManager
from src.alerting.schemas.alerts import (
    Acknowledgment,
    AlertMetadata,
    AlertOut,
    AlertQuery,
    AlertStats,
    AlertTrendPoint,
    ErrorSummary,
    NotificationRecord,
    ServiceStatus,
)
from src.alerting.schemas.common import Severity, as_utc, utc_now
from src.alerting.services.fingerprint import fingerprint

logger = logging.getLogger(__name__)


SERVICE_DOWN = "service_down"
SERVICE_RECOVERY = "service_recovery"
HIGH_ERROR_RATE = "high_error_rate"

# The service name recorded on aggregate error-rate alerts.
SYSTEM_SERVICE = "system"


def _new_alert_id(alert_type: str, service: str) -> str:
    return f"{alert_type}_{service}_{uuid4().hex}"


def _metadata_doc(meta: Union[AlertMetadata, Mapping[str, Any], None]) -> Dict[str, Any]:
    if meta is None:
        return {"extra": {}}
    if not isinstance(meta, AlertMetadata):
        meta = AlertMetadata.model_validate(dict(meta))
    return meta.model_dump(by_alias=True, exclude_none=True)


def _doc_to_notification(doc: Mapping[str, Any]) -> NotificationRecord:
    return NotificationRecord(
        sent=bool(doc.get("sent", False)),
        sentAt=as_utc(doc.get("sentAt")),
        channelTarget=doc.get("channelTarget"),
        deliveryStatus=doc.get("deliveryStatus"),
    )


def _doc_to_alert_out(doc: dict) -> AlertOut:
    ack = doc.get("acknowledged") or {}
    return AlertOut(
        alertId=doc["alertId"],
        alertName=doc.get("alertName", doc["alertId"]),
        alertType=doc["alertType"],
        severity=doc.get("severity", Severity.warning.value),
        status=doc.get("status", "firing"),
        service=doc["service"],
        timestamp=as_utc(doc["timestamp"]),
        resolvedAt=as_utc(doc.get("resolvedAt")),
        durationSeconds=doc.get("durationSeconds"),
        fingerprint=doc["fingerprint"],
        metadata=AlertMetadata.model_validate(doc.get("metadata") or {}),
        labels=doc.get("labels") or {},
        annotations=doc.get("annotations") or {},
        tags=list(doc.get("tags") or []),
        environment=doc.get("environment", "production"),
        notifications={k: _doc_to_notification(v or {}) for k, v in (doc.get("notifications") or {}).items()},
        acknowledged=Acknowledgment(
            isAcknowledged=bool(ack.get("isAcknowledged", False)),
            acknowledgedBy=ack.get("acknowledgedBy"),
            acknowledgedAt=as_utc(ack.get("acknowledgedAt")),
            reason=ack.get("reason"),
        ),
    )


def _unique_tags(tags: Iterable[str]) -> List[str]:
    seen = set()
    return [t for t in tags if t and not (t in seen or seen.add(t))]


def _time_range_filter(start: Optional[datetime], end: Optional[datetime]) -> Dict[str, Any]:
    if not start and not end:
        return {}
    ts: Dict[str, Any] = {}
    if start:
        ts["$gte"] = as_utc(start)
    if end:
        ts["$lte"] = as_utc(end)
    return {"timestamp": ts}


def _alerts_query_from_filters(q: AlertQuery) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if q.service:
        query["service"] = q.service
    if q.alert_type:
        query["alertType"] = q.alert_type
    if q.severity:
        query["severity"] = q.severity.value
    if q.status:
        query["status"] = q.status
    if q.environment:
        query["environment"] = q.environment
    if q.acknowledged is not None:
        query["acknowledged.isAcknowledged"] = bool(q.acknowledged)
    if q.tags:
        query["tags"] = {"$in": list(q.tags)}
    query.update(_time_range_filter(q.start, q.end))
    return query


class AlertStore:
    """
    Persists alert records in MongoDB and answers queries over them.

    All methods are blocking pymongo calls; async callers run them in a worker thread.
    Storage errors (PyMongoError) propagate to the caller and are never retried here.
    """

    def __init__(self, mongo: MongoManager, environment: str = "production"):
        self._mongo = mongo
        self._environment = environment

    @property
    def mongo(self) -> MongoManager:
        return self._mongo

    def _alerts(self):
        return self._mongo.collections().alerts

    def _insert(self, doc: dict) -> AlertOut:
        now = utc_now()
        doc.setdefault("createdAt", now)
        doc.setdefault("updatedAt", now)
        self._alerts().insert_one(doc)
        return _doc_to_alert_out(doc)

    def _base_doc(
        self,
        *,
        alert_type: str,
        alert_name: str,
        severity: Severity,
        service: str,
        timestamp: datetime,
        fp: str,
        metadata: Union[AlertMetadata, Mapping[str, Any], None],
        labels: Optional[Mapping[str, str]] = None,
        annotations: Optional[Mapping[str, str]] = None,
        tags: Iterable[str] = (),
    ) -> dict:
        return {
            "alertId": _new_alert_id(alert_type, service),
            "alertName": alert_name,
            "alertType": alert_type,
            "severity": severity.value,
            "status": "firing",
            "service": service,
            "timestamp": as_utc(timestamp),
            "metadata": _metadata_doc(metadata),
            "labels": {str(k): str(v) for k, v in (labels or {}).items()},
            "annotations": {str(k): str(v) for k, v in (annotations or {}).items()},
            "fingerprint": fp,
            "notifications": {},
            "acknowledged": {"isAcknowledged": False},
            "tags": _unique_tags(tags),
            "environment": self._environment,
        }

    def _supersede_recovery_notices(self, service: str, at: datetime) -> int:
        # Notices are closed without durationSeconds: uptime is not a resolution time.
        res = self._alerts().update_many(
            {"fingerprint": fingerprint(service, SERVICE_RECOVERY), "status": "firing"},
            {"$set": {"status": "resolved", "resolvedAt": at, "updatedAt": utc_now()}},
        )
        if res.modified_count:
            logger.debug("Superseded %s recovery notice(s) for %s", res.modified_count, service)
        return int(res.modified_count)

    # PUBLIC_INTERFACE
    def create_service_alert(self, status: ServiceStatus, alert_type: str) -> AlertOut:
        """
        Persist a service_down or service_recovery alert for a transition.

        Recovery first resolves the paired down alert (same service, down fingerprint) and
        only then writes the recovery notice. Down first supersedes any firing recovery
        notice, and returns the already-firing down alert instead of inserting a duplicate.
        The steps are not transactional.
        """
        if alert_type not in (SERVICE_DOWN, SERVICE_RECOVERY):
            raise ValueError(f"unsupported service alert type: {alert_type}")

        service = status.name
        observed_at = as_utc(status.observed_at)
        fp = fingerprint(service, alert_type)
        is_down = alert_type == SERVICE_DOWN

        if is_down:
            self._supersede_recovery_notices(service, observed_at)
            existing = self._alerts().find_one({"fingerprint": fp, "status": "firing"}, sort=[("timestamp", -1)])
            if existing:
                logger.info("Down alert already firing for %s (%s); not duplicating", service, existing["alertId"])
                return _doc_to_alert_out(existing)
        else:
            self.resolve_by_fingerprint(fingerprint(service, SERVICE_DOWN), observed_at)

        severity = Severity.critical if is_down else Severity.info
        error_text = status.error or "Connection failed"
        doc = self._base_doc(
            alert_type=alert_type,
            alert_name=f"{service} Service Down" if is_down else f"{service} Service Recovered",
            severity=severity,
            service=service,
            timestamp=observed_at,
            fp=fp,
            metadata=AlertMetadata(
                responseTimeMs=status.response_time_ms,
                actualValue=status.response_time_ms,
                errorMessage=status.error,
                threshold=0.0 if is_down else None,
            ),
            labels={"service": service, "alertname": alert_type, "severity": severity.value},
            annotations={
                "summary": f"{service} service is down" if is_down else f"{service} service has recovered",
                "description": (
                    f"{service} service is not responding. Error: {error_text}"
                    if is_down
                    else f"{service} service is now responding normally"
                ),
            },
            tags=[service, alert_type],
        )
        alert = self._insert(doc)
        logger.info("Stored %s alert for %s: %s", alert_type, service, alert.alert_id)
        return alert

    # PUBLIC_INTERFACE
    def create_threshold_alert(
        self,
        summary: ErrorSummary,
        severity: Severity,
        threshold_percent: float = 5.0,
    ) -> AlertOut:
        """Persist a one-shot high_error_rate alert; no resolution pairing is attempted."""
        rate = float(summary.error_rate_percent)
        fp = fingerprint(SYSTEM_SERVICE, HIGH_ERROR_RATE, {"threshold": round(rate, 2)})
        doc = self._base_doc(
            alert_type=HIGH_ERROR_RATE,
            alert_name="High Error Rate Detected",
            severity=severity,
            service=SYSTEM_SERVICE,
            timestamp=utc_now(),
            fp=fp,
            metadata=AlertMetadata(
                errorRate=rate,
                requestCount=summary.total_requests,
                actualValue=rate,
                threshold=float(threshold_percent),
                timeWindowSeconds=summary.window_seconds,
                extra={
                    "totalErrors": summary.total_errors,
                    "services": {
                        name: stats.model_dump(by_alias=True) for name, stats in summary.per_service.items()
                    },
                },
            ),
            labels={
                "alertname": HIGH_ERROR_RATE,
                "severity": severity.value,
                "error_rate": f"{rate:.2f}",
                "total_requests": str(summary.total_requests),
            },
            annotations={
                "summary": f"High error rate: {rate:.2f}%",
                "description": (
                    f"Error rate of {rate:.2f}% detected over {summary.total_requests:,} requests "
                    f"in the last {summary.window_seconds}s"
                ),
            },
            tags=["error_rate", "high_traffic"],
        )
        alert = self._insert(doc)
        logger.info("Stored error rate alert: %s (%.2f%%)", alert.alert_id, rate)
        return alert

    # PUBLIC_INTERFACE
    def create_custom_alert(
        self,
        *,
        alert_name: str,
        service: str,
        severity: Severity,
        alert_type: str = "custom",
        metadata: Union[AlertMetadata, Mapping[str, Any], None] = None,
        labels: Optional[Mapping[str, str]] = None,
        annotations: Optional[Mapping[str, str]] = None,
        tags: Iterable[str] = (),
        correlation_fields: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> AlertOut:
        """Persist an alert of type custom or response_time supplied by an integration."""
        if alert_type not in ("custom", "response_time"):
            raise ValueError(f"unsupported custom alert type: {alert_type}")
        doc = self._base_doc(
            alert_type=alert_type,
            alert_name=alert_name,
            severity=severity,
            service=service,
            timestamp=timestamp or utc_now(),
            fp=fingerprint(service, alert_type, correlation_fields),
            metadata=metadata,
            labels=labels,
            annotations=annotations,
            tags=tags,
        )
        alert = self._insert(doc)
        logger.info("Stored custom alert: %s", alert.alert_id)
        return alert

    # PUBLIC_INTERFACE
    def resolve_by_fingerprint(self, fp: str, resolved_at: Optional[datetime] = None) -> int:
        """
        Resolve every firing alert sharing a fingerprint.

        Duration is computed per record and never negative. Each update is guarded on
        status=firing, so repeated calls resolve nothing twice. Returns the number resolved.
        """
        resolved_at = as_utc(resolved_at) or utc_now()
        alerts = self._alerts()
        firing = list(alerts.find({"fingerprint": fp, "status": "firing"}, projection={"_id": 1, "timestamp": 1}))

        resolved = 0
        for doc in firing:
            started = as_utc(doc.get("timestamp")) or resolved_at
            duration = max(0.0, (resolved_at - started).total_seconds())
            res = alerts.update_one(
                {"_id": doc["_id"], "status": "firing"},
                {
                    "$set": {
                        "status": "resolved",
                        "resolvedAt": resolved_at,
                        "durationSeconds": duration,
                        "updatedAt": utc_now(),
                    }
                },
            )
            resolved += int(res.modified_count)

        if resolved:
            logger.info("Resolved %s alerts with fingerprint %s", resolved, fp)
        return resolved

    # PUBLIC_INTERFACE
    def record_notification(
        self,
        alert_id: str,
        channel: str,
        outcome: Union[NotificationRecord, Mapping[str, Any]],
    ) -> bool:
        """
        Record delivery bookkeeping for one channel on an alert.

        Re-recording overwrites the channel entry. A missing alert is logged and reported
        as False; alert creation stays authoritative.
        """
        if not isinstance(outcome, NotificationRecord):
            outcome = NotificationRecord.model_validate(dict(outcome))
        record = outcome.model_dump(by_alias=True)
        record["sentAt"] = as_utc(record.get("sentAt")) or utc_now()

        key = channel.replace(".", "_").replace("$", "_")
        res = self._alerts().update_one(
            {"alertId": alert_id},
            {"$set": {f"notifications.{key}": record, "updatedAt": utc_now()}},
        )
        if res.matched_count == 0:
            logger.warning("Notification recorded for unknown alertId=%s channel=%s", alert_id, key)
            return False
        logger.debug("Updated %s notification status for alert %s", key, alert_id)
        return True

    # PUBLIC_INTERFACE
    def acknowledge(self, alert_id: str, acknowledged_by: str, reason: Optional[str] = None) -> bool:
        """Mark an alert acknowledged. Repeated calls overwrite; no history is kept."""
        now = utc_now()
        res = self._alerts().update_one(
            {"alertId": alert_id},
            {
                "$set": {
                    "acknowledged.isAcknowledged": True,
                    "acknowledged.acknowledgedBy": acknowledged_by,
                    "acknowledged.acknowledgedAt": now,
                    "acknowledged.reason": reason,
                    "updatedAt": now,
                }
            },
        )
        return res.matched_count > 0

    # PUBLIC_INTERFACE
    def get_alert(self, alert_id: str) -> Optional[AlertOut]:
        doc = self._alerts().find_one({"alertId": alert_id})
        return _doc_to_alert_out(doc) if doc else None

    # PUBLIC_INTERFACE
    def query(self, filters: AlertQuery) -> Tuple[List[AlertOut], int]:
        """
        Query alert history with filters, sorting and pagination.

        Returns (items, total_matching); total ignores limit/offset.
        """
        alerts = self._alerts()
        q = _alerts_query_from_filters(filters)
        direction = ASCENDING if filters.sort_order == "asc" else DESCENDING

        total = int(alerts.count_documents(q))
        docs = list(
            alerts.find(q)
            # alertId breaks ties so pages never overlap on equal sort keys.
            .sort([(filters.sort_by, direction), ("alertId", direction)])
            .skip(int(filters.offset))
            .limit(int(filters.limit))
        )
        return ([_doc_to_alert_out(d) for d in docs], total)

    # PUBLIC_INTERFACE
    def stats(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> AlertStats:
        """
        Aggregate statistics over alerts whose timestamp falls in [start, end].

        avgResolutionTime covers resolved alerts with a recorded duration and is None when
        there are none. Superseded recovery notices count as resolved but carry no duration.
        """
        alerts = self._alerts()
        match = _time_range_filter(start, end)

        def _count_if(field: str, value: str) -> Dict[str, Any]:
            return {"$sum": {"$cond": [{"$eq": [f"${field}", value]}, 1, 0]}}

        totals = list(
            alerts.aggregate(
                [
                    {"$match": match},
                    {
                        "$group": {
                            "_id": None,
                            "totalAlerts": {"$sum": 1},
                            "criticalAlerts": _count_if("severity", "critical"),
                            "warningAlerts": _count_if("severity", "warning"),
                            "infoAlerts": _count_if("severity", "info"),
                            "resolvedAlerts": _count_if("status", "resolved"),
                            "unresolvedAlerts": _count_if("status", "firing"),
                        }
                    },
                ]
            )
        )
        resolution = list(
            alerts.aggregate(
                [
                    {"$match": {**match, "status": "resolved", "durationSeconds": {"$ne": None}}},
                    {"$group": {"_id": None, "avg": {"$avg": "$durationSeconds"}, "n": {"$sum": 1}}},
                ]
            )
        )
        by_service = list(alerts.aggregate([{"$match": match}, {"$group": {"_id": "$service", "count": {"$sum": 1}}}]))
        by_type = list(alerts.aggregate([{"$match": match}, {"$group": {"_id": "$alertType", "count": {"$sum": 1}}}]))
        trends = list(
            alerts.aggregate(
                [
                    {"$match": match},
                    {
                        "$group": {
                            "_id": {
                                "year": {"$year": "$timestamp"},
                                "month": {"$month": "$timestamp"},
                                "day": {"$dayOfMonth": "$timestamp"},
                                "severity": "$severity",
                            },
                            "count": {"$sum": 1},
                        }
                    },
                ]
            )
        )

        t = totals[0] if totals else {}
        avg = None
        if resolution and int(resolution[0].get("n") or 0) > 0 and resolution[0].get("avg") is not None:
            avg = float(resolution[0]["avg"])

        trend_points = [
            AlertTrendPoint(
                date=f"{int(item['_id']['year']):04d}-{int(item['_id']['month']):02d}-{int(item['_id']['day']):02d}",
                severity=item["_id"]["severity"],
                count=int(item["count"]),
            )
            for item in trends
        ]
        trend_points.sort(key=lambda p: (p.date, p.severity.value))

        return AlertStats(
            totalAlerts=int(t.get("totalAlerts") or 0),
            criticalAlerts=int(t.get("criticalAlerts") or 0),
            warningAlerts=int(t.get("warningAlerts") or 0),
            infoAlerts=int(t.get("infoAlerts") or 0),
            resolvedAlerts=int(t.get("resolvedAlerts") or 0),
            unresolvedAlerts=int(t.get("unresolvedAlerts") or 0),
            avgResolutionTime=avg,
            alertsByService={str(item["_id"]): int(item["count"]) for item in by_service},
            alertsByType={str(item["_id"]): int(item["count"]) for item in by_type},
            alertTrends=trend_points,
        )

    # PUBLIC_INTERFACE
    def active_alerts(self) -> List[AlertOut]:
        """All firing alerts, newest first."""
        docs = self._alerts().find({"status": "firing"}).sort([("timestamp", DESCENDING), ("alertId", DESCENDING)])
        return [_doc_to_alert_out(d) for d in docs]

    # PUBLIC_INTERFACE
    def recent_alerts_for_service(self, service: str, limit: int = 10) -> List[AlertOut]:
        docs = self._alerts().find({"service": service}).sort("timestamp", DESCENDING).limit(max(1, min(500, int(limit))))
        return [_doc_to_alert_out(d) for d in docs]

    # PUBLIC_INTERFACE
    def health_check(self) -> bool:
        """Liveness of the backing store, independent of the alert schema."""
        return self._mongo.ping()
