"""Notification channels, message formatters and the dispatcher that fans out to them."""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from src.alerting.schemas.alerts import AlertStats, ErrorSummary, NotificationRecord, ServiceStatus
from src.alerting.schemas.common import Severity, utc_now

logger = logging.getLogger(__name__)


# Slack attachment colours keyed by severity.
_SLACK_COLORS: Dict[Severity, str] = {
    Severity.info: "good",
    Severity.warning: "warning",
    Severity.critical: "danger",
}

# Alertmanager payloads need an endsAt; unresolved events get a short horizon.
_DEFAULT_ENDS_AFTER = timedelta(minutes=5)


@dataclass
class NotificationMessage:
    """Channel-neutral rendering of one outbound notification."""

    event: str
    severity: Severity
    title: str
    text: str
    summary: str
    description: str
    service: str = "system"
    # (title, value, short) rows rendered as attachment fields.
    fields: List[Tuple[str, str, bool]] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    icon_emoji: str = ":bell:"
    color: Optional[str] = None
    starts_at: datetime = field(default_factory=utc_now)
    ends_at: Optional[datetime] = None
    include_actions: bool = False


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of a single channel delivery attempt."""

    channel: str
    ok: bool
    target: Optional[str] = None
    status_code: Optional[int] = None
    error: Optional[str] = None

    def to_record(self) -> NotificationRecord:
        return NotificationRecord(
            sent=self.ok,
            sentAt=utc_now(),
            channelTarget=self.target,
            deliveryStatus=str(self.status_code) if self.status_code is not None else (self.error or "unknown"),
        )


class NotificationChannel(abc.ABC):
    """Base class for alert delivery channels."""

    name: str = "channel"

    @abc.abstractmethod
    async def send(self, msg: NotificationMessage) -> DeliveryResult:
        """Send a message. Never raises for transport errors; reports them in the result."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release resources (HTTP clients, etc.)."""


class _HttpChannel(NotificationChannel):
    """Shared httpx plumbing; an injected client is borrowed and never closed here."""

    def __init__(self, timeout_sec: float = 10.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self._timeout = float(timeout_sec)
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    async def _post(self, url: str, payload: Dict[str, Any], target: Optional[str]) -> DeliveryResult:
        try:
            resp = await self._get_client().post(url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("%s delivery error: %s", self.name, type(exc).__name__)
            return DeliveryResult(channel=self.name, ok=False, target=target, error=type(exc).__name__)

        if 200 <= resp.status_code < 300:
            return DeliveryResult(channel=self.name, ok=True, target=target, status_code=resp.status_code)
        logger.warning("%s delivery failed status=%s body=%s", self.name, resp.status_code, resp.text[:200])
        return DeliveryResult(channel=self.name, ok=False, target=target, status_code=resp.status_code)

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


class SlackChannel(_HttpChannel):
    """Delivers notifications via a Slack incoming webhook using attachments."""

    name = "slack"

    def __init__(
        self,
        webhook_url: str,
        channel: str = "#monitoring",
        critical_channel: str = "#alerts-critical",
        username: str = "MonitorBot",
        dashboard_url: str = "",
        alerts_url: str = "",
        timeout_sec: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(timeout_sec=timeout_sec, client=client)
        self._webhook_url = webhook_url
        self._channel = channel
        self._critical_channel = critical_channel
        self._username = username
        self._dashboard_url = dashboard_url
        self._alerts_url = alerts_url

    def target_for(self, msg: NotificationMessage) -> str:
        return self._critical_channel if msg.severity == Severity.critical else self._channel

    def build_payload(self, msg: NotificationMessage) -> Dict[str, Any]:
        attachment: Dict[str, Any] = {
            "color": msg.color or _SLACK_COLORS.get(msg.severity, "warning"),
            "title": msg.title,
            "text": msg.description,
            "fields": [{"title": t, "value": v, "short": short} for t, v, short in msg.fields],
            "footer": "Service Monitor",
            "ts": int(msg.starts_at.timestamp()),
        }
        if msg.include_actions:
            actions = []
            if self._dashboard_url:
                actions.append({"type": "button", "text": "View Dashboard", "url": self._dashboard_url})
            if self._alerts_url:
                actions.append({"type": "button", "text": "Check Alerts", "url": self._alerts_url})
            if actions:
                attachment["actions"] = actions

        return {
            "channel": self.target_for(msg),
            "username": self._username,
            "icon_emoji": msg.icon_emoji,
            "text": msg.text,
            "attachments": [attachment],
        }

    async def send(self, msg: NotificationMessage) -> DeliveryResult:
        return await self._post(self._webhook_url, self.build_payload(msg), self.target_for(msg))


class WebhookChannel(_HttpChannel):
    """Delivers notifications as an Alertmanager-compatible webhook payload."""

    name = "webhook"

    def __init__(self, url: str, timeout_sec: float = 10.0, client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__(timeout_sec=timeout_sec, client=client)
        self._url = url
        # Record only the host; webhook paths often embed tokens.
        self._target = httpx.URL(url).host or "webhook"

    def build_payload(self, msg: NotificationMessage) -> Dict[str, Any]:
        labels = {"alertname": msg.event, "service": msg.service, "severity": msg.severity.value}
        labels.update(msg.labels)
        ends_at = msg.ends_at or (msg.starts_at + _DEFAULT_ENDS_AFTER)
        return {
            "alerts": [
                {
                    "labels": labels,
                    "annotations": {"summary": msg.summary, "description": msg.description},
                    "startsAt": msg.starts_at.isoformat(),
                    "endsAt": ends_at.isoformat(),
                }
            ]
        }

    async def send(self, msg: NotificationMessage) -> DeliveryResult:
        return await self._post(self._url, self.build_payload(msg), self._target)


# ---- Formatters ----


def _fmt_duration(seconds: Optional[float]) -> str:
    if seconds is None:
        return "n/a"
    s = int(round(seconds))
    if s < 60:
        return f"{s}s"
    m, s = divmod(s, 60)
    if m < 60:
        return f"{m}m {s}s"
    h, m = divmod(m, 60)
    return f"{h}h {m}m"


# PUBLIC_INTERFACE
def format_service_down(status: ServiceStatus) -> NotificationMessage:
    error_text = status.error or "Connection failed"
    return NotificationMessage(
        event="service_down",
        severity=Severity.critical,
        service=status.name,
        title=f"{status.name} service is DOWN",
        text=f":red_circle: *{status.name} service is down*",
        summary=f"{status.name} service is down",
        description=f"{status.name} service is not responding. Error: {error_text}",
        fields=[
            ("Service", status.name, True),
            ("Status", "DOWN", True),
            ("Response Time", f"{status.response_time_ms:.0f}ms", True),
            ("Error", error_text, False),
        ],
        labels={"alertname": f"{status.name}_down"},
        icon_emoji=":rotating_light:",
        starts_at=status.observed_at,
        include_actions=True,
    )


# PUBLIC_INTERFACE
def format_service_recovery(status: ServiceStatus, downtime_seconds: Optional[float] = None) -> NotificationMessage:
    return NotificationMessage(
        event="service_recovery",
        severity=Severity.info,
        service=status.name,
        title=f"{status.name} service has RECOVERED",
        text=f":large_green_circle: *{status.name} service is back up*",
        summary=f"{status.name} service is back up",
        description=f"{status.name} service has recovered",
        fields=[
            ("Service", status.name, True),
            ("Status", "UP", True),
            ("Response Time", f"{status.response_time_ms:.0f}ms", True),
            ("Downtime", _fmt_duration(downtime_seconds), True),
        ],
        labels={"alertname": f"{status.name}_down"},
        icon_emoji=":white_check_mark:",
        starts_at=status.observed_at,
        ends_at=status.observed_at,
    )


# PUBLIC_INTERFACE
def format_error_rate(summary: ErrorSummary, severity: Severity) -> NotificationMessage:
    emoji = ":rotating_light:" if severity == Severity.critical else ":warning:"
    breakdown = "\n".join(
        f"*{name}*: {s.errors}/{s.requests} ({s.error_rate_percent:.2f}%)"
        for name, s in sorted(summary.per_service.items())
    )
    return NotificationMessage(
        event="high_error_rate",
        severity=severity,
        title=f"Error Rate Alert - {summary.error_rate_percent:.2f}%",
        text=f"{emoji} *HIGH ERROR RATE DETECTED* {emoji}",
        summary=f"High error rate: {summary.error_rate_percent:.2f}%",
        description="High error rate detected during high traffic period",
        fields=[
            ("Error Rate", f"{summary.error_rate_percent:.2f}%", True),
            ("Total Requests", f"{summary.total_requests:,}", True),
            ("Total Errors", f"{summary.total_errors:,}", True),
            ("Time Window", f"{summary.window_seconds}s", True),
            ("Service Breakdown", breakdown or "n/a", False),
        ],
        labels={"error_rate": f"{summary.error_rate_percent:.2f}"},
        icon_emoji=":rotating_light:",
        include_actions=True,
    )


# PUBLIC_INTERFACE
def format_acknowledgment(alert_id: str, acknowledged_by: str, reason: Optional[str] = None) -> NotificationMessage:
    now = utc_now()
    return NotificationMessage(
        event="alert_acknowledged",
        severity=Severity.info,
        title="Alert Acknowledgment",
        text=":white_check_mark: *Alert Acknowledged*",
        summary=f"Alert {alert_id} acknowledged by {acknowledged_by}",
        description=reason or "No reason provided",
        fields=[
            ("Alert ID", alert_id, True),
            ("Acknowledged By", acknowledged_by, True),
            ("Reason", reason or "No reason provided", False),
            ("Time", now.isoformat(), True),
        ],
        icon_emoji=":white_check_mark:",
        color="good",
        starts_at=now,
        ends_at=now,
    )


# PUBLIC_INTERFACE
def format_daily_summary(day: date, stats: AlertStats) -> NotificationMessage:
    if stats.critical_alerts > 0:
        color = "danger"
    elif stats.warning_alerts > 0:
        color = "warning"
    else:
        color = "good"
    breakdown = "\n".join(f"*{svc}*: {n}" for svc, n in sorted(stats.alerts_by_service.items())) or "No alerts"
    day_str = day.isoformat()
    now = utc_now()
    return NotificationMessage(
        event="daily_summary",
        severity=Severity.info,
        title=f"Alert Summary for {day_str}",
        text=f":bar_chart: *Daily Alert Summary - {day_str}*",
        summary=f"Daily alert summary for {day_str}",
        description=f"{stats.total_alerts} alerts, {stats.unresolved_alerts} still active",
        fields=[
            ("Total Alerts", str(stats.total_alerts), True),
            ("Critical Alerts", str(stats.critical_alerts), True),
            ("Warning Alerts", str(stats.warning_alerts), True),
            ("Resolved Alerts", str(stats.resolved_alerts), True),
            ("Avg Resolution Time", _fmt_duration(stats.avg_resolution_time), True),
            ("Active Alerts", str(stats.unresolved_alerts), True),
            ("Alerts by Service", breakdown, False),
        ],
        icon_emoji=":bar_chart:",
        color=color,
        starts_at=now,
        ends_at=now,
    )


# PUBLIC_INTERFACE
def format_test_message(environment: str = "production") -> NotificationMessage:
    now = utc_now()
    return NotificationMessage(
        event="test_message",
        severity=Severity.info,
        title="Monitoring notifications are configured",
        text=":wave: *Service monitor started*",
        summary="Test notification",
        description=f"Notifications from the {environment} service monitor are working.",
        fields=[("Environment", environment, True), ("Time", now.isoformat(), True)],
        icon_emoji=":wave:",
        starts_at=now,
        ends_at=now,
    )


class NotificationDispatcher:
    """
    Routes messages to every configured channel.

    dispatch() records successful deliveries on the stored alert; send() is for
    messages that have no alert record (tests, acknowledgments, daily summaries).
    Channel failures are logged and reported in the results, never raised.
    """

    def __init__(self, channels: Optional[Sequence[NotificationChannel]] = None, store: Optional[Any] = None) -> None:
        self._channels: List[NotificationChannel] = list(channels or [])
        self._store = store

    @property
    def channels(self) -> List[NotificationChannel]:
        return list(self._channels)

    async def _send_all(self, msg: NotificationMessage) -> List[DeliveryResult]:
        results: List[DeliveryResult] = []
        for ch in self._channels:
            try:
                res = await ch.send(msg)
            except Exception as exc:
                logger.exception("Channel %s raised while sending %s", ch.name, msg.event)
                res = DeliveryResult(channel=ch.name, ok=False, error=type(exc).__name__)
            results.append(res)
        return results

    # PUBLIC_INTERFACE
    async def send(self, msg: NotificationMessage) -> List[DeliveryResult]:
        """Dispatch a message without delivery bookkeeping."""
        results = await self._send_all(msg)
        logger.info("Sent %s notification (%s/%s delivered)", msg.event, sum(r.ok for r in results), len(results))
        return results

    # PUBLIC_INTERFACE
    async def dispatch(self, alert_id: Optional[str], msg: NotificationMessage) -> List[DeliveryResult]:
        """Dispatch for a stored alert and record each successful delivery on it."""
        results = await self._send_all(msg)
        if alert_id and self._store is not None:
            for res in results:
                if not res.ok:
                    continue
                try:
                    await asyncio.to_thread(self._store.record_notification, alert_id, res.channel, res.to_record())
                except Exception:
                    logger.exception("Failed to record %s delivery for alert %s", res.channel, alert_id)
        logger.info(
            "Dispatched %s for alert %s (%s/%s delivered)",
            msg.event,
            alert_id,
            sum(r.ok for r in results),
            len(results),
        )
        return results

    async def close(self) -> None:
        for ch in self._channels:
            try:
                await ch.close()
            except Exception:
                logger.exception("Error closing %s channel", ch.name)
