from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from fastapi import FastAPI

from src.alerting.config import EngineConfig
from src.alerting.db.mongo import MongoManager
from src.alerting.schemas.alerts import ServiceStatus
from src.alerting.services.alert_engine import AlertLifecycleEngine
from src.alerting.services.alert_store import AlertStore
from src.alerting.services.notifications import NotificationChannel, NotificationDispatcher, SlackChannel, WebhookChannel
from src.alerting.services.probes import Probe, build_probes
from src.alerting.services.request_metrics import RequestMetricsCollector


@dataclass
class AppState:
    """Typed app.state container for shared singletons."""

    config: EngineConfig
    engine: AlertLifecycleEngine
    collector: RequestMetricsCollector
    probes: List[Probe]
    mongo: Optional[MongoManager] = None
    last_statuses: Dict[str, ServiceStatus] = field(default_factory=dict)
    tasks: Dict[str, object] = field(default_factory=dict)  # name -> asyncio.Task


def build_channels(config: EngineConfig) -> List[NotificationChannel]:
    channels: List[NotificationChannel] = []
    if config.slack_enabled:
        channels.append(
            SlackChannel(
                config.slack_webhook_url,
                channel=config.slack_channel,
                critical_channel=config.slack_critical_channel,
                username=config.slack_username,
                dashboard_url=config.dashboard_url,
                alerts_url=config.alerts_url,
                timeout_sec=config.notification_timeout_sec,
            )
        )
    if config.webhook_enabled:
        channels.append(WebhookChannel(config.webhook_url, timeout_sec=config.notification_timeout_sec))
    return channels


# PUBLIC_INTERFACE
def init_state(
    app: FastAPI,
    config: EngineConfig,
    mongo: Optional[MongoManager] = None,
    channels: Optional[List[NotificationChannel]] = None,
    probes: Optional[List[Probe]] = None,
) -> AppState:
    """Wire the store, dispatcher, engine and collaborators onto app.state."""
    if config.store_enabled and mongo is None:
        mongo = MongoManager(config.store_uri, database=config.store_database)
    if not config.store_enabled:
        mongo = None

    store = AlertStore(mongo, environment=config.environment) if mongo is not None else None
    dispatcher = NotificationDispatcher(build_channels(config) if channels is None else channels, store=store)

    state = AppState(
        config=config,
        engine=AlertLifecycleEngine(config, store, dispatcher),
        collector=RequestMetricsCollector(window_seconds=config.error_window_sec),
        probes=list(probes) if probes is not None else build_probes(config.monitored_services, config.probe_timeout_sec),
        mongo=mongo,
    )
    app.state.state = state
    return state


# PUBLIC_INTERFACE
def get_state(app: FastAPI) -> AppState:
    """Fetch typed AppState from a FastAPI app."""
    return app.state.state  # type: ignore[attr-defined]
