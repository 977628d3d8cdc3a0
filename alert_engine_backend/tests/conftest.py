from __future__ import annotations

import dataclasses
from collections.abc import AsyncIterator, Iterator
from typing import List

import httpx
import mongomock
import pytest

from src.alerting.config import EngineConfig, ServiceTarget
from src.alerting.db.mongo import MongoManager
from src.alerting.services.alert_engine import AlertLifecycleEngine
from src.alerting.services.alert_store import AlertStore
from src.alerting.services.notifications import DeliveryResult, NotificationChannel, NotificationDispatcher, NotificationMessage
from src.alerting.services.threshold_detector import ThresholdDetector


def make_config(**overrides) -> EngineConfig:
    """EngineConfig with fast, deterministic test defaults; override any field by name."""
    base = EngineConfig(
        store_enabled=True,
        store_uri="mongodb://localhost:27017/monitoring-alerts",
        store_database="monitoring-alerts",
        retention_days=90,
        health_check_interval_sec=1,
        probe_timeout_sec=0.5,
        monitored_services=(ServiceTarget("redis", "localhost", 6379),),
        error_alerts_enabled=True,
        error_rate_threshold=0.05,
        volume_threshold=100000,
        error_window_sec=300,
        error_alert_cooldown_sec=600,
        error_check_interval_sec=1,
        critical_error_rate_percent=10.0,
        summary_interval_sec=60,
        webhook_enabled=False,
        webhook_url="",
        slack_enabled=False,
        slack_webhook_url="",
        slack_channel="#monitoring",
        slack_critical_channel="#alerts-critical",
        slack_username="MonitorBot",
        notification_timeout_sec=2.0,
        dashboard_url="http://dashboard.test/d/services",
        alerts_url="http://alerts.test/api/alerts",
        environment="test",
        log_level="DEBUG",
    )
    return dataclasses.replace(base, **overrides)


class RecordingChannel(NotificationChannel):
    """In-memory channel that remembers every message it was asked to send."""

    def __init__(self, name: str = "recording", ok: bool = True) -> None:
        self.name = name
        self.ok = ok
        self.sent: List[NotificationMessage] = []
        self.closed = False

    async def send(self, msg: NotificationMessage) -> DeliveryResult:
        self.sent.append(msg)
        return DeliveryResult(channel=self.name, ok=self.ok, target="#test", status_code=200 if self.ok else 500)

    async def close(self) -> None:
        self.closed = True

    def events(self) -> List[str]:
        return [m.event for m in self.sent]


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def mongo() -> Iterator[MongoManager]:
    """MongoManager backed by an in-process mongomock client (fresh per test)."""
    manager = MongoManager(
        "mongodb://localhost:27017/monitoring-alerts",
        client_factory=lambda uri, **kwargs: mongomock.MongoClient(tz_aware=True),
    )
    manager.connect()
    try:
        yield manager
    finally:
        manager.close()


@pytest.fixture
def store(mongo: MongoManager) -> AlertStore:
    return AlertStore(mongo, environment="test")


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel("slack")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(store: AlertStore, channel: RecordingChannel, clock: FakeClock) -> AlertLifecycleEngine:
    config = make_config()
    detector = ThresholdDetector(
        error_rate_threshold=config.error_rate_threshold,
        volume_threshold=config.volume_threshold,
        cooldown_seconds=config.error_alert_cooldown_sec,
        critical_error_rate_percent=config.critical_error_rate_percent,
        clock=clock,
    )
    dispatcher = NotificationDispatcher([channel], store=store)
    return AlertLifecycleEngine(config, store, dispatcher, detector=detector)


@pytest.fixture
def app(mongo: MongoManager, channel: RecordingChannel):
    """
    FastAPI app wired to the mongomock store and the recording channel.

    ASGITransport does not run startup hooks, so no background loops are started.
    """
    from src.alerting.main import create_app

    return create_app(make_config(), mongo=mongo, channels=[channel], probes=[])


@pytest.fixture
async def async_client(app) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client bound to the FastAPI ASGI app."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
