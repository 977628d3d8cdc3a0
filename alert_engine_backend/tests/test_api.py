from __future__ import annotations

from datetime import datetime, time, timedelta, timezone

import httpx
import pytest

from conftest import RecordingChannel, make_config
from src.alerting.schemas.alerts import ServiceStatus
from src.alerting.schemas.common import Severity, utc_now
from src.alerting.services.alert_store import AlertStore
from src.alerting.services.fingerprint import fingerprint
from src.alerting.state import get_state


def _t0() -> datetime:
    return datetime.combine(utc_now().date() - timedelta(days=1), time(12, 0), tzinfo=timezone.utc)


def _down(name: str, at: datetime) -> ServiceStatus:
    return ServiceStatus(name=name, status="down", responseTimeMs=5000, observedAt=at, error="timeout")


@pytest.mark.anyio
async def test_health(async_client: httpx.AsyncClient):
    resp = await async_client.get("/")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.anyio
async def test_store_health_and_status(async_client: httpx.AsyncClient, app):
    resp = await async_client.get("/api/health/store")
    assert resp.status_code == 200
    body = resp.json()
    assert body["enabled"] is True
    assert body["ok"] is True
    assert body["database"] == "monitoring-alerts"

    resp = await async_client.get("/api/status")
    assert resp.json()["status"] == "ok"

    get_state(app).last_statuses["redis"] = _down("redis", _t0())
    resp = await async_client.get("/api/status")
    body = resp.json()
    assert body["status"] == "degraded"
    assert [s["name"] for s in body["services"]] == ["redis"]


@pytest.mark.anyio
async def test_query_pagination(async_client: httpx.AsyncClient, store: AlertStore):
    start = _t0()
    for i in range(30):
        store.create_custom_alert(
            alert_name=f"custom-{i:02d}",
            service="api",
            severity=Severity.warning,
            timestamp=start + timedelta(minutes=i),
        )

    resp = await async_client.get("/api/alerts", params={"limit": 10, "offset": 20})
    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 30
    assert len(body["items"]) == 10
    assert body["items"][0]["alertName"] == "custom-09"

    resp = await async_client.get("/api/alerts", params={"service": "nobody"})
    assert resp.json() == {"items": [], "total": 0}


@pytest.mark.anyio
async def test_invalid_query_parameters_are_rejected(async_client: httpx.AsyncClient):
    resp = await async_client.get("/api/alerts", params={"limit": 0})
    assert resp.status_code == 422
    resp = await async_client.get("/api/alerts", params={"severity": "catastrophic"})
    assert resp.status_code == 422


@pytest.mark.anyio
async def test_get_and_acknowledge(async_client: httpx.AsyncClient, store: AlertStore, channel: RecordingChannel):
    alert = store.create_service_alert(_down("redis", _t0()), "service_down")

    resp = await async_client.get(f"/api/alerts/{alert.alert_id}")
    assert resp.status_code == 200
    assert resp.json()["fingerprint"] == fingerprint("redis", "service_down")

    resp = await async_client.post(
        f"/api/alerts/{alert.alert_id}/acknowledge",
        json={"acknowledgedBy": "alice", "reason": "investigating"},
    )
    assert resp.status_code == 200
    assert resp.json() == {"alertId": alert.alert_id, "acknowledged": True}
    assert channel.events() == ["alert_acknowledged"]

    stored = (await async_client.get(f"/api/alerts/{alert.alert_id}")).json()
    assert stored["acknowledged"]["isAcknowledged"] is True
    assert stored["acknowledged"]["acknowledgedBy"] == "alice"


@pytest.mark.anyio
async def test_acknowledge_errors(async_client: httpx.AsyncClient):
    resp = await async_client.post("/api/alerts/nope/acknowledge", json={"acknowledgedBy": "alice"})
    assert resp.status_code == 404

    resp = await async_client.post("/api/alerts/nope/acknowledge", json={"acknowledgedBy": "   "})
    assert resp.status_code == 400

    resp = await async_client.get("/api/alerts/nope")
    assert resp.status_code == 404


@pytest.mark.anyio
async def test_resolve_is_idempotent(async_client: httpx.AsyncClient, store: AlertStore):
    store.create_service_alert(_down("redis", _t0()), "service_down")
    fp = fingerprint("redis", "service_down")

    first = await async_client.post("/api/alerts/resolve", json={"fingerprint": fp})
    second = await async_client.post("/api/alerts/resolve", json={"fingerprint": fp})

    assert first.json()["resolved"] == 1
    assert second.json()["resolved"] == 0

    active = await async_client.get("/api/alerts/active")
    assert active.json()["total"] == 0


@pytest.mark.anyio
async def test_stats_and_service_history(async_client: httpx.AsyncClient, store: AlertStore):
    t0 = _t0()
    store.create_service_alert(_down("redis", t0), "service_down")
    store.create_service_alert(
        ServiceStatus(name="redis", status="up", responseTimeMs=2, observedAt=t0 + timedelta(seconds=8)),
        "service_recovery",
    )

    stats = (await async_client.get("/api/alerts/stats")).json()
    assert stats["totalAlerts"] == 2
    assert stats["resolvedAlerts"] == 1
    assert stats["avgResolutionTime"] == pytest.approx(8.0, abs=0.01)
    assert stats["alertsByService"] == {"redis": 2}

    history = (await async_client.get("/api/alerts/service/redis", params={"limit": 1})).json()
    assert history["total"] == 1
    assert history["items"][0]["alertType"] == "service_recovery"


@pytest.mark.anyio
async def test_generate_and_list_summaries(async_client: httpx.AsyncClient, store: AlertStore):
    t0 = _t0()
    store.create_service_alert(_down("redis", t0), "service_down")
    day = t0.date().isoformat()

    resp = await async_client.post("/api/alerts/summaries/generate", json={"date": day})
    assert resp.status_code == 200
    assert resp.json() == {"date": day, "written": 1}

    listing = (await async_client.get("/api/alerts/summaries", params={"start": day, "end": day})).json()
    assert listing["total"] == 1
    row = listing["items"][0]
    assert (row["service"], row["alertType"], row["totalAlerts"]) == ("redis", "service_down", 1)
    assert row["avgDuration"] is None


@pytest.mark.anyio
async def test_send_test_alert(async_client: httpx.AsyncClient, channel: RecordingChannel):
    resp = await async_client.post("/api/alerts/test", json={"kind": "error"})
    body = resp.json()
    assert resp.status_code == 200
    assert body["persisted"] is True
    assert body["alertId"].startswith("high_error_rate_system_")
    assert body["deliveries"] == [{"channel": "slack", "ok": True}]

    resp = await async_client.post("/api/alerts/test", json={"kind": "nonsense"})
    assert resp.status_code == 422


@pytest.mark.anyio
async def test_error_summary_counts_served_requests(async_client: httpx.AsyncClient):
    await async_client.get("/")
    await async_client.get("/")
    await async_client.get("/does-not-exist")

    body = (await async_client.get("/api/error-summary")).json()
    assert body["totalRequests"] == 3
    assert body["totalErrors"] == 0
    assert body["windowSeconds"] == 300


@pytest.mark.anyio
async def test_disabled_store_returns_feature_not_enabled():
    from src.alerting.main import create_app

    app = create_app(make_config(store_enabled=False), channels=[RecordingChannel()], probes=[])
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        for method, url in (
            ("GET", "/api/alerts"),
            ("GET", "/api/alerts/stats"),
            ("GET", "/api/alerts/summaries"),
            ("POST", "/api/alerts/summaries/generate"),
        ):
            resp = await client.request(method, url)
            assert resp.status_code == 400, url
            body = resp.json()
            assert body["code"] == "feature_not_enabled"
            assert body["meta"] == {"feature": "Alert storage"}

        store_health = (await client.get("/api/health/store")).json()
        assert store_health["enabled"] is False

        # Detection and notification keep working without a store.
        resp = await client.post("/api/alerts/test", json={"kind": "service"})
        assert resp.json()["persisted"] is False
        assert resp.json()["alertId"] is None


@pytest.mark.anyio
async def test_route_stats_use_route_templates(async_client: httpx.AsyncClient):
    await async_client.get("/")
    await async_client.get("/")
    await async_client.get("/api/alerts/does-not-exist")

    body = (await async_client.get("/api/error-summary/routes")).json()
    by_route = {(r["method"], r["route"]): r for r in body}

    root = by_route[("GET", "/")]
    assert root["requests"] == 2
    assert root["errors"] == 0
    assert root["avgDurationMs"] is not None
    assert ("GET", "/api/alerts/does-not-exist") not in by_route
    assert by_route[("GET", "/api/alerts/{alert_id}")]["requests"] == 1
