from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from pymongo.errors import PyMongoError

from conftest import RecordingChannel, make_config
from src.alerting.schemas.alerts import ServiceStatus
from src.alerting.schemas.common import utc_now
from src.alerting.services import monitoring_loops
from src.alerting.services.monitoring_loops import error_rate_loop, run_health_checks, summary_loop
from src.alerting.state import get_state


class ScriptedProbe:
    """Probe that replays a fixed sequence of states."""

    def __init__(self, name: str, states):
        self.name = name
        self._states = list(states)

    async def check(self) -> ServiceStatus:
        state = self._states.pop(0)
        return ServiceStatus(name=self.name, status=state, error=None if state == "up" else "refused")


class BrokenProbe:
    name = "flaky"

    async def check(self) -> ServiceStatus:
        raise ConnectionResetError("reset by peer")


def _state(mongo, channel, probes, **overrides):
    from src.alerting.main import create_app

    app = create_app(make_config(**overrides), mongo=mongo, channels=[channel], probes=probes)
    return get_state(app)


@pytest.mark.anyio
async def test_health_checks_drive_transitions(mongo):
    channel = RecordingChannel("slack")
    state = _state(mongo, channel, [ScriptedProbe("redis", ["up", "down", "down", "up"])])

    for _ in range(4):
        await run_health_checks(state)

    assert channel.events() == ["service_down", "service_recovery"]
    assert state.last_statuses["redis"].status == "up"
    assert state.engine.tracker.state_of("redis") == "up"


@pytest.mark.anyio
async def test_raising_probe_counts_as_down(mongo):
    channel = RecordingChannel("slack")
    state = _state(mongo, channel, [BrokenProbe()])

    (status,) = await run_health_checks(state)

    assert status.status == "down"
    assert status.error == "reset by peer"
    assert channel.events() == ["service_down"]


@pytest.mark.anyio
async def test_error_rate_tick_uses_collector(mongo):
    channel = RecordingChannel("slack")
    state = _state(mongo, channel, [])
    state.collector.record_batch("api", 150000, 9000)

    await monitoring_loops._error_rate_tick(state)
    await monitoring_loops._error_rate_tick(state)

    assert channel.events() == ["high_error_rate"]


@pytest.mark.anyio
async def test_summary_tick_sends_summary_on_day_rollover(mongo):
    channel = RecordingChannel("slack")
    state = _state(mongo, channel, [])
    today = utc_now().date()

    assert await monitoring_loops._summary_tick(state, today) == today
    assert channel.events() == []

    assert await monitoring_loops._summary_tick(state, today - timedelta(days=1)) == today
    assert channel.events() == ["daily_summary"]


@pytest.mark.anyio
async def test_summary_tick_propagates_send_failures(mongo, monkeypatch):
    state = _state(mongo, RecordingChannel("slack"), [])
    today = utc_now().date()

    async def _fail(day=None):
        raise PyMongoError("store unavailable")

    monkeypatch.setattr(state.engine, "send_daily_summary", _fail)
    with pytest.raises(PyMongoError):
        await monitoring_loops._summary_tick(state, today - timedelta(days=1))


@pytest.mark.anyio
async def test_loops_return_when_feature_disabled():
    channel = RecordingChannel("slack")
    state = _state(None, channel, [], store_enabled=False, error_alerts_enabled=False)
    shutdown = asyncio.Event()

    await asyncio.wait_for(summary_loop(state, shutdown), timeout=1.0)
    await asyncio.wait_for(error_rate_loop(state, shutdown), timeout=1.0)


@pytest.mark.anyio
async def test_loop_stops_on_shutdown(mongo):
    channel = RecordingChannel("slack")
    state = _state(mongo, channel, [ScriptedProbe("redis", ["up"] * 10)])
    shutdown = asyncio.Event()

    task = asyncio.create_task(monitoring_loops.health_check_loop(state, shutdown))
    await asyncio.sleep(0.05)
    shutdown.set()
    await asyncio.wait_for(task, timeout=2.0)

    assert state.last_statuses["redis"].status == "up"
