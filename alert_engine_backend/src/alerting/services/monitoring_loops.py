from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Awaitable, Callable, List

from src.alerting.schemas.alerts import ServiceStatus
from src.alerting.schemas.common import utc_now
from src.alerting.services.probes import Probe
from src.alerting.state import AppState

logger = logging.getLogger(__name__)


async def _safe_check(probe: Probe) -> ServiceStatus:
    try:
        return await probe.check()
    except Exception as exc:
        # A probe that blows up is indistinguishable from an unreachable service.
        logger.exception("Probe %s raised", getattr(probe, "name", "?"))
        return ServiceStatus(name=getattr(probe, "name", "unknown"), status="down", error=str(exc) or type(exc).__name__)


# PUBLIC_INTERFACE
async def run_health_checks(state: AppState) -> List[ServiceStatus]:
    """Probe every service concurrently and feed each observation to the engine."""
    statuses = await asyncio.gather(*(_safe_check(p) for p in state.probes))
    for status in statuses:
        state.last_statuses[status.name] = status
        try:
            await state.engine.process_service_status(status)
        except Exception:
            logger.exception("Processing status for %s failed", status.name)
    return list(statuses)


async def _error_rate_tick(state: AppState) -> None:
    summary = state.collector.error_summary()
    result = await state.engine.process_error_summary(summary)
    if result is not None and result.error:
        logger.warning("Error rate alert notified but not stored: %s", result.error)


async def _summary_tick(state: AppState, last_day: date) -> date:
    today = utc_now().date()
    for day in (today - timedelta(days=1), today):
        await state.engine.generate_summaries(day)

    if today != last_day:
        await state.engine.send_daily_summary(last_day)
    return today


async def _periodic(
    name: str,
    interval_sec: float,
    shutdown_event: asyncio.Event,
    tick: Callable[[], Awaitable[None]],
) -> None:
    interval = max(1.0, float(interval_sec))
    logger.info("%s loop started (interval=%ss)", name, interval)

    while not shutdown_event.is_set():
        tick_started = datetime.now(timezone.utc)
        try:
            await tick()
        except Exception:
            logger.exception("%s tick failed", name)

        elapsed = (datetime.now(timezone.utc) - tick_started).total_seconds()
        sleep_for = max(0.5, interval - elapsed)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=sleep_for)
        except asyncio.TimeoutError:
            pass

    logger.info("%s loop stopped", name)


# PUBLIC_INTERFACE
async def health_check_loop(state: AppState, shutdown_event: asyncio.Event) -> None:
    """Background loop probing monitored services every HEALTH_CHECK_INTERVAL_SEC."""

    async def tick() -> None:
        await run_health_checks(state)

    await _periodic("Health check", state.config.health_check_interval_sec, shutdown_event, tick)


# PUBLIC_INTERFACE
async def error_rate_loop(state: AppState, shutdown_event: asyncio.Event) -> None:
    """Background loop evaluating the request error rate every ERROR_CHECK_INTERVAL_SEC."""
    if not state.config.error_alerts_enabled:
        logger.info("Error rate alerts disabled; loop not started")
        return

    async def tick() -> None:
        await _error_rate_tick(state)

    await _periodic("Error rate", state.config.error_check_interval_sec, shutdown_event, tick)


# PUBLIC_INTERFACE
async def summary_loop(state: AppState, shutdown_event: asyncio.Event) -> None:
    """
    Background loop regenerating daily summaries for yesterday and today.

    Upserts make every tick idempotent. When the UTC day rolls over while running, the
    finished day's statistics are also sent as a notification.
    """
    if not state.engine.store_enabled:
        logger.info("Alert store disabled; summary loop not started")
        return

    last_day = utc_now().date()

    async def tick() -> None:
        nonlocal last_day
        last_day = await _summary_tick(state, last_day)

    await _periodic("Summary", state.config.summary_interval_sec, shutdown_event, tick)
