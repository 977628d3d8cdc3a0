from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.alerting.config import EngineConfig, load_config
from src.alerting.db.mongo import MongoManager
from src.alerting.exceptions import FeatureNotEnabledError
from src.alerting.routers import alerts, health
from src.alerting.schemas.common import ErrorResponse
from src.alerting.services.monitoring_loops import error_rate_loop, health_check_loop, summary_loop
from src.alerting.state import get_state, init_state

openapi_tags = [
    {"name": "Health", "description": "Liveness, store connectivity, service status and request error summary."},
    {"name": "Alerts", "description": "Alert history, statistics, acknowledgment, resolution and daily summaries."},
]

logger = logging.getLogger(__name__)

_LOOPS = {
    "health": health_check_loop,
    "error_rate": error_rate_loop,
    "summary": summary_loop,
}


def _route_label(request: Request) -> str:
    # Matched route template keeps path parameters out of the per-route counters.
    return getattr(request.scope.get("route"), "path", None) or request.url.path


def _env_cors_origins() -> List[str]:
    # Comma-separated list of extra allowed origins.
    raw = os.getenv("CORS_ALLOW_ORIGINS") or ""
    origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
    origins.extend(p.strip() for p in raw.split(",") if p.strip())
    seen = set()
    return [o for o in origins if not (o in seen or seen.add(o))]


# PUBLIC_INTERFACE
def create_app(config: Optional[EngineConfig] = None, mongo: Optional[MongoManager] = None, **state_overrides) -> FastAPI:
    """
    Build the alerting API: routers, middleware, error mapping and lifecycle hooks.

    mongo and state_overrides (channels, probes) let tests inject in-process collaborators.
    """
    config = config or load_config()

    app = FastAPI(
        title="Service Alerting API",
        description=(
            "Alert lifecycle engine for monitored services. Detects up/down transitions and error-rate "
            "breaches, stores alerts in MongoDB, notifies Slack and webhook channels, and serves alert "
            "history, statistics and daily summaries."
        ),
        version="1.0.0",
        openapi_tags=openapi_tags,
    )
    init_state(app, config, mongo=mongo, **state_overrides)

    @app.exception_handler(FeatureNotEnabledError)
    async def _feature_not_enabled(_request: Request, exc: FeatureNotEnabledError) -> JSONResponse:
        body = ErrorResponse(detail=str(exc), code="feature_not_enabled", meta={"feature": exc.feature})
        return JSONResponse(status_code=400, content=body.model_dump())

    @app.middleware("http")
    async def _record_request_metrics(request: Request, call_next):
        collector = get_state(request.app).collector
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            collector.record_error(request.method, _route_label(request), 500, "unhandled_exception")
            raise
        collector.record_request(request.method, _route_label(request), response.status_code, time.perf_counter() - started)
        return response

    @app.on_event("startup")
    async def _on_startup() -> None:
        """Startup hook: connect and validate the store, ensure indexes, and start background loops."""
        state = get_state(app)

        if state.mongo is not None:
            # Connect + verify early so a misconfigured store fails loudly instead of per-alert.
            state.mongo.connect()
            if not state.mongo.ping():
                raise RuntimeError("Alert store connectivity check failed during startup. Verify ALERT_STORE_URI.")
            state.mongo.init_indexes(retention_days=int(state.config.retention_days))

        app.state._shutdown = asyncio.Event()
        for name, loop in _LOOPS.items():
            state.tasks[name] = asyncio.create_task(loop(state, app.state._shutdown))

        if state.config.slack_enabled:
            try:
                await state.engine.send_startup_message()
            except Exception:
                logger.warning("Failed to send startup test message", exc_info=True)

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        """Shutdown hook: stop loops, close notification clients and the Mongo client."""
        state = get_state(app)

        shutdown = getattr(app.state, "_shutdown", None)
        if shutdown is not None:
            shutdown.set()
        for name, task in list(state.tasks.items()):
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except Exception:
                logger.exception("Error stopping %s task", name)
        state.tasks.clear()

        await state.engine.close()
        if state.mongo is not None:
            state.mongo.close()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_env_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(alerts.router)
    return app


def _configure_logging() -> None:
    level = (os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


_configure_logging()

app = create_app()
