from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from src.alerting.schemas.alerts import ErrorSummary, RouteRequestStats, ServiceErrorStats

logger = logging.getLogger(__name__)

RouteKey = Tuple[str, str, str]


def _rate_percent(errors: int, requests: int) -> float:
    return (float(errors) / float(requests)) * 100.0 if requests > 0 else 0.0


class RequestMetricsCollector:
    """
    Sliding-window request/error counters, bucketed per second and per service.

    An error is also counted as a request. Individually recorded requests are also kept
    per (service, method, route) with their latency. Buckets older than the window are
    dropped lazily on each read or write. Thread-safe; the HTTP middleware and the
    error-rate loop share one instance.
    """

    def __init__(self, window_seconds: int = 300, clock: Callable[[], float] = time.time) -> None:
        self.window_seconds = max(1, int(window_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        # second -> service -> [requests, errors]
        self._buckets: Dict[int, Dict[str, List[int]]] = {}
        # second -> (service, method, route) -> [requests, errors, duration_sum_sec, timed]
        self._route_buckets: Dict[int, Dict[RouteKey, List[float]]] = {}

    def _prune(self, now_sec: int) -> None:
        cutoff = now_sec - self.window_seconds
        for buckets in (self._buckets, self._route_buckets):
            for sec in [s for s in buckets if s <= cutoff]:
                del buckets[sec]

    def _add(
        self,
        service: str,
        requests: int,
        errors: int,
        route: Optional[RouteKey] = None,
        duration_sec: Optional[float] = None,
    ) -> None:
        now_sec = int(self._clock())
        service = service or "unknown"
        with self._lock:
            self._prune(now_sec)
            counts = self._buckets.setdefault(now_sec, {}).setdefault(service, [0, 0])
            counts[0] += int(requests)
            counts[1] += int(errors)
            if route is None:
                return
            per_route = self._route_buckets.setdefault(now_sec, {}).setdefault(route, [0, 0, 0.0, 0])
            per_route[0] += int(requests)
            per_route[1] += int(errors)
            if duration_sec is not None:
                per_route[2] += max(0.0, float(duration_sec))
                per_route[3] += 1

    # PUBLIC_INTERFACE
    def record_request(self, method: str, route: str, status_code: int, duration_sec: float = 0.0, service: str = "api") -> None:
        """Record one completed request; status >= 500 also counts as an error."""
        key = (service or "unknown", method.upper(), route)
        self._add(service, 1, 1 if int(status_code) >= 500 else 0, route=key, duration_sec=duration_sec)

    # PUBLIC_INTERFACE
    def record_error(self, method: str, route: str, status_code: int, error_type: str = "server_error", service: str = "api") -> None:
        """Record a request that failed before a response was produced; it has no latency."""
        self._add(service, 1, 1, route=(service or "unknown", method.upper(), route))
        logger.debug("Error recorded: %s %s - %s - %s", method, route, status_code, error_type)

    # PUBLIC_INTERFACE
    def record_batch(self, service: str, requests: int, errors: int = 0) -> None:
        """Record pre-aggregated traffic, e.g. from an upstream proxy."""
        if requests < 0 or errors < 0 or errors > requests:
            raise ValueError("batch counts must satisfy 0 <= errors <= requests")
        self._add(service, requests, errors)

    # PUBLIC_INTERFACE
    def error_summary(self) -> ErrorSummary:
        now_sec = int(self._clock())
        per_service: Dict[str, List[int]] = {}
        with self._lock:
            self._prune(now_sec)
            for services in self._buckets.values():
                for name, (req, err) in services.items():
                    acc = per_service.setdefault(name, [0, 0])
                    acc[0] += req
                    acc[1] += err

        total_requests = sum(v[0] for v in per_service.values())
        total_errors = sum(v[1] for v in per_service.values())
        return ErrorSummary(
            totalRequests=total_requests,
            totalErrors=total_errors,
            errorRatePercent=_rate_percent(total_errors, total_requests),
            windowSeconds=self.window_seconds,
            perService={
                name: ServiceErrorStats(requests=req, errors=err, errorRatePercent=_rate_percent(err, req))
                for name, (req, err) in per_service.items()
            },
        )

    # PUBLIC_INTERFACE
    def route_stats(self) -> List[RouteRequestStats]:
        """Per-route counts and mean latency over the window, busiest route first."""
        now_sec = int(self._clock())
        per_route: Dict[RouteKey, List[float]] = {}
        with self._lock:
            self._prune(now_sec)
            for routes in self._route_buckets.values():
                for key, values in routes.items():
                    acc = per_route.setdefault(key, [0, 0, 0.0, 0])
                    for i, value in enumerate(values):
                        acc[i] += value

        out: List[RouteRequestStats] = []
        for (service, method, route), (req, err, duration_sum, timed) in per_route.items():
            out.append(
                RouteRequestStats(
                    service=service,
                    method=method,
                    route=route,
                    requests=int(req),
                    errors=int(err),
                    errorRatePercent=_rate_percent(int(err), int(req)),
                    avgDurationMs=(duration_sum / timed) * 1000.0 if timed else None,
                )
            )
        out.sort(key=lambda s: (-s.requests, s.route, s.method))
        return out

    def total_requests(self, service: Optional[str] = None) -> int:
        summary = self.error_summary()
        if service is None:
            return summary.total_requests
        stats = summary.per_service.get(service)
        return stats.requests if stats else 0

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
            self._route_buckets.clear()
        logger.info("Request metrics reset")
