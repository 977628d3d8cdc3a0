from __future__ import annotations

import pytest

from conftest import FakeClock
from src.alerting.services.request_metrics import RequestMetricsCollector


def test_summary_aggregates_per_service():
    collector = RequestMetricsCollector(window_seconds=300, clock=FakeClock())
    collector.record_batch("api", 1000, 50)
    collector.record_batch("auth", 500, 0)
    collector.record_request("GET", "/health", 200, service="api")
    collector.record_error("POST", "/login", 503, service="auth")

    summary = collector.error_summary()
    assert summary.total_requests == 1502
    assert summary.total_errors == 51
    assert summary.error_rate_percent == pytest.approx(51 / 1502 * 100)
    assert summary.window_seconds == 300
    assert summary.per_service["api"].requests == 1001
    assert summary.per_service["api"].error_rate_percent == pytest.approx(50 / 1001 * 100)
    assert summary.per_service["auth"].errors == 1


def test_server_errors_count_as_errors():
    collector = RequestMetricsCollector(clock=FakeClock())
    collector.record_request("GET", "/x", 500)
    collector.record_request("GET", "/x", 404)
    summary = collector.error_summary()
    assert (summary.total_requests, summary.total_errors) == (2, 1)


def test_window_drops_old_buckets():
    clock = FakeClock(start=10_000.0)
    collector = RequestMetricsCollector(window_seconds=60, clock=clock)
    collector.record_batch("api", 100, 10)

    clock.advance(30)
    collector.record_batch("api", 100, 0)
    assert collector.total_requests() == 200

    clock.advance(31)
    assert collector.total_requests() == 100
    assert collector.total_requests("api") == 100
    assert collector.total_requests("missing") == 0


def test_empty_window_has_zero_rate():
    summary = RequestMetricsCollector(clock=FakeClock()).error_summary()
    assert summary.total_requests == 0
    assert summary.error_rate_percent == 0.0
    assert summary.per_service == {}


def test_batch_validation_and_reset():
    collector = RequestMetricsCollector(clock=FakeClock())
    with pytest.raises(ValueError):
        collector.record_batch("api", 10, 11)

    collector.record_batch("api", 10, 1)
    collector.reset()
    assert collector.total_requests() == 0


def test_route_stats_track_counts_and_latency():
    collector = RequestMetricsCollector(clock=FakeClock())
    collector.record_request("get", "/api/alerts", 200, 0.010)
    collector.record_request("GET", "/api/alerts", 503, 0.030)
    collector.record_request("POST", "/api/alerts/{alert_id}/acknowledge", 200, 0.005)
    collector.record_error("GET", "/api/alerts", 500, "unhandled_exception")
    collector.record_batch("proxy", 1000, 10)

    stats = collector.route_stats()
    assert [(s.method, s.route) for s in stats] == [
        ("GET", "/api/alerts"),
        ("POST", "/api/alerts/{alert_id}/acknowledge"),
    ]

    alerts = stats[0]
    assert (alerts.service, alerts.requests, alerts.errors) == ("api", 3, 2)
    assert alerts.error_rate_percent == pytest.approx(200 / 3)
    # The unhandled error has no latency and is left out of the mean.
    assert alerts.avg_duration_ms == pytest.approx(20.0)
    assert stats[1].avg_duration_ms == pytest.approx(5.0)


def test_route_stats_expire_with_window_and_reset():
    clock = FakeClock(start=10_000.0)
    collector = RequestMetricsCollector(window_seconds=60, clock=clock)
    collector.record_request("GET", "/old", 200, 0.001)

    clock.advance(30)
    collector.record_request("GET", "/new", 200, 0.001)
    assert {s.route for s in collector.route_stats()} == {"/old", "/new"}

    clock.advance(31)
    assert [s.route for s in collector.route_stats()] == ["/new"]

    collector.reset()
    assert collector.route_stats() == []
