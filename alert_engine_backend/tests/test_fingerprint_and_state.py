from __future__ import annotations

from datetime import datetime, timezone

from src.alerting.schemas.alerts import ServiceStatus
from src.alerting.services.fingerprint import fingerprint
from src.alerting.services.state_tracker import ServiceStateTracker


def _status(name: str, state: str) -> ServiceStatus:
    return ServiceStatus(name=name, status=state, observedAt=datetime(2026, 1, 1, tzinfo=timezone.utc))


def test_fingerprint_is_stable_and_hex():
    a = fingerprint("redis", "service_down")
    b = fingerprint("redis", "service_down")
    assert a == b
    assert len(a) == 64
    int(a, 16)


def test_fingerprint_ignores_null_fields_and_key_order():
    assert fingerprint("api", "custom", {"route": None}) == fingerprint("api", "custom")
    assert fingerprint("api", "custom", {"a": 1, "b": 2}) == fingerprint("api", "custom", {"b": 2, "a": 1})


def test_fingerprint_distinguishes_service_type_and_fields():
    base = fingerprint("redis", "service_down")
    assert base != fingerprint("postgres", "service_down")
    assert base != fingerprint("redis", "service_recovery")
    assert fingerprint("api", "custom", {"route": "/a"}) != fingerprint("api", "custom", {"route": "/b"})


def test_tracker_first_up_seeds_silently():
    tracker = ServiceStateTracker()
    assert tracker.observe(_status("redis", "up")) is None
    assert tracker.state_of("redis") == "up"


def test_tracker_first_down_is_a_transition():
    tracker = ServiceStateTracker()
    event = tracker.observe(_status("redis", "down"))
    assert event is not None
    assert event.is_down
    assert event.previous is None


def test_tracker_emits_only_on_change():
    tracker = ServiceStateTracker()
    tracker.observe(_status("redis", "up"))

    down = tracker.observe(_status("redis", "down"))
    assert down is not None and down.is_down and down.previous == "up"
    assert tracker.observe(_status("redis", "down")) is None

    up = tracker.observe(_status("redis", "up"))
    assert up is not None and up.is_recovery
    assert tracker.observe(_status("redis", "up")) is None


def test_tracker_flapping_emits_every_transition():
    tracker = ServiceStateTracker()
    events = [tracker.observe(_status("pg", s)) for s in ("up", "down", "up", "down", "up")]
    assert [e.current for e in events if e is not None] == ["down", "up", "down", "up"]


def test_tracker_services_are_independent():
    tracker = ServiceStateTracker()
    tracker.observe(_status("redis", "up"))
    assert tracker.observe(_status("postgres", "down")) is not None
    assert tracker.snapshot() == {"redis": "up", "postgres": "down"}

    tracker.forget("postgres")
    assert tracker.state_of("postgres") is None
    tracker.reset()
    assert tracker.snapshot() == {}
