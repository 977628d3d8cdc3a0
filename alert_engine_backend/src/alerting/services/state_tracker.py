from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from src.alerting.schemas.alerts import ServiceState, ServiceStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionEvent:
    """A change in a service's up/down state relative to the last observation."""

    service: str
    previous: Optional[ServiceState]
    current: ServiceState
    status: ServiceStatus

    @property
    def is_down(self) -> bool:
        return self.current == "down"

    @property
    def is_recovery(self) -> bool:
        return self.current == "up" and self.previous == "down"


class ServiceStateTracker:
    """
    Per-service up/down state machine that emits transitions only.

    Unseen services are treated as implicitly up: a first 'down' observation is a
    transition, a first 'up' only seeds state. State is process-local and is lost on
    restart, so an already-down service alerts again after a restart.
    """

    def __init__(self) -> None:
        self._last_known: Dict[str, ServiceState] = {}

    def observe(self, status: ServiceStatus) -> Optional[TransitionEvent]:
        # Read and write happen in one synchronous call; no await can interleave.
        previous = self._last_known.get(status.name)
        self._last_known[status.name] = status.status

        if previous == status.status:
            return None
        if previous is None and status.status == "up":
            logger.debug("Seeded state for service=%s as up", status.name)
            return None

        logger.info("Service %s transitioned %s -> %s", status.name, previous or "unknown", status.status)
        return TransitionEvent(service=status.name, previous=previous, current=status.status, status=status)

    def state_of(self, service: str) -> Optional[ServiceState]:
        return self._last_known.get(service)

    def snapshot(self) -> Dict[str, ServiceState]:
        return dict(self._last_known)

    def forget(self, service: str) -> None:
        self._last_known.pop(service, None)

    def reset(self) -> None:
        self._last_known.clear()
