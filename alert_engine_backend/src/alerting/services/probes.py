from __future__ import annotations

import asyncio
import logging
import time
from typing import List, Protocol, Sequence

from src.alerting.config import ServiceTarget
from src.alerting.schemas.alerts import ServiceStatus
from src.alerting.schemas.common import utc_now

logger = logging.getLogger(__name__)


class Probe(Protocol):
    """Anything that can report the current state of one service."""

    name: str

    async def check(self) -> ServiceStatus:
        ...


class TcpProbe:
    """Reports a service up when a TCP connection to host:port opens within the timeout."""

    def __init__(self, name: str, host: str, port: int, timeout_sec: float = 5.0) -> None:
        self.name = name
        self.host = host
        self.port = int(port)
        self.timeout_sec = float(timeout_sec)

    async def check(self) -> ServiceStatus:
        started = time.perf_counter()
        observed_at = utc_now()
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(self.host, self.port), timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            return self._down(started, observed_at, f"Connection timed out after {self.timeout_sec:g}s")
        except OSError as exc:
            return self._down(started, observed_at, str(exc) or type(exc).__name__)

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return ServiceStatus(
            name=self.name,
            status="up",
            responseTimeMs=(time.perf_counter() - started) * 1000.0,
            observedAt=observed_at,
        )

    def _down(self, started: float, observed_at, error: str) -> ServiceStatus:
        logger.debug("Probe %s (%s:%s) failed: %s", self.name, self.host, self.port, error)
        return ServiceStatus(
            name=self.name,
            status="down",
            responseTimeMs=(time.perf_counter() - started) * 1000.0,
            observedAt=observed_at,
            error=error,
        )


# PUBLIC_INTERFACE
def build_probes(targets: Sequence[ServiceTarget], timeout_sec: float) -> List[Probe]:
    """Build one TCP probe per configured service target."""
    return [TcpProbe(t.name, t.host, t.port, timeout_sec) for t in targets]
