from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from src.alerting.schemas.alerts import ErrorSummary
from src.alerting.schemas.common import Severity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThresholdDecision:
    """Outcome of a detector firing."""

    summary: ErrorSummary
    severity: Severity
    threshold_percent: float


class ThresholdDetector:
    """
    Decides whether an ErrorSummary should become a high_error_rate alert.

    Fires when the sample is large enough, the error rate is at or above threshold, and
    the process-global cooldown has elapsed. The fire time is recorded as soon as the
    detector fires, whether or not the alert is later persisted.
    """

    def __init__(
        self,
        error_rate_threshold: float = 0.05,
        volume_threshold: int = 100000,
        cooldown_seconds: float = 600.0,
        critical_error_rate_percent: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.error_rate_threshold = float(error_rate_threshold)
        self.volume_threshold = int(volume_threshold)
        self.cooldown_seconds = float(cooldown_seconds)
        self.critical_error_rate_percent = float(critical_error_rate_percent)
        self._clock = clock
        self._last_fire_time: Optional[float] = None

    @property
    def threshold_percent(self) -> float:
        return self.error_rate_threshold * 100.0

    def in_cooldown(self, now: Optional[float] = None) -> bool:
        if self._last_fire_time is None:
            return False
        now = self._clock() if now is None else now
        return (now - self._last_fire_time) < self.cooldown_seconds

    def severity_for(self, error_rate_percent: float) -> Severity:
        if error_rate_percent >= self.critical_error_rate_percent:
            return Severity.critical
        return Severity.warning

    def evaluate(self, summary: ErrorSummary, now: Optional[float] = None) -> Optional[ThresholdDecision]:
        now = self._clock() if now is None else now

        if summary.total_requests < self.volume_threshold:
            return None
        if summary.error_rate_percent < self.threshold_percent:
            return None
        if self.in_cooldown(now):
            logger.debug("Error-rate detector in cooldown; suppressing %.2f%%", summary.error_rate_percent)
            return None

        self._last_fire_time = now
        severity = self.severity_for(summary.error_rate_percent)
        logger.warning(
            "High error rate detected: %.2f%% over %s requests (severity=%s)",
            summary.error_rate_percent,
            summary.total_requests,
            severity.value,
        )
        return ThresholdDecision(summary=summary, severity=severity, threshold_percent=self.threshold_percent)

    def reset(self) -> None:
        self._last_fire_time = None
