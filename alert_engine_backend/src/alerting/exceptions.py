from __future__ import annotations


class AlertingError(Exception):
    """Base error for the alert lifecycle engine."""


class FeatureNotEnabledError(AlertingError):
    """Raised when a store-dependent operation is invoked while the feature is disabled."""

    def __init__(self, feature: str):
        self.feature = feature
        super().__init__(f"{feature} is not enabled")
