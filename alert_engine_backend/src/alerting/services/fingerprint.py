from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping, Optional


# PUBLIC_INTERFACE
def fingerprint(service: str, alert_type: str, correlation_fields: Optional[Mapping[str, Any]] = None) -> str:
    """
    Return a stable correlation key for a class of alert.

    The key covers service, alert type and any non-null correlation fields, serialized
    as sorted-key JSON and hashed with SHA-256. Creation time never participates, so a
    resolver can recompute the key of the alert it wants to close.
    """
    payload = {"service": service, "alertType": alert_type}
    for key, value in (correlation_fields or {}).items():
        if value is None or key in payload:
            continue
        payload[key] = value
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
