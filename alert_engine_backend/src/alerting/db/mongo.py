from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import RLock
from typing import Any, Callable, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


DEFAULT_DB_NAME = "monitoring-alerts"

ClientFactory = Callable[..., Any]


@dataclass(frozen=True)
class MongoCollections:
    """Convenience wrapper for app collections."""

    alerts: Collection
    alert_summaries: Collection


class MongoManager:
    """
    MongoDB connection manager for the alert store.

    Maintains one MongoClient (thread-safe, internally pooled). The client factory is
    injectable so tests can substitute an in-process implementation.
    """

    def __init__(
        self,
        mongo_uri: str,
        database: str = DEFAULT_DB_NAME,
        client_factory: Optional[ClientFactory] = None,
    ):
        self._mongo_uri = mongo_uri
        self._database = database
        self._client_factory: ClientFactory = client_factory or MongoClient
        self._client: Optional[Any] = None
        self._lock = RLock()

    def connect(self) -> None:
        """Initialize the Mongo client if needed."""
        with self._lock:
            if self._client is not None:
                return
            self._client = self._client_factory(
                self._mongo_uri,
                connect=True,
                tz_aware=True,
                maxPoolSize=10,
                serverSelectionTimeoutMS=5000,
                socketTimeoutMS=45000,
            )
            logger.info("Connected Mongo client for alert storage (database=%s)", self._database)

    # PUBLIC_INTERFACE
    def ping(self, timeout_ms: int = 1500) -> bool:
        """
        Ping the configured MongoDB to validate connectivity.

        Independent of the alert schema; used by startup validation and health endpoints.
        """
        try:
            if self._client is None:
                # Ensure client exists before pinging
                self.connect()
            assert self._client is not None
            self._client.admin.command("ping", maxTimeMS=int(max(250, timeout_ms)))
            return True
        except PyMongoError:
            logger.exception("Mongo ping failed (PyMongoError)")
            return False
        except Exception:
            logger.exception("Mongo ping failed (unexpected)")
            return False

    def close(self) -> None:
        """Close the Mongo client."""
        with self._lock:
            if self._client is not None:
                try:
                    self._client.close()
                except Exception:
                    logger.exception("Error closing MongoClient")
                self._client = None
                logger.info("Disconnected alert store Mongo client")

    def db(self) -> Database:
        """Return the alert database handle."""
        if self._client is None:
            self.connect()
        assert self._client is not None
        return self._client[self._database]

    def collections(self) -> MongoCollections:
        """Return app collections."""
        db = self.db()
        return MongoCollections(
            alerts=db["alerts"],
            alert_summaries=db["alert_summaries"],
        )

    def init_indexes(self, *, retention_days: int = 90) -> None:
        """
        Create required indexes (idempotent).

        Retention is delegated to MongoDB's TTL monitor on alerts.timestamp;
        retention_days == 0 disables the TTL index. Cleanup is not immediate.
        """
        cols = self.collections()

        # ---- Alerts ----
        cols.alerts.create_index([("alertId", ASCENDING)], unique=True, name="uniq_alerts_alertId")
        cols.alerts.create_index([("fingerprint", ASCENDING), ("status", ASCENDING)], name="idx_alerts_fingerprint_status")
        cols.alerts.create_index([("service", ASCENDING), ("timestamp", DESCENDING)], name="idx_alerts_service_ts")
        cols.alerts.create_index([("alertType", ASCENDING), ("timestamp", DESCENDING)], name="idx_alerts_type_ts")
        cols.alerts.create_index([("severity", ASCENDING), ("timestamp", DESCENDING)], name="idx_alerts_severity_ts")
        cols.alerts.create_index([("status", ASCENDING), ("timestamp", DESCENDING)], name="idx_alerts_status_ts")
        cols.alerts.create_index(
            [("acknowledged.isAcknowledged", ASCENDING), ("timestamp", DESCENDING)],
            name="idx_alerts_ack_ts",
        )
        cols.alerts.create_index([("environment", ASCENDING), ("timestamp", DESCENDING)], name="idx_alerts_env_ts")
        cols.alerts.create_index(
            [("service", ASCENDING), ("status", ASCENDING), ("timestamp", DESCENDING)],
            name="idx_alerts_service_status_ts",
        )

        # TTL index: on timestamp (Date). Must be single-field index.
        if int(retention_days) > 0:
            cols.alerts.create_index(
                [("timestamp", ASCENDING)],
                name="ttl_alerts_timestamp",
                expireAfterSeconds=int(retention_days) * 24 * 3600,
            )

        # ---- Daily summaries ----
        cols.alert_summaries.create_index(
            [("date", ASCENDING), ("service", ASCENDING), ("alertType", ASCENDING), ("severity", ASCENDING)],
            unique=True,
            name="uniq_summaries_date_service_type_severity",
        )
