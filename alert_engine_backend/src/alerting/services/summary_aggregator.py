from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING

from src.alerting.db.mongo import MongoManager
from src.alerting.schemas.alerts import AlertSummaryOut
from src.alerting.schemas.common import as_utc, utc_now

logger = logging.getLogger(__name__)


def _day_bounds(day: date) -> Tuple[datetime, datetime]:
    """UTC [midnight, next midnight) for a calendar day."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def _safe_float(v: Any) -> Optional[float]:
    if v is None:
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def _doc_to_summary_out(doc: dict) -> AlertSummaryOut:
    return AlertSummaryOut(
        date=as_utc(doc["date"]),
        service=doc["service"],
        alertType=doc["alertType"],
        severity=doc["severity"],
        totalAlerts=int(doc.get("totalAlerts") or 0),
        resolvedAlerts=int(doc.get("resolvedAlerts") or 0),
        unresolvedAlerts=int(doc.get("unresolvedAlerts") or 0),
        totalDuration=float(doc.get("totalDuration") or 0.0),
        minDuration=_safe_float(doc.get("minDuration")),
        maxDuration=_safe_float(doc.get("maxDuration")),
        avgDuration=_safe_float(doc.get("avgDuration")),
    )


def _build_summary_docs(day_start: datetime, counts: List[dict], durations: List[dict]) -> List[dict]:
    """
    Merge the count and duration aggregations into one doc per (service, alertType, severity).

    Groups without a single resolved duration keep min/max/avg unset and totalDuration 0.
    """
    by_key: Dict[Tuple[str, str, str], dict] = {}
    for d in durations:
        k = d["_id"]
        by_key[(k["service"], k["alertType"], k["severity"])] = d

    docs: List[dict] = []
    for c in counts:
        k = c["_id"]
        key = (k["service"], k["alertType"], k["severity"])
        dur = by_key.get(key) or {}
        docs.append(
            {
                "date": day_start,
                "service": key[0],
                "alertType": key[1],
                "severity": key[2],
                "totalAlerts": int(c.get("total") or 0),
                "resolvedAlerts": int(c.get("resolved") or 0),
                "unresolvedAlerts": int(c.get("unresolved") or 0),
                "totalDuration": float(dur.get("sum") or 0.0),
                "minDuration": _safe_float(dur.get("min")),
                "maxDuration": _safe_float(dur.get("max")),
                "avgDuration": _safe_float(dur.get("avg")),
            }
        )
    return docs


# PUBLIC_INTERFACE
def generate_daily_summaries(mongo: MongoManager, day: Optional[date] = None) -> int:
    """
    Roll up one UTC day of alerts into alert_summaries.

    Upserts per (date, service, alertType, severity), so reruns for the same day overwrite
    rather than duplicate. Returns number of summary docs written.
    """
    day = day or utc_now().date()
    start, end = _day_bounds(day)
    cols = mongo.collections()
    group_key = {"service": "$service", "alertType": "$alertType", "severity": "$severity"}
    in_day = {"timestamp": {"$gte": start, "$lt": end}}

    counts = list(
        cols.alerts.aggregate(
            [
                {"$match": in_day},
                {
                    "$group": {
                        "_id": group_key,
                        "total": {"$sum": 1},
                        "resolved": {"$sum": {"$cond": [{"$eq": ["$status", "resolved"]}, 1, 0]}},
                        "unresolved": {"$sum": {"$cond": [{"$eq": ["$status", "firing"]}, 1, 0]}},
                    }
                },
            ]
        )
    )
    durations = list(
        cols.alerts.aggregate(
            [
                {"$match": {**in_day, "status": "resolved", "durationSeconds": {"$ne": None}}},
                {
                    "$group": {
                        "_id": group_key,
                        "sum": {"$sum": "$durationSeconds"},
                        "min": {"$min": "$durationSeconds"},
                        "max": {"$max": "$durationSeconds"},
                        "avg": {"$avg": "$durationSeconds"},
                    }
                },
            ]
        )
    )

    written = 0
    now = utc_now()
    for doc in _build_summary_docs(start, counts, durations):
        cols.alert_summaries.update_one(
            {"date": doc["date"], "service": doc["service"], "alertType": doc["alertType"], "severity": doc["severity"]},
            {"$set": {**doc, "updatedAt": now}},
            upsert=True,
        )
        written += 1

    logger.info("Generated %s daily alert summaries for %s", written, day.isoformat())
    return written


# PUBLIC_INTERFACE
def list_summaries(
    mongo: MongoManager,
    start_day: Optional[date] = None,
    end_day: Optional[date] = None,
    service: Optional[str] = None,
    limit: int = 200,
) -> List[AlertSummaryOut]:
    """List daily summaries, newest day first; start_day/end_day are inclusive."""
    q: Dict[str, Any] = {}
    if start_day or end_day:
        rng: Dict[str, Any] = {}
        if start_day:
            rng["$gte"] = _day_bounds(start_day)[0]
        if end_day:
            rng["$lt"] = _day_bounds(end_day)[1]
        q["date"] = rng
    if service:
        q["service"] = service

    docs = (
        mongo.collections()
        .alert_summaries.find(q, projection={"_id": 0})
        .sort([("date", DESCENDING), ("service", ASCENDING), ("alertType", ASCENDING), ("severity", ASCENDING)])
        .limit(max(1, min(1000, int(limit))))
    )
    return [_doc_to_summary_out(d) for d in docs]
