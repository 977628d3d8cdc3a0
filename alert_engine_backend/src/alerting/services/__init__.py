"""Alert lifecycle services (MongoDB-backed store; detection and notification work without it).

Main pieces:
- alert_engine.py (transitions and thresholds -> stored alerts + notifications)
- alert_store.py (alert persistence, queries and statistics)
- monitoring_loops.py (background health, error-rate and summary loops)
"""

# Import side-effects are intentionally avoided here; modules are imported by routers/services as needed.
