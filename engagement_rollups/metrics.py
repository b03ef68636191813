"""
Prometheus Metrics

Process-wide collectors for intake, aggregation and flushing.
"""

from prometheus_client import Counter, Gauge, Histogram


# =============================================================================
# INTAKE
# =============================================================================

INTAKE_RESULTS = Counter(
    "rollups_intake_results_total",
    "Ingested records by outcome",
    ["kind", "status", "reason"],
)

LATE_EVENTS = Counter(
    "rollups_late_events_total",
    "Events rejected because their session was already finalized",
)

ORPHAN_EVENTS = Counter(
    "rollups_orphan_events_total",
    "Events rejected because no session opened within the orphan window",
)

ORPHAN_BUFFERED = Gauge(
    "rollups_orphan_events_buffered",
    "Events parked waiting for their session to open",
)


# =============================================================================
# AGGREGATION
# =============================================================================

SESSION_EVENTS_APPLIED = Counter(
    "rollups_session_events_applied_total",
    "Events counted into a session rollup",
    ["shard"],
)

SESSIONS_FINALIZED = Counter(
    "rollups_sessions_finalized_total",
    "Session rollups finalized",
    ["shard", "dimension"],
)

PENDING_DIMENSION = Gauge(
    "rollups_pending_dimension_sessions",
    "Closed sessions waiting for a user dimension",
    ["shard"],
)

USER_APPLIES = Counter(
    "rollups_user_applies_total",
    "Session rollups offered to the user tier by result",
    ["shard", "result"],
)

DEDUP_LEDGER_OVERFLOW = Counter(
    "rollups_dedup_ledger_overflow_total",
    "Live ledger entries evicted by capacity (idempotence at risk)",
    ["shard"],
)

SHARD_MESSAGE_ERRORS = Counter(
    "rollups_shard_message_errors_total",
    "Shard messages that raised while being handled",
    ["shard"],
)


# =============================================================================
# FLUSH
# =============================================================================

FLUSH_DURATION = Histogram(
    "rollups_flush_seconds",
    "Time spent writing one shard flush",
    ["shard"],
)

FLUSH_FAILURES = Counter(
    "rollups_flush_failures_total",
    "Failed flush attempts",
    ["shard"],
)

UNFLUSHED_ROLLUPS = Gauge(
    "rollups_unflushed_rollups",
    "Changed rollups not yet written to the delta log",
    ["shard"],
)

SLOW_FLUSH_ALARMS = Counter(
    "rollups_slow_flush_alarms_total",
    "Ingest back-pressure exceeded its bound",
    ["shard"],
)

COMPACTIONS = Counter(
    "rollups_compactions_total",
    "Delta compactions completed",
)
