"""
Data Quality Module
"""
from .reconciliation import (
    ReconciliationReport,
    reconcile,
    reconcile_sessions,
    recompute_session_rollups,
    recompute_user_rollups,
    session_frame,
)

__all__ = [
    "ReconciliationReport",
    "reconcile",
    "reconcile_sessions",
    "recompute_session_rollups",
    "recompute_user_rollups",
    "session_frame",
]
