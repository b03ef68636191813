"""
Rollup Reconciliation

Batch recomputation of the two rollups with the semantics of the views they
replace, and comparison against the incrementally maintained state:

- session metrics: distinct events and clicks per closed session, joined with
  the user's dimension
- user summary: paid sessions grouped by user

A clean report proves the maintained rollups are the additive equivalent of
the full recomputation.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List

import polars as pl
import structlog

from engagement_rollups.models import CLICK, PAID, UNKNOWN, SessionRollup, UserRollup

logger = structlog.get_logger(__name__)


SESSION_ROLLUP_SCHEMA = {
    "session_id": pl.Utf8,
    "user_id": pl.Utf8,
    "end_time": pl.Datetime("us", "UTC"),
    "session_duration": pl.Float64,
    "total_events": pl.Int64,
    "click_count": pl.Int64,
    "region": pl.Utf8,
    "account_type": pl.Utf8,
    "closed": pl.Boolean,
}

COMPARED_FIELDS = ["session_count", "sum_session_duration", "sum_total_events", "sum_click_count", "region"]


class ReconciliationStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"


@dataclass
class Mismatch:
    """One field that differs between recomputed and maintained state"""
    user_id: str
    field: str
    expected: Any
    actual: Any


@dataclass
class ReconciliationReport:
    status: ReconciliationStatus
    checked: int
    mismatches: List[Mismatch] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    unexpected: List[str] = field(default_factory=list)
    completed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def passed(self) -> bool:
        return self.status == ReconciliationStatus.PASSED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "checked": self.checked,
            "mismatches": [m.__dict__ for m in self.mismatches],
            "missing": self.missing,
            "unexpected": self.unexpected,
            "completed_at": self.completed_at.isoformat(),
        }


# =============================================================================
# FRAMES
# =============================================================================

def session_frame(rollups: Iterable[SessionRollup]) -> pl.DataFrame:
    """Session rollups as a frame usable by recompute_user_rollups"""
    rows = [
        {
            "session_id": r.session_id,
            "user_id": r.user_id,
            "end_time": r.end_time,
            "session_duration": r.session_duration,
            "total_events": r.total_events,
            "click_count": r.click_count,
            "region": r.region,
            "account_type": r.account_type,
            "closed": r.is_final,
        }
        for r in rollups
    ]
    return pl.DataFrame(rows, schema=SESSION_ROLLUP_SCHEMA)


def recompute_session_rollups(
    events: pl.DataFrame,
    sessions: pl.DataFrame,
    dimensions: pl.DataFrame,
) -> pl.DataFrame:
    """
    Full recomputation of closed-session metrics from raw data.

    Args:
        events: session_id, event_type, dedup_key
        sessions: session_id, user_id, start_time, end_time
        dimensions: user_id, region, account_type

    Returns:
        One row per closed session in SESSION_ROLLUP_SCHEMA layout
    """
    counts = (
        events
        .unique(subset=["session_id", "dedup_key"])
        .group_by("session_id")
        .agg([
            pl.len().cast(pl.Int64).alias("total_events"),
            (pl.col("event_type") == CLICK).sum().cast(pl.Int64).alias("click_count"),
        ])
    )

    return (
        sessions
        .filter(pl.col("end_time").is_not_null())
        .join(counts, on="session_id", how="left")
        .join(dimensions.select(["user_id", "region", "account_type"]), on="user_id", how="left")
        .with_columns([
            pl.col("total_events").fill_null(0),
            pl.col("click_count").fill_null(0),
            pl.col("region").fill_null(UNKNOWN),
            pl.col("account_type").fill_null(UNKNOWN),
            ((pl.col("end_time") - pl.col("start_time")).dt.total_milliseconds() / 1000.0)
            .alias("session_duration"),
            pl.lit(True).alias("closed"),
        ])
        .select(list(SESSION_ROLLUP_SCHEMA))
        .sort("session_id")
    )


def recompute_user_rollups(session_rollups: pl.DataFrame) -> pl.DataFrame:
    """Full recomputation of the paid-user engagement summary"""
    return (
        session_rollups
        .filter(pl.col("closed") & (pl.col("account_type") == PAID))
        .group_by("user_id")
        .agg([
            pl.len().cast(pl.Int64).alias("session_count"),
            pl.col("session_duration").fill_null(0.0).sum().alias("sum_session_duration"),
            pl.col("total_events").sum().alias("sum_total_events"),
            pl.col("click_count").sum().alias("sum_click_count"),
            pl.col("region").sort_by("end_time").last().alias("region"),
        ])
        .with_columns(
            (pl.col("sum_session_duration") / pl.col("session_count")).alias("avg_session_duration")
        )
        .sort("user_id")
    )


# =============================================================================
# COMPARISON
# =============================================================================

def reconcile(
    expected: pl.DataFrame,
    maintained: Iterable[UserRollup],
    tolerance: float = 1e-6,
) -> ReconciliationReport:
    """
    Compare recomputed user rollups with maintained ones.

    Args:
        expected: Output of recompute_user_rollups
        maintained: User rollups held by the engine or the store
        tolerance: Absolute tolerance for float sums
    """
    actual = {rollup.user_id: rollup for rollup in maintained}
    mismatches: List[Mismatch] = []
    missing: List[str] = []

    for row in expected.iter_rows(named=True):
        rollup = actual.pop(row["user_id"], None)
        if rollup is None:
            missing.append(row["user_id"])
            continue
        for name in COMPARED_FIELDS:
            if not _equal(row[name], getattr(rollup, name), tolerance):
                mismatches.append(Mismatch(row["user_id"], name, row[name], getattr(rollup, name)))

    unexpected = sorted(user_id for user_id, rollup in actual.items() if rollup.session_count > 0)
    failed = bool(mismatches or missing or unexpected)
    report = ReconciliationReport(
        status=ReconciliationStatus.FAILED if failed else ReconciliationStatus.PASSED,
        checked=expected.height,
        mismatches=mismatches,
        missing=missing,
        unexpected=unexpected,
    )

    log = logger.warning if failed else logger.info
    log(
        "User rollup reconciliation finished",
        status=report.status.value,
        checked=report.checked,
        mismatches=len(mismatches),
        missing=len(missing),
        unexpected=len(unexpected),
    )
    return report


def _equal(expected: Any, actual: Any, tolerance: float) -> bool:
    if isinstance(expected, float) or isinstance(actual, float):
        if expected is None or actual is None:
            return expected is actual
        return abs(float(expected) - float(actual)) <= tolerance
    return expected == actual


def reconcile_sessions(
    session_rollups: Iterable[SessionRollup],
    maintained: Iterable[UserRollup],
    tolerance: float = 1e-6,
) -> ReconciliationReport:
    """Recompute from session rollups and compare in one step"""
    expected = recompute_user_rollups(session_frame(session_rollups))
    return reconcile(expected, maintained, tolerance)
