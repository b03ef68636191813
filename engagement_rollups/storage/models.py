"""
Persisted Rollup Layout

Two tables hold all durable rollup state:

- rollup_deltas: append-only log, one row per changed rollup per flush
- rollup_snapshots: compacted base state, one row per rollup

Both are keyed by (shard_id, rollup_type, key) and carry the schema version of
their JSON payload so that rollup fields can evolve.
"""

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import JSON, DateTime, Index, Integer, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


class RollupDelta(Base):
    """
    Delta Log

    Each row stores the full state of one rollup at flush time, so replaying
    rows in id order is idempotent.
    """
    __tablename__ = "rollup_deltas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    flush_id: Mapped[str] = mapped_column(String(36), nullable=False)
    shard_id: Mapped[str] = mapped_column(String(32), nullable=False)
    rollup_type: Mapped[str] = mapped_column(String(16), nullable=False)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_rollup_deltas_lookup", "rollup_type", "key", "id"),
        Index("idx_rollup_deltas_shard", "shard_id", "id"),
    )


class RollupSnapshot(Base):
    """Compacted Rollup State"""
    __tablename__ = "rollup_snapshots"

    shard_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    rollup_type: Mapped[str] = mapped_column(String(16), primary_key=True)
    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        Index("idx_rollup_snapshots_lookup", "rollup_type", "key"),
    )
