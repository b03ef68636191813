"""
Snapshot & Flush Manager

Moves changed rollup state from the shards into the delta log, folds the
log into snapshots, and rebuilds shard state from storage on start-up.

Flush order per cycle is user shards first, then session shards: a session
shard only learns that the user tier applied its rollup after the user shard
holding that contribution is durable.
"""

import asyncio
import contextlib
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Dict, Optional

import structlog

from engagement_rollups.aggregation.session_aggregator import Acknowledge, SessionCheckpoint, SessionShard
from engagement_rollups.aggregation.user_aggregator import UserShard
from engagement_rollups.config import EngineSettings
from engagement_rollups.errors import FlushFailure, StorageUnavailableError
from engagement_rollups.metrics import (
    COMPACTIONS,
    FLUSH_DURATION,
    FLUSH_FAILURES,
    UNFLUSHED_ROLLUPS,
)
from engagement_rollups.models import RollupType, SessionRecord, SessionRollup, UserRollup
from engagement_rollups.storage.repository import RollupRepository

if TYPE_CHECKING:
    from engagement_rollups.engine import RollupEngine

logger = structlog.get_logger(__name__)


@dataclass
class ShardFlushStatus:
    """Operational state of one shard's flushing"""
    shard: str
    last_flush_at: Optional[datetime] = None
    last_flushed: int = 0
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    slow_flush_alarm: bool = False

    def to_dict(self) -> dict:
        return {
            "shard": self.shard,
            "last_flush_at": self.last_flush_at.isoformat() if self.last_flush_at else None,
            "last_flushed": self.last_flushed,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "slow_flush_alarm": self.slow_flush_alarm,
        }


@dataclass
class RestoreReport:
    sessions_restored: int = 0
    sessions_redelivered: int = 0
    users_restored: int = 0
    ledger_entries: int = 0


def session_payload(checkpoint: SessionCheckpoint) -> dict:
    payload = checkpoint.rollup.model_dump(mode="json")
    payload["seen_keys"] = checkpoint.seen_keys
    payload["delivered"] = checkpoint.delivered
    return payload


def session_checkpoint(payload: dict) -> SessionCheckpoint:
    data = dict(payload)
    seen_keys = data.pop("seen_keys", [])
    delivered = data.pop("delivered", False)
    return SessionCheckpoint(
        rollup=SessionRollup.model_validate(data),
        seen_keys=seen_keys,
        delivered=delivered,
    )


def user_payload(rollup: UserRollup, applied) -> dict:
    return {
        "rollup": rollup.model_dump(mode="json"),
        "applied": [[session_id, applied_at] for session_id, applied_at in applied],
    }


def user_rollup(payload: dict) -> UserRollup:
    return UserRollup.model_validate(payload["rollup"])


class FlushManager:
    """
    Periodic and on-demand persistence of shard state.

    Example:
        manager = FlushManager(engine, repository, settings.engine)
        await manager.restore()
        task = asyncio.create_task(manager.run())
    """

    def __init__(
        self,
        engine: "RollupEngine",
        repository: RollupRepository,
        settings: EngineSettings,
        clock: Callable[[], float] = time.time,
    ):
        self.engine = engine
        self.repository = repository
        self.settings = settings
        self.clock = clock

        self.status: Dict[str, ShardFlushStatus] = {}
        for shard in [*engine.user_shards, *engine.session_shards]:
            self.status[shard.name] = ShardFlushStatus(shard=shard.name)

        self._locks: Dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in self.status}
        self._flush_requested = asyncio.Event()
        self._running = False
        self._last_compaction = clock()

    # -------------------------------------------------------------------------
    # Flushing
    # -------------------------------------------------------------------------

    def request_flush(self) -> None:
        """Ask the background loop for an out-of-cycle flush"""
        self._flush_requested.set()

    async def flush_all(self, raise_on_failure: bool = False) -> Dict[str, int]:
        """
        Flush every shard once, users before sessions.

        Failures are contained per shard; they are logged, counted and
        reflected in the shard status.

        Raises:
            FlushFailure: First shard failure, after every shard was tried,
                when raise_on_failure is set
        """
        written: Dict[str, int] = {}
        failure: Optional[FlushFailure] = None
        for shard in [*self.engine.user_shards, *self.engine.session_shards]:
            try:
                written[shard.name] = await self.flush_shard(shard)
            except FlushFailure as e:
                logger.error("Shard flush abandoned for this cycle", shard=shard.name, error=str(e))
                written[shard.name] = 0
                failure = failure or e
        if failure is not None and raise_on_failure:
            raise failure
        return written

    async def flush_shard(self, shard) -> int:
        """
        Write one shard's changed rollups atomically, retrying with backoff.

        Raises:
            FlushFailure: When every attempt failed; the changes stay dirty
        """
        async with self._locks[shard.name]:
            if isinstance(shard, UserShard):
                return await self._flush_user_shard(shard)
            return await self._flush_session_shard(shard)

    async def _flush_session_shard(self, shard: SessionShard) -> int:
        changes = shard.take_dirty()
        if not changes:
            return 0

        payloads = [(c.rollup.session_id, session_payload(c)) for c in changes]
        try:
            await self._write_with_retry(shard.name, RollupType.SESSION, payloads)
        except FlushFailure:
            shard.mark_dirty(c.rollup.session_id for c in changes)
            raise

        evicted = shard.evict_flushed(c.rollup.session_id for c in changes)
        UNFLUSHED_ROLLUPS.labels(shard=shard.name).set(shard.dirty_count)
        logger.debug("Session shard flushed", shard=shard.name, rollups=len(changes), evicted=evicted)
        return len(changes)

    async def _flush_user_shard(self, shard: UserShard) -> int:
        changes = shard.take_dirty()
        acks = shard.take_pending_acks()

        if changes:
            payloads = [(rollup.user_id, user_payload(rollup, applied)) for rollup, applied in changes]
            try:
                await self._write_with_retry(shard.name, RollupType.USER, payloads)
            except FlushFailure:
                shard.mark_dirty(changes)
                shard.restore_pending_acks(acks)
                raise

        for origin_shard, session_id in acks:
            self.engine.send_to_session_shard(origin_shard, Acknowledge(session_id))

        UNFLUSHED_ROLLUPS.labels(shard=shard.name).set(shard.dirty_count)
        if changes:
            evicted = shard.evict_flushed(rollup.user_id for rollup, _ in changes)
            logger.debug(
                "User shard flushed",
                shard=shard.name,
                rollups=len(changes),
                acks=len(acks),
                evicted=evicted,
            )
        return len(changes)

    async def load_user(self, shard: UserShard, user_id: str) -> bool:
        """
        Bring an evicted user rollup back into its shard.

        Called from the shard's own worker, so nothing else mutates the shard
        while the read is in flight.

        Returns:
            True if a persisted rollup was installed
        """
        payload = await self.repository.latest(RollupType.USER, user_id)
        if payload is None:
            return False
        shard.install(user_rollup(payload))
        return True

    async def _write_with_retry(self, shard_name: str, rollup_type: RollupType, payloads) -> None:
        status = self.status[shard_name]
        delay = self.settings.flush_backoff_seconds
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.settings.flush_max_retries + 1):
            start = time.perf_counter()
            try:
                await self.repository.write_deltas(shard_name, rollup_type, payloads)
            except StorageUnavailableError as e:
                last_error = e
                status.consecutive_failures += 1
                status.last_error = str(e)
                FLUSH_FAILURES.labels(shard=shard_name).inc()
                if attempt < self.settings.flush_max_retries:
                    logger.warning(
                        f"Flush attempt {attempt} failed, retrying in {delay}s",
                        shard=shard_name,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
                    delay *= 2
                continue

            FLUSH_DURATION.labels(shard=shard_name).observe(time.perf_counter() - start)
            status.last_flush_at = datetime.now(timezone.utc)
            status.last_flushed = len(payloads)
            status.consecutive_failures = 0
            status.last_error = None
            status.slow_flush_alarm = False
            return

        raise FlushFailure(shard_name, self.settings.flush_max_retries, last_error)

    async def compact(self) -> int:
        """Fold the delta log into snapshots while no shard is flushing"""
        horizon = self.clock() - self.settings.ledger_ttl_seconds
        async with contextlib.AsyncExitStack() as stack:
            for name in sorted(self._locks):
                await stack.enter_async_context(self._locks[name])
            folded = await self.repository.compact(applied_horizon=horizon)
        self._last_compaction = self.clock()
        if folded:
            COMPACTIONS.inc()
        return folded

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    async def restore(self) -> RestoreReport:
        """
        Rebuild shard and intake state from snapshots plus deltas.

        Safe to run after a crash at any point between a delta write and its
        compaction: replay is keyed by rollup and the applied ledger is
        rebuilt from the same rows.
        """
        report = RestoreReport()
        now = self.clock()

        # User rollups themselves are loaded on demand; only the ledger is rebuilt
        users = await self.repository.load_state(RollupType.USER)
        for user_id, payload in users.items():
            applied = [(a[0], a[1]) for a in payload.get("applied", [])]
            self.engine.user_shard_for(user_id).restore_ledger(user_id, applied)
            report.users_restored += 1
            report.ledger_entries += len(applied)

        sessions = await self.repository.load_state(RollupType.SESSION)
        horizon = now - self.settings.max_session_lifetime_seconds
        for session_id, payload in sessions.items():
            checkpoint = session_checkpoint(payload)
            rollup = checkpoint.rollup

            deadline = None
            if rollup.is_final:
                deadline = now
            elif rollup.end_time is not None:
                deadline = now + self.settings.grace_window_seconds

            if self.engine.session_shard_for(session_id).restore(checkpoint, deadline):
                report.sessions_restored += 1
                if rollup.is_final:
                    report.sessions_redelivered += 1

            if not rollup.is_final or (rollup.end_time and rollup.end_time.timestamp() >= horizon):
                record = SessionRecord(
                    session_id=rollup.session_id,
                    user_id=rollup.user_id,
                    start_time=rollup.start_time,
                    end_time=rollup.end_time,
                )
                self.engine.intake.restore_session(record, deadline, now)

        logger.info(
            "Engine state restored",
            users=report.users_restored,
            sessions=report.sessions_restored,
            redelivered=report.sessions_redelivered,
            ledger_entries=report.ledger_entries,
        )
        return report

    # -------------------------------------------------------------------------
    # Background loop
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Flush on interval or request; compact on its own interval"""
        self._running = True
        logger.info(
            "Flush loop started",
            flush_interval=self.settings.flush_interval_seconds,
            compaction_interval=self.settings.compaction_interval_seconds,
        )
        while self._running:
            try:
                await asyncio.wait_for(self._flush_requested.wait(), timeout=self.settings.flush_interval_seconds)
            except asyncio.TimeoutError:
                pass
            self._flush_requested.clear()

            await self.flush_all()

            if self.clock() - self._last_compaction >= self.settings.compaction_interval_seconds:
                try:
                    await self.compact()
                except StorageUnavailableError as e:
                    logger.error("Compaction failed", error=str(e))

    def stop(self) -> None:
        self._running = False
        self._flush_requested.set()

    def shard_status(self, shard_name: str) -> ShardFlushStatus:
        return self.status[shard_name]
