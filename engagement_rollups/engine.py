"""
Rollup Engine

Wires intake, the dimension cache, the session and user shards and the flush
manager together. Each shard is owned by one worker task draining its own
inbox; shards talk to each other only through those inboxes.
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

import structlog

from engagement_rollups.aggregation.session_aggregator import Acknowledge, DimensionResolved, SessionShard, Tick
from engagement_rollups.aggregation.user_aggregator import (
    ApplyResult,
    DeliverRollup,
    ExpireLedger,
    UserShard,
)
from engagement_rollups.config import EngineSettings
from engagement_rollups.config.logging import bind_shard_context
from engagement_rollups.dimensions.cache import DimensionCache
from engagement_rollups.dimensions.source import DimensionSource
from engagement_rollups.ingestion.intake import EventIntake, IngestRecord, IngestResult, SweepResult
from engagement_rollups.ingestion.routing import ShardRouter
from engagement_rollups.metrics import SHARD_MESSAGE_ERRORS, SLOW_FLUSH_ALARMS
from engagement_rollups.models import SessionRollup, UserDimension
from engagement_rollups.storage.flush import FlushManager, RestoreReport
from engagement_rollups.storage.repository import RollupRepository

logger = structlog.get_logger(__name__)


class RollupEngine:
    """
    Incremental aggregation engine.

    Without a repository the engine runs purely in memory: acknowledgments
    flow back to the session shards as soon as the user tier has applied a
    rollup. With a repository they wait until the user shard is flushed, and
    flushed user rollups are read back from storage before their next apply.

    Example:
        engine = RollupEngine(settings.engine, repository=repo, dimension_source=source)
        await engine.restore()
        await engine.start()
        await engine.ingest({"session_id": "S1", "user_id": "U1", "start_time": "..."})
        await engine.stop()
    """

    def __init__(
        self,
        settings: EngineSettings,
        repository: Optional[RollupRepository] = None,
        dimension_source: Optional[DimensionSource] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.repository = repository
        self.dimension_source = dimension_source
        self.clock = clock

        self.dimensions = DimensionCache()
        self.dimensions.subscribe(self._on_dimension_change)

        self.session_shards = [
            SessionShard(i, self.dimensions, settings, on_unknown_dimension=self._warm_dimension)
            for i in range(settings.session_shards)
        ]
        self.user_shards = [UserShard(i, settings, clock=clock) for i in range(settings.user_shards)]
        self.user_router = ShardRouter(settings.user_shards, settings.virtual_nodes)
        self.intake = EventIntake(settings, dispatch=self.dispatch, clock=clock)

        # Inboxes hold (enqueued_at, message); depth is bounded by ingest back-pressure
        self._session_queues: List[asyncio.Queue] = [asyncio.Queue() for _ in self.session_shards]
        self._user_queues: List[asyncio.Queue] = [asyncio.Queue() for _ in self.user_shards]
        self._lag: Dict[str, float] = {s.name: 0.0 for s in [*self.session_shards, *self.user_shards]}

        self.flush_manager: Optional[FlushManager] = None
        if repository is not None:
            self.flush_manager = FlushManager(self, repository, settings, clock=clock)

        self._tasks: List[asyncio.Task] = []
        self._warming: Set[str] = set()
        self._warm_tasks: Set[asyncio.Task] = set()
        self._running = False

    # -------------------------------------------------------------------------
    # Routing and messaging
    # -------------------------------------------------------------------------

    def session_shard_for(self, session_id: str) -> SessionShard:
        return self.session_shards[self.intake.route(session_id)]

    def user_shard_for(self, user_id: str) -> UserShard:
        return self.user_shards[self.user_router.route(user_id)]

    def dispatch(self, shard_id: int, message: object) -> None:
        """Enqueue a message for a session shard (intake's dispatch target)"""
        self._session_queues[shard_id].put_nowait((self.clock(), message))

    def send_to_session_shard(self, shard_id: int, message: object) -> None:
        self.dispatch(shard_id, message)

    def _deliver(self, origin_shard: int, rollup: SessionRollup) -> None:
        shard_id = self.user_router.route(rollup.user_id)
        self._user_queues[shard_id].put_nowait((self.clock(), DeliverRollup(rollup, origin_shard)))

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    async def ingest(self, record: IngestRecord, now: Optional[float] = None) -> IngestResult:
        """
        Ingest one record, waiting for the owning shard to have room.

        Waiting is bounded by backpressure_timeout_seconds; past it the
        slow-flush alarm is raised and the record is ingested anyway.
        """
        session_id = self._session_id_of(record)
        if session_id is not None:
            await self._wait_writable(self.intake.route(session_id))
        return self.intake.ingest(record, now)

    async def ingest_many(self, records: List[IngestRecord]) -> List[IngestResult]:
        return [await self.ingest(record) for record in records]

    def apply_dimension(self, dimension: UserDimension) -> bool:
        """Apply a dimension change feed notification"""
        return self.dimensions.apply_change(dimension)

    @staticmethod
    def _session_id_of(record: IngestRecord) -> Optional[str]:
        if isinstance(record, Mapping):
            session_id = record.get("session_id")
            return session_id if isinstance(session_id, str) and session_id else None
        return getattr(record, "session_id", None)

    def _congested(self, shard_id: int) -> bool:
        if self._session_queues[shard_id].qsize() >= self.settings.shard_queue_size:
            return True
        return (
            self.flush_manager is not None
            and self.session_shards[shard_id].dirty_count >= self.settings.max_dirty_rollups
        )

    async def _wait_writable(self, shard_id: int) -> None:
        if not self._congested(shard_id):
            return

        if self.flush_manager is not None:
            self.flush_manager.request_flush()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.backpressure_timeout_seconds
        while self._congested(shard_id):
            if loop.time() >= deadline:
                shard = self.session_shards[shard_id]
                SLOW_FLUSH_ALARMS.labels(shard=shard.name).inc()
                if self.flush_manager is not None:
                    self.flush_manager.status[shard.name].slow_flush_alarm = True
                logger.warning(
                    "Ingest back-pressure exceeded, proceeding",
                    shard=shard.name,
                    queue_depth=self._session_queues[shard_id].qsize(),
                    unflushed=shard.dirty_count,
                )
                return
            await asyncio.sleep(0.01)

    # -------------------------------------------------------------------------
    # Timers
    # -------------------------------------------------------------------------

    def tick(self, now: Optional[float] = None) -> SweepResult:
        """Sweep intake and send a timer message to every shard"""
        now = self.clock() if now is None else now
        result = self.intake.sweep(now)
        for queue in self._session_queues:
            queue.put_nowait((now, Tick(now)))
        for queue in self._user_queues:
            queue.put_nowait((now, ExpireLedger(now)))
        return result

    async def _run_ticks(self) -> None:
        while self._running:
            await asyncio.sleep(self.settings.tick_interval_seconds)
            self.tick()

    # -------------------------------------------------------------------------
    # Workers
    # -------------------------------------------------------------------------

    async def _run_session_shard(self, shard: SessionShard) -> None:
        bind_shard_context(shard.name)
        queue = self._session_queues[shard.shard_id]
        while True:
            enqueued_at, message = await queue.get()
            try:
                emitted = shard.handle(message)
                for rollup in emitted:
                    self._deliver(shard.shard_id, rollup)
                self._after_message(shard, queue, enqueued_at)
            except Exception as e:
                SHARD_MESSAGE_ERRORS.labels(shard=shard.name).inc()
                logger.error(
                    "Session shard message failed",
                    shard=shard.name,
                    message_type=type(message).__name__,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                queue.task_done()

    async def _run_user_shard(self, shard: UserShard) -> None:
        bind_shard_context(shard.name)
        queue = self._user_queues[shard.shard_id]
        while True:
            enqueued_at, message = await queue.get()
            try:
                if (
                    isinstance(message, DeliverRollup)
                    and self.flush_manager is not None
                    and shard.needs_load(message.rollup)
                ):
                    await self.flush_manager.load_user(shard, message.rollup.user_id)
                result = shard.handle(message)
                if isinstance(message, DeliverRollup):
                    self._acknowledge(shard, message, result)
                self._after_message(shard, queue, enqueued_at)
            except Exception as e:
                SHARD_MESSAGE_ERRORS.labels(shard=shard.name).inc()
                logger.error(
                    "User shard message failed",
                    shard=shard.name,
                    message_type=type(message).__name__,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                queue.task_done()

    def _acknowledge(self, shard: UserShard, message: DeliverRollup, result: Optional[ApplyResult]) -> None:
        session_id = message.rollup.session_id
        if self.flush_manager is None:
            self.send_to_session_shard(message.origin_shard, Acknowledge(session_id))
        else:
            shard.defer_ack(message.origin_shard, session_id)
        logger.debug("Session rollup offered to user tier", shard=shard.name, session_id=session_id, result=result)

    def _after_message(self, shard, queue: asyncio.Queue, enqueued_at: float) -> None:
        self._lag[shard.name] = 0.0 if queue.empty() else max(0.0, self.clock() - enqueued_at)
        if self.flush_manager is not None and shard.dirty_count >= self.settings.max_dirty_rollups:
            self.flush_manager.request_flush()

    async def drain(self) -> None:
        """Wait until every inbox is empty and every message handled"""
        queues = [*self._session_queues, *self._user_queues]
        while True:
            for queue in queues:
                await queue.join()
            if all(queue.empty() for queue in queues):
                return

    async def checkpoint(self) -> None:
        """
        Make everything ingested so far durable.

        Raises:
            FlushFailure: If a shard could not be flushed
        """
        await self.drain()
        if self.flush_manager is not None:
            await self.flush_manager.flush_all(raise_on_failure=True)

    # -------------------------------------------------------------------------
    # Dimensions
    # -------------------------------------------------------------------------

    def _on_dimension_change(self, dimension: UserDimension) -> None:
        now = self.clock()
        for queue in self._session_queues:
            queue.put_nowait((now, DimensionResolved(dimension, now)))

    def _warm_dimension(self, user_id: str) -> None:
        if self.dimension_source is None or not self._running or user_id in self._warming:
            return
        self._warming.add(user_id)
        task = asyncio.create_task(self._fetch_dimension(user_id))
        self._warm_tasks.add(task)
        task.add_done_callback(self._warm_tasks.discard)

    async def _fetch_dimension(self, user_id: str) -> None:
        try:
            dimension = await self.dimension_source.fetch(user_id)
            if dimension is not None:
                self.apply_dimension(dimension)
            else:
                logger.debug("User dimension not found in source", user_id=user_id)
        except Exception as e:
            logger.warning("User dimension warm-up failed", user_id=user_id, error=str(e))
        finally:
            self._warming.discard(user_id)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def restore(self) -> Optional[RestoreReport]:
        """Rebuild state from storage; a no-op for in-memory engines"""
        if self.flush_manager is None:
            return None
        return await self.flush_manager.restore()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for shard in self.session_shards:
            self._tasks.append(asyncio.create_task(self._run_session_shard(shard), name=shard.name))
        for shard in self.user_shards:
            self._tasks.append(asyncio.create_task(self._run_user_shard(shard), name=shard.name))
        self._tasks.append(asyncio.create_task(self._run_ticks(), name="ticks"))
        if self.flush_manager is not None:
            self._tasks.append(asyncio.create_task(self.flush_manager.run(), name="flush"))
        logger.info(
            "Rollup engine started",
            session_shards=len(self.session_shards),
            user_shards=len(self.user_shards),
            persistent=self.flush_manager is not None,
        )

    async def stop(self, flush: bool = True) -> None:
        """Drain inboxes, flush what is left and stop all tasks"""
        if not self._running:
            return

        if flush:
            await self.drain()
            if self.flush_manager is not None:
                # Second pass persists the delivered flags set by the first pass's acks
                await self.flush_manager.flush_all()
                await self.drain()
                await self.flush_manager.flush_all()

        self._running = False
        if self.flush_manager is not None:
            self.flush_manager.stop()
        for task in [*self._tasks, *self._warm_tasks]:
            task.cancel()
        await asyncio.gather(*self._tasks, *self._warm_tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Rollup engine stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # Operational state
    # -------------------------------------------------------------------------

    def lag_report(self) -> Dict[str, Any]:
        """Per-shard backlog, unflushed state and flush health"""
        shards = []
        for shard, queue in zip(self.session_shards, self._session_queues):
            entry = self._shard_report(shard, queue)
            entry["open_sessions"] = len(shard)
            entry["pending_dimension"] = shard.pending_count
            entry["unacknowledged"] = shard.outbox_count
            shards.append(entry)
        for shard, queue in zip(self.user_shards, self._user_queues):
            entry = self._shard_report(shard, queue)
            entry["user_rollups"] = len(shard)
            entry["pending_acks"] = shard.pending_ack_count
            entry["ledger_overflowed"] = shard.ledger.overflowed
            shards.append(entry)

        return {
            "running": self._running,
            "persistent": self.flush_manager is not None,
            "orphans_buffered": self.intake.orphan_count,
            "tracked_sessions": self.intake.tracked_sessions,
            "cached_dimensions": len(self.dimensions),
            "shards": shards,
        }

    def _shard_report(self, shard, queue: asyncio.Queue) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "shard": shard.name,
            "queue_depth": queue.qsize(),
            "unflushed": shard.dirty_count,
            "ingestion_lag_seconds": round(self._lag[shard.name], 3),
        }
        if self.flush_manager is not None:
            entry.update(self.flush_manager.shard_status(shard.name).to_dict())
        return entry
