"""
Session Aggregator

Maintains one rollup per session inside a single-writer shard. Sessions move
through open -> closing -> closed:

- open: events are counted once per dedup_key
- closing: the close record arrived, events are still accepted until the
  grace deadline passes
- closed: the rollup is finalized with the user dimension captured at close
  and handed to the user tier until acknowledged
"""

import heapq
import itertools
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import structlog

from engagement_rollups.config import EngineSettings
from engagement_rollups.dimensions.cache import DimensionCache
from engagement_rollups.errors import DimensionUnresolved
from engagement_rollups.metrics import (
    PENDING_DIMENSION,
    SESSION_EVENTS_APPLIED,
    SESSIONS_FINALIZED,
)
from engagement_rollups.models import (
    UNKNOWN,
    RollupStatus,
    SessionEvent,
    SessionRecord,
    SessionRollup,
    UserDimension,
)

logger = structlog.get_logger(__name__)


# =============================================================================
# SHARD MESSAGES
# =============================================================================

@dataclass(frozen=True)
class OpenSession:
    record: SessionRecord


@dataclass(frozen=True)
class CloseSession:
    record: SessionRecord
    deadline: float


@dataclass(frozen=True)
class CountEvent:
    event: SessionEvent


@dataclass(frozen=True)
class Tick:
    """Timer message; now is the clock value when the tick was enqueued"""
    now: float


@dataclass(frozen=True)
class DimensionResolved:
    dimension: UserDimension
    now: float


@dataclass(frozen=True)
class Acknowledge:
    session_id: str


# =============================================================================
# SESSION STATE
# =============================================================================

@dataclass
class SessionState:
    """Mutable working state of one session; SessionRollup is its read model"""
    session_id: str
    user_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    total_events: int = 0
    click_count: int = 0
    seen_keys: Set[str] = field(default_factory=set)
    provisional: Optional[UserDimension] = None
    region: Optional[str] = None
    account_type: Optional[str] = None
    close_deadline: Optional[float] = None
    status: RollupStatus = RollupStatus.OPEN
    delivered: bool = False

    @property
    def session_duration(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    def to_rollup(self) -> SessionRollup:
        region = self.region
        account_type = self.account_type
        if self.status == RollupStatus.OPEN and self.provisional is not None:
            region = self.provisional.region
            account_type = self.provisional.account_type
        return SessionRollup(
            session_id=self.session_id,
            user_id=self.user_id,
            start_time=self.start_time,
            end_time=self.end_time,
            session_duration=self.session_duration,
            total_events=self.total_events,
            click_count=self.click_count,
            region=region,
            account_type=account_type,
            status=self.status,
        )


@dataclass
class SessionCheckpoint:
    """Persisted form of a session: its rollup plus what recovery needs"""
    rollup: SessionRollup
    seen_keys: List[str] = field(default_factory=list)
    delivered: bool = False


@dataclass
class _Emission:
    rollup: SessionRollup
    last_emitted_at: float


class SessionShard:
    """
    Single-writer owner of the session rollups routed to one shard.

    Every mutating method is called from the shard's worker only; handle()
    returns the finalized rollups that must be delivered to the user tier.

    Example:
        shard = SessionShard(0, dimension_cache, settings.engine)
        shard.handle(OpenSession(record))
        shard.handle(CountEvent(event))
        emitted = shard.handle(Tick(now=time.time()))
    """

    def __init__(
        self,
        shard_id: int,
        dimensions: DimensionCache,
        settings: EngineSettings,
        on_unknown_dimension: Optional[Callable[[str], None]] = None,
    ):
        self.shard_id = shard_id
        self.name = f"session-{shard_id}"
        self.dimensions = dimensions
        self.settings = settings
        self.on_unknown_dimension = on_unknown_dimension

        self._sessions: Dict[str, SessionState] = {}
        self._pending: "OrderedDict[str, float]" = OrderedDict()
        self._outbox: Dict[str, _Emission] = {}
        self._dirty: Set[str] = set()
        self._by_user: Dict[str, Set[str]] = {}
        # (close_deadline, sequence, session_id) of sessions in the closing state
        self._deadlines: List[Tuple[float, int, str]] = []
        self._sequence = itertools.count()

    # -------------------------------------------------------------------------
    # Message dispatch
    # -------------------------------------------------------------------------

    def handle(self, message) -> List[SessionRollup]:
        """Apply one inbox message; returns rollups to emit downstream"""
        if isinstance(message, CountEvent):
            self.count_event(message.event)
            return []
        if isinstance(message, OpenSession):
            self.open_session(message.record)
            return []
        if isinstance(message, CloseSession):
            self.close_session(message.record, message.deadline)
            return []
        if isinstance(message, Tick):
            return self.tick(message.now)
        if isinstance(message, DimensionResolved):
            return self.resolve_dimension(message.dimension, message.now)
        if isinstance(message, Acknowledge):
            self.acknowledge(message.session_id)
            return []
        raise TypeError(f"Unsupported session shard message: {type(message).__name__}")

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def open_session(self, record: SessionRecord) -> SessionState:
        state = self._sessions.get(record.session_id)
        if state is not None:
            return state

        state = SessionState(
            session_id=record.session_id,
            user_id=record.user_id,
            start_time=record.start_time,
        )
        state.provisional = self.dimensions.lookup(record.user_id)
        if state.provisional is None:
            self._request_dimension(record.user_id)

        self._install(state)
        self._dirty.add(record.session_id)
        logger.debug("Session opened", shard=self.name, session_id=record.session_id)
        return state

    def count_event(self, event: SessionEvent) -> bool:
        """Count event once; returns False for repeats and unknown sessions"""
        state = self._sessions.get(event.session_id)
        if state is None:
            logger.warning(
                "Event for session not owned by shard",
                shard=self.name,
                session_id=event.session_id,
            )
            return False
        if state.status == RollupStatus.CLOSED:
            return False
        if event.dedup_key in state.seen_keys:
            return False

        state.seen_keys.add(event.dedup_key)
        state.total_events += 1
        if event.is_click:
            state.click_count += 1
        self._dirty.add(state.session_id)
        SESSION_EVENTS_APPLIED.labels(shard=self.name).inc()
        return True

    def close_session(self, record: SessionRecord, deadline: float) -> None:
        state = self._sessions.get(record.session_id) or self.open_session(record)
        if state.close_deadline is not None or state.status == RollupStatus.CLOSED:
            return
        state.end_time = record.end_time
        state.close_deadline = deadline
        heapq.heappush(self._deadlines, (deadline, next(self._sequence), state.session_id))
        self._dirty.add(state.session_id)
        logger.debug(
            "Session closing",
            shard=self.name,
            session_id=record.session_id,
            deadline=deadline,
        )

    def tick(self, now: float) -> List[SessionRollup]:
        """Finalize sessions past their grace deadline and re-emit unacknowledged ones"""
        emitted: List[SessionRollup] = []

        while self._deadlines and self._deadlines[0][0] <= now:
            _, _, session_id = heapq.heappop(self._deadlines)
            state = self._sessions.get(session_id)
            if state is None or state.status != RollupStatus.OPEN or session_id in self._pending:
                continue
            emitted.extend(self._finalize_with_lookup(state, now))

        wait = self.settings.dimension_wait_seconds
        expired = [sid for sid, since in self._pending.items() if since + wait <= now]
        for session_id in expired:
            emitted.append(self._finalize_unknown(session_id, now))

        fresh = {r.session_id for r in emitted}
        for session_id, emission in self._outbox.items():
            if session_id in fresh:
                continue
            if emission.last_emitted_at + self.settings.emit_retry_seconds <= now:
                emission.last_emitted_at = now
                emitted.append(emission.rollup)
                logger.info("Re-emitting unacknowledged session rollup", shard=self.name, session_id=session_id)

        return emitted

    def resolve_dimension(self, dimension: UserDimension, now: float) -> List[SessionRollup]:
        """Finalize sessions of this user that were waiting for a dimension"""
        emitted = []
        for session_id in sorted(self._by_user.get(dimension.user_id, ())):
            state = self._sessions[session_id]
            if session_id in self._pending:
                del self._pending[session_id]
                emitted.append(self._finalize(state, dimension, now))
            elif state.status == RollupStatus.OPEN:
                state.provisional = dimension
        if emitted:
            PENDING_DIMENSION.labels(shard=self.name).set(len(self._pending))
        return emitted

    def acknowledge(self, session_id: str) -> None:
        """The user tier has durably applied (or filtered) the rollup"""
        self._outbox.pop(session_id, None)
        state = self._sessions.get(session_id)
        if state is not None and not state.delivered:
            state.delivered = True
            self._dirty.add(session_id)

    # -------------------------------------------------------------------------
    # Finalization
    # -------------------------------------------------------------------------

    def _finalize_with_lookup(self, state: SessionState, now: float) -> List[SessionRollup]:
        dimension = self.dimensions.lookup(state.user_id) or state.provisional
        if dimension is not None:
            return [self._finalize(state, dimension, now)]

        if self.settings.dimension_wait_seconds <= 0:
            return [self._finalize(state, None, now)]

        self._pending[state.session_id] = now
        self._request_dimension(state.user_id)
        logger.info(
            "Session waiting for user dimension",
            shard=self.name,
            session_id=state.session_id,
            user_id=state.user_id,
        )

        emitted = []
        while len(self._pending) > self.settings.max_pending_dimension:
            oldest = next(iter(self._pending))
            emitted.append(self._finalize_unknown(oldest, now))
        PENDING_DIMENSION.labels(shard=self.name).set(len(self._pending))
        return emitted

    def _finalize_unknown(self, session_id: str, now: float) -> SessionRollup:
        self._pending.pop(session_id, None)
        PENDING_DIMENSION.labels(shard=self.name).set(len(self._pending))
        state = self._sessions[session_id]
        alarm = DimensionUnresolved(state.user_id, session_id)
        logger.warning(
            "User dimension unresolved, finalizing as unknown",
            shard=self.name,
            session_id=session_id,
            user_id=state.user_id,
            alarm=str(alarm),
        )
        return self._finalize(state, None, now)

    def _finalize(self, state: SessionState, dimension: Optional[UserDimension], now: float) -> SessionRollup:
        if dimension is None:
            state.region = UNKNOWN
            state.account_type = UNKNOWN
        else:
            state.region = dimension.region
            state.account_type = dimension.account_type
        state.status = RollupStatus.CLOSED
        state.seen_keys = set()
        state.provisional = None

        rollup = state.to_rollup()
        self._outbox[state.session_id] = _Emission(rollup=rollup, last_emitted_at=now)
        self._dirty.add(state.session_id)
        SESSIONS_FINALIZED.labels(
            shard=self.name,
            dimension="unknown" if dimension is None else "known",
        ).inc()
        logger.debug(
            "Session finalized",
            shard=self.name,
            session_id=state.session_id,
            total_events=rollup.total_events,
            click_count=rollup.click_count,
        )
        return rollup

    def _install(self, state: SessionState) -> None:
        self._sessions[state.session_id] = state
        self._by_user.setdefault(state.user_id, set()).add(state.session_id)

    def _remove(self, state: SessionState) -> None:
        del self._sessions[state.session_id]
        sessions = self._by_user.get(state.user_id)
        if sessions is not None:
            sessions.discard(state.session_id)
            if not sessions:
                del self._by_user[state.user_id]

    def _request_dimension(self, user_id: str) -> None:
        if self.on_unknown_dimension is not None:
            self.on_unknown_dimension(user_id)

    # -------------------------------------------------------------------------
    # Reads, flush and recovery
    # -------------------------------------------------------------------------

    def get(self, session_id: str) -> Optional[SessionRollup]:
        state = self._sessions.get(session_id)
        return state.to_rollup() if state is not None else None

    def take_dirty(self) -> List[SessionCheckpoint]:
        """Snapshot and clear the changed sessions for a flush"""
        changed = [
            SessionCheckpoint(
                rollup=state.to_rollup(),
                seen_keys=sorted(state.seen_keys),
                delivered=state.delivered,
            )
            for state in (self._sessions.get(sid) for sid in self._dirty)
            if state is not None
        ]
        self._dirty = set()
        return changed

    def mark_dirty(self, session_ids: Iterable[str]) -> None:
        """Re-mark sessions whose flush failed"""
        self._dirty.update(sid for sid in session_ids if sid in self._sessions)

    def evict_flushed(self, session_ids: Iterable[str]) -> int:
        """Drop finalized, delivered, clean sessions that are now durable"""
        evicted = 0
        for session_id in session_ids:
            state = self._sessions.get(session_id)
            if state is None or state.status != RollupStatus.CLOSED or not state.delivered:
                continue
            if session_id in self._outbox or session_id in self._dirty:
                continue
            self._remove(state)
            evicted += 1
        return evicted

    def restore(self, checkpoint: SessionCheckpoint, deadline: Optional[float] = None) -> bool:
        """
        Rehydrate a session from its persisted checkpoint.

        Open sessions resume counting with their seen keys. Finalized sessions
        the user tier never acknowledged go back into the outbox and are
        re-emitted on the next tick.

        Returns:
            True if the session was loaded into memory
        """
        rollup = checkpoint.rollup
        if rollup.is_final and checkpoint.delivered:
            return False

        state = SessionState(
            session_id=rollup.session_id,
            user_id=rollup.user_id,
            start_time=rollup.start_time,
            end_time=rollup.end_time,
            total_events=rollup.total_events,
            click_count=rollup.click_count,
            seen_keys=set(checkpoint.seen_keys),
            close_deadline=deadline,
            status=rollup.status,
        )
        if rollup.is_final:
            state.region = rollup.region
            state.account_type = rollup.account_type
            self._outbox[rollup.session_id] = _Emission(rollup=rollup, last_emitted_at=float("-inf"))
        elif deadline is not None:
            heapq.heappush(self._deadlines, (deadline, next(self._sequence), rollup.session_id))
        self._install(state)
        return True

    @property
    def dirty_count(self) -> int:
        return len(self._dirty)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def outbox_count(self) -> int:
        return len(self._outbox)

    def __len__(self) -> int:
        return len(self._sessions)
