"""
User Rollup Aggregator

Folds finalized session rollups into per-user summaries. Only sessions whose
user was a paid account at close time qualify. Every update is additive and
idempotent on (user_id, session_id).

With a rollup store behind it, a shard keeps only the rollups that changed
since their last flush. Clean rollups are evicted after a flush and loaded
back before the next session of that user is applied; the applied ledger
stays in memory either way.
"""

import bisect
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

import structlog

from engagement_rollups.aggregation.ledger import DedupLedger
from engagement_rollups.config import EngineSettings
from engagement_rollups.metrics import USER_APPLIES
from engagement_rollups.models import PAID, SessionRollup, UserRollup

logger = structlog.get_logger(__name__)

AppliedSession = Tuple[str, float]


class ApplyResult(str, Enum):
    """Outcome of offering a session rollup to the user tier"""
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    FILTERED = "filtered"


@dataclass(frozen=True)
class DeliverRollup:
    """A finalized session rollup sent by session shard origin_shard"""
    rollup: SessionRollup
    origin_shard: int


@dataclass(frozen=True)
class ExpireLedger:
    now: float


class UserShard:
    """
    Single-writer owner of the user rollups routed to one shard.

    Region follows the applied session with the latest end_time, so the
    result does not depend on delivery order.

    Example:
        shard = UserShard(0, settings.engine)
        shard.apply(session_rollup)
        shard.get("U1").avg_session_duration
    """

    def __init__(
        self,
        shard_id: int,
        settings: EngineSettings,
        clock: Callable[[], float] = time.time,
    ):
        self.shard_id = shard_id
        self.name = f"user-{shard_id}"
        self.settings = settings
        self.clock = clock
        self.ledger = DedupLedger(self.name, settings.ledger_capacity, settings.ledger_ttl_seconds)

        self._rollups: Dict[str, UserRollup] = {}
        # Resident user ids, kept sorted for paging
        self._order: List[str] = []
        self._dirty: Set[str] = set()
        self._applied_since_flush: Dict[str, List[AppliedSession]] = {}
        self._pending_acks: List[Tuple[int, str]] = []

    def handle(self, message) -> Optional[ApplyResult]:
        """Apply one inbox message"""
        if isinstance(message, DeliverRollup):
            return self.apply(message.rollup)
        if isinstance(message, ExpireLedger):
            self.expire_ledger(message.now)
            return None
        raise TypeError(f"Unsupported user shard message: {type(message).__name__}")

    def apply(self, rollup: SessionRollup, now: Optional[float] = None) -> ApplyResult:
        """Admit a finalized paid session rollup exactly once"""
        now = self.clock() if now is None else now
        result = self._apply(rollup, now)
        USER_APPLIES.labels(shard=self.name, result=result.value).inc()
        return result

    @staticmethod
    def _qualifies(rollup: SessionRollup) -> bool:
        return rollup.is_final and rollup.account_type == PAID

    def _apply(self, rollup: SessionRollup, now: float) -> ApplyResult:
        if not rollup.is_final:
            logger.warning("Ignoring unfinalized session rollup", shard=self.name, session_id=rollup.session_id)
            return ApplyResult.FILTERED
        if not self._qualifies(rollup):
            return ApplyResult.FILTERED

        key = (rollup.user_id, rollup.session_id)
        if key in self.ledger:
            return ApplyResult.DUPLICATE

        user = self._rollups.get(rollup.user_id)
        if user is None:
            user = UserRollup(user_id=rollup.user_id)
            self._install(user)

        user.session_count += 1
        user.sum_session_duration += rollup.session_duration or 0.0
        user.sum_total_events += rollup.total_events
        user.sum_click_count += rollup.click_count

        if user.region_as_of is None or (rollup.end_time is not None and rollup.end_time >= user.region_as_of):
            user.region = rollup.region
            user.region_as_of = rollup.end_time

        self.ledger.record(key, now)
        self._dirty.add(rollup.user_id)
        self._applied_since_flush.setdefault(rollup.user_id, []).append((rollup.session_id, now))
        return ApplyResult.APPLIED

    def get(self, user_id: str) -> Optional[UserRollup]:
        user = self._rollups.get(user_id)
        return user.model_copy() if user is not None else None

    def iter_after(self, after: Optional[str] = None) -> Iterator[UserRollup]:
        """Copies of the resident rollups with user_id > after, in user_id order"""
        start = 0 if after is None else bisect.bisect_right(self._order, after)
        for i in range(start, len(self._order)):
            yield self._rollups[self._order[i]].model_copy()

    def expire_ledger(self, now: Optional[float] = None) -> int:
        return self.ledger.expire(self.clock() if now is None else now)

    # -------------------------------------------------------------------------
    # Residency
    # -------------------------------------------------------------------------

    def needs_load(self, rollup: SessionRollup) -> bool:
        """True when applying rollup would start from a user that is not in memory"""
        return (
            self._qualifies(rollup)
            and rollup.user_id not in self._rollups
            and (rollup.user_id, rollup.session_id) not in self.ledger
        )

    def install(self, rollup: UserRollup) -> None:
        """Make a persisted rollup resident; state already in memory wins"""
        if rollup.user_id not in self._rollups:
            self._install(rollup.model_copy())

    def _install(self, rollup: UserRollup) -> None:
        self._rollups[rollup.user_id] = rollup
        bisect.insort(self._order, rollup.user_id)

    def evict_flushed(self, user_ids: Iterable[str]) -> int:
        """Drop rollups that are durable and unchanged since their flush"""
        evicted = 0
        for user_id in user_ids:
            if user_id in self._dirty or user_id not in self._rollups:
                continue
            del self._rollups[user_id]
            del self._order[bisect.bisect_left(self._order, user_id)]
            evicted += 1
        return evicted

    # -------------------------------------------------------------------------
    # Flush and recovery
    # -------------------------------------------------------------------------

    def take_dirty(self) -> List[Tuple[UserRollup, List[AppliedSession]]]:
        """Snapshot changed rollups with the sessions applied since the last flush"""
        changed = [
            (self._rollups[user_id].model_copy(), self._applied_since_flush.pop(user_id, []))
            for user_id in self._dirty
        ]
        self._dirty = set()
        return changed

    def mark_dirty(self, changes: List[Tuple[UserRollup, List[AppliedSession]]]) -> None:
        """Re-mark rollups whose flush failed"""
        for user, applied in changes:
            self._dirty.add(user.user_id)
            pending = self._applied_since_flush.setdefault(user.user_id, [])
            pending[:0] = applied

    def restore_ledger(self, user_id: str, applied_sessions: List[AppliedSession]) -> None:
        """Rebuild the applied ledger of one user from its persisted sessions"""
        for session_id, applied_at in sorted(applied_sessions, key=lambda a: a[1]):
            self.ledger.record((user_id, session_id), applied_at)

    def defer_ack(self, origin_shard: int, session_id: str) -> None:
        """Hold the acknowledgment for a session until this shard is durable"""
        self._pending_acks.append((origin_shard, session_id))

    def take_pending_acks(self) -> List[Tuple[int, str]]:
        acks, self._pending_acks = self._pending_acks, []
        return acks

    def restore_pending_acks(self, acks: List[Tuple[int, str]]) -> None:
        self._pending_acks[:0] = acks

    @property
    def dirty_count(self) -> int:
        return len(self._dirty)

    @property
    def pending_ack_count(self) -> int:
        return len(self._pending_acks)

    def __len__(self) -> int:
        return len(self._rollups)
