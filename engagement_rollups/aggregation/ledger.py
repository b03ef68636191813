"""
Dedup Ledger

Bounded record of (user_id, session_id) pairs already applied to a user
rollup. Entries live for a TTL longer than the maximum session lifetime; when
capacity forces out an entry that is still live, idempotence for that pair is
lost and the overflow is raised as an alarm.
"""

from collections import OrderedDict
from typing import Tuple

import structlog

from engagement_rollups.errors import DedupLedgerOverflow
from engagement_rollups.metrics import DEDUP_LEDGER_OVERFLOW

logger = structlog.get_logger(__name__)

LedgerKey = Tuple[str, str]


class DedupLedger:
    """TTL + capacity bounded set of applied keys"""

    def __init__(self, shard_name: str, capacity: int, ttl_seconds: float):
        self.shard_name = shard_name
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self.overflowed = 0
        self._entries: "OrderedDict[LedgerKey, float]" = OrderedDict()

    def __contains__(self, key: LedgerKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, key: LedgerKey, now: float) -> int:
        """
        Record key as applied.

        Returns:
            Number of live entries evicted to make room
        """
        self._entries[key] = now
        self._entries.move_to_end(key)

        evicted_live = 0
        while len(self._entries) > self.capacity:
            _, applied_at = self._entries.popitem(last=False)
            if applied_at + self.ttl_seconds > now:
                evicted_live += 1

        if evicted_live:
            self.overflowed += evicted_live
            DEDUP_LEDGER_OVERFLOW.labels(shard=self.shard_name).inc(evicted_live)
            alarm = DedupLedgerOverflow(self.shard_name, evicted_live)
            logger.warning(
                "Dedup ledger overflow, redelivery of evicted sessions is no longer idempotent",
                shard=self.shard_name,
                evicted=evicted_live,
                capacity=self.capacity,
                alarm=str(alarm),
            )
        return evicted_live

    def expire(self, now: float) -> int:
        """Drop entries past their TTL"""
        dropped = 0
        while self._entries:
            key, applied_at = next(iter(self._entries.items()))
            if applied_at + self.ttl_seconds > now:
                break
            self._entries.popitem(last=False)
            dropped += 1
        return dropped
