"""
Shard Routing

Consistent hashing of entity keys (session_id, user_id) onto a fixed set of
shards. Each shard owns a number of virtual nodes on the ring so that keys
spread evenly.
"""

import bisect
import hashlib
from collections import OrderedDict
from typing import Dict, Hashable, List, Optional


def _hash(value: str) -> int:
    return int.from_bytes(hashlib.md5(value.encode("utf-8")).digest()[:8], "big")


class ShardRouter:
    """
    Consistent-hash ring mapping keys to shard ids.

    Example:
        router = ShardRouter(shard_count=4)
        shard_id = router.route("session-123")
    """

    def __init__(self, shard_count: int, virtual_nodes: int = 64):
        if shard_count < 1:
            raise ValueError("shard_count must be at least 1")
        self.shard_count = shard_count
        self.virtual_nodes = virtual_nodes

        ring: Dict[int, int] = {}
        for shard_id in range(shard_count):
            for replica in range(virtual_nodes):
                ring[_hash(f"shard-{shard_id}#{replica}")] = shard_id

        self._points: List[int] = sorted(ring)
        self._owners: List[int] = [ring[p] for p in self._points]

    def route(self, key: str) -> int:
        """Return the shard id owning key"""
        idx = bisect.bisect_right(self._points, _hash(key))
        if idx == len(self._points):
            idx = 0
        return self._owners[idx]


class RecentKeyWindow:
    """
    Bounded set of recently seen keys.

    Entries leave the window when they are older than max_age seconds or when
    the window is over capacity (oldest first).
    """

    def __init__(self, capacity: int, max_age: float):
        self.capacity = capacity
        self.max_age = max_age
        self._seen: "OrderedDict[Hashable, float]" = OrderedDict()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def add(self, key: Hashable, seen_at: float) -> None:
        self._seen[key] = seen_at
        self._seen.move_to_end(key)
        while len(self._seen) > self.capacity:
            self._seen.popitem(last=False)

    def expire(self, now: float) -> int:
        """Drop keys older than max_age; returns the number dropped"""
        cutoff = now - self.max_age
        dropped = 0
        while self._seen:
            key, seen_at = next(iter(self._seen.items()))
            if seen_at > cutoff:
                break
            self._seen.popitem(last=False)
            dropped += 1
        return dropped

    def oldest(self) -> Optional[float]:
        if not self._seen:
            return None
        return next(iter(self._seen.values()))
