"""
User Dimension Cache

Read-mostly map of user_id -> UserDimension shared by every session shard.
Entries are frozen models replaced wholesale, so a reader always sees either
the previous or the new attributes of a user, never a mix of both.
"""

from typing import Callable, Dict, Iterable, List, Optional

import structlog

from engagement_rollups.models import UserDimension

logger = structlog.get_logger(__name__)


class DimensionCache:
    """
    Current user attributes used to attribute session rollups.

    The change feed is versioned per user; replays carrying a version older
    than the cached one are discarded.

    Example:
        cache = DimensionCache()
        cache.apply_change(UserDimension(user_id="U1", region="US", account_type="paid", version=1))
        cache.lookup("U1").region  # "US"
    """

    def __init__(self):
        self._entries: Dict[str, UserDimension] = {}
        self._listeners: List[Callable[[UserDimension], None]] = []

    def subscribe(self, listener: Callable[[UserDimension], None]) -> None:
        """Register a callback invoked after every accepted replacement"""
        self._listeners.append(listener)

    def lookup(self, user_id: str) -> Optional[UserDimension]:
        """Return the cached dimension, or None when the user is unknown"""
        return self._entries.get(user_id)

    def invalidate(self, user_id: str, new_value: UserDimension) -> None:
        """Replace the entry for user_id unconditionally"""
        if new_value.user_id != user_id:
            raise ValueError(f"Dimension for {new_value.user_id} cannot replace {user_id}")
        self._entries[user_id] = new_value
        for listener in self._listeners:
            listener(new_value)

    def apply_change(self, dimension: UserDimension) -> bool:
        """
        Apply a change-feed notification.

        Returns:
            False when the notification is older than the cached version
        """
        current = self._entries.get(dimension.user_id)
        if current is not None and dimension.version < current.version:
            logger.debug(
                "Discarding out-of-order dimension change",
                user_id=dimension.user_id,
                version=dimension.version,
                cached_version=current.version,
            )
            return False
        if current == dimension:
            return False
        self.invalidate(dimension.user_id, dimension)
        return True

    def bulk_load(self, dimensions: Iterable[UserDimension]) -> int:
        loaded = 0
        for dimension in dimensions:
            if self.apply_change(dimension):
                loaded += 1
        return loaded

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._entries
