"""
Query Facade

Read API over the maintained rollups. Reads combine persisted state with the
unflushed state still held by the shards; shard memory wins because it is
never older than what was flushed from it.
"""

import base64
import binascii
import json
from typing import TYPE_CHECKING, AsyncIterator, Dict, List, Optional

import structlog

from engagement_rollups.errors import InvalidContinuationToken, SessionRollupNotFound
from engagement_rollups.models import RollupType, SessionRollup, UserRollup, UserRollupPage
from engagement_rollups.storage.flush import session_checkpoint, user_rollup
from engagement_rollups.storage.repository import RollupRepository

if TYPE_CHECKING:
    from engagement_rollups.engine import RollupEngine

logger = structlog.get_logger(__name__)


def encode_token(user_id: str) -> str:
    raw = json.dumps({"after": user_id}).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_token(token: str) -> str:
    try:
        data = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise InvalidContinuationToken(f"Malformed continuation token: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("after"), str):
        raise InvalidContinuationToken("Continuation token carries no position")
    return data["after"]


class QueryFacade:
    """
    Session and user rollup reads.

    Example:
        facade = QueryFacade(engine)
        page = await facade.get_user_rollups(region="US", page_size=50)
        async for rollup in facade.iter_user_rollups(min_sessions=2):
            ...
    """

    def __init__(
        self,
        engine: "RollupEngine",
        repository: Optional[RollupRepository] = None,
        default_page_size: Optional[int] = None,
    ):
        self.engine = engine
        self.repository = repository if repository is not None else engine.repository
        self.default_page_size = default_page_size or engine.settings.default_page_size

    async def get_session_rollup(self, session_id: str) -> SessionRollup:
        """
        Current rollup of one session, open or finalized.

        Raises:
            SessionRollupNotFound: If the session was never opened
            StorageUnavailableError: If the store cannot be read
        """
        rollup = self.engine.session_shard_for(session_id).get(session_id)
        if rollup is not None:
            return rollup

        if self.repository is not None:
            payload = await self.repository.latest(RollupType.SESSION, session_id)
            if payload is not None:
                return session_checkpoint(payload).rollup

        raise SessionRollupNotFound(session_id)

    async def get_user_rollups(
        self,
        region: Optional[str] = None,
        min_sessions: Optional[int] = None,
        page_size: Optional[int] = None,
        continuation_token: Optional[str] = None,
    ) -> UserRollupPage:
        """
        One page of user rollups in user_id order.

        Args:
            region: Only users whose current region equals this
            min_sessions: Only users with at least this many sessions
            page_size: Maximum items in the page
            continuation_token: next_token of the previous page

        Raises:
            InvalidContinuationToken: If the token cannot be decoded
            StorageUnavailableError: If the store cannot be read
        """
        page_size = page_size or self.default_page_size
        cursor = decode_token(continuation_token) if continuation_token else None

        items: List[UserRollup] = []
        while len(items) < page_size:
            candidates = await self._user_ids_after(cursor, page_size)
            if not candidates:
                break
            rollups = await self._load_users(candidates)
            for user_id in candidates:
                cursor = user_id
                rollup = rollups.get(user_id)
                if rollup is None or not self._matches(rollup, region, min_sessions):
                    continue
                items.append(rollup)
                if len(items) == page_size:
                    break

        next_token = encode_token(items[-1].user_id) if len(items) == page_size else None
        return UserRollupPage(items=items, next_token=next_token)

    async def iter_user_rollups(
        self,
        region: Optional[str] = None,
        min_sessions: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> AsyncIterator[UserRollup]:
        """Lazily walk every matching user rollup page by page"""
        token = None
        while True:
            page = await self.get_user_rollups(region, min_sessions, page_size, token)
            for rollup in page.items:
                yield rollup
            if page.next_token is None:
                return
            token = page.next_token

    @staticmethod
    def _matches(rollup: UserRollup, region: Optional[str], min_sessions: Optional[int]) -> bool:
        if region is not None and rollup.region != region:
            return False
        if min_sessions is not None and rollup.session_count < min_sessions:
            return False
        return True

    async def _user_ids_after(self, cursor: Optional[str], limit: int) -> List[str]:
        candidates = set()
        for shard in self.engine.user_shards:
            for i, rollup in enumerate(shard.iter_after(cursor)):
                if i >= limit:
                    break
                candidates.add(rollup.user_id)
        if self.repository is not None:
            candidates.update(await self.repository.list_keys_after(RollupType.USER, cursor, limit))
        return sorted(candidates)[:limit]

    async def _load_users(self, user_ids: List[str]) -> Dict[str, UserRollup]:
        found: Dict[str, UserRollup] = {}
        missing = []
        for user_id in user_ids:
            rollup = self.engine.user_shard_for(user_id).get(user_id)
            if rollup is not None:
                found[user_id] = rollup
            else:
                missing.append(user_id)

        if missing and self.repository is not None:
            stored = await self.repository.latest_many(RollupType.USER, missing)
            for user_id, payload in stored.items():
                found[user_id] = user_rollup(payload)
        return found
