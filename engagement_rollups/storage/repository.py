"""
Rollup Repository

Reads and writes the persisted rollup layout. Readers always see the
snapshot overlaid with every delta written after it; compaction folds deltas
into snapshots without changing what readers see.
"""

import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from engagement_rollups.errors import StorageUnavailableError
from engagement_rollups.models import RollupType
from engagement_rollups.storage.models import RollupDelta, RollupSnapshot

logger = structlog.get_logger(__name__)

Payload = Dict[str, Any]

SUPPORTED_SCHEMA_VERSION = 1


def fold_payload(rollup_type: str, previous: Optional[Payload], delta: Payload) -> Payload:
    """
    Overlay one delta payload on the state before it.

    Session payloads carry full state, the newer one wins. User payloads carry
    full rollup state plus the sessions applied since the previous flush, so
    their applied lists accumulate.
    """
    if rollup_type != RollupType.USER.value or previous is None:
        return dict(delta)
    return {
        **delta,
        "applied": list(previous.get("applied", [])) + list(delta.get("applied", [])),
    }


def prune_applied(payload: Payload, horizon: float) -> Payload:
    """Drop applied-session entries older than the ledger horizon"""
    if "applied" not in payload:
        return payload
    return {**payload, "applied": [a for a in payload["applied"] if a[1] >= horizon]}


class RollupRepository:
    """
    Storage access for rollup deltas and snapshots.

    Example:
        repo = RollupRepository(get_session_factory())
        await repo.write_deltas("session-0", RollupType.SESSION, [("S1", payload)])
        await repo.latest(RollupType.SESSION, "S1")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        schema_version: int = SUPPORTED_SCHEMA_VERSION,
    ):
        self._session_factory = session_factory
        self.schema_version = schema_version

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except (SQLAlchemyError, OSError) as e:
            logger.error("Rollup store operation failed", error=str(e), error_type=type(e).__name__)
            raise StorageUnavailableError(str(e)) from e

    def _read_payload(self, version: int, payload: Payload) -> Payload:
        if version > SUPPORTED_SCHEMA_VERSION:
            raise StorageUnavailableError(f"Rollup row written with unsupported schema version {version}")
        return payload

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def write_deltas(
        self,
        shard_id: str,
        rollup_type: RollupType,
        payloads: Sequence[Tuple[str, Payload]],
    ) -> Optional[str]:
        """
        Append one delta row per changed rollup in a single transaction.

        Returns:
            The flush id shared by the written rows, or None if nothing changed
        """
        if not payloads:
            return None

        flush_id = str(uuid.uuid4())
        async with self._transaction() as session:
            session.add_all([
                RollupDelta(
                    flush_id=flush_id,
                    shard_id=shard_id,
                    rollup_type=rollup_type.value,
                    key=key,
                    schema_version=self.schema_version,
                    payload=payload,
                )
                for key, payload in payloads
            ])
        return flush_id

    async def compact(self, applied_horizon: Optional[float] = None) -> int:
        """
        Fold all current deltas into snapshots and delete them.

        Args:
            applied_horizon: Prune applied-session entries older than this

        Returns:
            Number of delta rows folded
        """
        async with self._transaction() as session:
            deltas = (await session.execute(select(RollupDelta).order_by(RollupDelta.id))).scalars().all()
            if not deltas:
                return 0

            folded: Dict[Tuple[str, str, str], Payload] = {}
            for row in deltas:
                ident = (row.shard_id, row.rollup_type, row.key)
                if ident not in folded:
                    existing = await session.get(RollupSnapshot, ident)
                    folded[ident] = (
                        self._read_payload(existing.schema_version, existing.payload)
                        if existing is not None else None
                    )
                folded[ident] = fold_payload(
                    row.rollup_type,
                    folded[ident],
                    self._read_payload(row.schema_version, row.payload),
                )

            for (shard_id, rollup_type, key), payload in folded.items():
                if applied_horizon is not None:
                    payload = prune_applied(payload, applied_horizon)
                snapshot = await session.get(RollupSnapshot, (shard_id, rollup_type, key))
                if snapshot is None:
                    session.add(RollupSnapshot(
                        shard_id=shard_id,
                        rollup_type=rollup_type,
                        key=key,
                        schema_version=self.schema_version,
                        payload=payload,
                    ))
                else:
                    snapshot.payload = payload
                    snapshot.schema_version = self.schema_version

            # Only the rows folded above; a delta committed meanwhile stays for the next pass
            folded_ids = [row.id for row in deltas]
            await session.execute(
                delete(RollupDelta)
                .where(RollupDelta.id.in_(folded_ids))
                .execution_options(synchronize_session=False)
            )

        logger.info("Compacted rollup deltas", deltas=len(deltas), rollups=len(folded))
        return len(deltas)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def latest(self, rollup_type: RollupType, key: str) -> Optional[Payload]:
        """Current persisted state of one rollup"""
        found = await self.latest_many(rollup_type, [key])
        return found.get(key)

    async def latest_many(self, rollup_type: RollupType, keys: Iterable[str]) -> Dict[str, Payload]:
        keys = list(keys)
        if not keys:
            return {}

        async with self._transaction() as session:
            snapshots = (await session.execute(
                select(RollupSnapshot).where(
                    RollupSnapshot.rollup_type == rollup_type.value,
                    RollupSnapshot.key.in_(keys),
                )
            )).scalars().all()
            deltas = (await session.execute(
                select(RollupDelta).where(
                    RollupDelta.rollup_type == rollup_type.value,
                    RollupDelta.key.in_(keys),
                ).order_by(RollupDelta.id)
            )).scalars().all()

            state: Dict[str, Payload] = {}
            for row in snapshots:
                state[row.key] = self._read_payload(row.schema_version, row.payload)
            for row in deltas:
                state[row.key] = fold_payload(
                    rollup_type.value,
                    state.get(row.key),
                    self._read_payload(row.schema_version, row.payload),
                )
        return state

    async def load_state(self, rollup_type: RollupType) -> Dict[str, Payload]:
        """Every persisted rollup of a type (snapshot overlaid with deltas)"""
        async with self._transaction() as session:
            snapshots = (await session.execute(
                select(RollupSnapshot).where(RollupSnapshot.rollup_type == rollup_type.value)
            )).scalars().all()
            deltas = (await session.execute(
                select(RollupDelta)
                .where(RollupDelta.rollup_type == rollup_type.value)
                .order_by(RollupDelta.id)
            )).scalars().all()

            state: Dict[str, Payload] = {}
            for row in snapshots:
                state[row.key] = self._read_payload(row.schema_version, row.payload)
            for row in deltas:
                state[row.key] = fold_payload(
                    rollup_type.value,
                    state.get(row.key),
                    self._read_payload(row.schema_version, row.payload),
                )
        return state

    async def list_keys_after(
        self,
        rollup_type: RollupType,
        after: Optional[str],
        limit: int,
    ) -> List[str]:
        """Up to limit persisted keys greater than after, in key order"""
        async with self._transaction() as session:
            snapshot_query = select(RollupSnapshot.key).where(RollupSnapshot.rollup_type == rollup_type.value)
            delta_query = select(RollupDelta.key).where(RollupDelta.rollup_type == rollup_type.value)
            if after is not None:
                snapshot_query = snapshot_query.where(RollupSnapshot.key > after)
                delta_query = delta_query.where(RollupDelta.key > after)

            snapshot_keys = (await session.execute(
                snapshot_query.order_by(RollupSnapshot.key).limit(limit)
            )).scalars().all()
            delta_keys = (await session.execute(
                delta_query.distinct().order_by(RollupDelta.key).limit(limit)
            )).scalars().all()

        return sorted(set(snapshot_keys) | set(delta_keys))[:limit]

    async def delta_count(self) -> int:
        async with self._transaction() as session:
            return (await session.execute(select(func.count(RollupDelta.id)))).scalar() or 0
