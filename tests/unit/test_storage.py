"""
Unit Tests - Rollup Storage, Flush and Recovery
"""
import asyncio

import pytest

from engagement_rollups.aggregation.session_aggregator import CloseSession, OpenSession, Tick
from engagement_rollups.aggregation.user_aggregator import ApplyResult
from engagement_rollups.engine import RollupEngine
from engagement_rollups.errors import FlushFailure, StorageUnavailableError
from engagement_rollups.models import RollupType, UserRollup
from engagement_rollups.storage.flush import (
    session_checkpoint,
    session_payload,
    user_payload,
    user_rollup,
)
from engagement_rollups.storage.repository import RollupRepository, fold_payload, prune_applied


class FailingRepository:
    """Repository stand-in whose writes always fail"""

    def __init__(self):
        self.attempts = 0

    async def write_deltas(self, shard_id, rollup_type, payloads):
        self.attempts += 1
        raise StorageUnavailableError("connection refused")


def _user_payload(user_id, sessions, applied):
    rollup = UserRollup(user_id=user_id, region="US", session_count=sessions, sum_session_duration=60.0 * sessions)
    return user_payload(rollup, applied)


class TestPayloadFolding:
    """Tests for delta folding helpers"""

    def test_session_payload_latest_wins(self):
        """Test session deltas replace the previous state"""
        folded = fold_payload("session", {"total_events": 1}, {"total_events": 3})

        assert folded == {"total_events": 3}

    def test_user_payload_accumulates_applied(self):
        """Test user deltas accumulate their applied sessions"""
        first = _user_payload("U1", 1, [("S1", 10.0)])
        second = _user_payload("U1", 2, [("S2", 20.0)])

        folded = fold_payload("user", first, second)

        assert folded["rollup"]["session_count"] == 2
        assert folded["applied"] == [["S1", 10.0], ["S2", 20.0]]

    def test_prune_applied(self):
        """Test applied entries older than the horizon are dropped"""
        payload = _user_payload("U1", 2, [("S1", 10.0), ("S2", 20.0)])

        assert prune_applied(payload, 15.0)["applied"] == [["S2", 20.0]]
        assert prune_applied({"total_events": 1}, 15.0) == {"total_events": 1}

    def test_session_payload_round_trip(self, make_rollup):
        """Test session checkpoints survive serialization"""
        from engagement_rollups.aggregation.session_aggregator import SessionCheckpoint

        checkpoint = SessionCheckpoint(rollup=make_rollup("S1"), seen_keys=["a", "b"], delivered=True)

        restored = session_checkpoint(session_payload(checkpoint))

        assert restored.rollup == checkpoint.rollup
        assert restored.seen_keys == ["a", "b"]
        assert restored.delivered is True


class TestRollupRepository:
    """Tests for RollupRepository"""

    async def test_write_and_read_latest(self, repository):
        """Test the newest delta is what readers see"""
        await repository.write_deltas("session-0", RollupType.SESSION, [("S1", {"total_events": 1})])
        await repository.write_deltas("session-0", RollupType.SESSION, [("S1", {"total_events": 4})])

        assert await repository.latest(RollupType.SESSION, "S1") == {"total_events": 4}
        assert await repository.latest(RollupType.SESSION, "S2") is None

    async def test_write_nothing(self, repository):
        """Test an empty flush writes no rows"""
        assert await repository.write_deltas("session-0", RollupType.SESSION, []) is None
        assert await repository.delta_count() == 0

    async def test_compaction_preserves_reads(self, repository):
        """Test compaction folds deltas without changing what readers see"""
        await repository.write_deltas("user-0", RollupType.USER, [("U1", _user_payload("U1", 1, [("S1", 10.0)]))])
        await repository.write_deltas("user-0", RollupType.USER, [("U1", _user_payload("U1", 2, [("S2", 20.0)]))])
        before = await repository.latest(RollupType.USER, "U1")

        folded = await repository.compact()

        assert folded == 2
        assert await repository.delta_count() == 0
        assert await repository.latest(RollupType.USER, "U1") == before

    async def test_deltas_after_compaction_overlay_snapshot(self, repository):
        """Test new deltas stack on top of a compacted snapshot"""
        await repository.write_deltas("user-0", RollupType.USER, [("U1", _user_payload("U1", 1, [("S1", 10.0)]))])
        await repository.compact()
        await repository.write_deltas("user-0", RollupType.USER, [("U1", _user_payload("U1", 2, [("S2", 20.0)]))])

        payload = await repository.latest(RollupType.USER, "U1")

        assert user_rollup(payload).session_count == 2
        assert payload["applied"] == [["S1", 10.0], ["S2", 20.0]]

    async def test_compaction_prunes_applied(self, repository):
        """Test compaction drops ledger entries past the horizon"""
        await repository.write_deltas(
            "user-0",
            RollupType.USER,
            [("U1", _user_payload("U1", 2, [("S1", 10.0), ("S2", 20.0)]))],
        )

        await repository.compact(applied_horizon=15.0)

        payload = await repository.latest(RollupType.USER, "U1")
        assert payload["applied"] == [["S2", 20.0]]
        assert user_rollup(payload).session_count == 2

    async def test_compact_empty_log(self, repository):
        """Test compacting nothing is a no-op"""
        assert await repository.compact() == 0

    async def test_list_keys_after(self, repository):
        """Test keys from snapshots and deltas are merged in order"""
        await repository.write_deltas("user-0", RollupType.USER, [("U2", _user_payload("U2", 1, []))])
        await repository.compact()
        await repository.write_deltas(
            "user-1",
            RollupType.USER,
            [("U1", _user_payload("U1", 1, [])), ("U3", _user_payload("U3", 1, []))],
        )

        assert await repository.list_keys_after(RollupType.USER, None, 10) == ["U1", "U2", "U3"]
        assert await repository.list_keys_after(RollupType.USER, "U1", 1) == ["U2"]
        assert await repository.list_keys_after(RollupType.SESSION, None, 10) == []

    async def test_newer_schema_version_is_rejected(self, db_engine):
        """Test rows written by a newer schema are not misread"""
        from engagement_rollups.storage.connection import create_session_factory

        factory = create_session_factory(db_engine)
        await RollupRepository(factory, schema_version=2).write_deltas(
            "session-0", RollupType.SESSION, [("S1", {"total_events": 1})]
        )

        with pytest.raises(StorageUnavailableError):
            await RollupRepository(factory).latest(RollupType.SESSION, "S1")


class TestFlushManager:
    """Tests for FlushManager flush and restore"""

    async def test_flush_writes_and_acknowledges(self, engine_settings, repository, clock, paid_us, make_close):
        """Test a user shard flush releases acks to the session shard"""
        engine = RollupEngine(engine_settings, repository=repository, clock=clock)
        engine.apply_dimension(paid_us)
        session_shard = engine.session_shard_for("S1")
        session_shard.handle(CloseSession(make_close("S1", "U1", 60), clock.now))
        emitted = session_shard.handle(Tick(clock.now))

        user_shard = engine.user_shard_for("U1")
        assert user_shard.apply(emitted[0]) == ApplyResult.APPLIED
        user_shard.defer_ack(session_shard.shard_id, "S1")

        written = await engine.flush_manager.flush_all()

        assert written[user_shard.name] == 1
        assert written[session_shard.name] == 1
        assert user_shard.pending_ack_count == 0
        assert user_rollup(await repository.latest(RollupType.USER, "U1")).session_count == 1
        assert session_checkpoint(await repository.latest(RollupType.SESSION, "S1")).rollup.is_final
        status = engine.flush_manager.shard_status(user_shard.name)
        assert status.consecutive_failures == 0
        assert status.last_flush_at is not None

    async def test_flush_failure_keeps_state_dirty(self, engine_settings, clock, make_open):
        """Test an exhausted flush raises FlushFailure and keeps changes"""
        failing = FailingRepository()
        engine = RollupEngine(engine_settings, repository=failing, clock=clock)
        shard = engine.session_shard_for("S1")
        shard.handle(OpenSession(make_open("S1", "U1")))

        with pytest.raises(FlushFailure) as exc_info:
            await engine.flush_manager.flush_all(raise_on_failure=True)

        assert exc_info.value.shard_id == shard.name
        assert exc_info.value.attempts == engine_settings.flush_max_retries
        assert failing.attempts == engine_settings.flush_max_retries
        assert shard.dirty_count == 1
        status = engine.flush_manager.shard_status(shard.name)
        assert status.consecutive_failures == engine_settings.flush_max_retries
        assert "connection refused" in status.last_error

    async def test_flush_failure_contained_per_shard(self, engine_settings, clock, make_open):
        """Test a failing shard does not stop the others being tried"""
        engine = RollupEngine(engine_settings, repository=FailingRepository(), clock=clock)
        engine.session_shard_for("S1").handle(OpenSession(make_open("S1", "U1")))

        written = await engine.flush_manager.flush_all()

        assert set(written) == {s.name for s in [*engine.user_shards, *engine.session_shards]}
        assert all(count == 0 for count in written.values())

    async def test_failed_user_flush_keeps_acks(self, engine_settings, clock, make_rollup):
        """Test acks are withheld until the user shard is durable"""
        engine = RollupEngine(engine_settings, repository=FailingRepository(), clock=clock)
        user_shard = engine.user_shard_for("U1")
        user_shard.apply(make_rollup("S1"))
        user_shard.defer_ack(0, "S1")

        with pytest.raises(FlushFailure):
            await engine.flush_manager.flush_shard(user_shard)

        assert user_shard.pending_ack_count == 1
        assert user_shard.dirty_count == 1

    async def test_restore_after_crash_before_compaction(self, engine_settings, repository, clock, make_rollup):
        """Test recovery from deltas alone, then from snapshots, yields the same state"""
        engine = RollupEngine(engine_settings, repository=repository, clock=clock)
        user_shard = engine.user_shard_for("U1")
        user_shard.apply(make_rollup("S1", duration=120, total_events=10, click_count=3))
        await engine.flush_manager.flush_all()
        await engine.flush_manager.load_user(user_shard, "U1")
        user_shard.apply(make_rollup("S2", duration=60, total_events=5, click_count=1))
        await engine.flush_manager.flush_all()

        recovered = RollupEngine(engine_settings, repository=repository, clock=clock)
        report = await recovered.restore()

        assert report.users_restored == 1
        assert report.ledger_entries == 2
        recovered_shard = recovered.user_shard_for("U1")
        assert recovered_shard.apply(make_rollup("S2")) == ApplyResult.DUPLICATE
        assert await recovered.flush_manager.load_user(recovered_shard, "U1") is True
        user = recovered_shard.get("U1")
        assert (user.session_count, user.sum_session_duration, user.avg_session_duration) == (2, 180, 90)

        await recovered.flush_manager.compact()
        compacted = RollupEngine(engine_settings, repository=repository, clock=clock)
        await compacted.restore()
        compacted_shard = compacted.user_shard_for("U1")

        assert compacted_shard.apply(make_rollup("S1")) == ApplyResult.DUPLICATE
        await compacted.flush_manager.load_user(compacted_shard, "U1")
        assert compacted_shard.get("U1") == user

    async def test_flush_evicts_clean_user_rollups(self, engine_settings, repository, clock, make_rollup):
        """Test flushed user rollups leave memory and are loaded back before the next apply"""
        engine = RollupEngine(engine_settings, repository=repository, clock=clock)
        for i in range(50):
            engine.user_shard_for(f"U{i:02d}").apply(make_rollup(f"S{i}", user_id=f"U{i:02d}"))

        await engine.flush_manager.flush_all()

        assert sum(len(shard) for shard in engine.user_shards) == 0
        assert engine.lag_report()["shards"][-1]["user_rollups"] == 0

        await engine.start()
        try:
            engine._deliver(0, make_rollup("S-next", user_id="U07", duration=30))
            await engine.drain()
        finally:
            await engine.stop(flush=False)

        user = engine.user_shard_for("U07").get("U07")
        assert (user.session_count, user.sum_session_duration) == (2, 90)

    async def test_load_user_missing(self, engine_settings, repository, clock):
        """Test loading a user the store has never seen installs nothing"""
        engine = RollupEngine(engine_settings, repository=repository, clock=clock)
        shard = engine.user_shard_for("U1")

        assert await engine.flush_manager.load_user(shard, "U1") is False
        assert len(shard) == 0

    async def test_compaction_waits_for_running_flush(self, engine_settings, repository, clock):
        """Test compaction does not fold the log while a shard is mid-flush"""
        engine = RollupEngine(engine_settings, repository=repository, clock=clock)
        manager = engine.flush_manager
        lock = manager._locks[engine.session_shards[0].name]

        await lock.acquire()
        compaction = asyncio.create_task(manager.compact())
        await asyncio.sleep(0.05)

        assert not compaction.done()

        await repository.write_deltas("session-0", RollupType.SESSION, [("S1", {"total_events": 2})])
        lock.release()

        assert await compaction == 1
        assert await repository.delta_count() == 0
        assert await repository.latest(RollupType.SESSION, "S1") == {"total_events": 2}

    async def test_restore_redelivers_unacknowledged_sessions(
        self, engine_settings, repository, clock, paid_us, make_close
    ):
        """Test finalized sessions whose ack never became durable are re-emitted"""
        engine = RollupEngine(engine_settings, repository=repository, clock=clock)
        engine.apply_dimension(paid_us)
        shard = engine.session_shard_for("S1")
        shard.handle(CloseSession(make_close("S1", "U1", 60), clock.now))
        shard.handle(Tick(clock.now))
        await engine.flush_manager.flush_all()

        recovered = RollupEngine(engine_settings, repository=repository, clock=clock)
        report = await recovered.restore()

        assert report.sessions_restored == 1
        assert report.sessions_redelivered == 1
        emitted = recovered.session_shard_for("S1").tick(clock.now)
        assert [r.session_id for r in emitted] == ["S1"]
        assert recovered.intake.session_entry("S1") is not None

    async def test_restore_resumes_open_sessions(self, engine_settings, repository, clock, make_open, make_events):
        """Test open sessions resume counting without double counting"""
        engine = RollupEngine(engine_settings, repository=repository, clock=clock)
        engine.intake.ingest(make_open("S1", "U1"))
        shard = engine.session_shard_for("S1")
        shard.handle(OpenSession(make_open("S1", "U1")))
        events = make_events("S1", 2)
        for event in events:
            shard.count_event(event)
        await engine.flush_manager.flush_all()

        recovered = RollupEngine(engine_settings, repository=repository, clock=clock)
        await recovered.restore()
        restored_shard = recovered.session_shard_for("S1")

        assert restored_shard.get("S1").total_events == 2
        assert restored_shard.count_event(events[1]) is False
        assert recovered.intake.session_entry("S1").close_deadline is None
