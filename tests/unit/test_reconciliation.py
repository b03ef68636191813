"""
Unit Tests - Rollup Reconciliation and Synthetic Data
"""
from datetime import timedelta

import polars as pl
import pytest

from engagement_rollups.data.generators import EngagementDataGenerator
from engagement_rollups.engine import RollupEngine
from engagement_rollups.models import UNKNOWN, SessionEvent, SessionRecord, UserRollup
from engagement_rollups.quality.reconciliation import (
    ReconciliationStatus,
    reconcile,
    reconcile_sessions,
    recompute_session_rollups,
    recompute_user_rollups,
)

from tests.conftest import T0


class TestEngagementDataGenerator:
    """Tests for EngagementDataGenerator"""

    def test_same_seed_same_dataset(self):
        """Test generation is reproducible"""
        a = EngagementDataGenerator(seed=7).generate(users=5)
        b = EngagementDataGenerator(seed=7).generate(users=5)

        assert a.dimensions == b.dimensions
        assert a.sessions == b.sessions
        assert list(a.stream()) == list(b.stream())

    def test_duplicates_only_in_stream(self):
        """Test redelivered events appear in the stream but not in the event list"""
        dataset = EngagementDataGenerator(seed=3).generate(
            users=3, events_per_session=(5, 5), duplicate_rate=1.0
        )

        stream_events = [r for r in dataset.stream() if isinstance(r, SessionEvent)]

        assert len(stream_events) == 2 * len(dataset.events)

    def test_open_sessions_have_no_close_record(self):
        """Test open_share leaves sessions without an end_time"""
        dataset = EngagementDataGenerator(seed=3).generate(users=3, open_share=1.0)

        assert all(not s.is_closed for s in dataset.sessions)
        assert not any(isinstance(r, SessionRecord) and r.is_closed for r in dataset.stream())

    def test_frames(self):
        """Test polars frames mirror the generated records"""
        dataset = EngagementDataGenerator(seed=3).generate(users=4)

        events, sessions, dimensions = dataset.frames()

        assert events.height == len(dataset.events)
        assert sessions.height == len(dataset.sessions)
        assert dimensions.height == 4
        assert sessions.schema["end_time"] == pl.Datetime("us", "UTC")


class TestRecompute:
    """Tests for batch recomputation"""

    def test_session_metrics(self):
        """Test distinct events, clicks, duration and unknown attribution"""
        events = pl.DataFrame({
            "session_id": ["S1", "S1", "S1", "S2"],
            "event_type": ["click", "click", "page_view", "click"],
            "dedup_key": ["a", "a", "b", "c"],
        })
        sessions = pl.DataFrame({
            "session_id": ["S1", "S2", "S3"],
            "user_id": ["U1", "U9", "U1"],
            "start_time": [T0, T0, T0],
            "end_time": [T0 + timedelta(seconds=120), T0 + timedelta(seconds=30), None],
        })
        dimensions = pl.DataFrame({"user_id": ["U1"], "region": ["US"], "account_type": ["paid"]})

        result = recompute_session_rollups(events, sessions, dimensions)

        rows = {r["session_id"]: r for r in result.iter_rows(named=True)}
        assert set(rows) == {"S1", "S2"}
        assert (rows["S1"]["total_events"], rows["S1"]["click_count"]) == (2, 1)
        assert rows["S1"]["session_duration"] == 120.0
        assert rows["S2"]["region"] == UNKNOWN

    def test_user_summary(self, make_rollup):
        """Test the user summary over paid sessions"""
        from engagement_rollups.quality.reconciliation import session_frame

        frame = session_frame([
            make_rollup("S1", duration=120, total_events=10, click_count=3),
            make_rollup("S2", duration=60, total_events=5, click_count=1),
            make_rollup("S3", user_id="U2", account_type="free"),
        ])

        result = recompute_user_rollups(frame)

        assert result["user_id"].to_list() == ["U1"]
        row = result.row(0, named=True)
        assert row["session_count"] == 2
        assert row["sum_session_duration"] == 180.0
        assert row["avg_session_duration"] == 90.0
        assert (row["sum_total_events"], row["sum_click_count"]) == (15, 4)


class TestReconcile:
    """Tests for reconciliation reports"""

    def test_mismatch_detected(self, make_rollup):
        """Test a wrong maintained count fails the report"""
        sessions = [make_rollup("S1"), make_rollup("S2")]
        maintained = [UserRollup(user_id="U1", region="US", session_count=1, sum_session_duration=60.0,
                                 sum_total_events=1, sum_click_count=0)]

        report = reconcile_sessions(sessions, maintained)

        assert report.status == ReconciliationStatus.FAILED
        fields = {m.field for m in report.mismatches}
        assert {"session_count", "sum_session_duration", "sum_total_events"} <= fields

    def test_missing_and_unexpected(self, make_rollup):
        """Test users absent from either side are reported"""
        maintained = [UserRollup(user_id="U2", region="US", session_count=1)]

        report = reconcile_sessions([make_rollup("S1")], maintained)

        assert report.missing == ["U1"]
        assert report.unexpected == ["U2"]
        assert not report.passed
        assert report.to_dict()["status"] == "failed"

    async def test_engine_matches_batch_recompute(self, engine_settings, clock):
        """Test the maintained rollups equal a full recomputation of the same data"""
        dataset = EngagementDataGenerator(seed=11).generate(
            users=20, sessions_per_user=(1, 3), events_per_session=(0, 8), duplicate_rate=0.2
        )
        engine = RollupEngine(engine_settings, clock=clock)
        for dimension in dataset.dimensions:
            engine.apply_dimension(dimension)

        await engine.start()
        try:
            for record in dataset.stream():
                result = await engine.ingest(record)
                assert result.reason is None
            await engine.drain()
            engine.tick(clock.advance(engine_settings.grace_window_seconds))
            await engine.drain()

            maintained = [u for shard in engine.user_shards for u in shard.iter_after()]
            expected = recompute_user_rollups(recompute_session_rollups(*dataset.frames()))
        finally:
            await engine.stop()

        report = reconcile(expected, maintained)

        assert report.passed, report.to_dict()
        assert report.checked == expected.height
        assert expected.height > 0
