"""
Unit Tests - Kafka Stream Consumer
"""
import pytest

from engagement_rollups.aggregation.session_aggregator import OpenSession
from engagement_rollups.engine import RollupEngine
from engagement_rollups.errors import StorageUnavailableError
from engagement_rollups.ingestion.stream_consumer import ConsumerConfig, StreamConsumer


class FakeKafkaConsumer:
    def __init__(self):
        self.commits = 0

    async def commit(self):
        self.commits += 1


class FailingRepository:
    async def write_deltas(self, shard_id, rollup_type, payloads):
        raise StorageUnavailableError("connection refused")


@pytest.fixture
def config():
    return ConsumerConfig(
        topics=["session_events", "session_records", "dimension_changes"],
        dimension_topic="dimension_changes",
    )


class TestStreamConsumer:
    """Tests for StreamConsumer message handling"""

    async def test_handles_session_records_and_events(self, engine_settings, clock, config):
        """Test records reach the engine's intake"""
        engine = RollupEngine(engine_settings, clock=clock)
        consumer = StreamConsumer(engine, config)

        assert await consumer.handle(
            "session_records",
            {"session_id": "S1", "user_id": "U1", "start_time": "2024-01-01T12:00:00Z"},
        )
        assert await consumer.handle(
            "session_events",
            {"session_id": "S1", "event_type": "click", "timestamp": "2024-01-01T12:00:01Z", "dedup_key": "k1"},
        )

        assert engine.intake.session_entry("S1") is not None

    async def test_dimension_change_applied(self, engine_settings, clock, config):
        """Test the dimension topic feeds the cache"""
        engine = RollupEngine(engine_settings, clock=clock)
        consumer = StreamConsumer(engine, config)

        handled = await consumer.handle(
            "dimension_changes",
            {"user_id": "U1", "region": "US", "account_type": "paid", "version": 1},
        )

        assert handled is True
        assert engine.dimensions.lookup("U1").account_type == "paid"

    async def test_malformed_messages_dead_lettered(self, engine_settings, clock, config):
        """Test malformed records and dimensions are not handled"""
        engine = RollupEngine(engine_settings, clock=clock)
        consumer = StreamConsumer(engine, config)

        assert await consumer.handle("session_events", {"session_id": "S1"}) is False
        assert await consumer.handle("dimension_changes", {"user_id": "U1"}) is False
        assert await consumer.handle("session_events", StreamConsumer._deserialize(b"\xff{")) is False

    def test_deserialize(self):
        """Test JSON payloads decode and garbage is kept for the DLQ"""
        assert StreamConsumer._deserialize(b'{"a": 1}') == {"a": 1}
        assert "_undecodable" in StreamConsumer._deserialize(b"not json")

    async def test_commit_after_checkpoint(self, engine_settings, clock, config):
        """Test offsets are committed once the engine checkpoint succeeds"""
        engine = RollupEngine(engine_settings, clock=clock)
        consumer = StreamConsumer(engine, config)
        consumer._consumer = FakeKafkaConsumer()
        consumer._uncommitted = 10

        await consumer._commit()

        assert consumer._consumer.commits == 1
        assert consumer._uncommitted == 0

    async def test_no_commit_when_checkpoint_fails(self, engine_settings, clock, config, make_open):
        """Test offsets stay uncommitted when the flush fails"""
        engine = RollupEngine(engine_settings, repository=FailingRepository(), clock=clock)
        engine.session_shard_for("S1").handle(OpenSession(make_open("S1", "U1")))
        consumer = StreamConsumer(engine, config)
        consumer._consumer = FakeKafkaConsumer()
        consumer._uncommitted = 10

        await consumer._commit()

        assert consumer._consumer.commits == 0
        assert consumer._uncommitted == 10

    def test_config_from_settings(self, test_settings):
        """Test consumer configuration follows the Kafka settings"""
        config = ConsumerConfig.from_settings(test_settings.kafka)

        assert config.dimension_topic == test_settings.kafka.topics_dimension_changes
        assert config.dimension_topic in config.topics
        assert config.enable_auto_commit is False
