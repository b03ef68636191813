"""
Kafka Stream Consumer

Feeds the engine from Kafka:
- session_events / session_records: raw events and lifecycle records
- dimension_changes: user dimension change feed

Offsets are committed manually, and only after the engine checkpoint that
made the consumed records durable. Malformed messages go to a dead-letter
topic.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import structlog
from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError
from prometheus_client import Counter, Histogram
from pydantic import ValidationError

from engagement_rollups.config import get_settings
from engagement_rollups.config.settings import KafkaSettings
from engagement_rollups.errors import FlushFailure
from engagement_rollups.ingestion.intake import RejectReason
from engagement_rollups.models import UserDimension

if TYPE_CHECKING:
    from engagement_rollups.engine import RollupEngine

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

MESSAGES_CONSUMED = Counter(
    "rollups_messages_consumed_total",
    "Kafka messages consumed",
    ["topic", "status"],
)

MESSAGE_PROCESSING_TIME = Histogram(
    "rollups_message_processing_seconds",
    "Time spent handing one message to the engine",
    ["topic"],
)


# =============================================================================
# STREAM CONSUMER
# =============================================================================

@dataclass
class ConsumerConfig:
    """Kafka consumer configuration"""
    topics: List[str]
    dimension_topic: str
    group_id: str = "engagement-rollups"
    bootstrap_servers: str = "localhost:9092"
    auto_offset_reset: str = "earliest"
    enable_auto_commit: bool = False  # Commit after checkpoint only
    max_poll_records: int = 500
    session_timeout_ms: int = 30000
    heartbeat_interval_ms: int = 10000
    commit_every: int = 500

    @classmethod
    def from_settings(cls, kafka: KafkaSettings) -> "ConsumerConfig":
        return cls(
            topics=kafka.topics,
            dimension_topic=kafka.topics_dimension_changes,
            group_id=kafka.consumer_group,
            bootstrap_servers=kafka.bootstrap_servers,
            auto_offset_reset=kafka.auto_offset_reset,
            max_poll_records=kafka.max_poll_records,
            session_timeout_ms=kafka.session_timeout_ms,
            heartbeat_interval_ms=kafka.heartbeat_interval_ms,
            commit_every=kafka.max_poll_records,
        )


class StreamConsumer:
    """
    Kafka consumer driving a RollupEngine.

    Example:
        consumer = create_stream_consumer(engine)
        task = asyncio.create_task(consumer.start())
        ...
        await consumer.stop()
    """

    def __init__(self, engine: "RollupEngine", config: Optional[ConsumerConfig] = None):
        self.engine = engine
        self.config = config or ConsumerConfig.from_settings(get_settings().kafka)

        self._consumer: Optional[AIOKafkaConsumer] = None
        self._producer: Optional[AIOKafkaProducer] = None  # For DLQ
        self._running = False
        self._uncommitted = 0

    async def _create_consumer(self) -> AIOKafkaConsumer:
        """Create and configure Kafka consumer"""
        return AIOKafkaConsumer(
            *self.config.topics,
            bootstrap_servers=self.config.bootstrap_servers,
            group_id=self.config.group_id,
            auto_offset_reset=self.config.auto_offset_reset,
            enable_auto_commit=self.config.enable_auto_commit,
            max_poll_records=self.config.max_poll_records,
            session_timeout_ms=self.config.session_timeout_ms,
            heartbeat_interval_ms=self.config.heartbeat_interval_ms,
            value_deserializer=self._deserialize,
            key_deserializer=lambda k: k.decode("utf-8") if k else None,
        )

    async def _create_producer(self) -> AIOKafkaProducer:
        """Create producer for dead-letter queue"""
        return AIOKafkaProducer(
            bootstrap_servers=self.config.bootstrap_servers,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
        )

    @staticmethod
    def _deserialize(raw: bytes) -> Any:
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            # Kept raw so the message can still be dead-lettered
            return {"_undecodable": raw.decode("utf-8", errors="replace")}

    async def _send_to_dlq(self, topic: str, data: Any, error: str) -> None:
        """Send a rejected message to the dead-letter topic"""
        if not self._producer:
            return

        dlq_topic = f"{topic}.dlq"
        dlq_message = {
            "original_topic": topic,
            "original_data": data,
            "error": error,
            "failed_at": datetime.now(timezone.utc).isoformat(),
        }

        try:
            await self._producer.send_and_wait(dlq_topic, value=dlq_message)
            logger.info("Sent message to DLQ", topic=dlq_topic)
        except KafkaError as e:
            logger.error("Failed to send to DLQ", error=str(e))

    async def handle(self, topic: str, data: Any) -> bool:
        """
        Hand one decoded message to the engine.

        Returns:
            False when the message was dead-lettered
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        if topic == self.config.dimension_topic:
            try:
                dimension = UserDimension.model_validate(data)
            except ValidationError as e:
                MESSAGES_CONSUMED.labels(topic=topic, status="malformed").inc()
                await self._send_to_dlq(topic, data, str(e))
                return False
            self.engine.apply_dimension(dimension)
            MESSAGES_CONSUMED.labels(topic=topic, status="applied").inc()
        else:
            result = await self.engine.ingest(data)
            MESSAGES_CONSUMED.labels(topic=topic, status=result.status.value).inc()
            if result.reason == RejectReason.MALFORMED:
                await self._send_to_dlq(topic, data, result.detail or "malformed record")
                return False

        MESSAGE_PROCESSING_TIME.labels(topic=topic).observe(loop.time() - start_time)
        return True

    async def _commit(self) -> None:
        try:
            await self.engine.checkpoint()
        except FlushFailure as e:
            logger.error("Checkpoint failed, offsets not committed", error=str(e))
            return
        await self._consumer.commit()
        self._uncommitted = 0

    async def start(self) -> None:
        """Start consuming messages"""
        logger.info(
            "Starting stream consumer",
            topics=self.config.topics,
            group_id=self.config.group_id,
        )

        self._consumer = await self._create_consumer()
        self._producer = await self._create_producer()

        await self._consumer.start()
        await self._producer.start()

        self._running = True

        try:
            async for message in self._consumer:
                if not self._running:
                    break

                await self.handle(message.topic, message.value)
                self._uncommitted += 1
                if self._uncommitted >= self.config.commit_every:
                    await self._commit()

            if self._uncommitted:
                await self._commit()

        except KafkaConnectionError as e:
            logger.error("Kafka connection error", error=str(e))

        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the consumer gracefully"""
        if not self._running and self._consumer is None:
            return
        logger.info("Stopping stream consumer")
        self._running = False

        if self._consumer:
            await self._consumer.stop()
            self._consumer = None
        if self._producer:
            await self._producer.stop()
            self._producer = None

        logger.info("Stream consumer stopped")


def create_stream_consumer(engine: "RollupEngine") -> StreamConsumer:
    """Create a stream consumer configured from settings"""
    return StreamConsumer(engine)
