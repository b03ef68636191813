"""
FastAPI Production Application

Main entry point for the Engagement Rollups API. The lifespan brings up the
rollup store, the Redis dimension source, the engine (restored from storage)
and, when enabled, the Kafka consumer.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
import structlog

from engagement_rollups.config import get_settings
from engagement_rollups.config.logging import configure_logging
from engagement_rollups.dimensions.source import RedisDimensionSource, close_redis, init_redis
from engagement_rollups.engine import RollupEngine
from engagement_rollups.ingestion.stream_consumer import create_stream_consumer
from engagement_rollups.serving.api.main import create_api_app
from engagement_rollups.serving.query import QueryFacade
from engagement_rollups.storage.connection import close_database, get_session_factory, init_database
from engagement_rollups.storage.repository import RollupRepository

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    configure_logging()
    settings = get_settings()

    logger.info("Starting Engagement Rollups API", environment=settings.app_env)

    # The engine cannot serve consistent reads without its store
    await init_database()
    repository = RollupRepository(get_session_factory(), schema_version=settings.engine.schema_version)

    dimension_source = None
    if settings.redis.enabled:
        try:
            await init_redis()
            dimension_source = RedisDimensionSource()
            logger.info("Redis dimension source initialized")
        except Exception as e:
            logger.warning(f"Redis init failed, dimensions only from change feed: {e}")

    engine = RollupEngine(settings.engine, repository=repository, dimension_source=dimension_source)
    await engine.restore()
    await engine.start()

    app.state.engine = engine
    app.state.query = QueryFacade(engine)

    consumer_task = None
    consumer = None
    if settings.kafka.enabled:
        consumer = create_stream_consumer(engine)
        consumer_task = asyncio.create_task(consumer.start())

    yield

    # Cleanup
    logger.info("Shutting down...")
    if consumer is not None:
        await consumer.stop()
        consumer_task.cancel()
        await asyncio.gather(consumer_task, return_exceptions=True)
    await engine.stop()
    await close_database()
    if dimension_source is not None:
        await close_redis()


app = create_api_app(lifespan=lifespan)


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
