"""
Engagement Rollups Engine
Centralized Configuration Management

Environment-driven configuration built on Pydantic settings. Every subsystem
reads its own prefixed section; the engine section carries the windows and
bounds that drive intake, aggregation and flushing.
"""

from functools import lru_cache
from typing import Optional, List
from pydantic import Field, field_validator, model_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Rollup store (PostgreSQL) configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="engagement_rollups", alias="database", description="Database name")
    user: str = Field(default="rollups", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, alias="DATABASE_URL", description="Full URL (overrides host/port)")

    @property
    def async_url(self) -> str:
        """Async database URL for asyncpg"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis configuration for the user dimension store"""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    max_connections: int = Field(default=50, description="Max connections")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    url: Optional[str] = Field(default=None, alias="REDIS_URL", description="Redis URL (overrides host/port)")
    dimension_key_prefix: str = Field(default="user_dimension", description="Hash key prefix for user dimensions")
    enabled: bool = Field(default=True, description="Use Redis as dimension source")

    def get_url(self) -> str:
        """Redis connection URL - uses REDIS_URL if set, otherwise builds from host/port"""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class KafkaSettings(BaseSettings):
    """Kafka ingest configuration"""

    model_config = SettingsConfigDict(env_prefix="KAFKA_")

    enabled: bool = Field(default=False, description="Start the Kafka consumer with the API")
    bootstrap_servers: str = Field(default="localhost:9092", description="Kafka bootstrap servers")
    consumer_group: str = Field(default="engagement-rollups", description="Consumer group ID")
    auto_offset_reset: str = Field(default="earliest", description="Auto offset reset policy")
    max_poll_records: int = Field(default=500, description="Max poll records")
    session_timeout_ms: int = Field(default=30000, description="Session timeout")
    heartbeat_interval_ms: int = Field(default=10000, description="Heartbeat interval")

    # Topic configuration
    topics_session_events: str = Field(default="session_events", description="Session events topic")
    topics_session_records: str = Field(default="session_records", description="Session lifecycle topic")
    topics_dimension_changes: str = Field(default="dimension_changes", description="User dimension change feed")

    @property
    def topics(self) -> List[str]:
        """List of all consumed topics"""
        return [
            self.topics_session_events,
            self.topics_session_records,
            self.topics_dimension_changes,
        ]


class EngineSettings(BaseSettings):
    """Incremental aggregation engine configuration"""

    model_config = SettingsConfigDict(env_prefix="ENGINE_")

    # Sharding
    session_shards: int = Field(default=4, ge=1, description="Session aggregator shard count")
    user_shards: int = Field(default=2, ge=1, description="User rollup aggregator shard count")
    virtual_nodes: int = Field(default=64, ge=1, description="Hash ring virtual nodes per shard")
    shard_queue_size: int = Field(default=10000, ge=1, description="Per-shard inbox capacity")

    # Windows
    max_session_lifetime_seconds: float = Field(default=86400.0, gt=0, description="Maximum session lifetime")
    orphan_window_seconds: float = Field(default=300.0, gt=0, description="How long events may wait for their session")
    grace_window_seconds: float = Field(default=60.0, ge=0, description="Delay between close and finalization")
    dimension_wait_seconds: float = Field(default=30.0, ge=0, description="How long finalization waits for a dimension")

    # Bounds
    dedup_window_capacity: int = Field(default=1_000_000, ge=1, description="Recent dedup_key window capacity")
    max_orphan_events: int = Field(default=100_000, ge=1, description="Orphan buffer capacity")
    max_pending_dimension: int = Field(default=10_000, ge=1, description="Pending dimension buffer capacity")
    ledger_capacity: int = Field(default=5_000_000, ge=1, description="Applied (user_id, session_id) ledger capacity")
    ledger_ttl_seconds: float = Field(default=172800.0, gt=0, description="Applied ledger entry TTL")

    # Delivery
    emit_retry_seconds: float = Field(default=30.0, gt=0, description="Re-emit unacknowledged finalized rollups after")
    tick_interval_seconds: float = Field(default=1.0, gt=0, description="Shard timer tick interval")

    # Flush and compaction
    flush_interval_seconds: float = Field(default=10.0, gt=0, description="Periodic flush interval")
    compaction_interval_seconds: float = Field(default=300.0, gt=0, description="Delta compaction interval")
    max_dirty_rollups: int = Field(default=50_000, ge=1, description="Dirty rollups per shard forcing a flush")
    flush_max_retries: int = Field(default=5, ge=1, description="Flush attempts before giving up a cycle")
    flush_backoff_seconds: float = Field(default=0.5, ge=0, description="Initial flush retry delay")
    backpressure_timeout_seconds: float = Field(default=5.0, ge=0, description="Max time ingest waits on a slow flush")
    schema_version: int = Field(default=1, ge=1, description="Persisted rollup schema version")

    # Query
    default_page_size: int = Field(default=100, ge=1, le=1000, description="Default user rollup page size")

    @model_validator(mode="after")
    def validate_windows(self) -> "EngineSettings":
        """Grace and orphan windows must fit inside a session lifetime"""
        if self.grace_window_seconds > self.max_session_lifetime_seconds:
            raise ValueError("grace_window_seconds must not exceed max_session_lifetime_seconds")
        if self.orphan_window_seconds > self.max_session_lifetime_seconds:
            raise ValueError("orphan_window_seconds must not exceed max_session_lifetime_seconds")
        if self.ledger_ttl_seconds < self.max_session_lifetime_seconds:
            raise ValueError("ledger_ttl_seconds must be at least max_session_lifetime_seconds")
        return self


class MonitoringSettings(BaseSettings):
    """Monitoring and Observability Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", alias="LOG_FORMAT", description="Log format: json or text")

    enable_metrics: bool = Field(default=True, alias="ENABLE_METRICS", description="Expose /metrics")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="engagement-rollups", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")

    # API Server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST", description="API host")
    api_port: int = Field(default=8000, alias="API_PORT", description="API port")

    # Version
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.app_env == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
