"""
Test Suite Configuration
"""
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from engagement_rollups.config import EngineSettings, Settings
from engagement_rollups.models import SessionEvent, SessionRecord, SessionRollup, RollupStatus, UserDimension
from engagement_rollups.storage.connection import create_session_factory
from engagement_rollups.storage.models import Base
from engagement_rollups.storage.repository import RollupRepository

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock in epoch seconds"""

    def __init__(self, start: datetime = T0):
        self.now = start.timestamp()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(
        APP_ENV="testing",
        DEBUG=True,
    )


@pytest.fixture
def engine_settings() -> EngineSettings:
    """Small, deterministic engine configuration"""
    return EngineSettings(
        session_shards=2,
        user_shards=2,
        virtual_nodes=16,
        max_session_lifetime_seconds=86400,
        orphan_window_seconds=300,
        grace_window_seconds=60,
        dimension_wait_seconds=30,
        emit_retry_seconds=30,
        tick_interval_seconds=3600,
        flush_interval_seconds=3600,
        compaction_interval_seconds=3600,
        flush_max_retries=2,
        flush_backoff_seconds=0,
        backpressure_timeout_seconds=0.05,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def db_engine(tmp_path):
    """Create test database engine"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'rollups.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def repository(db_engine) -> RollupRepository:
    return RollupRepository(create_session_factory(db_engine))


@pytest.fixture
def make_open() -> Callable[..., SessionRecord]:
    def factory(session_id: str, user_id: str, start: datetime = T0) -> SessionRecord:
        return SessionRecord(session_id=session_id, user_id=user_id, start_time=start)
    return factory


@pytest.fixture
def make_close() -> Callable[..., SessionRecord]:
    def factory(session_id: str, user_id: str, duration: float, start: datetime = T0) -> SessionRecord:
        return SessionRecord(
            session_id=session_id,
            user_id=user_id,
            start_time=start,
            end_time=start + timedelta(seconds=duration),
        )
    return factory


@pytest.fixture
def make_events() -> Callable[..., List[SessionEvent]]:
    """n events for a session, the first `clicks` of them clicks"""
    def factory(session_id: str, n: int, clicks: int = 0, start: datetime = T0) -> List[SessionEvent]:
        return [
            SessionEvent(
                session_id=session_id,
                event_type="click" if i < clicks else "page_view",
                timestamp=start + timedelta(seconds=i),
                dedup_key=f"{session_id}-e{i}",
            )
            for i in range(n)
        ]
    return factory


@pytest.fixture
def make_rollup() -> Callable[..., SessionRollup]:
    """Finalized session rollup"""
    def factory(
        session_id: str,
        user_id: str = "U1",
        duration: float = 60.0,
        total_events: int = 1,
        click_count: int = 0,
        region: str = "US",
        account_type: str = "paid",
        end: Optional[datetime] = None,
    ) -> SessionRollup:
        end = end or T0 + timedelta(seconds=duration)
        return SessionRollup(
            session_id=session_id,
            user_id=user_id,
            start_time=end - timedelta(seconds=duration),
            end_time=end,
            session_duration=duration,
            total_events=total_events,
            click_count=click_count,
            region=region,
            account_type=account_type,
            status=RollupStatus.CLOSED,
        )
    return factory


@pytest.fixture
def paid_us() -> UserDimension:
    return UserDimension(user_id="U1", region="US", account_type="paid", version=1)


@pytest.fixture
def collected() -> Tuple[list, Callable[[int, object], None]]:
    """A dispatch target that records (shard_id, message)"""
    messages: list = []

    def dispatch(shard_id: int, message: object) -> None:
        messages.append((shard_id, message))

    return messages, dispatch
