"""
Synthetic Data Generator

Generates reproducible engagement data for local runs and tests:
- User dimensions (region, paid/free account)
- Sessions with open and close lifecycle records
- Session events, including redelivered duplicates
"""

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

import polars as pl
from faker import Faker

from engagement_rollups.models import CLICK, PAID, SessionEvent, SessionRecord, UserDimension


# =============================================================================
# CONFIGURATION
# =============================================================================

REGIONS = ["US", "UK", "CA", "DE", "FR", "AU"]
ACCOUNT_TYPES = [(PAID, 0.6), ("free", 0.4)]
EVENT_TYPES = [
    (CLICK, 0.35),
    ("page_view", 0.40),
    ("scroll", 0.15),
    ("purchase", 0.05),
    ("share", 0.05),
]


@dataclass
class SyntheticDataset:
    """Generated records in ingest order"""
    dimensions: List[UserDimension] = field(default_factory=list)
    sessions: List[SessionRecord] = field(default_factory=list)
    events: List[SessionEvent] = field(default_factory=list)
    _stream: List[Any] = field(default_factory=list, repr=False)

    def stream(self) -> Iterator[Any]:
        """Open records, events and close records as a source would deliver them"""
        return iter(self._stream)

    def frames(self) -> Tuple[pl.DataFrame, pl.DataFrame, pl.DataFrame]:
        """(events, sessions, dimensions) as polars frames"""
        events = pl.DataFrame(
            [e.model_dump() for e in self.events],
            schema={
                "session_id": pl.Utf8,
                "event_type": pl.Utf8,
                "timestamp": pl.Datetime("us", "UTC"),
                "dedup_key": pl.Utf8,
            },
        )
        sessions = pl.DataFrame(
            [s.model_dump() for s in self.sessions],
            schema={
                "session_id": pl.Utf8,
                "user_id": pl.Utf8,
                "start_time": pl.Datetime("us", "UTC"),
                "end_time": pl.Datetime("us", "UTC"),
            },
        )
        dimensions = pl.DataFrame(
            [d.model_dump() for d in self.dimensions],
            schema={
                "user_id": pl.Utf8,
                "region": pl.Utf8,
                "account_type": pl.Utf8,
                "version": pl.Int64,
            },
        )
        return events, sessions, dimensions


class EngagementDataGenerator:
    """
    Seeded generator; the same seed always yields the same dataset.

    Example:
        dataset = EngagementDataGenerator(seed=7).generate(users=50)
        for record in dataset.stream():
            await engine.ingest(record)
    """

    def __init__(self, seed: int = 42, start: Optional[datetime] = None):
        self.rng = random.Random(seed)
        self.fake = Faker()
        self.fake.seed_instance(seed)
        self.start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _dimension(self) -> UserDimension:
        account_type = self.rng.choices(
            [a for a, _ in ACCOUNT_TYPES],
            weights=[w for _, w in ACCOUNT_TYPES],
        )[0]
        return UserDimension(
            user_id=f"USER-{self.fake.unique.random_number(digits=8, fix_len=True)}",
            region=self.rng.choice(REGIONS),
            account_type=account_type,
            version=1,
        )

    def _event_type(self) -> str:
        return self.rng.choices(
            [t for t, _ in EVENT_TYPES],
            weights=[w for _, w in EVENT_TYPES],
        )[0]

    def generate(
        self,
        users: int = 100,
        sessions_per_user: Tuple[int, int] = (1, 5),
        events_per_session: Tuple[int, int] = (0, 20),
        duplicate_rate: float = 0.05,
        open_share: float = 0.0,
    ) -> SyntheticDataset:
        """
        Generate a dataset.

        Args:
            users: Number of users
            sessions_per_user: Inclusive range of sessions per user
            events_per_session: Inclusive range of distinct events per session
            duplicate_rate: Probability that an event is delivered twice
            open_share: Share of sessions left without a close record
        """
        dataset = SyntheticDataset()

        for _ in range(users):
            dimension = self._dimension()
            dataset.dimensions.append(dimension)

            for _ in range(self.rng.randint(*sessions_per_user)):
                session_id = self.fake.uuid4()
                start_time = self.start + timedelta(seconds=self.rng.randint(0, 30 * 86400))
                duration = self.rng.randint(10, 3600)
                end_time = start_time + timedelta(seconds=duration)

                opened = SessionRecord(session_id=session_id, user_id=dimension.user_id, start_time=start_time)
                dataset._stream.append(opened)

                for _ in range(self.rng.randint(*events_per_session)):
                    event = SessionEvent(
                        session_id=session_id,
                        event_type=self._event_type(),
                        timestamp=start_time + timedelta(seconds=self.rng.uniform(0, duration)),
                        dedup_key=self.fake.uuid4(),
                    )
                    dataset.events.append(event)
                    dataset._stream.append(event)
                    if self.rng.random() < duplicate_rate:
                        dataset._stream.append(event)

                if self.rng.random() < open_share:
                    dataset.sessions.append(opened)
                    continue

                closed = SessionRecord(
                    session_id=session_id,
                    user_id=dimension.user_id,
                    start_time=start_time,
                    end_time=end_time,
                )
                dataset.sessions.append(closed)
                dataset._stream.append(closed)

        return dataset


def to_json_rows(records: List[Any]) -> List[Dict[str, Any]]:
    """JSON-ready dicts of generated models"""
    return [record.model_dump(mode="json") for record in records]
