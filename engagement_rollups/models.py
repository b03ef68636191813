"""
Domain Models

Records consumed from the upstream event/session source and the dimension
change feed, and the two maintained rollups:

- SessionRollup: one per session (V_SESSION_BASE_METRICS)
- UserRollup: one per paid user (V_USER_ENGAGEMENT_SUMMARY)
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


UNKNOWN = "UNKNOWN"
PAID = "paid"
CLICK = "click"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RollupStatus(str, Enum):
    """Session rollup lifecycle"""
    OPEN = "open"
    CLOSED = "closed"


class RollupType(str, Enum):
    """Persisted rollup kinds"""
    SESSION = "session"
    USER = "user"


# =============================================================================
# INGEST RECORDS
# =============================================================================

class SessionEvent(BaseModel):
    """A single raw event belonging to a session"""

    model_config = ConfigDict(frozen=True)

    session_id: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    timestamp: datetime
    dedup_key: str = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def derive_dedup_key(cls, data: Any) -> Any:
        """Fall back to event identity when the source sends no offset key"""
        if isinstance(data, dict) and not data.get("dedup_key"):
            ts = data.get("timestamp")
            stamp = ts.isoformat() if isinstance(ts, datetime) else ts
            data = {**data, "dedup_key": f"{data.get('session_id')}:{data.get('event_type')}:{stamp}"}
        return data

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @property
    def is_click(self) -> bool:
        return self.event_type == CLICK


class SessionRecord(BaseModel):
    """Session lifecycle record: open when end_time is None, closed otherwise"""

    model_config = ConfigDict(frozen=True)

    session_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    start_time: datetime
    end_time: Optional[datetime] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_times(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v) if v is not None else None

    @model_validator(mode="after")
    def check_order(self) -> "SessionRecord":
        if self.end_time is not None and self.end_time < self.start_time:
            raise ValueError("end_time precedes start_time")
        return self

    @property
    def is_closed(self) -> bool:
        return self.end_time is not None


class UserDimension(BaseModel):
    """Current user attributes as published by the dimension change feed"""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1)
    region: str
    account_type: str
    version: int = 0


# =============================================================================
# ROLLUPS
# =============================================================================

class SessionRollup(BaseModel):
    """Per-session engagement metrics"""

    model_config = ConfigDict(frozen=True)

    session_id: str
    user_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    session_duration: Optional[float] = None
    total_events: int = 0
    click_count: int = 0
    region: Optional[str] = None
    account_type: Optional[str] = None
    status: RollupStatus = RollupStatus.OPEN

    @property
    def is_final(self) -> bool:
        return self.status == RollupStatus.CLOSED


class UserRollup(BaseModel):
    """
    Per-user engagement summary over finalized paid sessions.

    Sums are stored, the average is derived so that updates stay additive.
    """

    user_id: str
    region: Optional[str] = None
    region_as_of: Optional[datetime] = None
    session_count: int = 0
    sum_session_duration: float = 0.0
    sum_total_events: int = 0
    sum_click_count: int = 0

    @property
    def avg_session_duration(self) -> Optional[float]:
        if self.session_count == 0:
            return None
        return self.sum_session_duration / self.session_count

    def to_response(self) -> Dict[str, Any]:
        """Serialized form including the derived average"""
        data = self.model_dump(mode="json")
        data["avg_session_duration"] = self.avg_session_duration
        return data


class UserRollupPage(BaseModel):
    """One page of user rollups plus the token for the next page"""

    items: List[UserRollup]
    next_token: Optional[str] = None
