"""
Event Intake

Validates, deduplicates and routes raw session events and session lifecycle
records before they reach the session shards.

- Events are deduplicated by (session_id, dedup_key) against a bounded
  recent window.
- Events for sessions that have not opened yet wait in an orphan buffer for
  at most the orphan window.
- A close record starts the grace window; once it passes, further events for
  the session are rejected as late.
- Sessions forgotten by the sweep leave a tombstone for one more lifetime, so
  their late events stay late and their replayed records stay duplicates.
  Lifecycle records that ended before the lifetime window never reopen a
  session.
"""

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import structlog
from pydantic import ValidationError

from engagement_rollups.aggregation.session_aggregator import (
    CloseSession,
    CountEvent,
    OpenSession,
)
from engagement_rollups.config import EngineSettings
from engagement_rollups.ingestion.routing import RecentKeyWindow, ShardRouter
from engagement_rollups.metrics import (
    INTAKE_RESULTS,
    LATE_EVENTS,
    ORPHAN_BUFFERED,
    ORPHAN_EVENTS,
)
from engagement_rollups.models import SessionEvent, SessionRecord

logger = structlog.get_logger(__name__)

IngestRecord = Union[SessionEvent, SessionRecord, Mapping[str, Any]]
Dispatch = Callable[[int, object], None]


class IngestStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


class RejectReason(str, Enum):
    ORPHAN_EVENT = "orphan_event"
    LATE_EVENT = "late_event"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class IngestResult:
    """Outcome of ingesting one record"""
    status: IngestStatus
    reason: Optional[RejectReason] = None
    detail: Optional[str] = None

    @classmethod
    def accepted(cls) -> "IngestResult":
        return cls(IngestStatus.ACCEPTED)

    @classmethod
    def duplicate(cls) -> "IngestResult":
        return cls(IngestStatus.DUPLICATE)

    @classmethod
    def rejected(cls, reason: RejectReason, detail: Optional[str] = None) -> "IngestResult":
        return cls(IngestStatus.REJECTED, reason, detail)

    @property
    def is_accepted(self) -> bool:
        return self.status == IngestStatus.ACCEPTED


@dataclass
class SessionEntry:
    """Intake's view of a session's lifecycle"""
    record: SessionRecord
    shard_id: int
    opened_at: float
    close_deadline: Optional[float] = None

    def is_finalized(self, now: float) -> bool:
        return self.close_deadline is not None and now >= self.close_deadline


@dataclass
class _ParkedEvents:
    parked_at: float
    events: List[SessionEvent] = field(default_factory=list)
    keys: set = field(default_factory=set)


@dataclass
class SweepResult:
    """Records resolved by a timer sweep"""
    orphans: List[Tuple[SessionEvent, IngestResult]] = field(default_factory=list)
    forgotten_sessions: int = 0
    expired_keys: int = 0


class EventIntake:
    """
    Front door of the engine.

    Accepted records are handed to dispatch(shard_id, message); the engine
    turns that into a put on the owning session shard's inbox.

    Example:
        intake = EventIntake(settings.engine, dispatch=engine.dispatch)
        result = intake.ingest({"session_id": "S1", "event_type": "click", ...})
    """

    def __init__(
        self,
        settings: EngineSettings,
        dispatch: Dispatch,
        router: Optional[ShardRouter] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.dispatch = dispatch
        self.router = router or ShardRouter(settings.session_shards, settings.virtual_nodes)
        self.clock = clock

        self._recent = RecentKeyWindow(settings.dedup_window_capacity, settings.max_session_lifetime_seconds)
        self._forgotten = RecentKeyWindow(settings.dedup_window_capacity, settings.max_session_lifetime_seconds)
        self._sessions: Dict[str, SessionEntry] = {}
        self._orphans: "OrderedDict[str, _ParkedEvents]" = OrderedDict()
        self._orphan_count = 0

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def route(self, session_id: str) -> int:
        return self.router.route(session_id)

    def ingest(self, record: IngestRecord, now: Optional[float] = None) -> IngestResult:
        """
        Ingest one session event or lifecycle record.

        Args:
            record: SessionEvent, SessionRecord or a raw mapping of either
            now: Clock override (seconds since epoch)

        Returns:
            IngestResult; malformed input is rejected, never raised
        """
        now = self.clock() if now is None else now

        parsed = self._parse(record)
        if isinstance(parsed, IngestResult):
            self._count("unknown", parsed)
            return parsed

        if isinstance(parsed, SessionEvent):
            result = self._ingest_event(parsed, now)
            self._count("event", result)
        else:
            result = self._ingest_record(parsed, now)
            self._count("session", result)
        return result

    def sweep(self, now: Optional[float] = None) -> SweepResult:
        """Resolve timed-out orphans and forget long-finalized sessions"""
        now = self.clock() if now is None else now
        result = SweepResult()

        cutoff = now - self.settings.orphan_window_seconds
        while self._orphans:
            session_id, parked = next(iter(self._orphans.items()))
            if parked.parked_at > cutoff:
                break
            self._orphans.popitem(last=False)
            self._orphan_count -= len(parked.events)
            for event in parked.events:
                rejection = IngestResult.rejected(RejectReason.ORPHAN_EVENT, "session never opened")
                result.orphans.append((event, rejection))
                ORPHAN_EVENTS.inc()
                self._count("event", rejection)
            logger.info(
                "Orphan events rejected",
                session_id=session_id,
                count=len(parked.events),
            )
        ORPHAN_BUFFERED.set(self._orphan_count)

        horizon = now - self.settings.max_session_lifetime_seconds
        stale = [
            sid for sid, entry in self._sessions.items()
            if entry.close_deadline is not None and entry.close_deadline <= horizon
        ]
        for session_id in stale:
            del self._sessions[session_id]
            self._forgotten.add(session_id, now)
        self._forgotten.expire(now)
        result.forgotten_sessions = len(stale)
        result.expired_keys = self._recent.expire(now)
        return result

    def session_entry(self, session_id: str) -> Optional[SessionEntry]:
        return self._sessions.get(session_id)

    def restore_session(self, record: SessionRecord, close_deadline: Optional[float], now: float) -> None:
        """Re-register a session recovered from storage"""
        self._sessions[record.session_id] = SessionEntry(
            record=record,
            shard_id=self.route(record.session_id),
            opened_at=now,
            close_deadline=close_deadline,
        )

    @property
    def orphan_count(self) -> int:
        return self._orphan_count

    @property
    def tracked_sessions(self) -> int:
        return len(self._sessions)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _parse(self, record: IngestRecord) -> Union[SessionEvent, SessionRecord, IngestResult]:
        if isinstance(record, (SessionEvent, SessionRecord)):
            return record
        if not isinstance(record, Mapping):
            return IngestResult.rejected(RejectReason.MALFORMED, f"unsupported record type {type(record).__name__}")
        try:
            if "user_id" in record or "start_time" in record:
                return SessionRecord.model_validate(dict(record))
            return SessionEvent.model_validate(dict(record))
        except ValidationError as e:
            logger.warning("Malformed record rejected", error=str(e))
            return IngestResult.rejected(RejectReason.MALFORMED, str(e))

    def _ingest_event(self, event: SessionEvent, now: float) -> IngestResult:
        key = (event.session_id, event.dedup_key)
        if key in self._recent:
            return IngestResult.duplicate()

        entry = self._sessions.get(event.session_id)
        if entry is None:
            if event.session_id in self._forgotten:
                return self._reject_late(event.session_id, "session already finalized", dedup_key=event.dedup_key)
            return self._park(event, now)

        if entry.is_finalized(now):
            return self._reject_late(event.session_id, "session already finalized", dedup_key=event.dedup_key)

        self._recent.add(key, now)
        self.dispatch(entry.shard_id, CountEvent(event))
        return IngestResult.accepted()

    @staticmethod
    def _reject_late(session_id: str, detail: str, **context) -> IngestResult:
        LATE_EVENTS.inc()
        logger.info("Late record rejected", session_id=session_id, detail=detail, **context)
        return IngestResult.rejected(RejectReason.LATE_EVENT, detail)

    def _park(self, event: SessionEvent, now: float) -> IngestResult:
        if event.timestamp.timestamp() < now - self.settings.orphan_window_seconds:
            ORPHAN_EVENTS.inc()
            return IngestResult.rejected(RejectReason.ORPHAN_EVENT, "no open session within orphan window")
        if self._orphan_count >= self.settings.max_orphan_events:
            ORPHAN_EVENTS.inc()
            logger.warning("Orphan buffer full", capacity=self.settings.max_orphan_events)
            return IngestResult.rejected(RejectReason.ORPHAN_EVENT, "orphan buffer full")

        parked = self._orphans.get(event.session_id)
        if parked is None:
            parked = _ParkedEvents(parked_at=now)
            self._orphans[event.session_id] = parked
        if event.dedup_key in parked.keys:
            return IngestResult.duplicate()

        parked.events.append(event)
        parked.keys.add(event.dedup_key)
        self._orphan_count += 1
        ORPHAN_BUFFERED.set(self._orphan_count)
        return IngestResult.accepted()

    def _ingest_record(self, record: SessionRecord, now: float) -> IngestResult:
        entry = self._sessions.get(record.session_id)

        if entry is None:
            if record.session_id in self._forgotten:
                return IngestResult.duplicate()
            last_seen = record.end_time or record.start_time
            if last_seen.timestamp() < now - self.settings.max_session_lifetime_seconds:
                return self._reject_late(
                    record.session_id,
                    "session ended before the lifetime window",
                    end_time=last_seen.isoformat(),
                )
            entry = SessionEntry(record=record, shard_id=self.route(record.session_id), opened_at=now)
            self._sessions[record.session_id] = entry
            self.dispatch(entry.shard_id, OpenSession(record))
            self._release_orphans(entry, now)
            if record.is_closed:
                self._close(entry, record, now)
            return IngestResult.accepted()

        if record.user_id != entry.record.user_id:
            return IngestResult.rejected(RejectReason.MALFORMED, "session reassigned to another user")

        if not record.is_closed or entry.close_deadline is not None:
            return IngestResult.duplicate()

        self._close(entry, record, now)
        return IngestResult.accepted()

    def _close(self, entry: SessionEntry, record: SessionRecord, now: float) -> None:
        entry.record = record
        entry.close_deadline = now + self.settings.grace_window_seconds
        self.dispatch(entry.shard_id, CloseSession(record, entry.close_deadline))

    def _release_orphans(self, entry: SessionEntry, now: float) -> None:
        parked = self._orphans.pop(entry.record.session_id, None)
        if parked is None:
            return
        self._orphan_count -= len(parked.events)
        ORPHAN_BUFFERED.set(self._orphan_count)
        for event in parked.events:
            key = (event.session_id, event.dedup_key)
            if key in self._recent:
                continue
            self._recent.add(key, now)
            self.dispatch(entry.shard_id, CountEvent(event))
        logger.debug("Released parked events", session_id=entry.record.session_id, count=len(parked.events))

    @staticmethod
    def _count(kind: str, result: IngestResult) -> None:
        INTAKE_RESULTS.labels(
            kind=kind,
            status=result.status.value,
            reason=result.reason.value if result.reason else "",
        ).inc()
