"""
Engine Error Taxonomy

Rejections of individual records (orphan, late, malformed) are result values
returned by intake, not exceptions. The exceptions below cover conditions a
caller or an operator has to act on.
"""

from typing import Optional


class RollupEngineError(Exception):
    """Base class for all engine errors"""


class DimensionUnresolved(RollupEngineError):
    """A session finalized without a resolvable user dimension"""

    def __init__(self, user_id: str, session_id: str):
        super().__init__(f"Dimension for user {user_id} unresolved at close of session {session_id}")
        self.user_id = user_id
        self.session_id = session_id


class FlushFailure(RollupEngineError):
    """A shard flush failed after exhausting its retries"""

    def __init__(self, shard_id: str, attempts: int, cause: Optional[BaseException] = None):
        super().__init__(f"Flush of shard {shard_id} failed after {attempts} attempts: {cause}")
        self.shard_id = shard_id
        self.attempts = attempts
        self.cause = cause


class DedupLedgerOverflow(RollupEngineError):
    """
    The applied ledger evicted entries before their TTL expired.

    Raised as an alarm record, never propagated: re-delivery of an evicted
    (user_id, session_id) pair would be applied twice.
    """

    def __init__(self, shard_id: str, evicted: int):
        super().__init__(f"Dedup ledger of shard {shard_id} evicted {evicted} live entries")
        self.shard_id = shard_id
        self.evicted = evicted


class StorageUnavailableError(RollupEngineError):
    """The rollup store could not be read or written"""


class SessionRollupNotFound(RollupEngineError):
    """No rollup exists for the requested session"""

    def __init__(self, session_id: str):
        super().__init__(f"Session rollup not found: {session_id}")
        self.session_id = session_id


class InvalidContinuationToken(RollupEngineError):
    """A user rollup continuation token could not be decoded"""
