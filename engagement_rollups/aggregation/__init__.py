"""
Aggregation Module
"""
from .ledger import DedupLedger
from .session_aggregator import SessionShard
from .user_aggregator import ApplyResult, UserShard

__all__ = [
    "ApplyResult",
    "DedupLedger",
    "SessionShard",
    "UserShard",
]
