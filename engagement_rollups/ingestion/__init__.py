"""
Ingestion Module
"""
from .intake import EventIntake, IngestResult, IngestStatus, RejectReason
from .routing import RecentKeyWindow, ShardRouter

__all__ = [
    "EventIntake",
    "IngestResult",
    "IngestStatus",
    "RejectReason",
    "RecentKeyWindow",
    "ShardRouter",
]
