"""
Storage Module
"""
from .connection import close_database, get_session_factory, init_database
from .flush import FlushManager
from .repository import RollupRepository

__all__ = [
    "close_database",
    "get_session_factory",
    "init_database",
    "FlushManager",
    "RollupRepository",
]
