"""
API Routes Module
"""
from .health import router as health_router
from .ingest import router as ingest_router
from .sessions import router as sessions_router
from .users import router as users_router

__all__ = [
    "health_router",
    "ingest_router",
    "sessions_router",
    "users_router",
]
