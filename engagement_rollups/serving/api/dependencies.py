"""
Request Dependencies

The engine and query facade live on app.state; routes reach them through
these dependencies.
"""

from fastapi import HTTPException, Request

from engagement_rollups.engine import RollupEngine
from engagement_rollups.serving.query import QueryFacade


def get_engine(request: Request) -> RollupEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Rollup engine not initialized")
    return engine


def get_query_facade(request: Request) -> QueryFacade:
    facade = getattr(request.app.state, "query", None)
    if facade is None:
        raise HTTPException(status_code=503, detail="Query facade not initialized")
    return facade
