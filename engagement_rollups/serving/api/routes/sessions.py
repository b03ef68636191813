"""
Session Rollup Endpoints
"""

from fastapi import APIRouter, Depends
import structlog

from engagement_rollups.models import SessionRollup
from engagement_rollups.serving.api.dependencies import get_query_facade
from engagement_rollups.serving.query import QueryFacade

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.get("/{session_id}", response_model=SessionRollup)
async def get_session_rollup(
    session_id: str,
    query: QueryFacade = Depends(get_query_facade),
) -> SessionRollup:
    """Current rollup of a session; open sessions show their running counts."""
    return await query.get_session_rollup(session_id)
