"""
User Rollup Endpoints

Paginated user engagement summaries. Pages are ordered by user_id and chained
by continuation token.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
import structlog

from engagement_rollups.serving.api.dependencies import get_query_facade
from engagement_rollups.serving.query import QueryFacade

router = APIRouter()
logger = structlog.get_logger(__name__)


class UserRollupResponse(BaseModel):
    """User engagement summary"""
    user_id: str
    region: Optional[str]
    region_as_of: Optional[datetime]
    session_count: int
    sum_session_duration: float
    sum_total_events: int
    sum_click_count: int
    avg_session_duration: Optional[float]


class UserRollupListResponse(BaseModel):
    """One page of user rollups"""
    items: List[UserRollupResponse]
    next_token: Optional[str]


@router.get("", response_model=UserRollupListResponse)
async def list_user_rollups(
    region: Optional[str] = None,
    min_sessions: Optional[int] = Query(None, ge=0),
    page_size: Optional[int] = Query(None, ge=1, le=1000),
    continuation_token: Optional[str] = None,
    query: QueryFacade = Depends(get_query_facade),
) -> UserRollupListResponse:
    """List user rollups with filtering."""
    logger.debug(
        "list_user_rollups called",
        region=region,
        min_sessions=min_sessions,
        page_size=page_size,
        continued=continuation_token is not None,
    )
    page = await query.get_user_rollups(
        region=region,
        min_sessions=min_sessions,
        page_size=page_size,
        continuation_token=continuation_token,
    )
    return UserRollupListResponse(
        items=[UserRollupResponse(**rollup.to_response()) for rollup in page.items],
        next_token=page.next_token,
    )
