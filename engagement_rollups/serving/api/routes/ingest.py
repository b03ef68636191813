"""
Ingest Endpoints

HTTP alternative to the Kafka topics: batches of session events / lifecycle
records, and dimension change notifications.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
import structlog

from engagement_rollups.engine import RollupEngine
from engagement_rollups.ingestion.intake import IngestStatus
from engagement_rollups.models import UserDimension
from engagement_rollups.serving.api.dependencies import get_engine

router = APIRouter()
logger = structlog.get_logger(__name__)


class IngestRequest(BaseModel):
    """Batch of raw session events and session records"""
    records: List[Dict[str, Any]] = Field(..., max_length=10000)


class IngestResultResponse(BaseModel):
    status: str
    reason: Optional[str] = None
    detail: Optional[str] = None


class IngestResponse(BaseModel):
    accepted: int
    duplicate: int
    rejected: int
    results: List[IngestResultResponse]


class DimensionChangeResponse(BaseModel):
    applied: int
    discarded: int


@router.post("/ingest", response_model=IngestResponse)
async def ingest_records(
    request: IngestRequest,
    engine: RollupEngine = Depends(get_engine),
) -> IngestResponse:
    """Ingest a batch; rejections are reported per record, never raised."""
    results = await engine.ingest_many(request.records)

    counts = {status: 0 for status in IngestStatus}
    for result in results:
        counts[result.status] += 1

    logger.info(
        "Ingested record batch",
        size=len(results),
        accepted=counts[IngestStatus.ACCEPTED],
        rejected=counts[IngestStatus.REJECTED],
    )
    return IngestResponse(
        accepted=counts[IngestStatus.ACCEPTED],
        duplicate=counts[IngestStatus.DUPLICATE],
        rejected=counts[IngestStatus.REJECTED],
        results=[
            IngestResultResponse(
                status=result.status.value,
                reason=result.reason.value if result.reason else None,
                detail=result.detail,
            )
            for result in results
        ],
    )


@router.post("/dimensions", response_model=DimensionChangeResponse)
async def apply_dimension_changes(
    changes: List[UserDimension],
    engine: RollupEngine = Depends(get_engine),
) -> DimensionChangeResponse:
    """Apply dimension change notifications; stale versions are discarded."""
    applied = sum(1 for change in changes if engine.apply_dimension(change))
    return DimensionChangeResponse(applied=applied, discarded=len(changes) - applied)
