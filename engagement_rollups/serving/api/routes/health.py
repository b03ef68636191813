"""
Health Check Endpoints

Health, readiness and engine lag for orchestration systems and operators.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from engagement_rollups.config import get_settings
from engagement_rollups.engine import RollupEngine
from engagement_rollups.serving.api.dependencies import get_engine
from engagement_rollups.storage.connection import check_database_health

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    environment: str
    timestamp: datetime
    checks: Dict[str, Any]


@router.get("/health", response_model=HealthResponse)
async def health_check(engine: RollupEngine = Depends(get_engine)) -> HealthResponse:
    """
    Comprehensive health check endpoint.

    Checks:
    - Engine workers
    - Rollup store connectivity (persistent engines)
    - Redis connectivity (when used as dimension source)
    - Flush failures and slow-flush alarms
    """
    settings = get_settings()
    checks: Dict[str, Any] = {}
    overall_status = "healthy"

    checks["engine"] = {"status": "healthy" if engine.is_running else "stopped"}
    if not engine.is_running:
        overall_status = "unhealthy"

    if engine.flush_manager is not None:
        db_health = await check_database_health()
        checks["database"] = db_health
        if db_health.get("status") != "healthy":
            overall_status = "degraded" if overall_status == "healthy" else overall_status

        alarms = [
            status.shard for status in engine.flush_manager.status.values()
            if status.slow_flush_alarm or status.consecutive_failures
        ]
        checks["flush"] = {"status": "degraded" if alarms else "healthy", "shards": alarms}
        if alarms and overall_status == "healthy":
            overall_status = "degraded"

    if settings.redis.enabled and engine.dimension_source is not None:
        try:
            from engagement_rollups.dimensions.source import get_redis
            redis = get_redis()
            await redis.ping()
            checks["redis"] = {"status": "healthy"}
        except Exception as e:
            checks["redis"] = {"status": "unhealthy", "error": str(e)}
            if overall_status == "healthy":
                overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version=settings.version,
        environment=settings.app_env,
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """
    Kubernetes liveness probe endpoint.

    Returns 200 if the application is running.
    """
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(response: Response, engine: RollupEngine = Depends(get_engine)) -> Dict[str, str]:
    """
    Kubernetes readiness probe endpoint.

    Ready once the engine runs and, for persistent engines, the store answers.
    """
    if not engine.is_running:
        response.status_code = 503
        return {"status": "not_ready", "reason": "engine_stopped"}

    if engine.flush_manager is not None:
        db_health = await check_database_health()
        if db_health.get("status") != "healthy":
            response.status_code = 503
            return {"status": "not_ready", "reason": "database_unavailable"}

    return {"status": "ready"}


@router.get("/lag")
async def lag_report(engine: RollupEngine = Depends(get_engine)) -> Dict[str, Any]:
    """Per-shard queue depth, unflushed rollups, ingestion lag and flush state"""
    return engine.lag_report()
