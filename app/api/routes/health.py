"""
Health Check Endpoints

Liveness, readiness and detailed health for monitoring and orchestration.
Readiness requires Redis and a non-open EMR circuit; the history database
is reported but only degrades the detailed status.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.config import settings
from app.core.scheduling.emr_client import get_emr_client
from app.infra.database import check_db_health
from app.infra.redis import check_redis_health
from app.infra.resilience import CircuitState

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

# Track application start time for uptime calculation
_start_time: Optional[datetime] = None


def set_start_time() -> None:
    """Set application start time. Called once on startup."""
    global _start_time
    _start_time = datetime.now(timezone.utc)


def get_uptime_seconds() -> Optional[float]:
    if _start_time is None:
        return None
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    environment: str


class ReadyResponse(BaseModel):
    """Readiness check response with dependency status."""
    status: str
    timestamp: datetime
    checks: dict[str, str]


class LiveResponse(BaseModel):
    status: str
    timestamp: datetime
    uptime_seconds: Optional[float] = None


class DetailedHealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    environment: str
    uptime_seconds: Optional[float]
    checks: dict[str, str]
    config: dict[str, str]


def emr_circuit_check() -> str:
    """'ok' unless the EMR circuit breaker is open."""
    state = get_emr_client().circuit_breaker.state
    if state == CircuitState.OPEN:
        return "circuit_open"
    return "ok" if state == CircuitState.CLOSED else state.value


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
)
async def health() -> HealthResponse:
    """Always 200 while the process is running."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version="1.0.0",
        environment=settings.app_env,
    )


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness probe",
    responses={
        200: {"description": "Redis reachable and EMR circuit not open"},
        503: {"description": "A required dependency is unavailable"},
    },
)
async def ready() -> ReadyResponse:
    """
    Readiness probe for load balancers.

    Checks:
    - Redis connectivity
    - EMR circuit breaker state (half-open counts as ready)
    - History database connectivity (reported only)
    """
    checks = {}

    redis_ok = await check_redis_health()
    checks["redis"] = "ok" if redis_ok else "failed"
    if not redis_ok:
        logger.warning("Readiness check: Redis unhealthy")

    checks["emr"] = emr_circuit_check()
    emr_ok = checks["emr"] != "circuit_open"
    if not emr_ok:
        logger.warning("Readiness check: EMR circuit open")

    db_ok = await check_db_health()
    checks["database"] = "ok" if db_ok else "failed"

    all_ok = redis_ok and emr_ok
    response = ReadyResponse(
        status="ready" if all_ok else "not_ready",
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )

    if not all_ok:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )

    return response


@router.get(
    "/live",
    response_model=LiveResponse,
    status_code=status.HTTP_200_OK,
    summary="Liveness probe",
)
async def live() -> LiveResponse:
    return LiveResponse(
        status="alive",
        timestamp=datetime.now(timezone.utc),
        uptime_seconds=get_uptime_seconds(),
    )


@router.get(
    "/detailed",
    response_model=DetailedHealthResponse,
    summary="Detailed health check",
    description="Dependency and configuration summary. Only available in development.",
    include_in_schema=settings.is_development,
)
async def detailed() -> DetailedHealthResponse:
    if not settings.is_development:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Not found",
        )

    checks = {
        "redis": "ok" if await check_redis_health() else "failed",
        "database": "ok" if await check_db_health() else "failed",
        "emr": emr_circuit_check(),
    }

    # Safe config info (no secrets)
    config = {
        "app_name": settings.app_name,
        "environment": settings.app_env,
        "debug": str(settings.debug),
        "practice_timezone": settings.practice_timezone,
        "emr_base_url": settings.emr_base_url,
        "emr_rate_limit_per_second": str(settings.emr_rate_limit_per_second),
    }

    all_ok = all(v == "ok" for v in checks.values())

    return DetailedHealthResponse(
        status="healthy" if all_ok else "degraded",
        timestamp=datetime.now(timezone.utc),
        version="1.0.0",
        environment=settings.app_env,
        uptime_seconds=get_uptime_seconds(),
        checks=checks,
        config=config,
    )
