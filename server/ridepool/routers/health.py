"""Health check router."""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import get_db
from ..core.observability import SERVICE_NAME, SERVICE_VERSION
from ..schemas.health import HealthResponse, HealthStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/health", tags=["health"])


async def check_database(db: AsyncSession) -> str:
    """Run a trivial query; returns "ok" or "unavailable"."""
    try:
        await db.execute(text("SELECT 1"))
        return "ok"
    except Exception as e:
        logger.warning("Database health check failed", extra={"error": str(e)})
        return "unavailable"


@router.post("/ping", response_model=HealthResponse)
async def health_ping(db: AsyncSession = Depends(get_db)) -> JSONResponse:
    """
    Health check endpoint.

    Returns current service status, timestamp and database reachability.
    A degraded status is still served with 200 so the caller can read the checks.
    """
    database = await check_database(db)
    response_data = HealthResponse(
        status=HealthStatus.HEALTHY if database == "ok" else HealthStatus.DEGRADED,
        service=SERVICE_NAME,
        timestamp=datetime.utcnow(),
        version=SERVICE_VERSION,
        checks={"database": database}
    )

    logger.debug(
        "Health check requested",
        extra={
            "status": response_data.status,
            "database": database
        }
    )

    return JSONResponse(
        status_code=200,
        content=response_data.model_dump(mode="json")
    )
