"""
Metrics API endpoints.

Prometheus export plus lightweight readiness and liveness checks.
"""

from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.core.database import get_db
from app.services.metrics_service import metrics_collector

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/metrics",
    summary="Prometheus Metrics",
    description="Export metrics in Prometheus text format for scraping",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics():
    return Response(
        content=metrics_collector.get_prometheus_metrics(),
        media_type=metrics_collector.get_prometheus_content_type(),
        headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
    )


@router.get("/metrics/ready", summary="Readiness Check")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Returns 200 when the database answers, 503 otherwise."""
    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
    except SQLAlchemyError as e:
        logger.warning(f"Readiness check failed: {e}")
        return JSONResponse(
            content={"status": "not_ready", "reason": str(e)},
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE
        )
    return {"status": "ready"}


@router.get("/metrics/live", summary="Liveness Check")
async def liveness_check():
    return {"status": "alive"}
