# /telepharma/routes/public.py

from datetime import datetime, timezone
from fastapi import APIRouter, HTTPException
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from telepharma.config.settings import settings
from telepharma.services.cache_service import cache_service
from telepharma.services.db_service import db_service

# Health, readiness and metrics endpoints. None of them require
# authentication; put /metrics behind the ingress if it must stay private.

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": settings.service_name,
        "status": "operational",
        "environment": settings.environment
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc)}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check():
    """Readiness probe: MongoDB must answer; Redis is optional and only reported."""
    try:
        await db_service.health_check()
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Service not ready: {e}")

    try:
        cache = "connected" if await cache_service.ping() else "disabled"
    except Exception:
        cache = "error"
    return {"status": "ready", "services": {"database": "connected", "cache": cache}}


@router.get("/metrics", tags=["Monitoring"])
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)
