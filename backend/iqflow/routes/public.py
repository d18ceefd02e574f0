# /iqflow/routes/public.py

from datetime import datetime, timezone
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis.exceptions import RedisError

from iqflow.config.settings import settings

# Unauthenticated service endpoints: root, health probes and Prometheus metrics.

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "IndustrialIQ Onboarding Engine",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment,
    }


@router.get("/health", summary="Basic Health Check")
async def health_check(request: Request):
    """Basic health check for load balancers."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc),
        "active_sessions": len(request.app.state.sessions),
    }


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check(request: Request):
    """Readiness probe: the snapshot store must answer a ping."""
    store = request.app.state.snapshot_store
    try:
        await store.redis.ping()
    except RedisError as e:
        raise HTTPException(status_code=503, detail=f"Service not ready: {e}")
    return {"status": "ready"}


@router.get("/metrics", tags=["Monitoring"])
async def metrics():
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)
