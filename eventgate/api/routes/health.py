"""
Health and Readiness Endpoints

Kubernetes-compatible health probes for load balancers and orchestration.
"""
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from loguru import logger

from eventgate.config import settings
from eventgate.repositories import db_manager

router = APIRouter(tags=["Health"])

# API version - single source of truth
API_VERSION = "1.0.0"


@router.get("/health")
async def health_check():
    """
    Basic health check endpoint.

    Returns 200 if service is running.
    Used by load balancers and monitoring systems.
    """
    return {
        "status": "healthy",
        "service": "eventgate",
        "version": API_VERSION
    }


@router.get("/ready")
async def readiness_check(request: Request):
    """
    Readiness probe - checks if service can handle requests.

    Verifies:
    - Pipeline is wired and the worker is running
    - MongoDB answers a ping (mongodb backend only)

    Returns 200 if ready, 503 if not ready.
    """
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "reason": "Pipeline not initialized"
            }
        )

    try:
        if settings.coordination_backend == "mongodb":
            await db_manager.client.admin.command("ping")
            datastore = "connected"
        else:
            datastore = "memory"

        return {
            "status": "ready",
            "datastore": datastore,
            "worker": "running" if pipeline.worker.is_running else "stopped",
            "circuits": {name: breaker.state.value for name, breaker in pipeline.circuits.items()}
        }

    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "reason": str(e)
            }
        )


@router.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "service": "eventgate",
        "version": API_VERSION,
        "endpoints": {
            "health": "/health",
            "ready": "/ready",
            "metrics": "/metrics",
            "queue_metrics": "/metrics/queue",
            "whatsapp_webhook": "/webhooks/whatsapp (GET verify, POST events)",
            "payment_webhook": "/webhooks/payments/{gateway} (POST)",
            "admin": "/admin (token required)"
        }
    }
