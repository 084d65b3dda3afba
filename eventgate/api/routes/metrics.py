"""
Metrics Endpoints

Prometheus-compatible metrics and queue statistics for observability.
"""
from fastapi import APIRouter, Depends
from fastapi.responses import Response, JSONResponse
from loguru import logger

from eventgate.api.dependencies import get_pipeline
from eventgate.bootstrap import Pipeline

router = APIRouter(tags=["Metrics"])


@router.get("/metrics")
async def prometheus_metrics(pipeline: Pipeline = Depends(get_pipeline)):
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text exposition format for scraping.
    Includes:
    - Ingested events by type and outcome
    - Scheduled, rate-limited and retried jobs per lane
    - Queue depth per priority lane and job durations per hook
    - Dead letters by reason and pending quarantine size
    - Signature failures and circuit deferrals

    Content-Type: text/plain; version=0.0.4; charset=utf-8
    """
    try:
        output = await pipeline.monitor.export_prometheus_metrics()

        return Response(
            content=output,
            media_type="text/plain; version=0.0.4; charset=utf-8"
        )

    except Exception as e:
        logger.error(f"Failed to export metrics: {e}", exc_info=True)
        return Response(
            content=f"# Error exporting metrics: {e}\n",
            media_type="text/plain",
            status_code=500
        )


@router.get("/metrics/queue")
async def queue_metrics(pipeline: Pipeline = Depends(get_pipeline)):
    """
    Get pipeline health and queue statistics.

    Returns:
    - Per-lane pending/running/completed/failed counts
    - Dead letter summary
    - Throughput over the last hour and day
    - Active alerts
    """
    try:
        health = await pipeline.monitor.get_health_status()

        return {
            "status": "ok",
            "metrics": health
        }

    except Exception as e:
        logger.error(f"Failed to get queue metrics: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "status": "error",
                "error": str(e)
            }
        )
