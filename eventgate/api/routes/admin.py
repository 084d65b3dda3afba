"""
Operator Endpoints

Dead letter triage, idempotency claims, queue inspection and circuit
control. Every route requires the admin token.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from loguru import logger

from eventgate.api.dependencies import get_pipeline, require_admin_token
from eventgate.api.models.admin import DismissRequest, ReplayRequest, ThresholdUpdate
from eventgate.bootstrap import Pipeline
from eventgate.errors import CorruptedEntryError
from eventgate.models.dead_letter import DeadLetterReason

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin_token)])


# ============================================
# DEAD LETTER QUEUE
# ============================================


@router.get("/dlq")
async def list_dead_letters(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    reason: Optional[DeadLetterReason] = None,
    pipeline: Pipeline = Depends(get_pipeline)
):
    """Pending dead letters, newest first."""
    entries = await pipeline.dead_letters.get_pending(limit=limit, offset=offset, reason=reason)
    return {
        "count": len(entries),
        "entries": [entry.model_dump(mode="json") for entry in entries]
    }


@router.get("/dlq/stats")
async def dead_letter_stats(pipeline: Pipeline = Depends(get_pipeline)):
    stats = await pipeline.dead_letters.get_stats()
    return stats.model_dump()


@router.post("/dlq/cleanup")
async def cleanup_dead_letters(
    days_old: Optional[int] = Query(None, ge=0),
    pipeline: Pipeline = Depends(get_pipeline)
):
    """Delete replayed/dismissed entries past retention (pending entries are never deleted)."""
    deleted = await pipeline.dead_letters.cleanup(days_old)
    return {"status": "ok", "deleted": deleted}


@router.get("/dlq/{entry_id}")
async def get_dead_letter(entry_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    entry = await pipeline.dead_letters.get(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Dead letter {entry_id} not found")
    return entry.model_dump(mode="json")


@router.post("/dlq/{entry_id}/replay")
async def replay_dead_letter(
    entry_id: str,
    request: Optional[ReplayRequest] = None,
    pipeline: Pipeline = Depends(get_pipeline)
):
    """
    Re-submit a pending entry as a fresh job.

    Returns 409 if the entry is corrupted (it is dismissed) or is no longer
    pending, 404 if it does not exist.
    """
    request = request or ReplayRequest()

    try:
        replayed = await pipeline.dead_letters.replay(entry_id, request.delay, request.priority)
    except CorruptedEntryError as e:
        return JSONResponse(
            status_code=409,
            content={"status": "corrupted", "error": str(e)}
        )

    if replayed:
        logger.info(f"Operator replayed dead letter {entry_id}")
        return {"status": "replayed", "id": entry_id}

    entry = await pipeline.dead_letters.get(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Dead letter {entry_id} not found")

    return JSONResponse(
        status_code=409,
        content={"status": "not_replayed", "id": entry_id, "entry_status": entry.status}
    )


@router.post("/dlq/{entry_id}/dismiss")
async def dismiss_dead_letter(
    entry_id: str,
    request: Optional[DismissRequest] = None,
    pipeline: Pipeline = Depends(get_pipeline)
):
    request = request or DismissRequest()

    if await pipeline.dead_letters.dismiss(entry_id, request.reason):
        logger.info(f"Operator dismissed dead letter {entry_id}")
        return {"status": "dismissed", "id": entry_id}

    entry = await pipeline.dead_letters.get(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Dead letter {entry_id} not found")

    return JSONResponse(
        status_code=409,
        content={"status": "not_dismissed", "id": entry_id, "entry_status": entry.status}
    )


# ============================================
# IDEMPOTENCY
# ============================================


@router.get("/idempotency/stats")
async def idempotency_stats(pipeline: Pipeline = Depends(get_pipeline)):
    stats = await pipeline.idempotency.get_stats()
    return stats.model_dump()


@router.delete("/idempotency/{scope}/{key}")
async def release_claim(scope: str, key: str, pipeline: Pipeline = Depends(get_pipeline)):
    """Forget a claim so the event can be ingested again."""
    if not await pipeline.idempotency.release(key, scope):
        raise HTTPException(status_code=404, detail=f"No claim {scope}/{key}")
    return {"status": "released", "scope": scope, "key": key}


# ============================================
# QUEUE & CIRCUITS
# ============================================


@router.get("/queue/stats")
async def queue_stats(pipeline: Pipeline = Depends(get_pipeline)):
    lanes = await pipeline.scheduler.get_stats()
    return {group: stats.model_dump() for group, stats in lanes.items()}


@router.get("/queue/failed")
async def failed_jobs(
    limit: int = Query(50, ge=1, le=500),
    pipeline: Pipeline = Depends(get_pipeline)
):
    jobs = await pipeline.monitor.get_failed_jobs(limit)
    return {"count": len(jobs), "jobs": [job.model_dump(mode="json") for job in jobs]}


@router.put("/monitor/thresholds/{name}")
async def set_threshold(name: str, update: ThresholdUpdate, pipeline: Pipeline = Depends(get_pipeline)):
    if not pipeline.monitor.set_threshold(name, update.value):
        raise HTTPException(status_code=404, detail=f"Unknown threshold '{name}'")
    return {"status": "ok", "thresholds": pipeline.monitor.thresholds}


@router.get("/circuits")
async def circuits(pipeline: Pipeline = Depends(get_pipeline)):
    return {name: breaker.get_status() for name, breaker in pipeline.circuits.items()}


@router.post("/circuits/{name}/reset")
async def reset_circuit(name: str, pipeline: Pipeline = Depends(get_pipeline)):
    breaker = pipeline.circuits.get(name)
    if breaker is None:
        raise HTTPException(status_code=404, detail=f"Unknown circuit '{name}'")
    await breaker.reset()
    logger.info(f"Operator reset circuit '{name}'")
    return breaker.get_status()
